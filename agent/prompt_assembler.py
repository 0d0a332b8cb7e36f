"""System prompt assembly with caching.

Owns the prompt text sent ahead of every conversation: assistant identity,
response rules, the action-tag grammar with one usage line per registered
action, worked examples, and the user's name and current date/time.

Caching contract:
    - build() returns cached value on subsequent calls
    - invalidate() clears the cache
    - After invalidate(), the next build() call creates a fresh prompt
      (with a fresh timestamp and the registry's current actions)
"""

import getpass
import platform
from datetime import datetime
from typing import Callable, List, Optional

from tools.registry import ActionRegistry

DEFAULT_ASSISTANT_IDENTITY = (
    "You are Venesa, a voice and text desktop assistant for {user_name} on {os_name}."
)

CORE_RULES = """## CORE RULES
- At most 2 sentences. Be brief.
- Plain text only. No markdown or formatting symbols.
- No filler such as "Sure!", "I can help" or "Here is".
- Silent actions (marked below) gather information. Include the tag but do not announce it; the result is read out after the action finishes.
- Only end with a question when you actually need an answer."""

ACTION_GRAMMAR = """## ACTIONS
Trigger actions on the user's computer with inline tags on a single line:
[action: name, key: value, key2: value2]
No nested brackets. Quote a value if it contains a comma followed by a word and a colon.
Use only the keywords of a search query, never filler words like "my" or "the"."""

SECURITY_GUIDANCE = """## SECURITY
- Never run commands that reveal secrets, credentials or passwords, or that delete anything.
- Shell commands are limited to read-only queries; anything else is refused."""

RESPONSE_EXAMPLES = """## EXAMPLES
User: "find my resume"
Searching for your resume. [action: searchFiles, query: resume]

User: "open Chrome"
Opening Chrome. [action: launchApplication, appName: Chrome]

User: (unclear speech)
I didn't catch that. Could you say that again? [action: listen]

User: "set volume to 50"
Setting volume to 50. [action: systemControl, command: setVolume, value: 50]

User: "how's my computer doing"
[action: getSystemInfo]

User: "search google for best laptops"
Opening Google search. [action: openUrl, url: https://www.google.com/search?q=best%20laptops]

User: "never mind"
Okay."""

MODE_HINTS = """## VOICE vs TEXT MODE
Each message starts with [USER SPOKE VIA VOICE] or [USER TYPED IN TEXT MODE].
- VOICE: spoken numbers ("nine forty-six"), natural phrasing
- TEXT: digits ("9:46 PM"), ultra-concise
Only describe an attached screen image when the user asks about what is on screen."""

LISTEN_GUIDANCE = "Always add [action: listen] after asking the user a question or when the speech was unclear."


def default_user_name() -> str:
    try:
        return getpass.getuser() or "User"
    except (KeyError, OSError):
        return "User"


class PromptAssembler:
    """Assembles the full system prompt from layered components.

    Args:
        registry: Registered actions documented in the prompt.
        user_name: Name used to address the user (defaults to the login name).
        clock: Returns the "now" stamped into the prompt.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        *,
        user_name: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._registry = registry
        self._user_name = user_name or default_user_name()
        self._clock = clock
        self._cached_prompt: Optional[str] = None

    @property
    def user_name(self) -> str:
        return self._user_name

    def _action_lines(self) -> List[str]:
        lines = []
        for entry in self._registry.get_definitions():
            line = entry.usage()
            if entry.description:
                line += f" - {entry.description}"
            if entry.silent:
                line += " (silent)"
            lines.append(line)
        return lines

    def build(self) -> str:
        """Assemble the full system prompt from all layers.

        CACHING CONTRACT: Returns cached value on subsequent calls.
        Call invalidate() before build() to force a rebuild.
        """
        if self._cached_prompt is not None:
            return self._cached_prompt

        os_name = {"Darwin": "macOS"}.get(platform.system(), platform.system() or "this computer")
        prompt_parts = [
            DEFAULT_ASSISTANT_IDENTITY.format(user_name=self._user_name, os_name=os_name),
            CORE_RULES,
        ]

        action_lines = self._action_lines()
        if action_lines:
            prompt_parts.append(ACTION_GRAMMAR + "\n\n" + "\n".join(action_lines))
            if "listen" in self._registry:
                prompt_parts.append(LISTEN_GUIDANCE)
            prompt_parts.append(SECURITY_GUIDANCE)
            prompt_parts.append(RESPONSE_EXAMPLES)

        prompt_parts.append(MODE_HINTS)

        # Timestamp and user (always last)
        now = self._clock()
        prompt_parts.append(
            f"Current time: {now.strftime('%A, %B %d, %Y %I:%M %p')}\nUser name: {self._user_name}"
        )

        result = "\n\n".join(prompt_parts)
        self._cached_prompt = result
        return result

    @property
    def cached(self) -> Optional[str]:
        """Return the cached prompt, or None if not yet built/invalidated."""
        return self._cached_prompt

    def invalidate(self) -> None:
        """Invalidate the cached prompt, forcing rebuild on next build() call."""
        self._cached_prompt = None
