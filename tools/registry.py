"""Action registry: the fixed set of host actions the assistant may trigger.

Each action module registers its handlers on an ActionRegistry instance at
startup:

    registry.register(
        name="openUrl",
        handler=_handle_open_url,
        description="Open a web page in the default browser",
        params=("url",),
    )

Handlers are plain functions or coroutines called as
``handler(params, context=ActionContext)``. They return a value (usually a
short string or a JSON string) and raise an ActionError subclass for known
failures. ``check_fn`` gates availability on the current host; an action
whose check fails stays registered but reports "unavailable".
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class ActionError(Exception):
    """Base class for action failures surfaced as error results."""
    error_type = "handler_error"


class ActionRejectedByPolicy(ActionError):
    """The request was refused by a security check. Nothing was executed."""
    error_type = "rejected"


class ActionHandlerError(ActionError):
    """A handler failed in a known way (missing file, bad parameter, ...)."""
    error_type = "handler_error"


class ActionUnavailable(ActionError):
    error_type = "unavailable"


# =============================================================================
# Data types
# =============================================================================

@dataclass
class ActionContext:
    """Shared resources handed to every handler."""
    shell: Any = None                      # tools.shell_session.ShellSession
    home: Path = field(default_factory=Path.home)
    search_max_results: int = 30
    search_max_depth: int = 4
    command_timeout: float = 30.0


@dataclass
class ActionResult:
    """Outcome of one dispatched action tag."""
    name: str
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"name": self.name, "value": self.value}
        return {"name": self.name, "error": self.error, "error_type": self.error_type}


@dataclass
class ActionEntry:
    name: str
    handler: Callable
    description: str = ""
    params: Sequence[str] = ()
    aliases: Sequence[str] = ()
    check_fn: Optional[Callable[[], bool]] = None
    silent: bool = False

    @property
    def is_async(self) -> bool:
        return asyncio.iscoroutinefunction(self.handler)

    def is_available(self) -> bool:
        if self.check_fn is None:
            return True
        try:
            return bool(self.check_fn())
        except Exception as e:
            logger.warning("Availability check for %s failed: %s", self.name, e)
            return False

    def usage(self) -> str:
        """Tag syntax shown to the model, e.g. ``[action: openUrl, url: <url>]``."""
        parts = [f"action: {self.name}"] + [f"{p}: <{p}>" for p in self.params]
        return "[" + ", ".join(parts) + "]"


# =============================================================================
# Registry
# =============================================================================

class ActionRegistry:
    """Case-insensitive name -> ActionEntry map."""

    def __init__(self):
        self._entries: Dict[str, ActionEntry] = {}
        self._lookup: Dict[str, ActionEntry] = {}

    def register(
        self,
        name: str,
        handler: Callable,
        description: str = "",
        *,
        params: Sequence[str] = (),
        aliases: Sequence[str] = (),
        check_fn: Optional[Callable[[], bool]] = None,
        silent: bool = False,
    ) -> ActionEntry:
        entry = ActionEntry(
            name=name,
            handler=handler,
            description=description,
            params=tuple(params),
            aliases=tuple(aliases),
            check_fn=check_fn,
            silent=silent,
        )
        for key in (name, *aliases):
            existing = self._lookup.get(key.lower())
            if existing is not None and existing.name != name:
                logger.warning("Action %s overrides %s", name, existing.name)
            self._lookup[key.lower()] = entry
        self._entries[name] = entry
        return entry

    def get(self, name: str) -> Optional[ActionEntry]:
        return self._lookup.get((name or "").lower())

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def get_all_action_names(self) -> List[str]:
        return list(self._entries)

    def get_definitions(self, only_available: bool = True) -> List[ActionEntry]:
        """Entries in registration order, filtered by check_fn by default."""
        entries = list(self._entries.values())
        if only_available:
            entries = [e for e in entries if e.is_available()]
        return entries
