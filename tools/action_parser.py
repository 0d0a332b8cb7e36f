"""Action-tag parsing for generated assistant text.

The model embeds host actions inline using a fixed one-line grammar:

    [action: name]
    [action: name, key: value, key2: value2]

The action keyword is case-insensitive, names and keys are word characters,
and there are no nested brackets. A new key is only recognized after a comma
(``, key:``), so values may contain commas and colons (URLs, times). A value
wrapped in single or double quotes keeps everything inside the quotes,
including text that looks like ``, key:``.

Usage:
    parsed = parse_actions("Opening Chrome. [action: launchApplication, appName: Chrome]")
    parsed.clean_text   # "Opening Chrome."
    parsed.tags         # [ActionTag(name="launchApplication", params={"appName": "Chrome"})]
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

ACTION_TAG_RE = re.compile(r'\[\s*action\s*:\s*(\w+)\s*((?:,[^\[\]\n]*)?)\]', re.IGNORECASE)

_KEY_RE = re.compile(r',\s*(\w+)\s*:')

_QUOTES = ("'", '"')


@dataclass(frozen=True)
class ActionTag:
    """One parsed ``[action: ...]`` tag."""
    name: str
    params: Dict[str, str] = field(default_factory=dict)
    raw: str = ""

    @property
    def key(self) -> str:
        """Lowercased name used for registry lookups."""
        return self.name.lower()


@dataclass
class ParsedResponse:
    clean_text: str
    tags: List[ActionTag] = field(default_factory=list)


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1].strip()
    return value


def tokenize_params(body: str) -> Dict[str, str]:
    """
    Split the parameter section of a tag into a key/value map.

    ``body`` is everything after the action name, e.g.
    ``', query: "report, v2", limit: 5'``. Each value runs until the next
    ``, key:`` token or the end of the body. A value that opens with a quote
    runs at least to its closing quote. Later duplicate keys win.
    """
    params: Dict[str, str] = {}
    body = body.lstrip()
    match = _KEY_RE.match(body)

    while match:
        key = match.group(1)
        value_start = match.end()

        search_from = value_start
        quote_pos = value_start
        while quote_pos < len(body) and body[quote_pos].isspace():
            quote_pos += 1
        if quote_pos < len(body) and body[quote_pos] in _QUOTES:
            closing = body.find(body[quote_pos], quote_pos + 1)
            if closing != -1:
                search_from = closing + 1

        next_match = _KEY_RE.search(body, search_from)
        value_end = next_match.start() if next_match else len(body)
        params[key] = _strip_quotes(body[value_start:value_end])
        match = next_match

    return params


def _normalize_whitespace(text: str) -> str:
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r' *\n *', '\n', text)
    return text.strip()


def parse_actions(text: Optional[str]) -> ParsedResponse:
    """Extract every action tag and return the text with the tags removed.

    Tags naming unknown actions are removed too; deciding what to run is the
    dispatcher's job.
    """
    if not text:
        return ParsedResponse(clean_text="")

    tags: List[ActionTag] = []
    for m in ACTION_TAG_RE.finditer(text):
        tags.append(ActionTag(name=m.group(1), params=tokenize_params(m.group(2) or ""), raw=m.group(0)))

    clean = ACTION_TAG_RE.sub("", text)
    return ParsedResponse(clean_text=_normalize_whitespace(clean), tags=tags)


def get_param(params: Dict[str, str], *names: str, default: Optional[str] = None) -> Optional[str]:
    """Case-insensitive lookup trying each name in order (first non-empty wins)."""
    lowered = {k.lower(): v for k, v in params.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value not in (None, ""):
            return value
    return default
