"""Read-only policy for host commands requested by the assistant.

Model output can ask for a host command via ``[action: runCommand, script: ...]``.
Nothing reaches the shell unless it passes these checks, in this order:

1. Deny-list: the whole script is searched for dangerous constructs
   (encoded/obfuscated execution, downloads, expression/reflection
   execution, method calls, find actions, destructive or state-changing
   verbs, redirection). Any hit rejects, no matter what else the script
   contains. Static ``[type]::member`` references must also be on
   ALLOWED_STATIC_MEMBERS.
2. Allow-list: the script is split into statements and pipeline stages
   (outside quotes and brackets). Every statement must start with a
   read-only command, and every later pipeline stage must be a read-only
   command or a formatting stage. Pure arithmetic is also accepted.
   Commands nested in ``(...)`` or ``{...}`` script blocks are held to the
   same list.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

# Dangerous patterns (regex, description). Searched case-insensitively.
DENY_PATTERNS = [
    # Encoded / obfuscated execution
    (r'(?<![\w-])-(e|ec|enc|encodedcommand)\b', "encoded command"),
    (r'frombase64string', "base64 decoding"),
    (r'\bbase64\s+(-d|--decode)\b', "base64 decoding"),
    (r'`', "escape/backtick execution"),
    (r'\$\(', "sub-expression execution"),
    # Network download primitives
    (r'\b(invoke-webrequest|iwr|invoke-restmethod|irm|wget|curl)\b', "network download"),
    (r'\b(net\.webclient|downloadstring|downloadfile|downloaddata)\b', "network download"),
    (r'\b(start-bitstransfer|bitsadmin|certutil)\b', "network download"),
    # find actions that run programs or write files
    (r'(?<![\w-])-(exec\w*|ok\w*|fprint\w*|fls|delete)\b', "find action"),
    # Expression / reflection based execution
    (r'\b(invoke-expression|iex|invoke-command|icm|invoke-item|ii)\b', "expression execution"),
    (r'\b(eval|exec|source)\b', "expression execution"),
    (r'\badd-type\b', "compiled code injection"),
    (r'\[(system\.)?reflection\.', "reflection"),
    (r'\.invoke\s*\(', "reflection"),
    (r'\[\s*(system\.)?(io|diagnostics)\.', "file or process API"),
    (r'(?<=[\w)\]])\.[a-z_]\w*\s*\(', "method invocation"),
    (r'\b(start-process|saps|start-job|start-threadjob)\b', "process creation"),
    (r'\b(powershell|pwsh|cmd|bash|sh|zsh|python\d?|node|wscript|cscript|mshta|rundll32|regsvr32)(\.exe)?\b',
     "nested interpreter"),
    (r'(?:^|[\s;{(|])&\s*["\'$\w\\/.]', "call operator"),
    # Destructive / state-changing verbs
    (r'\b(remove|clear|stop|set|new|move|rename|copy|disable|enable|restart|suspend|uninstall|install|'
     r'register|unregister|update|reset|initialize|mount|dismount|write-eventlog)-\w+',
     "state-changing cmdlet"),
    (r'\b(rm|rmdir|unlink|del|erase|rd|ri|mv|cp|chmod|chown|chgrp|ln|touch|mkdir|mkfs|dd|shred|truncate)\b',
     "destructive command"),
    (r'\b(kill|pkill|killall|taskkill|spps|shutdown|reboot|halt|poweroff|sudo|su|runas|reg|sc|netsh)\b',
     "privileged or destructive command"),
    (r'\b(out-file|set-content|add-content|tee-object|tee|export-\w+)\b', "file write"),
    (r'(?<![-\w])format(\.com)?\s+[a-z]:', "disk format"),
    (r'\bformat-volume\b', "disk format"),
    (r'\bdelete\b', "delete"),
    (r'>', "output redirection"),
]

# First word of a statement (lowercase, ".exe" stripped).
ALLOWED_COMMANDS = frozenset({
    # PowerShell read-only cmdlets
    "get-process", "get-service", "get-childitem", "get-item", "get-itemproperty",
    "get-content", "get-date", "get-location", "get-computerinfo", "get-ciminstance",
    "get-wmiobject", "get-volume", "get-psdrive", "get-netadapter", "get-netipaddress",
    "get-timezone", "get-culture", "get-host", "get-uptime", "get-command", "get-hotfix",
    "get-disk", "get-counter", "test-path", "resolve-path", "select-string", "measure-object",
    "write-output",
    # PowerShell aliases
    "gps", "gsv", "gci", "gi", "gc", "dir", "ls", "pwd", "echo", "type",
    # POSIX / cross-platform read-only tools
    "ps", "cat", "date", "hostname", "whoami", "uptime", "printenv", "uname",
    "df", "du", "free", "which", "where", "id", "nproc", "lscpu", "lsblk", "stat",
    "head", "tail", "wc", "file", "find", "grep", "systeminfo", "tasklist", "ver", "vol",
})

# Accepted as a non-first pipeline stage.
FORMATTING_STAGES = frozenset({
    "select-object", "select", "where-object", "where", "?", "sort-object", "sort",
    "format-table", "ft", "format-list", "fl", "format-wide", "fw", "measure-object", "measure",
    "convertto-json", "convertto-csv", "out-string", "group-object", "group", "select-string",
    "head", "tail", "grep", "wc", "uniq", "cut", "findstr",
})

# Expression statements that only read state.
ALLOWED_EXPRESSION_PREFIXES = (
    "$env:",
    "[math]::",
    "[datetime]::now",
    "[datetime]::today",
    "[datetime]::utcnow",
    "[environment]::",
    "[system.environment]::",
)

# Static members ([type]::member) that may appear anywhere in a script.
_ENVIRONMENT_MEMBERS = (
    "machinename", "username", "userdomainname", "osversion", "processorcount",
    "version", "tickcount", "systemdirectory", "is64bitoperatingsystem",
    "getenvironmentvariable", "getfolderpath", "newline",
)
ALLOWED_STATIC_MEMBERS = (
    "[math]::",
    "[system.math]::",
    "[datetime]::now",
    "[datetime]::today",
    "[datetime]::utcnow",
) + tuple(
    f"[{type_name}]::{member}"
    for type_name in ("environment", "system.environment")
    for member in _ENVIRONMENT_MEMBERS
)

_STATIC_MEMBER = re.compile(r'\[\s*([\w.]+)\s*\]\s*::\s*(\w+)')

# A bare word at the start of a (...) / {...} group or after ; | newline runs
# as a command. Hashtable keys (@{Name=...}) are not commands.
_QUOTED = re.compile(r"'[^']*'|\"[^\"]*\"")
_GROUP_COMMAND = re.compile(r'(?:(?<!@)\{|[(;|\n])\s*([a-z][\w.-]*)\b(?!\s*=)', re.IGNORECASE)

_ARITHMETIC = re.compile(r'^[\d\s.+\-*/%()]+$')

_COMPILED_DENY = [(re.compile(p, re.IGNORECASE), desc) for p, desc in DENY_PATTERNS]


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str
    pattern: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def _split_outside_quotes(text: str, separators: List[str]) -> List[str]:
    """Split *text* on any separator that is not inside quotes or brackets."""
    parts: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    depth = 0
    i = 0
    ordered = sorted(separators, key=len, reverse=True)

    while i < len(text):
        ch = text[i]
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch in "({[":
            depth += 1
        elif ch in ")}]" and depth:
            depth -= 1
        elif depth == 0:
            sep = next((s for s in ordered if text.startswith(s, i)), None)
            if sep:
                parts.append("".join(current))
                current = []
                i += len(sep)
                continue
        current.append(ch)
        i += 1

    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def split_statements(script: str) -> List[str]:
    return _split_outside_quotes(script, ["&&", "||", ";", "&", "\r\n", "\n"])


def split_pipeline(statement: str) -> List[str]:
    return _split_outside_quotes(statement, ["|"])


def _command_word(stage: str) -> str:
    word = stage.split(None, 1)[0].lower() if stage.split() else ""
    return word[:-4] if word.endswith(".exe") else word


def _is_allowed_expression(stage: str) -> bool:
    lowered = stage.lower()
    if lowered.startswith(ALLOWED_EXPRESSION_PREFIXES):
        return True
    return bool(_ARITHMETIC.match(stage)) and any(c.isdigit() for c in stage)


def find_denied_pattern(script: str) -> Optional[tuple]:
    """Return (pattern, description) for the first deny-list hit, else None."""
    for regex, description in _COMPILED_DENY:
        if regex.search(script):
            return regex.pattern, description
    return None


def find_disallowed_static_member(script: str) -> Optional[str]:
    """Return the first ``[type]::member`` reference not on ALLOWED_STATIC_MEMBERS."""
    for match in _STATIC_MEMBER.finditer(script):
        reference = f"[{match.group(1)}]::{match.group(2)}".lower()
        if not reference.startswith(ALLOWED_STATIC_MEMBERS):
            return reference
    return None


def find_group_command(script: str) -> Optional[str]:
    """Return the first command word inside (...) / {...} that is not read-only."""
    allowed = ALLOWED_COMMANDS | FORMATTING_STAGES
    for match in _GROUP_COMMAND.finditer(_QUOTED.sub("''", script)):
        word = match.group(1).lower()
        word = word[:-4] if word.endswith(".exe") else word
        if word not in allowed:
            return word
    return None


def check_command(script: str) -> PolicyDecision:
    """Decide whether *script* may run on the host shell."""
    if not script or not script.strip():
        return PolicyDecision(False, "Empty command")

    denied = find_denied_pattern(script)
    if denied:
        pattern, description = denied
        return PolicyDecision(False, f"Blocked: {description}", pattern)

    member = find_disallowed_static_member(script)
    if member:
        return PolicyDecision(False, f"Blocked: static .NET call {member}", _STATIC_MEMBER.pattern)

    for statement in split_statements(script):
        stages = split_pipeline(statement)
        first = stages[0]
        if not (_command_word(first) in ALLOWED_COMMANDS or _is_allowed_expression(first)):
            return PolicyDecision(False, f"Not on the read-only allow-list: {_command_word(first) or first}")
        for stage in stages[1:]:
            word = _command_word(stage)
            if word not in FORMATTING_STAGES and word not in ALLOWED_COMMANDS:
                return PolicyDecision(False, f"Pipeline stage not allowed: {word}")

    nested = find_group_command(script)
    if nested:
        return PolicyDecision(False, f"Not on the read-only allow-list: {nested}")

    return PolicyDecision(True, "Allowed")
