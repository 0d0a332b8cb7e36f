#!/usr/bin/env python3
"""
Tools Package

Everything the assistant can do on the machine, exposed as named actions
the model invokes with [action: name, key: value] tags, e.g.
[action: launchApplication, appName: Chrome]:

- action_parser: Tag grammar -- finds and tokenizes action tags in model output
- registry: Action registry, execution context, and result/error types
- action_dispatcher: Runs parsed actions against the registry
- shell_session: Persistent PowerShell/bash process with sentinel framing
- shell_policy: Read-only allow-list for model-issued shell commands
- file_search: Application and home-directory file search
- system_actions: Built-in handlers (apps, files, system control, clipboard, ...)
"""

from .action_dispatcher import ActionDispatcher
from .action_parser import ActionTag, ParsedResponse, get_param, parse_actions
from .registry import (
    ActionContext,
    ActionError,
    ActionRegistry,
    ActionResult,
)
from .shell_policy import PolicyDecision, check_command
from .shell_session import ShellSession, create_dialect
from .system_actions import build_default_registry, register_system_actions

__all__ = [
    "ActionContext",
    "ActionDispatcher",
    "ActionError",
    "ActionRegistry",
    "ActionResult",
    "ActionTag",
    "ParsedResponse",
    "PolicyDecision",
    "ShellSession",
    "build_default_registry",
    "check_command",
    "create_dialect",
    "get_param",
    "parse_actions",
    "register_system_actions",
]
