"""Tests for PromptAssembler -- layered system prompt with caching.

Covers:
    - Layer ordering (identity first, timestamp/user last)
    - One usage line per registered action, silent marker
    - Listen guidance gated on the listen action
    - Caching contract (same object until invalidate)
    - Invalidation picks up new registrations and a new clock reading
"""

from datetime import datetime
from unittest import mock

from agent.prompt_assembler import (
    ACTION_GRAMMAR,
    CORE_RULES,
    LISTEN_GUIDANCE,
    PromptAssembler,
)
from tools.registry import ActionRegistry
from tools.system_actions import build_default_registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_FIXED_NOW = datetime(2026, 3, 2, 21, 46)


def _assembler(registry=None, **kwargs):
    kwargs.setdefault("user_name", "Sam")
    kwargs.setdefault("clock", lambda: _FIXED_NOW)
    return PromptAssembler(registry if registry is not None else build_default_registry(), **kwargs)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestPromptAssembler:
    def test_identity_first(self):
        segments = _assembler().build().split("\n\n")
        assert segments[0].startswith("You are Venesa")
        assert "for Sam on" in segments[0]
        assert segments[1] == CORE_RULES

    def test_timestamp_and_user_last(self):
        segments = _assembler().build().split("\n\n")
        assert segments[-1] == "Current time: Monday, March 02, 2026 09:46 PM\nUser name: Sam"

    def test_every_action_documented(self):
        registry = build_default_registry()
        result = _assembler(registry).build()
        assert ACTION_GRAMMAR in result
        for entry in registry.get_definitions():
            assert entry.usage() in result
        assert "[action: runCommand, script: <script>]" in result

    def test_silent_marker(self):
        result = _assembler().build()
        time_line = next(line for line in result.splitlines() if line.startswith("[action: getTime]"))
        assert time_line.endswith("(silent)")
        open_line = next(line for line in result.splitlines() if line.startswith("[action: openUrl"))
        assert not open_line.endswith("(silent)")

    def test_unavailable_actions_omitted(self):
        registry = ActionRegistry()
        registry.register("visible", lambda p, context: None, "shown")
        registry.register("hidden", lambda p, context: None, "gone", check_fn=lambda: False)
        result = _assembler(registry).build()
        assert "[action: visible] - shown" in result
        assert "[action: hidden]" not in result

    def test_listen_guidance_gated(self):
        assert LISTEN_GUIDANCE in _assembler().build()
        registry = ActionRegistry()
        registry.register("getTime", lambda p, context: None)
        assert LISTEN_GUIDANCE not in _assembler(registry).build()

    def test_no_actions_no_grammar(self):
        result = _assembler(ActionRegistry()).build()
        assert ACTION_GRAMMAR not in result

    def test_default_user_name(self):
        with mock.patch("agent.prompt_assembler.getpass.getuser", return_value="alex"):
            pa = PromptAssembler(ActionRegistry())
        assert pa.user_name == "alex"

    def test_default_user_name_fallback(self):
        with mock.patch("agent.prompt_assembler.getpass.getuser", side_effect=KeyError("uid")):
            pa = PromptAssembler(ActionRegistry())
        assert pa.user_name == "User"

    def test_caching_returns_same_object(self):
        pa = _assembler()
        assert pa.cached is None
        first = pa.build()
        assert pa.build() is first
        assert pa.cached is first

    def test_invalidate_rebuilds(self):
        clock = mock.MagicMock(side_effect=[_FIXED_NOW, datetime(2026, 3, 3, 8, 5)])
        registry = ActionRegistry()
        pa = _assembler(registry, clock=clock)
        first = pa.build()

        registry.register("extra", lambda p, context: None, "new action")
        assert pa.build() is first

        pa.invalidate()
        assert pa.cached is None
        second = pa.build()
        assert "[action: extra] - new action" in second
        assert "Tuesday, March 03, 2026 08:05 AM" in second
