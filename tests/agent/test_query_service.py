"""Tests for agent.query_service -- generation, rotation, history, folding.

Covers:
  - Successful turn: prompt + history + user message, actions dispatched
  - Key rotation on rate limit / invalid key, no retry on other failures
  - History kept across credential rotation, trimmed to max_history_turns
  - Mode prefixes, image attachments, malformed data URLs
  - Folding of informational results into the reply text
  - User-facing error messages

Run with:  python -m pytest tests/agent/test_query_service.py -v
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from agent.key_pool import CredentialRevoked, KeyPool, KeyPoolExhausted, KeyPoolManager
from agent.prompt_assembler import PromptAssembler
from agent.query_service import (
    EXHAUSTED_MESSAGE,
    INVALID_IMAGE_MESSAGE,
    NO_KEYS_MESSAGE,
    NOT_FOUND_FEEDBACK,
    REVOKED_MESSAGE,
    QueryService,
    contextualize,
    fold_results,
    prepare_image,
    user_facing_error,
)
from tools.action_dispatcher import ActionDispatcher
from tools.registry import ActionHandlerError, ActionRegistry, ActionResult

KEYS = [
    "AIzaSyA-first-key-000000000000000001",
    "AIzaSyB-second-key-00000000000000002",
]

TIME_JSON = json.dumps({
    "iso": "2026-03-02T21:46:00",
    "time": "9:46 PM",
    "date": "Monday, March 2, 2026",
    "full": "Monday, March 2, 2026 at 9:46 PM",
})


# =============================================================================
# Helpers
# =============================================================================

class FakeAPIError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def _completion(text, finish_reason="stop"):
    message = SimpleNamespace(content=text)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])


def _registry():
    registry = ActionRegistry()

    def fail_control(params, context):
        raise ActionHandlerError("Error: wifiToggle failed")

    registry.register("getTime", lambda params, context: TIME_JSON)
    registry.register("listen", lambda params, context: "Listening")
    registry.register("systemControl", fail_control)
    registry.register("runCommand", lambda params, context: "42", aliases=("runPowerShell",))
    return registry


class Harness:
    """QueryService wired to a fake chat-completions client."""

    def __init__(self, keys=KEYS, replies=None, **kwargs):
        self.pool = KeyPool("gemini", keys=list(keys), clock=lambda: 1000.0)
        self.pool.initialize()
        self.create = MagicMock(side_effect=replies or [_completion("Okay.")])
        self.used_keys = []

        def factory(api_key):
            self.used_keys.append(api_key)
            client = MagicMock()
            client.chat.completions.create = self.create
            return client

        registry = _registry()
        self.service = QueryService(
            self.pool,
            ActionDispatcher(registry),
            prompt_assembler=PromptAssembler(registry, user_name="Sam"),
            client_factory=factory,
            **kwargs,
        )

    def messages(self, call=-1):
        return self.create.call_args_list[call][1]["messages"]


# =============================================================================
# send_query
# =============================================================================

class TestSendQuery:
    def test_success_with_folded_action(self):
        h = Harness(replies=[_completion("Here you go. [action: getTime]")])
        result = h.service.send_query("what time is it")

        assert result.error is None
        assert result.clean_text == "Here you go. It's Monday, March 2, 2026 at 9:46 PM."
        assert result.raw_text == "Here you go. [action: getTime]"
        assert [r.name for r in result.results] == ["getTime"]
        assert h.used_keys == [KEYS[0]]

        messages = h.messages()
        assert messages[0]["role"] == "system"
        assert "User name: Sam" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "[USER TYPED IN TEXT MODE] what time is it"}
        assert h.create.call_args[1]["model"] == "gemini-2.5-flash"

    def test_voice_prefix(self):
        h = Harness()
        h.service.send_query("hello", mode="voice")
        assert h.messages()[-1]["content"] == "[USER SPOKE VIA VOICE] hello"

    def test_listen_sets_flag(self):
        h = Harness(replies=[_completion("Which one? [action: listen]")])
        result = h.service.send_query("open the file")
        assert result.clean_text == "Which one?"
        assert result.listen_again

    def test_failed_action_does_not_break_reply(self):
        h = Harness(replies=[_completion("Toggling wifi. [action: systemControl, command: wifiToggle]")])
        result = h.service.send_query("toggle wifi")
        assert result.clean_text == "Toggling wifi. System control failed: Error: wifiToggle failed"
        assert result.error is None
        assert not result.results[0].ok

    def test_empty_query(self):
        h = Harness()
        result = h.service.send_query("   ")
        assert result.listen_again
        h.create.assert_not_called()

    def test_no_keys(self):
        h = Harness(keys=[])
        result = h.service.send_query("hi")
        assert result.clean_text == NO_KEYS_MESSAGE
        h.create.assert_not_called()

    def test_empty_reply_becomes_done(self):
        h = Harness(replies=[_completion("")])
        assert h.service.send_query("hi").clean_text == "Done."


class TestRotation:
    def test_rate_limit_moves_to_next_key(self):
        h = Harness(replies=[FakeAPIError("quota exceeded", 429), _completion("Hi.")])
        result = h.service.send_query("hi")
        assert result.clean_text == "Hi."
        assert h.used_keys == KEYS

    def test_invalid_key_moves_to_next_key(self):
        h = Harness(replies=[FakeAPIError("API key not valid", 400), _completion("Hi.")])
        assert h.service.send_query("hi").clean_text == "Hi."
        assert h.pool.key_count() == 1

    def test_other_error_not_retried(self):
        h = Harness(replies=[FakeAPIError("internal", 500), _completion("never")])
        result = h.service.send_query("hi")
        assert result.clean_text == "Server error. Please try again later."
        assert result.error == "internal"
        assert h.create.call_count == 1
        assert h.service.history == []

    def test_all_rate_limited_then_exhausted(self):
        h = Harness(replies=[FakeAPIError("429 too many requests", 429)] * 2)
        first = h.service.send_query("hi")
        assert first.clean_text == EXHAUSTED_MESSAGE
        assert h.create.call_count == 2
        assert not h.pool.is_healthy()

        second = h.service.send_query("hi again")
        assert second.clean_text == EXHAUSTED_MESSAGE
        assert h.create.call_count == 2

    def test_all_keys_revoked(self):
        h = Harness(keys=KEYS[:1], replies=[FakeAPIError("API key not valid", 401)])
        first = h.service.send_query("hi")
        assert first.clean_text == REVOKED_MESSAGE
        assert h.pool.key_count() == 0

        second = h.service.send_query("hi again")
        assert second.clean_text == REVOKED_MESSAGE
        assert second.error == "All API keys revoked"
        assert h.create.call_count == 1

    def test_safety_block(self):
        h = Harness(replies=[_completion(None, finish_reason="content_filter")])
        result = h.service.send_query("hi")
        assert result.clean_text == "Response blocked by safety filters. Please try a different query."


class TestHistory:
    def test_history_survives_rotation(self):
        h = Harness(replies=[
            _completion("First answer."),
            FakeAPIError("quota", 429),
            _completion("Second answer."),
        ])
        h.service.send_query("first question")
        h.service.send_query("second question")

        assert h.used_keys == [KEYS[0], KEYS[0], KEYS[1]]
        retried = h.messages(-1)
        assert [m["role"] for m in retried] == ["system", "user", "assistant", "user"]
        assert retried[2]["content"] == "First answer."
        assert len(h.service.history) == 4

    def test_trimmed_to_max_turns(self):
        replies = [_completion(f"Answer {i}.") for i in range(3)]
        h = Harness(replies=replies, max_history_turns=1)
        for i in range(3):
            h.service.send_query(f"question {i}")
        history = h.service.history
        assert len(history) == 2
        assert history[1]["content"] == "Answer 2."
        assert [m["role"] for m in h.messages(-1)] == ["system", "user", "assistant", "user"]

    def test_reset(self):
        h = Harness()
        h.service.send_query("hi")
        h.service.reset_history()
        assert h.service.history == []

    def test_image_not_kept_in_history(self):
        h = Harness(replies=[_completion("A cat."), _completion("Yes.")])
        h.service.send_query("what is on screen", image=b"\x89PNG")
        sent = h.messages()[-1]["content"]
        assert sent[0] == {"type": "text", "text": "[USER TYPED IN TEXT MODE] what is on screen"}
        assert sent[1]["image_url"]["url"].startswith("data:image/png;base64,")

        h.service.send_query("sure?")
        assert h.messages()[1]["content"] == "[USER TYPED IN TEXT MODE] what is on screen"

    def test_bad_image_costs_no_credential(self):
        h = Harness()
        result = h.service.send_query("look", image="not-a-data-url")
        assert result.clean_text == INVALID_IMAGE_MESSAGE
        assert h.used_keys == []


class TestAsync:
    @pytest.mark.asyncio
    async def test_send_query_async(self):
        h = Harness(replies=[_completion("Ran it. [action: runPowerShell, script: 6*7]")])
        result = await h.service.send_query_async("what is six times seven")
        assert result.clean_text == "Ran it. 42"
        assert result.results[0].name == "runCommand"


class TestPoolAccess:
    def test_single_pool_stats_and_refresh(self):
        h = Harness()
        assert h.service.get_pool_stats()["total_keys"] == 2
        assert h.service.refresh_key_pool() is True

    def test_manager(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GEMINI_API_KEY", KEYS[0])
        manager = KeyPoolManager(env_path=tmp_path / ".env")
        manager.initialize()
        service = QueryService(manager, ActionDispatcher(ActionRegistry()), client_factory=MagicMock())
        stats = service.get_pool_stats()
        assert "gemini" in stats
        assert stats["gemini"]["total_keys"] == 1


# =============================================================================
# Helpers
# =============================================================================

class TestFoldResults:
    def test_search_not_found(self):
        folded = fold_results("Searching.", [ActionResult("searchFiles", value='{"notFound": true}')])
        assert folded.clean_text == f"Searching. {NOT_FOUND_FEEDBACK}"
        assert not folded.listen_again

    def test_search_matches_ask_for_selection(self):
        payload = json.dumps({
            "apps": [{"name": "Calculator", "path": "/apps/calc.desktop", "type": "desktop"}],
            "folders": ["Documents/Reports"],
            "files": ["Documents/Reports/q1.pdf"],
        })
        folded = fold_results("Searching for reports.", [ActionResult("searchFiles", value=payload)])
        assert folded.clean_text == "I found 3 matches. Which one would you like?"
        assert folded.listen_again
        assert folded.search_total == 3
        assert [(r["index"], r["name"], r["type"]) for r in folded.search_results] == [
            (1, "Calculator", "app"), (2, "Reports", "folder"), (3, "q1.pdf", "file"),
        ]

    def test_search_display_limit(self):
        payload = json.dumps({"files": [f"f{i}.txt" for i in range(8)]})
        folded = fold_results("", [ActionResult("searchFiles", value=payload)])
        assert folded.search_total == 8
        assert len(folded.search_results) == 5
        assert folded.clean_text == "I found 8 matches. Which one would you like?"

    def test_system_info_sentence(self):
        info = json.dumps({"cpu": "12%", "ramUsed": 4.0, "ramTotal": 16.0, "battery": "80%", "uptime": "2.0 hours"})
        folded = fold_results("", [ActionResult("getSystemInfo", value=info)])
        assert folded.clean_text == (
            "CPU is at 12%, RAM is 4.0 of 16.0GB, battery is at 80%, and uptime is 2.0 hours."
        )

    def test_command_output_with_error_skipped(self):
        folded = fold_results("Checked.", [ActionResult("runCommand", value="error: nope")])
        assert folded.clean_text == "Checked."

    def test_rejected_command_not_spoken(self):
        folded = fold_results("Okay.", [ActionResult("runCommand", error="Blocked: delete", error_type="rejected")])
        assert folded.clean_text == "Okay."

    def test_cancel_suppresses_listen(self):
        folded = fold_results("No problem!", [ActionResult("listen", value="Listening")])
        assert not folded.listen_again

    def test_non_json_ignored(self):
        folded = fold_results("Time.", [ActionResult("getTime", value="not json")])
        assert folded.clean_text == "Time."


class TestUserFacingError:
    @pytest.mark.parametrize("error, expected", [
        (FakeAPIError("quota", 429), "Rate limit reached. Switching to next available key..."),
        (FakeAPIError("Please retry in 12.3s", 429),
         "Rate limit reached. Trying another key... (wait 13s if all keys exhausted)"),
        (FakeAPIError("bad", 401), "Invalid API key detected and removed. Trying next key..."),
        (FakeAPIError("models/x is not found", 404), "Model not found. Please check the model name in settings."),
        (ConnectionError("network unreachable"), "Network error. Please check your internet connection."),
        (FakeAPIError("unavailable", 503), "Server error. Please try again later."),
        (RuntimeError("weird"), "Something went wrong. Please try again."),
        (KeyPoolExhausted("gemini", retry_after=30), EXHAUSTED_MESSAGE),
    ])
    def test_messages(self, error, expected):
        assert user_facing_error(error) == expected

    def test_revoked(self):
        assert "invalid" in user_facing_error(CredentialRevoked("gemini"))


class TestPrepareImage:
    def test_bytes(self):
        assert prepare_image(b"abc") == "data:image/png;base64,YWJj"

    def test_data_url_kept(self):
        assert prepare_image("data:image/jpeg;base64,YWJj") == "data:image/jpeg;base64,YWJj"

    @pytest.mark.parametrize("value", [
        "YWJj",
        "data:image/png,YWJj",
        "data:image/png;base64,",
        "data:image/png;base64,!!!notbase64",
        b"",
    ])
    def test_malformed(self, value):
        with pytest.raises(ValueError):
            prepare_image(value)

    def test_none(self):
        assert prepare_image(None) is None


class TestContextualize:
    def test_previous_results(self):
        text = contextualize("the second one", "voice", [
            {"index": 1, "name": "a.txt", "type": "file", "path": "a.txt"},
            {"index": 2, "name": "Docs", "type": "folder", "path": "Docs"},
        ])
        assert text.startswith("[USER SPOKE VIA VOICE] [CONTEXT: User is viewing these search results: "
                               "1. a.txt (file), 2. Docs (folder)]")
        assert '"path": "Docs"' in text
