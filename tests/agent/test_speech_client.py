"""Tests for agent.speech_client -- ElevenLabs requests with key rotation.

Run with:  python -m pytest tests/agent/test_speech_client.py -v
"""

from unittest.mock import MagicMock

import pytest
import requests

from agent.key_pool import CredentialStatus, KeyPool, KeyPoolExhausted
from agent.speech_client import SpeechClient

KEYS = ["sk_first_0000000000000001", "sk_second_000000000000002"]


def _pool(keys=KEYS):
    pool = KeyPool("elevenlabs", keys=list(keys), clock=lambda: 1000.0)
    pool.initialize()
    return pool


def _response(status=200, content=b"", json_data=None):
    resp = MagicMock()
    resp.status_code = status
    resp.content = content
    resp.json.return_value = json_data or {}
    if status >= 400:
        err = requests.HTTPError(f"{status} Client Error", response=resp)
        resp.raise_for_status.side_effect = err
    else:
        resp.raise_for_status.return_value = None
    return resp


class TestSynthesize:
    def test_posts_text_and_returns_audio(self):
        session = MagicMock()
        session.post.return_value = _response(content=b"ID3audio")
        client = SpeechClient(_pool(), session=session, voice_id="voice123")

        assert client.synthesize("Hello there") == b"ID3audio"
        url = session.post.call_args[0][0]
        kwargs = session.post.call_args[1]
        assert url == "https://api.elevenlabs.io/v1/text-to-speech/voice123"
        assert kwargs["headers"]["xi-api-key"] == KEYS[0]
        assert kwargs["json"]["text"] == "Hello there"
        assert kwargs["json"]["model_id"] == "eleven_turbo_v2_5"

    def test_revoked_key_rotates(self):
        session = MagicMock()
        session.post.side_effect = [_response(status=401), _response(content=b"ok")]
        pool = _pool()
        client = SpeechClient(pool, session=session)

        assert client.synthesize("Hi") == b"ok"
        used = [c[1]["headers"]["xi-api-key"] for c in session.post.call_args_list]
        assert used == KEYS
        statuses = [k["status"] for k in pool.get_stats()["keys"]]
        assert statuses[0] == CredentialStatus.REVOKED.value

    def test_server_error_not_retried(self):
        session = MagicMock()
        session.post.return_value = _response(status=500)
        client = SpeechClient(_pool(), session=session)
        with pytest.raises(requests.HTTPError):
            client.synthesize("Hi")
        assert session.post.call_count == 1

    def test_empty_text_borrows_nothing(self):
        session = MagicMock()
        client = SpeechClient(_pool(), session=session)
        with pytest.raises(ValueError):
            client.synthesize("   ")
        session.post.assert_not_called()

    def test_no_keys(self):
        client = SpeechClient(_pool(keys=[]), session=MagicMock())
        assert not client.is_available()
        with pytest.raises(KeyPoolExhausted):
            client.synthesize("Hi")


class TestTranscribe:
    def test_multipart_upload(self):
        session = MagicMock()
        session.post.return_value = _response(json_data={"text": " open chrome "})
        client = SpeechClient(_pool(), session=session, language="de")

        assert client.transcribe(b"\x1aE\xdf\xa3", filename="clip.webm") == "open chrome"
        kwargs = session.post.call_args[1]
        assert session.post.call_args[0][0] == "https://api.elevenlabs.io/v1/speech-to-text"
        assert kwargs["files"]["file"] == ("clip.webm", b"\x1aE\xdf\xa3", "audio/webm")
        assert kwargs["data"] == {"model_id": "scribe_v1", "language_code": "de"}

    def test_rate_limit_rotates(self):
        session = MagicMock()
        session.post.side_effect = [_response(status=429), _response(json_data={"text": "hi"})]
        client = SpeechClient(_pool(), session=session)
        assert client.transcribe(b"abc", filename="a.wav") == "hi"
        assert session.post.call_count == 2

    def test_empty_audio(self):
        with pytest.raises(ValueError):
            SpeechClient(_pool(), session=MagicMock()).transcribe(b"")

    def test_from_config(self):
        client = SpeechClient.from_config(_pool(), {"voice_id": "v", "timeout": 5})
        assert client.voice_id == "v"
        assert client.timeout == 5.0
        assert client.stt_model == "scribe_v1"
