"""ElevenLabs speech client: text-to-speech and speech-to-text.

Credentials are borrowed from the ``elevenlabs`` key pool for one request at
a time through call_with_rotation, so a revoked or rate-limited key moves the
request on to the next one. HTTP failures surface as requests.HTTPError,
which carries the status code the pool needs to classify the failure.
"""

import logging
from typing import Any, Dict, Optional

import requests

from agent.key_pool import KeyPool, call_with_rotation
from venesa_constants import ELEVENLABS_BASE_URL

logger = logging.getLogger(__name__)

DEFAULT_VOICE_ID = "EXAVITQu4vr4xnSDxMaL"
DEFAULT_TTS_MODEL = "eleven_turbo_v2_5"
DEFAULT_STT_MODEL = "scribe_v1"
DEFAULT_OUTPUT_FORMAT = "mp3_44100_128"

DEFAULT_VOICE_SETTINGS: Dict[str, Any] = {
    "stability": 0.7,
    "similarity_boost": 0.7,
    "style": 0.5,
    "use_speaker_boost": True,
}

_AUDIO_CONTENT_TYPES = {
    "webm": "audio/webm",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
}


class SpeechClient:
    """Thin wrapper over the ElevenLabs REST API.

    Args:
        pool: Key pool for the ``elevenlabs`` service.
        voice_id / tts_model / stt_model / language: Request settings.
        timeout: Per-request timeout in seconds.
        session: Optional requests.Session (tests pass a mock).
    """

    def __init__(
        self,
        pool: KeyPool,
        *,
        voice_id: str = DEFAULT_VOICE_ID,
        tts_model: str = DEFAULT_TTS_MODEL,
        stt_model: str = DEFAULT_STT_MODEL,
        language: str = "en",
        timeout: float = 30.0,
        base_url: str = ELEVENLABS_BASE_URL,
        session: Optional[requests.Session] = None,
    ):
        self.pool = pool
        self.voice_id = voice_id
        self.tts_model = tts_model
        self.stt_model = stt_model
        self.language = language
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, pool: KeyPool, speech_config: Dict[str, Any]) -> "SpeechClient":
        return cls(
            pool,
            voice_id=speech_config.get("voice_id") or DEFAULT_VOICE_ID,
            tts_model=speech_config.get("tts_model") or DEFAULT_TTS_MODEL,
            stt_model=speech_config.get("stt_model") or DEFAULT_STT_MODEL,
            language=speech_config.get("language") or "en",
            timeout=float(speech_config.get("timeout", 30.0)),
        )

    def is_available(self) -> bool:
        return self.pool.has_keys()

    def synthesize(self, text: str) -> bytes:
        """Speak *text*. Returns MP3 bytes."""
        if not text or not text.strip():
            raise ValueError("Nothing to synthesize")

        url = f"{self.base_url}/text-to-speech/{self.voice_id}"
        payload = {
            "text": text,
            "model_id": self.tts_model,
            "voice_settings": DEFAULT_VOICE_SETTINGS,
        }

        def _request(api_key: str) -> bytes:
            resp = self._session.post(
                url,
                params={"output_format": DEFAULT_OUTPUT_FORMAT},
                headers={"xi-api-key": api_key, "Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.content

        audio = call_with_rotation(self.pool, _request)
        logger.debug("Synthesized %d chars -> %d bytes", len(text), len(audio))
        return audio

    def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str:
        """Transcribe recorded audio. Returns the text (may be empty)."""
        if not audio:
            raise ValueError("No audio to transcribe")

        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        content_type = _AUDIO_CONTENT_TYPES.get(ext, "application/octet-stream")
        url = f"{self.base_url}/speech-to-text"

        def _request(api_key: str) -> str:
            resp = self._session.post(
                url,
                headers={"xi-api-key": api_key},
                files={"file": (filename, audio, content_type)},
                data={"model_id": self.stt_model, "language_code": self.language},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return (resp.json().get("text") or "").strip()

        return call_with_rotation(self.pool, _request)
