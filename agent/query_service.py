"""
Query service: one user turn end to end.

    text (+ optional image)
      -> generation API (OpenAI-compatible chat completions, key rotation)
      -> action tags parsed and dispatched concurrently
      -> informational results folded into the reply text
      -> QueryResult

Conversation history lives here, not in an API client, so switching
credentials mid-conversation never loses turns. Every call sends the system
prompt plus the most recent ``max_history_turns`` exchanges.

send_query() never raises for API, key, or action failures. It returns a
QueryResult whose ``clean_text`` is safe to speak and whose ``error`` field
carries the technical reason.

Usage:
    manager = KeyPoolManager(env_path=get_env_path())
    manager.initialize()
    dispatcher = ActionDispatcher(build_default_registry(), ActionContext(shell=ShellSession()))
    service = QueryService(manager, dispatcher)
    result = service.send_query("what time is it", mode="voice")
    print(result.clean_text)
"""

import asyncio
import base64
import binascii
import json
import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import openai
from openai import OpenAI

from agent.key_pool import (
    CredentialRevoked,
    ErrorType,
    KeyPool,
    KeyPoolExhausted,
    KeyPoolManager,
    call_with_rotation,
    classify_error,
    extract_status,
)
from agent.prompt_assembler import PromptAssembler
from tools.action_dispatcher import ActionDispatcher
from tools.action_parser import ParsedResponse
from tools.registry import ActionResult
from venesa_constants import DEFAULT_MODEL, GEMINI_OPENAI_BASE_URL

logger = logging.getLogger(__name__)

GENERATION_SERVICE = "gemini"

VOICE_PREFIX = "[USER SPOKE VIA VOICE]"
TEXT_PREFIX = "[USER TYPED IN TEXT MODE]"

NO_KEYS_MESSAGE = "No API keys configured. Add keys to the .env file."
EXHAUSTED_MESSAGE = "All API keys are temporarily unavailable. Please wait and try again."
REVOKED_MESSAGE = "All API keys are invalid. Add a working key to the .env file."
INVALID_IMAGE_MESSAGE = "That image could not be read. Please try again."
EMPTY_QUERY_MESSAGE = "I didn't catch that."
NOT_FOUND_FEEDBACK = "I couldn't find any matching files or apps."

SEARCH_DISPLAY_LIMIT = 5

_DATA_URL_RE = re.compile(r'^data:([\w.+-]+/[\w.+-]+);base64,(.*)$', re.DOTALL)
_RETRY_HINT_RE = re.compile(r'retry in ([\d.]+)', re.IGNORECASE)
_CANCEL_RE = re.compile(r'\b(cancelled|closing|cancel)\b|no problem!?', re.IGNORECASE)
_NETWORK_MARKERS = ("network", "connection", "enotfound", "fetch", "name resolution")
_SAFETY_MARKERS = ("safety", "blocked")


# =============================================================================
# Result type
# =============================================================================

@dataclass
class QueryResult:
    """Outcome of one send_query call."""
    clean_text: str
    results: List[ActionResult] = field(default_factory=list)
    listen_again: bool = False
    error: Optional[str] = None
    raw_text: str = ""
    # Up to SEARCH_DISPLAY_LIMIT items {index, name, type, path} when a search matched
    search_results: List[Dict[str, Any]] = field(default_factory=list)
    search_total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clean_text": self.clean_text,
            "results": [r.to_dict() for r in self.results],
            "listen_again": self.listen_again,
            "error": self.error,
            "search_results": self.search_results,
            "search_total": self.search_total,
        }


# =============================================================================
# Helpers
# =============================================================================

def user_facing_error(error: Exception) -> str:
    """Short, speakable description of a generation failure."""
    if isinstance(error, KeyPoolExhausted):
        return EXHAUSTED_MESSAGE
    if isinstance(error, CredentialRevoked):
        return REVOKED_MESSAGE

    status = extract_status(error)
    message = str(error).lower()
    error_type = classify_error(error)

    if error_type == ErrorType.RATE_LIMITED:
        match = _RETRY_HINT_RE.search(message)
        if match:
            seconds = math.ceil(float(match.group(1)))
            return f"Rate limit reached. Trying another key... (wait {seconds}s if all keys exhausted)"
        return "Rate limit reached. Switching to next available key..."
    if error_type == ErrorType.INVALID:
        return "Invalid API key detected and removed. Trying next key..."
    if status == 404 or "not found" in message:
        return "Model not found. Please check the model name in settings."
    if isinstance(error, openai.APIConnectionError) or any(m in message for m in _NETWORK_MARKERS):
        return "Network error. Please check your internet connection."
    if any(m in message for m in _SAFETY_MARKERS):
        return "Response blocked by safety filters. Please try a different query."
    if status is not None and status >= 500:
        return "Server error. Please try again later."
    return "Something went wrong. Please try again."


def prepare_image(image: Union[bytes, str, None]) -> Optional[str]:
    """
    Normalize an attached image to a ``data:`` URL.

    Raw bytes are sent as PNG. Strings must already be base64 data URLs.
    Raises ValueError for anything malformed.
    """
    if image is None:
        return None
    if isinstance(image, (bytes, bytearray)):
        if not image:
            raise ValueError("Invalid image format - empty image data")
        return "data:image/png;base64," + base64.b64encode(bytes(image)).decode("ascii")

    match = _DATA_URL_RE.match(image.strip())
    if not match:
        raise ValueError("Invalid image format - must be a base64 data URL")
    mime, payload = match.groups()
    payload = "".join(payload.split())
    if not payload:
        raise ValueError("Invalid image format - empty base64 data")
    try:
        base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid image format - bad base64 data ({e})") from e
    return f"data:{mime};base64,{payload}"


def contextualize(text: str, mode: str = "text",
                  previous_results: Optional[Sequence[Dict[str, Any]]] = None) -> str:
    """Prefix the user's words with the input mode (and a pending result list)."""
    query = text.strip()
    if previous_results:
        listing = ", ".join(f"{r['index']}. {r['name']} ({r['type']})" for r in previous_results)
        hidden = json.dumps([{"index": r["index"], "path": r.get("path")} for r in previous_results])
        query = (
            f"[CONTEXT: User is viewing these search results: {listing}] User said: \"{query}\"\n"
            "INSTRUCTION:\n"
            "1. If the user picks an item (by number, name or position), return "
            "[action: openFile, filePath: <path_from_list>] or "
            "[action: launchApplication, appName: <name_from_list>].\n"
            "2. If the user says cancel or close, reply \"No problem!\" with no action.\n"
            "3. If the user asks something new, ignore the list and answer it.\n"
            f"Paths for reference: {hidden}"
        )
    prefix = VOICE_PREFIX if mode == "voice" else TEXT_PREFIX
    return f"{prefix} {query}"


def _response_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise ValueError("Empty response from model")
    choice = choices[0]
    if getattr(choice, "finish_reason", None) == "content_filter":
        raise ValueError("Response blocked by safety filters")
    return (choice.message.content or "").strip()


def _search_items(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for app in payload.get("apps") or []:
        items.append({"name": app.get("name"), "type": "app", "path": app.get("path")})
    for folder in payload.get("folders") or []:
        items.append({"name": folder.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1], "type": "folder", "path": folder})
    for path in payload.get("files") or []:
        items.append({"name": path.replace("\\", "/").rsplit("/", 1)[-1], "type": "file", "path": path})
    return items


def _load_json(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        return value
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        logger.debug("Non-JSON action result: %r", value)
        return None
    return data if isinstance(data, dict) else None


def fold_results(clean_text: str, results: Sequence[ActionResult]) -> QueryResult:
    """Merge informational action results into the reply text."""
    feedback: List[str] = []
    listen_again = False
    search_items: List[Dict[str, Any]] = []
    searched = False

    for res in results:
        if res.name == "searchFiles" and res.ok:
            payload = _load_json(res.value)
            if payload is None:
                continue
            items = _search_items(payload)
            if items:
                search_items.extend(items)
                searched = True
            else:
                feedback.append(NOT_FOUND_FEEDBACK)
        elif res.name == "getSystemInfo" and res.ok:
            info = _load_json(res.value)
            if info and not info.get("error"):
                feedback.append(
                    f"CPU is at {info.get('cpu')}, RAM is {info.get('ramUsed')} of {info.get('ramTotal')}GB, "
                    f"battery is at {info.get('battery')}, and uptime is {info.get('uptime')}."
                )
        elif res.name == "getTime" and res.ok:
            info = _load_json(res.value)
            if info and info.get("full"):
                feedback.append(f"It's {info['full']}.")
        elif res.name == "runCommand" and res.ok:
            output = str(res.value or "").strip()
            if output and "error" not in output.lower():
                feedback.append(output)
        elif res.name == "systemControl" and not res.ok:
            feedback.append(f"System control failed: {res.error}")
        elif res.name == "listen":
            listen_again = True

    text = clean_text
    if feedback:
        text = (text + " " + " ".join(feedback)).strip()

    if searched:
        for i, item in enumerate(search_items, start=1):
            item["index"] = i
        total = len(search_items)
        text = f"I found {total} match{'es' if total > 1 else ''}. Which one would you like?"
        listen_again = True
    else:
        total = 0

    if not text.strip():
        text = "Done."
    if _CANCEL_RE.search(text):
        listen_again = False

    return QueryResult(
        clean_text=text,
        results=list(results),
        listen_again=listen_again,
        search_results=search_items[:SEARCH_DISPLAY_LIMIT],
        search_total=total,
    )


# =============================================================================
# Service
# =============================================================================

class QueryService:
    """
    Send user turns to the generation API and execute the returned actions.

    Args:
        pools: KeyPoolManager (the ``gemini`` pool is used) or a single KeyPool.
        dispatcher: Runs parsed action tags.
        model: Chat-completions model name.
        base_url: OpenAI-compatible endpoint.
        timeout: Per-request timeout in seconds.
        max_history_turns: Exchanges replayed with each request.
        prompt_assembler: System prompt source (defaults to one built from
            the dispatcher's registry).
        client_factory: ``api_key -> client`` with ``chat.completions.create``.
    """

    def __init__(
        self,
        pools: Union[KeyPoolManager, KeyPool],
        dispatcher: ActionDispatcher,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = GEMINI_OPENAI_BASE_URL,
        timeout: float = 30.0,
        max_history_turns: int = 20,
        prompt_assembler: Optional[PromptAssembler] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        if isinstance(pools, KeyPoolManager):
            self._manager: Optional[KeyPoolManager] = pools
            self.pool = pools.pool(GENERATION_SERVICE)
        else:
            self._manager = None
            self.pool = pools
        self.dispatcher = dispatcher
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.max_history_turns = max(0, int(max_history_turns))
        self.prompt_assembler = prompt_assembler or PromptAssembler(dispatcher.registry)
        self._client_factory = client_factory or self._default_client
        self._history: List[Dict[str, str]] = []
        self._history_lock = threading.Lock()

    def _default_client(self, api_key: str) -> OpenAI:
        # One client per borrowed key; retries are handled by key rotation.
        return OpenAI(api_key=api_key, base_url=self.base_url, timeout=self.timeout, max_retries=0)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def history(self) -> List[Dict[str, str]]:
        with self._history_lock:
            return list(self._history)

    def reset_history(self) -> None:
        with self._history_lock:
            self._history.clear()

    def _record_exchange(self, user_text: str, reply: str) -> None:
        with self._history_lock:
            self._history.append({"role": "user", "content": user_text})
            self._history.append({"role": "assistant", "content": reply})
            keep = self.max_history_turns * 2
            if len(self._history) > keep:
                del self._history[: len(self._history) - keep]

    def _build_messages(self, user_text: str, image_url: Optional[str]) -> List[Dict[str, Any]]:
        if image_url:
            user_content: Any = [
                {"type": "text", "text": user_text},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]
        else:
            user_content = user_text
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self.prompt_assembler.build()}]
        messages.extend(self.history)
        messages.append({"role": "user", "content": user_content})
        return messages

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _complete(self, messages: List[Dict[str, Any]]) -> str:
        def _request(api_key: str) -> str:
            client = self._client_factory(api_key)
            response = client.chat.completions.create(model=self.model, messages=messages)
            return _response_text(response)

        return call_with_rotation(self.pool, _request)

    def _generate(self, text: str, image: Union[bytes, str, None], mode: str,
                  previous_results: Optional[Sequence[Dict[str, Any]]]) -> Tuple[Optional[str], Optional[QueryResult]]:
        """Return (raw reply, None) on success or (None, failure result)."""
        if not text or not text.strip():
            return None, QueryResult(clean_text=EMPTY_QUERY_MESSAGE, listen_again=True, error="Empty query")

        if not self.pool.has_keys():
            self.pool.refresh()
            if not self.pool.configured_count():
                return None, QueryResult(clean_text=NO_KEYS_MESSAGE, error="No API keys configured")
            if not self.pool.has_keys():
                return None, QueryResult(clean_text=REVOKED_MESSAGE, error="All API keys revoked")

        try:
            image_url = prepare_image(image)
        except ValueError as e:
            logger.error("Rejected image attachment: %s", e)
            return None, QueryResult(clean_text=INVALID_IMAGE_MESSAGE, error=str(e))

        user_text = contextualize(text, mode, previous_results)
        messages = self._build_messages(user_text, image_url)
        try:
            raw = self._complete(messages)
        except Exception as e:
            logger.error("Generation failed: %s", e)
            return None, QueryResult(clean_text=user_facing_error(e), error=str(e))

        self._record_exchange(user_text, raw)
        logger.debug("Raw reply: %s", raw)
        return raw, None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_query(
        self,
        text: str,
        image: Union[bytes, str, None] = None,
        mode: str = "text",
        previous_results: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> QueryResult:
        """Blocking version for synchronous callers."""
        raw, failure = self._generate(text, image, mode, previous_results)
        if failure is not None:
            return failure
        parsed, results = self.dispatcher.process_response(raw)
        return self._finish(raw, parsed, results)

    async def send_query_async(
        self,
        text: str,
        image: Union[bytes, str, None] = None,
        mode: str = "text",
        previous_results: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> QueryResult:
        raw, failure = await asyncio.to_thread(self._generate, text, image, mode, previous_results)
        if failure is not None:
            return failure
        parsed, results = await self.dispatcher.process_response_async(raw)
        return self._finish(raw, parsed, results)

    def _finish(self, raw: str, parsed: ParsedResponse, results: List[ActionResult]) -> QueryResult:
        folded = fold_results(parsed.clean_text, results)
        folded.raw_text = raw
        failed = [r for r in results if not r.ok]
        if failed:
            logger.info("%d of %d actions failed: %s", len(failed), len(results),
                        ", ".join(f"{r.name} ({r.error_type})" for r in failed))
        return folded

    def get_pool_stats(self) -> Dict[str, Any]:
        if self._manager is not None:
            return self._manager.get_stats()
        return self.pool.get_stats()

    def refresh_key_pool(self) -> bool:
        """Re-read credentials (e.g. after the .env file was edited)."""
        if self._manager is not None:
            return self._manager.refresh()
        return self.pool.refresh()
