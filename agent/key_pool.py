"""
API key pool with rotation, cooldown, and revocation.

Each external service (text generation, speech) gets its own KeyPool holding
every configured credential for that service. Callers borrow one credential
per request and report the outcome; the pool reclassifies the credential:

- rate limited (429 / quota)  -> Cooldown for ``cooldown_seconds``, rotate
- invalid (401 / 403 / bad key) -> Revoked forever, rotate
- anything else                 -> counted, state unchanged, no rotation

The pool never retries on its own. Retry-with-rotation is the caller's loop
(see ``call_with_rotation``), bounded by the number of available keys at the
start of the call.

Usage:
    pool = KeyPool("gemini", "GEMINI_API_KEY", env_path=get_env_path())
    pool.initialize()

    cred = pool.get_next_key()
    try:
        result = do_request(cred.secret)
        pool.report_success(cred)
    except Exception as e:
        report = pool.report_error(cred, e)
        if report.key_handled:
            ...  # try again with the next key
"""

import logging
import math
import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from venesa_constants import KEY_POOL_SERVICES, RATE_LIMIT_COOLDOWN_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_STATUSES = frozenset({429})
_INVALID_STATUSES = frozenset({401, 403})

_RATE_LIMIT_MARKERS = (
    "429",
    "quota",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "resource_exhausted",
    "too many requests",
)

_INVALID_MARKERS = (
    "401",
    "403",
    "api key not valid",
    "invalid api key",
    "invalid_api_key",
    "api_key_invalid",
    "xi-api-key_invalid",
    "unauthorized",
    "permission_denied",
    "permission denied",
    "revoked",
    "leaked",
    "authentication",
)


# =============================================================================
# Errors
# =============================================================================

class KeyPoolError(Exception):
    """Base class for key pool failures."""


class KeyPoolExhausted(KeyPoolError):
    """Every credential is cooling down (or revoked). Retryable later."""

    def __init__(self, service: str, retry_after: Optional[float] = None):
        self.service = service
        self.retry_after = retry_after
        if retry_after is not None:
            msg = f"All {service} keys are cooling down; next available in {retry_after:.0f}s"
        else:
            msg = f"No {service} keys are available"
        super().__init__(msg)


class CredentialRevoked(KeyPoolError):
    """Every credential for the service has been revoked."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"All {service} keys have been revoked")


# =============================================================================
# Credential
# =============================================================================

class CredentialStatus(Enum):
    """State of a credential in its pool."""
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    REVOKED = "revoked"      # terminal


class ErrorType(Enum):
    """Classification returned by KeyPool.report_error."""
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"
    OTHER = "other"


def mask_key(secret: Optional[str]) -> str:
    """Show only a short prefix of a secret."""
    if not secret or len(secret) < 8:
        return "***"
    return secret[:8] + "***"


@dataclass(eq=False)
class Credential:
    """
    One API key plus its usage state.

    Owned by exactly one KeyPool. The raw secret is only meant to be handed
    to the client making a single request; everything else sees ``masked``.
    """
    secret: str = field(repr=False)
    status: CredentialStatus = CredentialStatus.ACTIVE
    cooldown_until: Optional[float] = None
    success_count: int = 0
    error_count: int = 0
    rate_limit_hits: int = 0
    last_used_at: Optional[float] = None
    added_at: float = field(default_factory=time.time)

    @property
    def masked(self) -> str:
        return mask_key(self.secret)

    @property
    def is_revoked(self) -> bool:
        return self.status == CredentialStatus.REVOKED

    def is_available(self, now: float) -> bool:
        """True when usable at *now*. An expired cooldown counts as Active."""
        if self.status == CredentialStatus.REVOKED:
            return False
        if self.status == CredentialStatus.COOLDOWN:
            return self.cooldown_until is None or now >= self.cooldown_until
        return True

    def to_dict(self, now: float) -> Dict[str, Any]:
        """Masked diagnostic view. Never includes the secret."""
        cooling = (
            self.status == CredentialStatus.COOLDOWN
            and self.cooldown_until is not None
            and now < self.cooldown_until
        )
        return {
            "key": self.masked,
            "status": (CredentialStatus.COOLDOWN if cooling
                       else CredentialStatus.REVOKED if self.is_revoked
                       else CredentialStatus.ACTIVE).value,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "rate_limit_hits": self.rate_limit_hits,
            "cooldown_remaining": math.ceil(self.cooldown_until - now) if cooling else None,
            "last_used_at": self.last_used_at,
            "added_at": self.added_at,
        }

    def __repr__(self) -> str:
        return f"Credential({self.masked}, status={self.status.value})"


@dataclass(frozen=True)
class ErrorReport:
    """Outcome of KeyPool.report_error."""
    type: ErrorType
    key_handled: bool
    cooldown_until: Optional[float] = None
    next_key: Optional[str] = None      # masked


# =============================================================================
# Error classification
# =============================================================================

def extract_status(error: Any) -> Optional[int]:
    """Pull an HTTP status out of SDK exceptions, requests errors, or dicts."""
    if isinstance(error, dict):
        candidates = [error.get("status_code"), error.get("status"), error.get("code")]
    else:
        response = getattr(error, "response", None)
        candidates = [
            getattr(error, "status_code", None),
            getattr(error, "status", None),
            getattr(error, "code", None),
            getattr(response, "status_code", None),
        ]
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _extract_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or "").lower()
    return str(error or "").lower()


def classify_error(error: Any) -> ErrorType:
    """Classify an API failure. Rate limiting wins over invalidity."""
    status = extract_status(error)
    message = _extract_message(error)

    if status in _RATE_LIMIT_STATUSES or any(m in message for m in _RATE_LIMIT_MARKERS):
        return ErrorType.RATE_LIMITED
    if status in _INVALID_STATUSES or any(m in message for m in _INVALID_MARKERS):
        return ErrorType.INVALID
    return ErrorType.OTHER


# =============================================================================
# Key pool
# =============================================================================

def _key_sort_index(var_name: str, prefix: str) -> int:
    suffix = var_name[len(prefix):].lstrip("_")
    return int(suffix) if suffix else 0


def load_keys_from_env(prefix: str, env_path: Optional[Path] = None) -> List[str]:
    """
    Collect ``PREFIX`` and ``PREFIX_<n>`` values from a .env file and os.environ.

    The .env file is read with python-dotenv (quotes stripped). Process
    environment values come after file values. Duplicates are dropped.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}(?:_\d+)?$")
    sources: List[Dict[str, Optional[str]]] = []

    if env_path is not None and Path(env_path).exists():
        from dotenv import dotenv_values

        sources.append(dotenv_values(env_path))
    sources.append(dict(os.environ))

    keys: List[str] = []
    for values in sources:
        seen_here = set()
        names = sorted(
            (name for name in values if pattern.match(name)),
            key=lambda name: _key_sort_index(name, prefix),
        )
        for name in names:
            value = (values.get(name) or "").strip().strip("\"'")
            if not value:
                continue
            # load_dotenv() copies the file into os.environ; only warn about
            # repeats within one source.
            if value in seen_here:
                logger.warning("Duplicate %s key ignored (%s)", prefix, mask_key(value))
            seen_here.add(value)
            if value not in keys:
                keys.append(value)
    return keys


class KeyPool:
    """
    Credential pool for one external service.

    Args:
        service: Service name used in logs and stats (e.g. "gemini").
        env_prefix: Env var prefix the keys are stored under.
        env_path: Optional .env file read on initialize()/refresh().
        keys: Explicit credentials; when given, configuration is not read.
        cooldown_seconds: How long a rate-limited key is benched.
        clock: Wall-clock source (injectable for tests).
    """

    def __init__(
        self,
        service: str,
        env_prefix: Optional[str] = None,
        *,
        env_path: Optional[Path] = None,
        keys: Optional[List[str]] = None,
        cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service.lower()
        self.env_prefix = env_prefix or KEY_POOL_SERVICES.get(self.service, f"{service.upper()}_API_KEY")
        self.env_path = Path(env_path) if env_path else None
        self.cooldown_seconds = cooldown_seconds
        self._explicit_keys = list(keys) if keys is not None else None
        self._clock = clock

        self._lock = threading.Lock()
        self._credentials: List[Credential] = []
        self._cursor = 0
        self._current: Optional[Credential] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _configured_keys(self) -> List[str]:
        if self._explicit_keys is not None:
            keys: List[str] = []
            for key in self._explicit_keys:
                key = (key or "").strip()
                if key and key not in keys:
                    keys.append(key)
            return keys
        return load_keys_from_env(self.env_prefix, self.env_path)

    def initialize(self) -> bool:
        """
        Load credentials from configuration. No network calls are made.

        Returns:
            True if at least one credential was loaded.
        """
        keys = self._configured_keys()
        now = self._clock()
        with self._lock:
            self._credentials = [Credential(secret=k, added_at=now) for k in keys]
            self._cursor = 0
            self._current = None
            self._initialized = True
            self._current = self._select_next_locked(now)

        logger.info("Key pool '%s' loaded %d key(s)", self.service, len(keys))
        return len(keys) > 0

    def refresh(self) -> bool:
        """
        Reload configuration, keeping state for keys that are still configured.

        A key that was revoked stays revoked even if it is still in the file.
        """
        keys = self._configured_keys()
        now = self._clock()
        with self._lock:
            existing = {c.secret: c for c in self._credentials}
            self._credentials = [existing.get(k) or Credential(secret=k, added_at=now) for k in keys]
            self._cursor = 0
            if self._current is not None and self._current.secret not in keys:
                self._current = None
            if self._current is None or not self._current.is_available(now):
                self._current = self._select_next_locked(now)
            self._initialized = True

        logger.info("Key pool '%s' refreshed: %d key(s)", self.service, len(keys))
        return len(keys) > 0

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _normalize_locked(self, cred: Credential, now: float) -> None:
        """Turn an expired cooldown back into Active."""
        if cred.status == CredentialStatus.COOLDOWN and cred.is_available(now):
            cred.status = CredentialStatus.ACTIVE
            cred.cooldown_until = None

    def _select_next_locked(self, now: float) -> Optional[Credential]:
        """Round-robin scan from the cursor for the next usable credential."""
        count = len(self._credentials)
        for _ in range(count):
            cred = self._credentials[self._cursor]
            self._cursor = (self._cursor + 1) % count
            if cred.is_available(now):
                self._normalize_locked(cred, now)
                return cred
        return None

    def get_next_key(self) -> Optional[Credential]:
        """
        Return the credential callers should try next.

        Returns the current credential while it stays usable; otherwise
        rotates. Returns None only when every credential is revoked or
        cooling down (the soonest expiry is logged, not returned).
        """
        now = self._clock()
        with self._lock:
            if not self._credentials:
                if not self._initialized:
                    logger.warning("Key pool '%s' not initialized", self.service)
                return None

            cred = self._current
            if cred is None or not cred.is_available(now):
                cred = self._select_next_locked(now)
                if cred is not None and cred is not self._current:
                    logger.info("Key pool '%s' switched to %s", self.service, cred.masked)
                self._current = cred

            if cred is None:
                wait = self._soonest_available_in_locked(now)
                if wait is not None:
                    logger.warning(
                        "All %s keys in cooldown. Soonest available in %ds",
                        self.service, math.ceil(wait),
                    )
                else:
                    logger.error("All %s keys are revoked", self.service)
                return None

            self._normalize_locked(cred, now)
            cred.last_used_at = now
            return cred

    def acquire(self) -> Credential:
        """Like get_next_key() but raises instead of returning None."""
        cred = self.get_next_key()
        if cred is not None:
            return cred
        raise self.unavailable_error()

    def unavailable_error(self) -> KeyPoolError:
        """CredentialRevoked when every configured key is revoked, else KeyPoolExhausted."""
        with self._lock:
            all_revoked = bool(self._credentials) and all(c.is_revoked for c in self._credentials)
            wait = self._soonest_available_in_locked(self._clock())
        if all_revoked:
            return CredentialRevoked(self.service)
        return KeyPoolExhausted(self.service, retry_after=wait)

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    def _find_locked(self, cred: Union[Credential, str]) -> Optional[Credential]:
        if isinstance(cred, Credential):
            return cred if any(c is cred for c in self._credentials) else None
        for c in self._credentials:
            if c.secret == cred:
                return c
        return None

    def report_success(self, cred: Union[Credential, str]) -> None:
        """Count a success and clear any cooldown. Idempotent on state."""
        with self._lock:
            found = self._find_locked(cred)
            if found is None or found.is_revoked:
                return
            found.success_count += 1
            found.status = CredentialStatus.ACTIVE
            found.cooldown_until = None

    def report_error(self, cred: Union[Credential, str], error: Any) -> ErrorReport:
        """
        Classify a failed request and update the credential.

        Args:
            cred: The credential (or raw secret) that was used.
            error: Exception, response error, or dict with status/message.

        Returns:
            ErrorReport; ``key_handled`` tells the caller whether retrying
            with a different credential makes sense.
        """
        error_type = classify_error(error)
        now = self._clock()

        with self._lock:
            found = self._find_locked(cred)
            if found is None:
                return ErrorReport(type=ErrorType.OTHER, key_handled=False)

            found.error_count += 1

            if error_type == ErrorType.OTHER:
                return ErrorReport(type=ErrorType.OTHER, key_handled=False)

            if error_type == ErrorType.RATE_LIMITED:
                found.rate_limit_hits += 1
                if not found.is_revoked:
                    found.status = CredentialStatus.COOLDOWN
                    found.cooldown_until = now + self.cooldown_seconds
                logger.warning(
                    "Rate limited: %s - cooling down %ds", found.masked, int(self.cooldown_seconds)
                )
            else:
                found.status = CredentialStatus.REVOKED
                found.cooldown_until = None
                logger.warning("Revoking invalid %s key: %s", self.service, found.masked)

            if self._current is found or self._current is None or not self._current.is_available(now):
                self._current = self._select_next_locked(now)
                if self._current is not None:
                    logger.info("Rotated %s to %s", self.service, self._current.masked)

            return ErrorReport(
                type=error_type,
                key_handled=True,
                cooldown_until=found.cooldown_until,
                next_key=self._current.masked if self._current else None,
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _soonest_available_in_locked(self, now: float) -> Optional[float]:
        waits = [
            c.cooldown_until - now
            for c in self._credentials
            if c.status == CredentialStatus.COOLDOWN and c.cooldown_until is not None
            and c.cooldown_until > now
        ]
        return min(waits) if waits else None

    def soonest_available_in(self) -> Optional[float]:
        """Seconds until the earliest cooldown ends, or None if nothing is cooling."""
        with self._lock:
            return self._soonest_available_in_locked(self._clock())

    def get_available_key_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for c in self._credentials if c.is_available(now))

    def key_count(self) -> int:
        """Number of credentials that are not revoked."""
        with self._lock:
            return sum(1 for c in self._credentials if not c.is_revoked)

    def configured_count(self) -> int:
        """Number of credentials loaded, revoked ones included."""
        with self._lock:
            return len(self._credentials)

    def has_keys(self) -> bool:
        return self.key_count() > 0

    def is_healthy(self) -> bool:
        return self.get_available_key_count() > 0

    def get_stats(self) -> Dict[str, Any]:
        """Per-key masked view plus aggregate counters."""
        now = self._clock()
        with self._lock:
            keys = [c.to_dict(now) for c in self._credentials]
            current = self._current.masked if self._current else None

        total_successes = sum(k["success_count"] for k in keys)
        total_errors = sum(k["error_count"] for k in keys)
        total_requests = total_successes + total_errors
        active = sum(1 for k in keys if k["status"] == CredentialStatus.ACTIVE.value)
        return {
            "service": self.service,
            "total_keys": len(keys),
            "active_keys": active,
            "cooling_down_keys": sum(1 for k in keys if k["status"] == CredentialStatus.COOLDOWN.value),
            "revoked_keys": sum(1 for k in keys if k["status"] == CredentialStatus.REVOKED.value),
            "total_requests": total_requests,
            "total_successes": total_successes,
            "total_errors": total_errors,
            "success_rate": f"{total_successes / total_requests * 100:.1f}%" if total_requests else "N/A",
            "is_healthy": active > 0,
            "current": current,
            "keys": keys,
        }

    # ------------------------------------------------------------------
    # Eager validation (optional, never called by initialize)
    # ------------------------------------------------------------------

    def validate_all_keys(self, probe: Callable[[str], Any], batch_size: int = 3) -> Dict[str, int]:
        """
        Probe every non-revoked key and feed the outcome back into the pool.

        Args:
            probe: Callable taking a raw secret; raises on failure.
            batch_size: How many probes run at once.

        Returns:
            Counts by outcome: valid, rate_limited, invalid, other.
        """
        with self._lock:
            targets = [c for c in self._credentials if not c.is_revoked]

        counts = {"valid": 0, "rate_limited": 0, "invalid": 0, "other": 0}
        if not targets:
            return counts

        def _check(cred: Credential) -> Optional[Exception]:
            try:
                probe(cred.secret)
            except Exception as e:
                return e
            return None

        logger.info("Validating %d %s key(s)...", len(targets), self.service)
        with ThreadPoolExecutor(max_workers=max(1, batch_size)) as executor:
            outcomes = list(executor.map(_check, targets))

        for cred, error in zip(targets, outcomes):
            if error is None:
                self.report_success(cred)
                counts["valid"] += 1
            else:
                counts[self.report_error(cred, error).type.value] += 1

        logger.info(
            "Validation complete for %s: %d valid, %d rate limited, %d invalid",
            self.service, counts["valid"], counts["rate_limited"], counts["invalid"],
        )
        return counts


def call_with_rotation(pool: KeyPool, operation: Callable[[str], T]) -> T:
    """
    Run *operation(secret)* with retry-on-rotation.

    Attempts are bounded by the number of available keys when the call
    starts. A failure the pool does not attribute to the key (``key_handled``
    False) is re-raised immediately; a key-related failure moves on to the
    next key. Once no key is left available the pool's KeyPoolExhausted or
    CredentialRevoked is raised (chained from the last key error); if keys
    remain the last key-related error is re-raised.
    """
    attempts = pool.get_available_key_count()
    last_error: Optional[Exception] = None

    for attempt in range(max(attempts, 1)):
        try:
            cred = pool.acquire()
        except KeyPoolError as e:
            if last_error is not None:
                raise e from last_error
            raise

        try:
            result = operation(cred.secret)
        except Exception as e:
            report = pool.report_error(cred, e)
            logger.debug(
                "%s attempt %d/%d failed (%s): %s",
                pool.service, attempt + 1, attempts, report.type.value, e,
            )
            if not report.key_handled:
                raise
            last_error = e
            continue

        pool.report_success(cred)
        return result

    if last_error is None or pool.get_available_key_count() == 0:
        raise pool.unavailable_error() from last_error
    raise last_error


class KeyPoolManager:
    """
    Owns one KeyPool per service. Built once at startup and passed around.

    Args:
        services: Mapping of service name -> env var prefix.
        env_path: .env file shared by every pool.
        cooldown_seconds: Cooldown applied by every pool.
    """

    def __init__(
        self,
        services: Optional[Dict[str, str]] = None,
        *,
        env_path: Optional[Path] = None,
        cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        services = services if services is not None else KEY_POOL_SERVICES
        self._pools: Dict[str, KeyPool] = {
            name.lower(): KeyPool(
                name, prefix, env_path=env_path, cooldown_seconds=cooldown_seconds, clock=clock,
            )
            for name, prefix in services.items()
        }

    def pool(self, service: str) -> KeyPool:
        try:
            return self._pools[service.lower()]
        except KeyError:
            raise KeyError(f"Unknown key pool service: {service}") from None

    @property
    def services(self) -> List[str]:
        return list(self._pools)

    def initialize(self) -> bool:
        """Initialize every pool. True if any pool loaded a key."""
        results = [p.initialize() for p in self._pools.values()]
        return any(results)

    def refresh(self) -> bool:
        results = [p.refresh() for p in self._pools.values()]
        return any(results)

    def is_healthy(self) -> bool:
        return any(p.is_healthy() for p in self._pools.values())

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: p.get_stats() for name, p in self._pools.items()}
