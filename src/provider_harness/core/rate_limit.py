"""
Rate-limit detection and tracking.

``RateLimitDetector`` inspects a provider response and/or error and
reports whether it denotes throttling or quota exhaustion, plus any reset
time the provider revealed. ``RateLimitTracker`` records which provider
and provider+model keys are currently limited and until when.

Example usage:

    detector = RateLimitDetector()
    detection = detector.detect(error=exc)
    if detection.is_rate_limited:
        tracker.mark("claude", reset_time=detection.reset_time)
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from provider_harness.core.models import RateLimitRecord, record_key, split_key, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleeper = Callable[[float], None]


def _local_now() -> datetime:
    return datetime.now().astimezone()


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class LimitType(str, Enum):
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"


class LimitScope(str, Enum):
    """What the provider says is being limited."""

    REQUESTS_PER_MINUTE = "requests_per_minute"
    TOKENS_PER_MINUTE = "tokens_per_minute"
    SESSION_LIMIT = "session_limit"
    PACKAGE_LIMIT = "package_limit"
    USAGE_LIMIT = "usage_limit"
    GENERAL = "general"


QUOTA_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"quota.{0,20}exceeded",
        r"exceeded.{0,20}quota",
        r"insufficient[\s_]quota",
        r"usage.{0,20}limit",
        r"package\s+limit",
    )
]

RATE_LIMIT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate[\s_-]?limit",
        r"too many requests",
        r"\b429\b",
        r"throttl",
        r"rate.{0,20}exceeded",
        r"limit.{0,20}exceeded",
        r"session limit",
        r"requests per minute",
        r"tokens per minute",
    )
]

SCOPE_PATTERNS: List[Tuple[LimitScope, re.Pattern]] = [
    (LimitScope.SESSION_LIMIT, re.compile(r"session limit", re.IGNORECASE)),
    (LimitScope.REQUESTS_PER_MINUTE, re.compile(r"requests per minute|\brpm\b", re.IGNORECASE)),
    (LimitScope.TOKENS_PER_MINUTE, re.compile(r"tokens per minute|\btpm\b", re.IGNORECASE)),
    (LimitScope.PACKAGE_LIMIT, re.compile(r"package\s+limit", re.IGNORECASE)),
    (LimitScope.USAGE_LIMIT, re.compile(r"usage\s+limit", re.IGNORECASE)),
]

_UNIT_SECONDS = {"s": 1, "sec": 1, "second": 1, "m": 60, "min": 60, "minute": 60, "h": 3600, "hour": 3600}
_DURATION = r"(\d{1,7})\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|h)\b"

RELATIVE_RESET_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"resets?\s+in\s+" + _DURATION,
        r"retry\s+after\s+" + _DURATION,
        r"try\s+again\s+in\s+" + _DURATION,
        r"wait\s+" + _DURATION,
        _DURATION + r"\s+until\s+reset",
    )
]

# Bare "retry after 30" with no unit is seconds
RETRY_AFTER_BARE = re.compile(r"retry[\s-]+after[:\s]+(\d{1,7})(?!\s*[a-z\d-])", re.IGNORECASE)

ABSOLUTE_RESET_PATTERN = re.compile(
    r"(?:reset|retry).{0,20}?(?:at|after).{0,20}?"
    r"(\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)",
    re.IGNORECASE,
)

TIME_OF_DAY_PATTERN = re.compile(
    r"resets?(?:\s+at)?\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE
)


@dataclass(frozen=True)
class RateLimitDetection:
    """Result of inspecting a response/error.

    Attributes:
        is_rate_limited: Whether throttling or quota exhaustion was detected
        type: "rate_limit" or "quota_exceeded" (None when not limited)
        reset_time: Absolute reset time when derivable, else None
        retry_after: Seconds the provider asked us to wait, when reported
        scope: What is being limited (requests_per_minute, session_limit ...)
        message: The text the detection was based on
    """

    is_rate_limited: bool
    type: Optional[LimitType] = None
    reset_time: Optional[datetime] = None
    retry_after: Optional[float] = None
    scope: Optional[LimitScope] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_rate_limited": self.is_rate_limited,
            "type": self.type.value if self.type else None,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
            "retry_after": self.retry_after,
            "scope": self.scope.value if self.scope else None,
        }


NOT_RATE_LIMITED = RateLimitDetection(is_rate_limited=False)


class RateLimitDetector:
    """Pattern-based rate-limit detector.

    Args:
        clock: Returns the current timezone-aware time. Time-of-day phrases
            such as "resets 4am" are interpreted in this clock's timezone
            (local time by default).
    """

    def __init__(self, *, clock: Optional[Clock] = None):
        self._clock = clock or _local_now

    def detect(self, response: Any = None, error: Any = None) -> RateLimitDetection:
        text = _gather_text(response, error)
        status_code = _status_code(response, error)
        category = str(getattr(error, "category", "") or "").lower()

        limit_type: Optional[LimitType] = None
        if category == LimitType.QUOTA_EXCEEDED.value or any(p.search(text) for p in QUOTA_PATTERNS):
            limit_type = LimitType.QUOTA_EXCEEDED
        elif (
            category in ("rate_limit", "rate_limited")
            or status_code == 429
            or any(p.search(text) for p in RATE_LIMIT_PATTERNS)
        ):
            limit_type = LimitType.RATE_LIMIT

        if limit_type is None:
            return NOT_RATE_LIMITED

        now = self._clock()
        retry_after = _explicit_retry_after(response, error, now)
        if retry_after is None:
            retry_after = self.extract_retry_after(text)
        reset_time = self.extract_reset_time(text, now=now)
        if reset_time is None and retry_after is not None:
            reset_time = now + timedelta(seconds=retry_after)

        return RateLimitDetection(
            is_rate_limited=True,
            type=limit_type,
            reset_time=reset_time,
            retry_after=retry_after,
            scope=self.detect_scope(text),
            message=text,
        )

    def detect_scope(self, text: str) -> LimitScope:
        for scope, pattern in SCOPE_PATTERNS:
            if pattern.search(text):
                return scope
        return LimitScope.GENERAL

    def extract_retry_after(self, text: str) -> Optional[float]:
        """Seconds to wait stated in the text ("retry after 30 seconds", "wait 2 minutes")."""
        for pattern in RELATIVE_RESET_PATTERNS:
            match = pattern.search(text)
            if match:
                return _to_seconds(match.group(1), match.group(2))
        match = RETRY_AFTER_BARE.search(text)
        if match:
            return float(match.group(1))
        return None

    def extract_reset_time(self, text: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """Absolute reset time stated in the text, or None."""
        now = now or self._clock()

        match = TIME_OF_DAY_PATTERN.search(text)
        if match:
            hour = int(match.group(1)) % 12
            if match.group(3).lower() == "pm":
                hour += 12
            minute = int(match.group(2) or 0)
            candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if candidate <= now:
                candidate += timedelta(days=1)
            return candidate

        match = ABSOLUTE_RESET_PATTERN.search(text)
        if match:
            stamp = match.group(1).replace(" ", "T").replace("Z", "+00:00")
            try:
                parsed = datetime.fromisoformat(stamp)
            except ValueError:
                logger.debug("Unparseable reset timestamp: %s", match.group(1))
            else:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=now.tzinfo or timezone.utc)
                return parsed

        return None


def _to_seconds(amount: str, unit: str) -> float:
    unit = unit.lower().rstrip("s") or "s"
    return float(int(amount) * _UNIT_SECONDS.get(unit, 1))


def _gather_text(response: Any, error: Any) -> str:
    parts: List[str] = []
    for source in (response, error):
        if source is None:
            continue
        if isinstance(source, Mapping):
            for key in ("error", "message", "output", "response", "body", "stderr"):
                value = source.get(key)
                if value:
                    parts.append(str(value))
        elif isinstance(source, (str, BaseException)):
            parts.append(str(source))
        else:
            for attr in ("stderr", "content"):
                value = getattr(source, attr, None)
                if value:
                    parts.append(str(value))
    return " ".join(parts)


def _status_code(response: Any, error: Any) -> Optional[int]:
    candidates = [getattr(error, "status_code", None)]
    if isinstance(response, Mapping):
        candidates += [response.get("status_code"), response.get("status")]
    for value in candidates:
        try:
            if value is not None:
                return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _explicit_retry_after(response: Any, error: Any, now: datetime) -> Optional[float]:
    """Retry-After from an error attribute or a response header (seconds or HTTP date)."""
    value = getattr(error, "retry_after", None)
    if value is not None:
        return float(value)

    if not isinstance(response, Mapping):
        return None
    headers = response.get("headers") or {}
    header = None
    for name, raw in headers.items():
        if str(name).lower() == "retry-after":
            header = str(raw).strip()
            break
    if not header:
        return None
    if header.isdigit():
        return float(header)
    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        logger.debug("Unparseable Retry-After header: %s", header)
        return None
    return max(0.0, (when - now).total_seconds())


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


class RateLimitTracker:
    """Thread-safe record of currently rate-limited keys.

    A limit expires lazily: the first read at or after its reset_time
    clears it.

    Args:
        default_reset_seconds: Window applied when no reset time is known
        clock: Returns the current timezone-aware time (injectable for tests)
        on_expire: Called with (provider, model) when a limit lifts on its own
    """

    def __init__(
        self,
        *,
        default_reset_seconds: float = 1800.0,
        clock: Optional[Clock] = None,
        on_expire: Optional[Callable[[str, Optional[str]], None]] = None,
    ):
        self.default_reset_seconds = default_reset_seconds
        self._clock = clock or utcnow
        self._on_expire = on_expire
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = Lock()

    def mark(
        self,
        provider: str,
        model: Optional[str] = None,
        *,
        reset_time: Optional[datetime] = None,
        limit_type: str = LimitType.RATE_LIMIT.value,
        quota_used: Optional[int] = None,
        quota_limit: Optional[int] = None,
    ) -> RateLimitRecord:
        """Mark a key rate limited until ``reset_time`` (default: now + default window)."""
        with self._lock:
            now = self._clock()
            key = record_key(provider, model)
            record = self._records.setdefault(key, RateLimitRecord())
            record.rate_limited = True
            record.limited_at = now
            record.reset_time = reset_time or now + timedelta(seconds=self.default_reset_seconds)
            record.limit_type = str(getattr(limit_type, "value", limit_type))
            record.event_count += 1
            if quota_used is not None:
                record.quota_used = quota_used
            if quota_limit is not None:
                record.quota_limit = quota_limit
            return record.copy()

    def is_rate_limited(self, provider: str, model: Optional[str] = None) -> bool:
        """Whether the exact key is limited right now."""
        with self._lock:
            record = self._active(record_key(provider, model), self._clock())
            return record is not None

    def limited(self, provider: str, model: Optional[str] = None) -> bool:
        """Whether a combination is unusable: its provider or its model is limited."""
        if self.is_rate_limited(provider):
            return True
        return bool(model) and self.is_rate_limited(provider, model)

    def get(self, provider: str, model: Optional[str] = None) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._records.get(record_key(provider, model))
            return record.copy() if record is not None else None

    def reset_time(self, provider: str, model: Optional[str] = None) -> Optional[datetime]:
        with self._lock:
            record = self._active(record_key(provider, model), self._clock())
            return record.reset_time if record is not None else None

    def time_until_reset(self, provider: str, model: Optional[str] = None) -> float:
        """Seconds until the key's limit lifts (0 when not limited)."""
        with self._lock:
            now = self._clock()
            record = self._active(record_key(provider, model), now)
            if record is None or record.reset_time is None:
                return 0.0
            return max(0.0, (record.reset_time - now).total_seconds())

    def next_reset_time(self) -> Optional[datetime]:
        """Earliest reset among currently limited keys."""
        with self._lock:
            now = self._clock()
            times = [
                record.reset_time
                for key in list(self._records)
                for record in [self._active(key, now)]
                if record is not None and record.reset_time is not None
            ]
            return min(times) if times else None

    def active(self) -> Dict[str, RateLimitRecord]:
        with self._lock:
            now = self._clock()
            return {
                key: record.copy()
                for key in list(self._records)
                for record in [self._active(key, now)]
                if record is not None
            }

    def clear(self, provider: str, model: Optional[str] = None) -> bool:
        """Lift a limit; returns whether the key was limited."""
        with self._lock:
            record = self._records.get(record_key(provider, model))
            if record is None or not record.rate_limited:
                return False
            record.rate_limited = False
            record.reset_time = None
            return True

    def clear_all(self) -> None:
        with self._lock:
            self._records.clear()

    def snapshot(self) -> Dict[str, RateLimitRecord]:
        with self._lock:
            now = self._clock()
            for key in list(self._records):
                self._active(key, now)
            return {key: record.copy() for key, record in self._records.items()}

    def restore(self, records: Dict[str, RateLimitRecord]) -> None:
        with self._lock:
            self._records = {key: record.copy() for key, record in records.items()}

    def wait_for_reset(
        self,
        provider: str,
        model: Optional[str] = None,
        *,
        tick_seconds: float = 1.0,
        max_wait_seconds: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
        sleeper: Optional[Sleeper] = None,
        on_tick: Optional[Callable[[float], None]] = None,
    ) -> bool:
        """Count down until the key's limit lifts, re-checking every tick.

        Args:
            tick_seconds: Re-check interval
            max_wait_seconds: Refuse to wait when the reset is further away
            stop_event: Interrupts the countdown between ticks
            sleeper: Sleep function used when no stop_event is given
            on_tick: Called with the remaining seconds before each tick

        Returns:
            True once the key is no longer limited, False when the wait was
            refused or interrupted
        """
        sleep = sleeper or time.sleep
        remaining = self.time_until_reset(provider, model)
        if max_wait_seconds is not None and remaining > max_wait_seconds:
            logger.info(
                "Not waiting %.0fs for %s reset (max %.0fs)",
                remaining,
                record_key(provider, model),
                max_wait_seconds,
            )
            return False

        while self.is_rate_limited(provider, model):
            if stop_event is not None and stop_event.is_set():
                return False
            remaining = self.time_until_reset(provider, model)
            if on_tick is not None:
                on_tick(remaining)
            step = max(0.0, min(tick_seconds, remaining))
            if stop_event is not None and sleeper is None:
                if stop_event.wait(step):
                    return False
            else:
                sleep(step)
        return True

    def _active(self, key: str, now: datetime) -> Optional[RateLimitRecord]:
        record = self._records.get(key)
        if record is None or not record.rate_limited:
            return None
        if record.reset_time is not None and now >= record.reset_time:
            record.rate_limited = False
            record.reset_time = None
            logger.info("Rate limit for %s expired", key)
            if self._on_expire is not None:
                self._on_expire(*split_key(key))
            return None
        return record

    def summary(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        now = self._clock()
        for key, record in self.active().items():
            entry = record.to_dict()
            entry["seconds_until_reset"] = (
                round(max(0.0, (record.reset_time - now).total_seconds()), 1)
                if record.reset_time
                else None
            )
            result[key] = entry
        return result
