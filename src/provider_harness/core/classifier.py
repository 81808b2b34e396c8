"""
Error classification for provider failures.

Maps an exception (or a message, or a result mapping) onto the closed
``ErrorKind`` taxonomy, and from a kind onto severity, recoverability,
retry policy and display text.

Classification order, first match wins:

1. An explicit category hint (``error.category`` or ``error.error_type``)
2. An HTTP status code (``error.status_code``)
3. Well-known exception types (``TimeoutError``, ``ssl.SSLError`` ...)
4. The message/class-name pattern table, ``CLASSIFICATION_RULES``
5. ``OSError`` falls back to ``system_error``; anything else is ``unknown``

Within the pattern table throttling is checked before auth, auth before
transport, and transport before HTTP-ish phrasing. A message mentioning
both "timeout" and "network" is therefore a ``timeout``.
"""

import json
import re
import socket
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple, Type, Union

from provider_harness.core.backoff import (
    IMMEDIATE_FAIL_POLICY,
    BackoffCalculator,
    RetryPolicy,
    RetryStrategy,
)
from provider_harness.core.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    DNS_RESOLUTION = "dns_resolution"
    SSL_TLS = "ssl_tls"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    BAD_REQUEST = "bad_request"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    FILE_NOT_FOUND = "file_not_found"
    DISK_FULL = "disk_full"
    MEMORY_ERROR = "memory_error"
    CONFIGURATION = "configuration"
    MISSING_DEPENDENCY = "missing_dependency"
    PROVIDER_SPECIFIC = "provider_specific"
    PARSING_ERROR = "parsing_error"
    VALIDATION_ERROR = "validation_error"
    SYSTEM_ERROR = "system_error"
    INTERRUPTED = "interrupted"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecoveryAction(str, Enum):
    SWITCH_PROVIDER = "switch_provider"
    SWITCH_MODEL = "switch_model"
    ESCALATE = "escalate"
    ABORT = "abort"


#: Kinds that mark the originating provider unhealthy_auth
AUTH_KINDS = frozenset(
    {ErrorKind.AUTHENTICATION, ErrorKind.PERMISSION, ErrorKind.ACCESS_DENIED}
)

#: Kinds handled through rate-limit detection and rotation rather than plain retry
RATE_LIMIT_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.QUOTA_EXCEEDED})


@dataclass(frozen=True)
class Recoverable:
    """A failure worth retrying under ``policy``."""

    kind: ErrorKind
    policy: RetryPolicy

    @property
    def recoverable(self) -> bool:
        return True


@dataclass(frozen=True)
class Terminal:
    """A failure that must not be retried on the same combination."""

    kind: ErrorKind

    @property
    def recoverable(self) -> bool:
        return False

    @property
    def is_auth(self) -> bool:
        return self.kind in AUTH_KINDS


Classification = Union[Recoverable, Terminal]


# ---------------------------------------------------------------------------
# Rule Table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationRule:
    """Message patterns and class-name markers that identify one kind."""

    kind: ErrorKind
    patterns: Tuple[Pattern[str], ...]
    class_markers: Tuple[str, ...] = ()

    def matches(self, message: str, class_names: str) -> bool:
        if any(pattern.search(message) for pattern in self.patterns):
            return True
        return any(marker in class_names for marker in self.class_markers)


def _rule(kind: ErrorKind, *patterns: str, classes: Tuple[str, ...] = ()) -> ClassificationRule:
    return ClassificationRule(
        kind=kind,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        class_markers=classes,
    )


CLASSIFICATION_RULES: List[ClassificationRule] = [
    _rule(
        ErrorKind.RATE_LIMIT,
        r"rate[\s_-]?limit",
        r"too many requests",
        r"\b429\b",
        r"throttl",
        classes=("ratelimit",),
    ),
    _rule(
        ErrorKind.QUOTA_EXCEEDED,
        r"quota.{0,20}exceeded",
        r"exceeded.{0,20}quota",
        r"insufficient[\s_]quota",
        r"usage.{0,20}limit",
        classes=("quota",),
    ),
    _rule(
        ErrorKind.AUTHENTICATION,
        r"authenticat",
        r"unauthori[sz]ed",
        r"\b401\b",
        r"invalid.{0,20}api[\s_-]?key",
        r"not logged in",
        r"login required",
        classes=("authentication", "autherror"),
    ),
    _rule(
        ErrorKind.PERMISSION,
        r"forbidden",
        r"\b403\b",
        r"permission",
        classes=("permission",),
    ),
    _rule(
        ErrorKind.ACCESS_DENIED,
        r"access.{0,20}denied",
        r"insufficient.{0,20}privileges",
    ),
    _rule(
        ErrorKind.SSL_TLS,
        r"\bssl\b",
        r"\btls\b",
        r"certificate",
        classes=("sslerror",),
    ),
    _rule(
        ErrorKind.DNS_RESOLUTION,
        r"\bdns\b",
        r"name resolution",
        r"could not resolve",
        r"getaddrinfo",
        r"resolve host",
    ),
    _rule(
        ErrorKind.TIMEOUT,
        r"time[sd]?[\s_-]?out",
        r"deadline exceeded",
        classes=("timeout",),
    ),
    _rule(
        ErrorKind.NETWORK,
        r"connection",
        r"network",
        r"econn(reset|refused|aborted)",
        r"unreachable",
        r"broken pipe",
        classes=("connection", "network"),
    ),
    _rule(
        ErrorKind.FILE_NOT_FOUND,
        r"file.{0,20}not.{0,20}found",
        r"no such file",
        classes=("filenotfound",),
    ),
    _rule(
        ErrorKind.MISSING_DEPENDENCY,
        r"missing.{0,20}dependenc",
        r"command not found",
        r"executable.{0,20}not found",
        r"no module named",
        r"not installed",
        classes=("modulenotfound", "importerror"),
    ),
    _rule(
        ErrorKind.NOT_FOUND,
        r"not found",
        r"\b404\b",
    ),
    _rule(
        ErrorKind.SERVER_ERROR,
        r"server error",
        r"internal.{0,20}error",
        r"\b50[0234]\b",
        r"service unavailable",
        r"bad gateway",
        r"overloaded",
    ),
    _rule(
        ErrorKind.BAD_REQUEST,
        r"bad request",
        r"\b400\b",
        r"invalid.{0,20}request",
    ),
    _rule(
        ErrorKind.DISK_FULL,
        r"disk.{0,20}full",
        r"no space left",
    ),
    _rule(
        ErrorKind.MEMORY_ERROR,
        r"out of memory",
        r"memory",
        classes=("memoryerror",),
    ),
    _rule(
        ErrorKind.CONFIGURATION,
        r"configuration",
        r"\bconfig\b",
        r"misconfigur",
        classes=("configuration",),
    ),
    _rule(
        ErrorKind.PARSING_ERROR,
        r"\bpars(e|ing)\b",
        r"\bjson\b",
        r"syntax",
        r"malformed",
        r"unexpected token",
        classes=("parse", "decode"),
    ),
    _rule(
        ErrorKind.VALIDATION_ERROR,
        r"validation",
        r"invalid.{0,20}(input|argument|parameter)",
        classes=("validation",),
    ),
    _rule(
        ErrorKind.INTERRUPTED,
        r"interrupt",
        r"sigint",
        r"cancell?ed",
        classes=("interrupt", "cancelled"),
    ),
    _rule(
        ErrorKind.SYSTEM_ERROR,
        r"\bsystem\b",
        classes=("systemerror",),
    ),
    _rule(
        ErrorKind.PROVIDER_SPECIFIC,
        r"\b(anthropic|openai|gpt|google|gemini|cursor|claude|codex)\b.{0,30}\b(error|failure|failed)\b",
    ),
]

#: Exception types recognized before the pattern table (checked in order)
TYPE_RULES: List[Tuple[Type[BaseException], ErrorKind]] = [
    (ssl.SSLError, ErrorKind.SSL_TLS),
    (socket.gaierror, ErrorKind.DNS_RESOLUTION),
    (TimeoutError, ErrorKind.TIMEOUT),
    (ConnectionError, ErrorKind.NETWORK),
    (FileNotFoundError, ErrorKind.FILE_NOT_FOUND),
    (PermissionError, ErrorKind.PERMISSION),
    (MemoryError, ErrorKind.MEMORY_ERROR),
    (KeyboardInterrupt, ErrorKind.INTERRUPTED),
    (InterruptedError, ErrorKind.INTERRUPTED),
    (ModuleNotFoundError, ErrorKind.MISSING_DEPENDENCY),
    (json.JSONDecodeError, ErrorKind.PARSING_ERROR),
]

#: Category hints accepted in addition to the ErrorKind values themselves
CATEGORY_ALIASES: Dict[str, ErrorKind] = {
    "auth": ErrorKind.AUTHENTICATION,
    "unauthorized": ErrorKind.AUTHENTICATION,
    "forbidden": ErrorKind.PERMISSION,
    "rate_limited": ErrorKind.RATE_LIMIT,
    "ratelimit": ErrorKind.RATE_LIMIT,
    "throttled": ErrorKind.RATE_LIMIT,
    "quota": ErrorKind.QUOTA_EXCEEDED,
    "connection": ErrorKind.NETWORK,
    "dns": ErrorKind.DNS_RESOLUTION,
    "ssl": ErrorKind.SSL_TLS,
    "tls": ErrorKind.SSL_TLS,
    "parse": ErrorKind.PARSING_ERROR,
    "validation": ErrorKind.VALIDATION_ERROR,
    "canceled": ErrorKind.INTERRUPTED,
    "cancelled": ErrorKind.INTERRUPTED,
}

STATUS_CODE_KINDS: Dict[int, ErrorKind] = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.PERMISSION,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMIT,
    500: ErrorKind.SERVER_ERROR,
    502: ErrorKind.SERVER_ERROR,
    503: ErrorKind.SERVER_ERROR,
    504: ErrorKind.TIMEOUT,
}


# ---------------------------------------------------------------------------
# Per-kind Tables
# ---------------------------------------------------------------------------

_TRANSPORT_POLICY = RetryPolicy(
    RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=3, base_delay=5.0, max_delay=120.0
)
_THROTTLE_POLICY = RetryPolicy(
    RetryStrategy.FIXED_DELAY, max_retries=2, base_delay=60.0, max_delay=60.0
)

DEFAULT_POLICIES: Dict[ErrorKind, RetryPolicy] = {
    ErrorKind.TIMEOUT: _TRANSPORT_POLICY,
    ErrorKind.NETWORK: _TRANSPORT_POLICY,
    ErrorKind.DNS_RESOLUTION: _TRANSPORT_POLICY,
    ErrorKind.SSL_TLS: _TRANSPORT_POLICY,
    ErrorKind.RATE_LIMIT: _THROTTLE_POLICY,
    ErrorKind.QUOTA_EXCEEDED: _THROTTLE_POLICY,
    ErrorKind.SERVER_ERROR: RetryPolicy(
        RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=2, base_delay=10.0, max_delay=120.0
    ),
    ErrorKind.PROVIDER_SPECIFIC: RetryPolicy(
        RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=2, base_delay=2.0, max_delay=30.0
    ),
    # Conservative default: a handful of quick retries, then rotate
    ErrorKind.UNKNOWN: RetryPolicy(
        RetryStrategy.EXPONENTIAL_BACKOFF, max_retries=4, base_delay=1.0, max_delay=20.0
    ),
}

SEVERITIES: Dict[ErrorKind, Severity] = {
    ErrorKind.AUTHENTICATION: Severity.CRITICAL,
    ErrorKind.PERMISSION: Severity.CRITICAL,
    ErrorKind.ACCESS_DENIED: Severity.CRITICAL,
    ErrorKind.CONFIGURATION: Severity.CRITICAL,
    ErrorKind.MISSING_DEPENDENCY: Severity.CRITICAL,
    ErrorKind.RATE_LIMIT: Severity.HIGH,
    ErrorKind.QUOTA_EXCEEDED: Severity.HIGH,
    ErrorKind.DISK_FULL: Severity.HIGH,
    ErrorKind.MEMORY_ERROR: Severity.HIGH,
    ErrorKind.INTERRUPTED: Severity.HIGH,
    ErrorKind.SYSTEM_ERROR: Severity.HIGH,
    ErrorKind.PARSING_ERROR: Severity.LOW,
    ErrorKind.VALIDATION_ERROR: Severity.LOW,
}

RECOVERY_ACTIONS: Dict[ErrorKind, RecoveryAction] = {
    ErrorKind.RATE_LIMIT: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.QUOTA_EXCEEDED: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.AUTHENTICATION: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.PERMISSION: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.ACCESS_DENIED: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.NETWORK: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.DNS_RESOLUTION: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.SSL_TLS: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.UNKNOWN: RecoveryAction.SWITCH_PROVIDER,
    ErrorKind.TIMEOUT: RecoveryAction.SWITCH_MODEL,
    ErrorKind.SERVER_ERROR: RecoveryAction.SWITCH_MODEL,
    ErrorKind.PROVIDER_SPECIFIC: RecoveryAction.SWITCH_MODEL,
    ErrorKind.CONFIGURATION: RecoveryAction.ESCALATE,
    ErrorKind.MISSING_DEPENDENCY: RecoveryAction.ESCALATE,
    ErrorKind.DISK_FULL: RecoveryAction.ESCALATE,
    ErrorKind.MEMORY_ERROR: RecoveryAction.ESCALATE,
    ErrorKind.SYSTEM_ERROR: RecoveryAction.ESCALATE,
}

DESCRIPTIONS: Dict[ErrorKind, str] = {
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.NETWORK: "Network connection error",
    ErrorKind.DNS_RESOLUTION: "DNS resolution failed",
    ErrorKind.SSL_TLS: "SSL/TLS handshake or certificate error",
    ErrorKind.AUTHENTICATION: "Authentication failed",
    ErrorKind.PERMISSION: "Permission denied",
    ErrorKind.ACCESS_DENIED: "Access denied",
    ErrorKind.NOT_FOUND: "Resource not found",
    ErrorKind.SERVER_ERROR: "Provider server error",
    ErrorKind.BAD_REQUEST: "Bad request",
    ErrorKind.RATE_LIMIT: "Rate limit exceeded",
    ErrorKind.QUOTA_EXCEEDED: "Quota exceeded",
    ErrorKind.FILE_NOT_FOUND: "File not found",
    ErrorKind.DISK_FULL: "Disk full",
    ErrorKind.MEMORY_ERROR: "Out of memory",
    ErrorKind.CONFIGURATION: "Configuration error",
    ErrorKind.MISSING_DEPENDENCY: "Missing dependency",
    ErrorKind.PROVIDER_SPECIFIC: "Provider-specific error",
    ErrorKind.PARSING_ERROR: "Could not parse provider output",
    ErrorKind.VALIDATION_ERROR: "Validation error",
    ErrorKind.SYSTEM_ERROR: "System error",
    ErrorKind.INTERRUPTED: "Operation interrupted",
    ErrorKind.UNKNOWN: "Unknown error",
}

SUGGESTIONS: Dict[ErrorKind, Tuple[str, ...]] = {
    ErrorKind.TIMEOUT: (
        "Increase the model or provider timeout",
        "Split the request into smaller prompts",
    ),
    ErrorKind.NETWORK: (
        "Check network connectivity",
        "Check whether a proxy or firewall blocks the provider",
    ),
    ErrorKind.DNS_RESOLUTION: (
        "Check DNS settings",
        "Verify the provider endpoint host name",
    ),
    ErrorKind.SSL_TLS: (
        "Check the system certificate store",
        "Verify the system clock is correct",
    ),
    ErrorKind.AUTHENTICATION: (
        "Check the provider API key or log in again",
        "Verify the credentials have not expired",
    ),
    ErrorKind.PERMISSION: (
        "Check the account has access to this model",
        "Review the provider's organization permissions",
    ),
    ErrorKind.ACCESS_DENIED: (
        "Check the account privileges",
        "Contact the provider account administrator",
    ),
    ErrorKind.NOT_FOUND: ("Check the model name and provider endpoint",),
    ErrorKind.SERVER_ERROR: (
        "Wait and retry later",
        "Check the provider status page",
    ),
    ErrorKind.BAD_REQUEST: (
        "Check the request parameters",
        "Reduce the prompt size if it exceeds the context window",
    ),
    ErrorKind.RATE_LIMIT: (
        "Wait for the rate limit window to reset",
        "Configure additional providers in the fallback chain",
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        "Check the plan's usage limits",
        "Switch to a provider with remaining quota",
    ),
    ErrorKind.FILE_NOT_FOUND: ("Check the file path exists",),
    ErrorKind.DISK_FULL: ("Free disk space",),
    ErrorKind.MEMORY_ERROR: (
        "Reduce the request size",
        "Close other memory-heavy processes",
    ),
    ErrorKind.CONFIGURATION: ("Review the harness configuration file",),
    ErrorKind.MISSING_DEPENDENCY: ("Install the provider's command-line tool or SDK",),
    ErrorKind.PROVIDER_SPECIFIC: ("Check the provider's documentation for this error",),
    ErrorKind.PARSING_ERROR: ("Inspect the raw provider output",),
    ErrorKind.VALIDATION_ERROR: ("Check the input values",),
    ErrorKind.SYSTEM_ERROR: ("Check system logs",),
    ErrorKind.INTERRUPTED: ("Re-run the request",),
    ErrorKind.UNKNOWN: (
        "Retry the request",
        "Enable DEBUG logging to capture more detail",
    ),
}


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


def _coerce_kind(value: Any) -> Optional[ErrorKind]:
    if value is None:
        return None
    if isinstance(value, ErrorKind):
        return value
    text = str(getattr(value, "value", value)).strip().lower()
    try:
        return ErrorKind(text)
    except ValueError:
        return CATEGORY_ALIASES.get(text)


class ErrorClassifier:
    """Pattern-table error classifier.

    Args:
        overrides: Per-kind retry policy overrides, keyed by ErrorKind value
            (typically ``RetrySettings.overrides``)
    """

    def __init__(self, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._policies: Dict[ErrorKind, RetryPolicy] = dict(DEFAULT_POLICIES)
        for name, values in (overrides or {}).items():
            kind = _coerce_kind(name)
            if kind is None:
                raise ConfigurationError(f"Unknown error kind in retry overrides: {name!r}")
            self._policies[kind] = self.retry_policy(kind).with_overrides(dict(values))

    def classify(self, error: Any = None) -> ErrorKind:
        """Map an error, message or result mapping onto an ErrorKind."""
        if error is None:
            return ErrorKind.UNKNOWN

        if isinstance(error, Mapping):
            return self._classify_parts(
                message=str(error.get("message") or error.get("error") or ""),
                class_names="",
                category=error.get("category") or error.get("error_type"),
                status_code=error.get("status_code"),
            )

        if isinstance(error, BaseException):
            for exc_type, kind in TYPE_RULES:
                if isinstance(error, exc_type) and not _has_hint(error):
                    return kind
            class_names = " ".join(cls.__name__.lower() for cls in type(error).__mro__)
            kind = self._classify_parts(
                message=str(error),
                class_names=class_names,
                category=getattr(error, "category", None) or getattr(error, "error_type", None),
                status_code=getattr(error, "status_code", None),
            )
            if kind == ErrorKind.UNKNOWN and isinstance(error, OSError):
                return ErrorKind.SYSTEM_ERROR
            return kind

        return self._classify_parts(
            message=str(error), class_names="", category=None, status_code=None
        )

    def _classify_parts(
        self,
        *,
        message: str,
        class_names: str,
        category: Any,
        status_code: Any,
    ) -> ErrorKind:
        hinted = _coerce_kind(category)
        if hinted is not None:
            return hinted

        if status_code is not None:
            try:
                kind = STATUS_CODE_KINDS.get(int(status_code))
            except (TypeError, ValueError):
                kind = None
            if kind is not None:
                return kind

        for rule in CLASSIFICATION_RULES:
            if rule.matches(message, class_names):
                return rule.kind
        return ErrorKind.UNKNOWN

    def classify_result(self, error: Any = None) -> Classification:
        """Classify into a tagged ``Recoverable`` or ``Terminal`` result."""
        kind = self.classify(error)
        policy = self.retry_policy(kind)
        if policy.retryable:
            return Recoverable(kind=kind, policy=policy)
        return Terminal(kind=kind)

    # -- per-kind lookups ---------------------------------------------------

    def retry_policy(self, kind: ErrorKind) -> RetryPolicy:
        return self._policies.get(kind, IMMEDIATE_FAIL_POLICY)

    def severity(self, kind: ErrorKind) -> Severity:
        return SEVERITIES.get(kind, Severity.MEDIUM)

    def is_high_severity(self, kind: ErrorKind) -> bool:
        return self.severity(kind) in (Severity.CRITICAL, Severity.HIGH)

    def recoverable(self, kind: ErrorKind) -> bool:
        return self.retry_policy(kind).retryable

    def max_retries(self, kind: ErrorKind) -> int:
        return self.retry_policy(kind).max_retries

    def retry_delay(self, kind: ErrorKind, attempt: int) -> float:
        """Un-jittered delay before retry ``attempt`` (zero-based); 0 if not recoverable."""
        policy = self.retry_policy(kind)
        if not policy.retryable:
            return 0.0
        return BackoffCalculator(jitter=False).raw_delay(policy, attempt)

    def recovery_action(self, kind: ErrorKind) -> RecoveryAction:
        return RECOVERY_ACTIONS.get(kind, RecoveryAction.ABORT)

    def describe(self, kind: ErrorKind) -> str:
        return DESCRIPTIONS[kind]

    def recovery_suggestions(self, kind: ErrorKind) -> List[str]:
        """Static guidance for display."""
        return list(SUGGESTIONS.get(kind, ()))

    def error_info(self, error: Any) -> Dict[str, Any]:
        """Full classification summary of an error, for logs and results."""
        kind = self.classify(error)
        return {
            "kind": kind.value,
            "severity": self.severity(kind).value,
            "recoverable": self.recoverable(kind),
            "retry_policy": self.retry_policy(kind).to_dict(),
            "description": self.describe(kind),
            "message": str(error) if error is not None else "",
            "class": type(error).__name__ if isinstance(error, BaseException) else None,
        }


def _has_hint(error: BaseException) -> bool:
    return _coerce_kind(getattr(error, "category", None)) is not None


_default_classifier = ErrorClassifier()


def classify(error: Any = None) -> ErrorKind:
    """Classify with the default (un-overridden) policy tables."""
    return _default_classifier.classify(error)
