"""Error taxonomy, classification and retry policy (core domain).

Every failure that reaches the orchestrator is classified into one of four
types before any state change happens:

- TRANSIENT: retry with backoff, bounded attempts
- PERMANENT: fail fast, the user has to act (e.g. reconnect an account)
- PARTIAL: skip the offending unit, continue the batch
- CRITICAL: abort the pipeline and keep a diagnostic for operators
"""

from __future__ import annotations

import json
import math
import random
import re
import sqlite3
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1_000
DEFAULT_MAX_DELAY_MS = 30_000
JITTER_RATIO = 0.1


class ErrorType(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PARTIAL = "partial"
    CRITICAL = "critical"


class ErrorCode(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    API_TIMEOUT = "API_TIMEOUT"
    API_SERVICE_UNAVAILABLE = "API_SERVICE_UNAVAILABLE"
    INVALID_DATA_FORMAT = "INVALID_DATA_FORMAT"
    DATABASE_ERROR = "DATABASE_ERROR"
    DATABASE_BUSY = "DATABASE_BUSY"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    LOCK_LOST = "LOCK_LOST"
    USER_CANCELLED = "USER_CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class ErrorMetadata:
    type: ErrorType
    code: str
    message: str
    retryable: bool
    max_retries: Optional[int] = None
    retry_after_ms: Optional[int] = None
    context: dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class ScanError(Exception):
    """Base class for errors raised by the core.

    Subclasses carry their own classification so categorize_error never has
    to guess from the message text.
    """

    error_type: ErrorType = ErrorType.CRITICAL
    code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    retryable: bool = False
    max_retries: Optional[int] = None


class InvalidTransitionError(ScanError):
    code = ErrorCode.INVALID_TRANSITION


class ConcurrentModificationError(ScanError):
    code = ErrorCode.CONCURRENT_MODIFICATION


class SessionNotFoundError(ScanError):
    code = ErrorCode.SESSION_NOT_FOUND


class CircuitOpenError(ScanError):
    error_type = ErrorType.TRANSIENT
    code = ErrorCode.CIRCUIT_OPEN
    retryable = True


class LockLostError(ScanError):
    error_type = ErrorType.TRANSIENT
    code = ErrorCode.LOCK_LOST
    retryable = False


class ScanCancelledError(ScanError):
    error_type = ErrorType.PERMANENT
    code = ErrorCode.USER_CANCELLED


class StageFailure(ScanError):
    """A classified failure escaping a pipeline stage."""

    def __init__(self, stage: str, metadata: ErrorMetadata) -> None:
        super().__init__(f"{stage}: [{metadata.code}] {metadata.message}")
        self.stage = stage
        self.metadata = metadata
        self.error_type = metadata.type


@dataclass(frozen=True)
class ErrorRule:
    """Signature rule matched against an error's text and HTTP status."""

    name: str
    error_type: ErrorType
    code: ErrorCode
    message: Optional[str]
    retryable: bool
    keywords: tuple[str, ...] = ()
    status_codes: tuple[int, ...] = ()
    max_retries: Optional[int] = None
    uses_retry_hint: bool = False


# Order matters: the first matching rule wins.
ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        name="auth",
        error_type=ErrorType.PERMANENT,
        code=ErrorCode.INVALID_CREDENTIALS,
        message="Authentication failed. Please reconnect your account.",
        retryable=False,
        keywords=("unauthorized", "authentication", "invalid token", "invalid_grant", "forbidden"),
        status_codes=(401, 403),
    ),
    ErrorRule(
        name="rate_limit",
        error_type=ErrorType.TRANSIENT,
        code=ErrorCode.RATE_LIMIT_EXCEEDED,
        message="Rate limit exceeded. Will retry automatically.",
        retryable=True,
        keywords=("rate limit", "too many requests"),
        status_codes=(429,),
        max_retries=5,
        uses_retry_hint=True,
    ),
    ErrorRule(
        name="quota",
        error_type=ErrorType.PERMANENT,
        code=ErrorCode.QUOTA_EXCEEDED,
        message="API quota exceeded. Please upgrade your plan or wait.",
        retryable=False,
        keywords=("quota", "usage limit"),
    ),
    ErrorRule(
        name="network",
        error_type=ErrorType.TRANSIENT,
        code=ErrorCode.API_TIMEOUT,
        message="Network error. Will retry automatically.",
        retryable=True,
        keywords=("network", "timeout", "timed out", "econnrefused", "etimedout", "connection reset"),
        max_retries=DEFAULT_MAX_RETRIES,
    ),
    ErrorRule(
        name="server",
        error_type=ErrorType.TRANSIENT,
        code=ErrorCode.API_SERVICE_UNAVAILABLE,
        message="Service temporarily unavailable. Will retry.",
        retryable=True,
        keywords=("service unavailable", "bad gateway", "internal server error", "gateway timeout"),
        status_codes=(500, 502, 503, 504),
        max_retries=DEFAULT_MAX_RETRIES,
    ),
    ErrorRule(
        name="malformed",
        error_type=ErrorType.PARTIAL,
        code=ErrorCode.INVALID_DATA_FORMAT,
        message="Invalid data format. Skipping this item.",
        retryable=False,
        keywords=("json", "parse", "invalid format", "malformed"),
    ),
    ErrorRule(
        name="storage",
        error_type=ErrorType.CRITICAL,
        code=ErrorCode.DATABASE_ERROR,
        message="Database error. Manual intervention required.",
        retryable=False,
        keywords=("database", "transaction", "constraint violation", "invariant"),
    ),
)


def _status_code(error: Any) -> Optional[int]:
    for candidate in (
        getattr(error, "status_code", None),
        getattr(error, "status", None),
        getattr(getattr(error, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int):
            return candidate
        if isinstance(candidate, str) and candidate.isdigit():
            return int(candidate)
    return None


def _error_text(error: Any) -> str:
    if isinstance(error, BaseException):
        text = str(error) or type(error).__name__
        return text
    if error is None:
        return "Unknown error"
    return str(error)


def _lookup_header(headers: Any, name: str) -> Any:
    if not headers:
        return None
    try:
        items = headers.items()
    except AttributeError:
        return None
    for key, value in items:
        if str(key).lower() == name:
            return value
    return None


def extract_retry_after(error: Any, now: Optional[datetime] = None) -> Optional[int]:
    """Return the provider's retry hint in milliseconds, if it sent one.

    Accepts a ``retry_after`` attribute or a ``Retry-After`` header on the
    error or its response, expressed either in seconds or as an HTTP date.
    """

    raw = getattr(error, "retry_after", None)
    if raw is None:
        raw = _lookup_header(getattr(error, "headers", None), "retry-after")
    if raw is None:
        raw = _lookup_header(getattr(getattr(error, "response", None), "headers", None), "retry-after")
    if raw is None:
        return None

    if isinstance(raw, (int, float)):
        return max(0, int(raw * 1000))

    text = str(raw).strip()
    try:
        return max(0, int(float(text) * 1000))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0, int((retry_at - current).total_seconds() * 1000))


def _stack_trace(error: Any) -> Optional[str]:
    if isinstance(error, BaseException) and error.__traceback__ is not None:
        return "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return None


def _context(error: Any) -> dict[str, Any]:
    context: dict[str, Any] = {"detail": _error_text(error)}
    if isinstance(error, BaseException):
        context["error_class"] = type(error).__name__
    status = _status_code(error)
    if status is not None:
        context["status"] = status
    return context


def _categorize_by_type(error: Any) -> Optional[ErrorMetadata]:
    if isinstance(error, StageFailure):
        return error.metadata

    if isinstance(error, ScanError):
        return ErrorMetadata(
            type=error.error_type,
            code=error.code.value,
            message=_error_text(error),
            retryable=error.retryable,
            max_retries=error.max_retries,
            context=_context(error),
            stack_trace=_stack_trace(error),
        )

    if isinstance(error, sqlite3.OperationalError) and "locked" in str(error).lower():
        return ErrorMetadata(
            type=ErrorType.TRANSIENT,
            code=ErrorCode.DATABASE_BUSY.value,
            message="Database is busy. Will retry.",
            retryable=True,
            max_retries=DEFAULT_MAX_RETRIES,
            context=_context(error),
        )

    if isinstance(error, sqlite3.Error):
        return ErrorMetadata(
            type=ErrorType.CRITICAL,
            code=ErrorCode.DATABASE_ERROR.value,
            message="Database error. Manual intervention required.",
            retryable=False,
            context=_context(error),
            stack_trace=_stack_trace(error),
        )

    # JSONDecodeError subclasses ValueError, so it has to be checked on its own.
    if isinstance(error, json.JSONDecodeError):
        return ErrorMetadata(
            type=ErrorType.PARTIAL,
            code=ErrorCode.INVALID_DATA_FORMAT.value,
            message="Invalid data format. Skipping this item.",
            retryable=False,
            context=_context(error),
        )

    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorMetadata(
            type=ErrorType.TRANSIENT,
            code=ErrorCode.API_TIMEOUT.value,
            message="Network error. Will retry automatically.",
            retryable=True,
            max_retries=DEFAULT_MAX_RETRIES,
            context=_context(error),
        )

    return None


def _rule_matches(rule: ErrorRule, lowered: str, status: Optional[int]) -> bool:
    if status is not None and status in rule.status_codes:
        return True
    if any(keyword in lowered for keyword in rule.keywords):
        return True
    return any(re.search(rf"\b{code}\b", lowered) for code in rule.status_codes)


def categorize_error(
    error: Any,
    rules: Iterable[ErrorRule] = ERROR_RULES,
    now: Optional[datetime] = None,
) -> ErrorMetadata:
    """Classify a raw error into type, code and retry policy.

    Typed errors are classified by class first; everything else is matched
    against the signature rules. Unrecognised errors are treated as
    transient with a single retry.
    """

    typed = _categorize_by_type(error)
    if typed is not None:
        return typed

    text = _error_text(error)
    lowered = text.lower()
    status = _status_code(error)

    for rule in rules:
        if not _rule_matches(rule, lowered, status):
            continue
        retry_after = extract_retry_after(error, now) if rule.uses_retry_hint else None
        return ErrorMetadata(
            type=rule.error_type,
            code=rule.code.value,
            message=rule.message or text,
            retryable=rule.retryable,
            max_retries=rule.max_retries,
            retry_after_ms=retry_after,
            context=_context(error),
            stack_trace=_stack_trace(error) if rule.error_type == ErrorType.CRITICAL else None,
        )

    return ErrorMetadata(
        type=ErrorType.TRANSIENT,
        code=ErrorCode.UNKNOWN_ERROR.value,
        message=text,
        retryable=True,
        max_retries=1,
        context=_context(error),
        stack_trace=_stack_trace(error),
    )


def should_retry(metadata: ErrorMetadata, attempt_count: int) -> bool:
    if not metadata.retryable:
        return False
    max_retries = metadata.max_retries or DEFAULT_MAX_RETRIES
    return attempt_count < max_retries


def calculate_backoff(
    attempt: int,
    base_ms: int = DEFAULT_BASE_DELAY_MS,
    max_ms: int = DEFAULT_MAX_DELAY_MS,
    rng: Callable[[], float] = random.random,
) -> int:
    """Exponential backoff capped at ``max_ms`` with ±10% jitter."""

    exponential = min(base_ms * math.pow(2, attempt), max_ms)
    jitter = exponential * JITTER_RATIO * (rng() * 2 - 1)
    return int(math.floor(exponential + jitter))


def retry_delay_ms(
    metadata: ErrorMetadata,
    attempt: int,
    base_ms: int = DEFAULT_BASE_DELAY_MS,
    max_ms: int = DEFAULT_MAX_DELAY_MS,
    rng: Callable[[], float] = random.random,
) -> int:
    """Provider hint when present, exponential backoff otherwise."""

    if metadata.retry_after_ms is not None:
        return metadata.retry_after_ms
    return calculate_backoff(attempt, base_ms, max_ms, rng)


def recovery_action(metadata: ErrorMetadata, attempt_count: int) -> RecoveryAction:
    if metadata.type == ErrorType.TRANSIENT:
        return RecoveryAction.RETRY if should_retry(metadata, attempt_count) else RecoveryAction.FAIL
    if metadata.type == ErrorType.PARTIAL:
        return RecoveryAction.SKIP
    if metadata.type == ErrorType.CRITICAL:
        return RecoveryAction.ABORT
    return RecoveryAction.FAIL
