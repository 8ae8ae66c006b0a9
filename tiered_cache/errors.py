"""Error taxonomy for the tiered cache.

Provides:
- Stable error codes for every cache failure mode.
- Exception hierarchy rooted at ``CacheError``.
- Payload helper for reporting errors to operators.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TypedDict


class ErrorCode(str, Enum):
    STORE_UNAVAILABLE = "store_unavailable"
    SERIALIZATION_ERROR = "serialization_error"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    PARTIAL_INVALIDATION = "partial_invalidation_failure"
    CONFIGURATION_ERROR = "configuration_error"


class ErrorPayload(TypedDict):
    error: str
    detail: str


def error_response(code: ErrorCode, detail: str = "") -> ErrorPayload:
    return {"error": code.value, "detail": detail}


@dataclass(eq=False)
class CacheError(Exception):
    code: ErrorCode
    detail: str = ""

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.code.value}: {self.detail}" if self.detail else self.code.value

    def to_payload(self) -> ErrorPayload:
        return error_response(self.code, self.detail)


class StoreUnavailable(CacheError):
    """L2 network failure, timeout, or exhausted retries."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.STORE_UNAVAILABLE, detail)


class SerializationError(CacheError):
    """Value cannot be encoded for, or decoded from, L2."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.SERIALIZATION_ERROR, detail)


class CapacityExceeded(CacheError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.CAPACITY_EXCEEDED, detail)


class ConfigurationError(CacheError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.CONFIGURATION_ERROR, detail)


class PartialInvalidationFailure(CacheError):
    """Some keys could not be removed from L2; ``failed_keys`` may be retried."""

    def __init__(self, failed_keys: Iterable[str], failed_tags: Iterable[str] = ()) -> None:
        self.failed_keys = sorted(failed_keys)
        self.failed_tags = sorted(failed_tags)
        detail = f"{len(self.failed_keys)} key(s) not invalidated"
        if self.failed_tags:
            detail += f", tag index unreadable for: {', '.join(self.failed_tags)}"
        super().__init__(ErrorCode.PARTIAL_INVALIDATION, detail)
