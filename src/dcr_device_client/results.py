# dcr_device_client/results.py
"""Result types returned by every network-facing operation."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    """Operation completed; ``value`` holds its payload."""

    value: T


@dataclass(frozen=True)
class ProtocolError:
    """The server (or a local precondition) rejected the operation."""

    message: str
    http_status: Optional[int] = None


@dataclass(frozen=True)
class ValidationError(ProtocolError):
    """Resolved locally without contacting the server. Never retried."""


@dataclass(frozen=True)
class KeyStoreError(ValidationError):
    """Key custody failure. The registration has to be redone."""


@dataclass(frozen=True)
class StateMismatchError(ValidationError):
    """Callback ``state`` did not match the pending flow (CSRF check)."""


@dataclass(frozen=True)
class TransportError:
    """Connectivity, timeout or serialization failure."""

    cause: BaseException

    @property
    def message(self) -> str:
        return f"{type(self.cause).__name__}: {self.cause}"


ApiResult = Union[Success[T], ProtocolError, TransportError]


def is_success(result: "ApiResult") -> bool:
    """Return True if ``result`` is a :class:`Success`."""
    return isinstance(result, Success)


def describe(result: "ApiResult") -> str:
    """Human readable one-liner for a result."""
    if isinstance(result, Success):
        return "ok"
    if isinstance(result, ProtocolError):
        if result.http_status is not None:
            return f"{result.message} (HTTP {result.http_status})"
        return result.message
    if isinstance(result, TransportError):
        return f"Network error: {result.message}"
    raise TypeError(f"Not an ApiResult: {result!r}")
