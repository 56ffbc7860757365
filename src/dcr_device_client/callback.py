# dcr_device_client/callback.py
"""Classification of redirect callbacks returned by the user agent."""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Union
from urllib.parse import parse_qs, urlsplit


class CallbackKind(str, Enum):
    ENROLLMENT = "enrollment"
    LOGIN = "login"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CallbackParams:
    """Parameters of a redirect callback."""

    kind: CallbackKind
    state: Optional[str] = None
    iat: Optional[str] = None
    code: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    def __repr__(self) -> str:
        # iat and code are credentials
        return (
            f"CallbackParams(kind={self.kind.value}, state={self.state!r}, "
            f"error={self.error!r})"
        )


def _query_params(callback: str) -> dict:
    parts = urlsplit(callback)
    query = parts.query or parts.fragment
    return {key: values[0] for key, values in parse_qs(query).items() if values}


def route_callback(callback: Union[str, Mapping[str, str]]) -> CallbackParams:
    """
    Classify a redirect callback.

    ``iat`` marks an enrollment callback, ``code`` a login callback and
    ``error`` a failed flow, checked in that order. Blank values count as
    absent.

    Args:
        callback: Redirect URL, or its already parsed query parameters

    Returns:
        The classified callback parameters
    """
    if isinstance(callback, str):
        params = _query_params(callback)
    else:
        params = dict(callback)

    def get(name: str) -> Optional[str]:
        value = params.get(name)
        return value if value and value.strip() else None

    state = get("state")
    fields = dict(
        state=state,
        iat=get("iat"),
        code=get("code"),
        error=get("error"),
        error_description=get("error_description"),
    )

    if fields["iat"]:
        return CallbackParams(kind=CallbackKind.ENROLLMENT, **fields)
    if fields["code"]:
        return CallbackParams(kind=CallbackKind.LOGIN, **fields)
    if fields["error"]:
        return CallbackParams(kind=CallbackKind.ERROR, **fields)
    return CallbackParams(kind=CallbackKind.UNKNOWN, **fields)
