# dcr_device_client/models.py
"""Persisted records and wire models for the DCR / token endpoints."""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DeviceRegistration(BaseModel):
    """Result of a successful Dynamic Client Registration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    server_url: str = Field(alias="serverUrl")
    client_id: str = Field(alias="clientId")
    key_id: str = Field(alias="keyId")
    registered_at_epoch_ms: int = Field(alias="registrationDate")


class TokenSet(BaseModel):
    """Access/refresh token pair with absolute expiry."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_at_epoch_ms: int = Field(alias="tokenExpiresAt")

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        """
        Check whether the access token is expired.

        Args:
            now_ms: Current time in epoch milliseconds (defaults to wall clock)

        Returns:
            True once ``now_ms >= expires_at_epoch_ms``
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return now_ms >= self.expires_at_epoch_ms

    def __repr__(self) -> str:
        return f"TokenSet(expires_at_epoch_ms={self.expires_at_epoch_ms})"

    __str__ = __repr__


class FlowKind(str, Enum):
    """Kinds of user-agent driven flows that carry a pending state."""

    ENROLLMENT = "enrollment"
    LOGIN = "login"


class PendingFlowState(BaseModel):
    """In-flight enrollment or login attempt, consumed by its callback."""

    kind: FlowKind
    state: str
    code_verifier: Optional[str] = None
    pending_server_url: Optional[str] = None


class ClientRegistrationRequest(BaseModel):
    """Request body for ``POST /connect/register`` (RFC 7591)."""

    client_name: str
    redirect_uris: List[str]
    grant_types: List[str] = ["authorization_code", "refresh_token"]
    response_types: List[str] = ["code"]
    token_endpoint_auth_method: str = "private_key_jwt"
    token_endpoint_auth_signing_alg: str = "RS256"
    scope: str
    jwks_uri: Optional[str] = None
    jwks: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ClientRegistrationResponse(BaseModel):
    """Response from the registration endpoint."""

    model_config = ConfigDict(extra="allow")

    client_id: str
    client_id_issued_at: Optional[int] = None
    client_name: Optional[str] = None
    redirect_uris: Optional[List[str]] = None
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    token_endpoint_auth_method: Optional[str] = None
    scope: Optional[str] = None


class TokenResponse(BaseModel):
    """Response from the token endpoint."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class UserInfo(BaseModel):
    """User returned by ``GET /api/me``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    username: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    email: Optional[str] = None
