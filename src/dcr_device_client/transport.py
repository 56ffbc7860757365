# dcr_device_client/transport.py
"""HTTP calls against the authorization server."""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx

from .assertion import CLIENT_ASSERTION_TYPE
from .models import (
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    TokenResponse,
    UserInfo,
)
from .results import ApiResult, ProtocolError, Success, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_INFO_PATH = "/api/system/info"
ENROLL_DEVICE_PATH = "/api/auth/enrollDevice"
REGISTER_PATH = "/connect/register"
AUTHORIZE_PATH = "/oauth2/authorize"
TOKEN_PATH = "/oauth2/token"
USER_INFO_PATH = "/api/me"


def endpoint(server_url: str, path: str) -> str:
    """Join a base server URL and an absolute endpoint path."""
    return server_url.rstrip("/") + path


def _error_message(response: httpx.Response) -> str:
    """Extract the server-provided error message from a response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("error_description", "error", "message"):
            if body.get(key):
                return str(body[key])

    text = response.text.strip()
    if text:
        return text[:500]
    return response.reason_phrase or f"HTTP {response.status_code}"


class TransportClient:
    """Performs the HTTP requests of the enrollment and token flows."""

    def __init__(
        self,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the transport client.

        Args:
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used to stub the network in tests)
        """
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def _request(
        self,
        method: str,
        url: str,
        action: str,
        parse: Callable[[httpx.Response], T],
        **kwargs: Any,
    ) -> ApiResult[T]:
        logger.debug(f"{method} {url}")
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{action} failed: {type(e).__name__}: {e}")
            return TransportError(e)

        if not response.is_success:
            message = _error_message(response)
            logger.warning(f"{action} failed with HTTP {response.status_code}: {message}")
            return ProtocolError(f"{action} failed: {message}", response.status_code)

        try:
            return Success(parse(response))
        except ValueError as e:
            logger.warning(f"{action} returned an unreadable response: {e}")
            return TransportError(e)

    async def test_server_connection(self, server_url: str) -> ApiResult[bool]:
        """Probe ``/api/system/info`` to check the server is reachable."""
        return await self._request(
            "GET",
            endpoint(server_url, SYSTEM_INFO_PATH),
            "Server probe",
            lambda response: True,
        )

    async def register_client(
        self,
        server_url: str,
        iat: str,
        registration_request: ClientRegistrationRequest,
    ) -> ApiResult[ClientRegistrationResponse]:
        """Register the device as an OAuth client, authenticated by the IAT."""
        return await self._request(
            "POST",
            endpoint(server_url, REGISTER_PATH),
            "Client registration",
            lambda response: ClientRegistrationResponse.model_validate(response.json()),
            json=registration_request.to_payload(),
            headers={"Authorization": f"Bearer {iat}"},
        )

    async def _token_request(self, server_url: str, action: str, data: Dict[str, str]):
        return await self._request(
            "POST",
            endpoint(server_url, TOKEN_PATH),
            action,
            lambda response: TokenResponse.model_validate(response.json()),
            data=data,
        )

    async def exchange_code_for_token(
        self,
        server_url: str,
        client_id: str,
        authorization_code: str,
        redirect_uri: str,
        client_assertion: str,
        code_verifier: str,
    ) -> ApiResult[TokenResponse]:
        """Exchange an authorization code using private_key_jwt and PKCE."""
        return await self._token_request(
            server_url,
            "Token exchange",
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": client_assertion,
                "code_verifier": code_verifier,
            },
        )

    async def refresh_token(
        self,
        server_url: str,
        client_id: str,
        refresh_token: str,
        client_assertion: str,
    ) -> ApiResult[TokenResponse]:
        """Obtain a new access token with a refresh token."""
        return await self._token_request(
            server_url,
            "Token refresh",
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": client_assertion,
            },
        )

    async def get_user_info(
        self, server_url: str, access_token: str
    ) -> ApiResult[UserInfo]:
        """Fetch the current user from ``/api/me``."""
        return await self._request(
            "GET",
            endpoint(server_url, USER_INFO_PATH),
            "User info request",
            lambda response: UserInfo.model_validate(response.json()),
            headers={"Authorization": f"Bearer {access_token}"},
        )
