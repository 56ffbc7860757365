"""Tests for TransportClient."""

import httpx
import pytest

from dcr_device_client.assertion import CLIENT_ASSERTION_TYPE
from dcr_device_client.models import ClientRegistrationRequest
from dcr_device_client.results import ProtocolError, Success, TransportError
from dcr_device_client.transport import TransportClient

from conftest import SERVER_URL, form_data, json_body


@pytest.fixture
def registration_request():
    return ClientRegistrationRequest(
        client_name="DCR Device Client - test-device",
        redirect_uris=["dhis2oauth://oauth"],
        scope="openid profile username",
        jwks={"keys": [{"kty": "RSA", "kid": "k", "n": "AQ", "e": "AQAB"}]},
    )


class TestTransportClient:
    """Test request construction and result classification."""

    async def test_probe(self, server, transport):
        server.add("GET", "/api/system/info", httpx.Response(200, json={"version": "2.41"}))

        result = await transport.test_server_connection(SERVER_URL + "/")

        assert result == Success(True)
        assert server.requests[0].url == SERVER_URL + "/api/system/info"

    async def test_register_client(self, server, transport, registration_request):
        """Registration posts JSON with the IAT as bearer token."""
        server.add(
            "POST", "/connect/register", httpx.Response(201, json={"client_id": "client_abc"})
        )

        result = await transport.register_client(SERVER_URL, "the-iat", registration_request)

        assert isinstance(result, Success)
        assert result.value.client_id == "client_abc"
        request = server.requests[0]
        assert request.headers["Authorization"] == "Bearer the-iat"
        body = json_body(request)
        assert body["token_endpoint_auth_method"] == "private_key_jwt"
        assert body["token_endpoint_auth_signing_alg"] == "RS256"
        assert body["grant_types"] == ["authorization_code", "refresh_token"]
        assert body["response_types"] == ["code"]
        assert body["jwks"]["keys"][0]["kid"] == "k"
        assert "jwks_uri" not in body

    async def test_exchange_code(self, server, transport):
        """Token exchange posts a form with assertion and verifier."""
        server.add(
            "POST",
            "/oauth2/token",
            httpx.Response(200, json={"access_token": "T1", "token_type": "Bearer", "expires_in": 3600}),
        )

        result = await transport.exchange_code_for_token(
            SERVER_URL, "client_abc", "CODE", "dhis2oauth://oauth", "ASSERTION", "VERIFIER"
        )

        assert isinstance(result, Success)
        assert result.value.access_token == "T1"
        assert result.value.refresh_token is None
        assert form_data(server.requests[0]) == {
            "grant_type": "authorization_code",
            "code": "CODE",
            "redirect_uri": "dhis2oauth://oauth",
            "client_id": "client_abc",
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": "ASSERTION",
            "code_verifier": "VERIFIER",
        }

    async def test_refresh_token(self, server, transport):
        server.add(
            "POST",
            "/oauth2/token",
            httpx.Response(200, json={"access_token": "T2", "expires_in": 60, "refresh_token": "R2"}),
        )

        result = await transport.refresh_token(SERVER_URL, "client_abc", "R1", "ASSERTION")

        assert result.value.refresh_token == "R2"
        data = form_data(server.requests[0])
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "R1"
        assert "code_verifier" not in data

    async def test_user_info(self, server, transport):
        server.add(
            "GET",
            "/api/me",
            httpx.Response(200, json={"id": "u1", "username": "admin", "displayName": "Admin"}),
        )

        result = await transport.get_user_info(SERVER_URL, "T1")

        assert result.value.username == "admin"
        assert result.value.display_name == "Admin"
        assert server.requests[0].headers["Authorization"] == "Bearer T1"

    async def test_protocol_error_carries_status_and_message(self, server, transport):
        """Non-2xx responses become ProtocolError with the server message."""
        server.add(
            "POST",
            "/oauth2/token",
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code expired"}),
        )

        result = await transport.refresh_token(SERVER_URL, "c", "R", "A")

        assert isinstance(result, ProtocolError)
        assert result.http_status == 400
        assert "Code expired" in result.message

    async def test_plain_text_error(self, server, transport):
        server.add("GET", "/api/me", httpx.Response(401, text="Unauthorized"))

        result = await transport.get_user_info(SERVER_URL, "T1")

        assert result == ProtocolError("User info request failed: Unauthorized", 401)

    async def test_connection_error(self):
        """Network failures become TransportError with the cause."""

        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = TransportClient(transport=httpx.MockTransport(fail))

        result = await transport.test_server_connection(SERVER_URL)

        assert isinstance(result, TransportError)
        assert isinstance(result.cause, httpx.ConnectError)

    async def test_unreadable_body(self, server, transport):
        """Malformed success bodies become TransportError."""
        server.add("POST", "/oauth2/token", httpx.Response(200, json={"token_type": "Bearer"}))

        result = await transport.refresh_token(SERVER_URL, "c", "R", "A")

        assert isinstance(result, TransportError)
