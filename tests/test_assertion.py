"""Tests for client assertions and IAT parsing."""

import time

import jwt
import pytest

from dcr_device_client.assertion import AssertionSigner, parse_initial_access_token
from dcr_device_client.exceptions import KeyNotFoundError

from conftest import IAT_SECRET, make_iat

TOKEN_ENDPOINT = "https://dhis2.example.org/oauth2/token"


class TestAssertionSigner:
    """Test private_key_jwt assertion construction."""

    @pytest.fixture
    def signer(self, key_custody):
        return AssertionSigner(key_custody)

    def test_claims_and_header(self, signer, key_custody):
        """Assertion carries RFC 7523 claims and the key id."""
        key_id = key_custody.generate_key_pair()
        now = 1_700_000_000

        assertion = signer.build_client_assertion(
            "client_abc", TOKEN_ENDPOINT, key_id, now=now
        )

        header = jwt.get_unverified_header(assertion)
        assert header["alg"] == "RS256"
        assert header["kid"] == key_id

        claims = jwt.decode(assertion, options={"verify_signature": False})
        assert claims["iss"] == "client_abc"
        assert claims["sub"] == "client_abc"
        assert claims["aud"] == TOKEN_ENDPOINT
        assert claims["iat"] == now
        assert claims["exp"] == now + 60
        assert claims["jti"]

    def test_custom_ttl(self, signer, key_custody):
        """Lifetime follows ttl_seconds."""
        key_id = key_custody.generate_key_pair()

        assertion = signer.build_client_assertion(
            "client_abc", TOKEN_ENDPOINT, key_id, now=100, ttl_seconds=30
        )

        claims = jwt.decode(assertion, options={"verify_signature": False})
        assert claims["exp"] - claims["iat"] == 30

    def test_signature_verifies_with_jwks(self, signer, key_custody):
        """Assertion verifies against the exported public JWK."""
        key_id = key_custody.generate_key_pair()
        jwk = key_custody.export_public_jwks(key_id)["keys"][0]

        assertion = signer.build_client_assertion("client_abc", TOKEN_ENDPOINT, key_id)

        public_key = jwt.PyJWK(jwk).key
        claims = jwt.decode(
            assertion, public_key, algorithms=["RS256"], audience=TOKEN_ENDPOINT
        )
        assert claims["sub"] == "client_abc"

    def test_fresh_jti_per_call(self, signer, key_custody):
        """Two assertions never share a jti."""
        key_id = key_custody.generate_key_pair()

        first = signer.build_client_assertion("c", TOKEN_ENDPOINT, key_id, now=1)
        second = signer.build_client_assertion("c", TOKEN_ENDPOINT, key_id, now=1)

        unverified = {"verify_signature": False}
        assert first != second
        assert (
            jwt.decode(first, options=unverified)["jti"]
            != jwt.decode(second, options=unverified)["jti"]
        )

    def test_unknown_key(self, signer):
        """Signing with a missing key raises KeyNotFoundError."""
        with pytest.raises(KeyNotFoundError):
            signer.build_client_assertion("c", TOKEN_ENDPOINT, "missing")


class TestParseInitialAccessToken:
    """Test local IAT validation."""

    def test_valid_token(self):
        """Unexpired IAT returns its claims."""
        claims = parse_initial_access_token(make_iat(60))
        assert claims["sub"] == "enrollment"

    def test_expired_token(self):
        """Expired IAT is rejected."""
        with pytest.raises(jwt.ExpiredSignatureError):
            parse_initial_access_token(make_iat(-1))

    def test_expiry_uses_supplied_clock(self):
        """Expiry is judged against the given time."""
        iat = make_iat(60, now=1000)
        assert parse_initial_access_token(iat, now=1059)["exp"] == 1060
        with pytest.raises(jwt.ExpiredSignatureError):
            parse_initial_access_token(iat, now=1060)

    def test_missing_exp(self):
        """IAT without exp is rejected."""
        iat = jwt.encode({"sub": "enrollment"}, IAT_SECRET, algorithm="HS256")
        with pytest.raises(jwt.InvalidTokenError):
            parse_initial_access_token(iat, now=time.time())

    def test_garbage(self):
        """Unparsable input is rejected."""
        with pytest.raises(jwt.InvalidTokenError):
            parse_initial_access_token("not-a-jwt")
