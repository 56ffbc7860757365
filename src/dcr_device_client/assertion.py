# dcr_device_client/assertion.py
"""
JWT handling for private_key_jwt client authentication (RFC 7523).

The client assertion is assembled here and signed through
:meth:`KeyCustody.sign`, so the private key never leaves custody.
"""

import json
import time
import uuid
from typing import Any, Dict, Optional

import jwt
from jwt.utils import base64url_encode

from .key_custody import KeyCustody

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
DEFAULT_ASSERTION_TTL = 60


def _encode_segment(data: Dict[str, Any]) -> bytes:
    return base64url_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


class AssertionSigner:
    """Builds single-use client assertions signed by a custody key."""

    def __init__(self, key_custody: KeyCustody):
        self.key_custody = key_custody

    def build_client_assertion(
        self,
        client_id: str,
        token_endpoint_url: str,
        key_id: str,
        now: Optional[float] = None,
        ttl_seconds: int = DEFAULT_ASSERTION_TTL,
    ) -> str:
        """
        Create a signed JWT assertion for the token endpoint.

        A new ``jti`` and new timestamps are minted on every call; the result
        must not be cached or reused across requests.

        Args:
            client_id: OAuth client id (used as ``iss`` and ``sub``)
            token_endpoint_url: Token endpoint URL (used as ``aud``)
            key_id: Custody key id, placed in the ``kid`` header
            now: Issue time in epoch seconds (defaults to wall clock)
            ttl_seconds: Lifetime of the assertion

        Returns:
            Compact serialized JWS

        Raises:
            KeyNotFoundError: If ``key_id`` is not held by custody
        """
        issued_at = int(now if now is not None else time.time())

        header = {"alg": "RS256", "typ": "JWT", "kid": key_id}
        claims = {
            "iss": client_id,
            "sub": client_id,
            "aud": token_endpoint_url,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
            "jti": str(uuid.uuid4()),
        }

        signing_input = _encode_segment(header) + b"." + _encode_segment(claims)
        signature = self.key_custody.sign(key_id, signing_input)
        return (signing_input + b"." + base64url_encode(signature)).decode("ascii")


def parse_initial_access_token(iat: str, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Parse an Initial Access Token and check its expiry locally.

    The signature is not verified; the registration endpoint does that.

    Args:
        iat: The IAT as received from the enrollment redirect
        now: Current time in epoch seconds (defaults to wall clock)

    Returns:
        The token claims

    Raises:
        jwt.InvalidTokenError: If the token is unparsable, has no numeric
            ``exp`` claim, or is expired
    """
    if now is None:
        now = time.time()

    claims = jwt.decode(
        iat,
        options={"verify_signature": False, "verify_exp": False, "require": ["exp"]},
    )

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise jwt.InvalidTokenError("IAT has no numeric exp claim")
    if now >= exp:
        raise jwt.ExpiredSignatureError("IAT has expired")
    return claims
