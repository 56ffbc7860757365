# dcr_device_client/pkce.py
"""PKCE (RFC 7636) verifier/challenge generation and CSRF state."""

import base64
import hashlib
import secrets
import uuid

VERIFIER_ENTROPY_BYTES = 48


class PkceGenerator:
    """Stateless helpers for PKCE S256 and the OAuth ``state`` parameter."""

    challenge_method = "S256"

    @staticmethod
    def new_code_verifier() -> str:
        """48 random bytes, base64url without padding (64 characters)."""
        raw = secrets.token_bytes(VERIFIER_ENTROPY_BYTES)
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @staticmethod
    def code_challenge(verifier: str) -> str:
        """S256 challenge: base64url(SHA-256(verifier)) without padding."""
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    @staticmethod
    def new_state() -> str:
        """Opaque random CSRF token, one per flow invocation."""
        return str(uuid.uuid4())
