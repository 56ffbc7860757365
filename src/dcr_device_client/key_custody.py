# dcr_device_client/key_custody.py
"""
Custody of the RSA signing keys used for private_key_jwt.

Keys are addressed only by their key id (the JWT ``kid``). Callers can sign
with a key and export its public half as a JWKS, but the private key itself
is never returned.
"""

import base64
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .exceptions import KeyGenerationError, KeyNotFoundError

logger = logging.getLogger(__name__)

KEY_ALIAS_PREFIX = "device_oauth_key_"
KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537


def _int_to_base64url(value: int) -> str:
    """Encode a positive integer as unpadded base64url (JWK ``n``/``e``)."""
    byte_length = (value.bit_length() + 7) // 8
    raw = value.to_bytes(byte_length, byteorder="big")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class PrivateKeyHandle:
    """Opaque reference to a private key held by :class:`KeyCustody`."""

    __slots__ = ("_key_id", "_custody")

    def __init__(self, key_id: str, custody: "KeyCustody"):
        self._key_id = key_id
        self._custody = custody

    @property
    def key_id(self) -> str:
        return self._key_id

    def sign(self, signing_input: bytes) -> bytes:
        return self._custody.sign(self._key_id, signing_input)

    def __repr__(self) -> str:
        return f"<PrivateKeyHandle kid={self._key_id} [redacted]>"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("PrivateKeyHandle cannot be serialized")

    def __copy__(self):
        raise TypeError("PrivateKeyHandle cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("PrivateKeyHandle cannot be copied")


@dataclass(frozen=True)
class KeyMaterial:
    """Public view of a managed key pair."""

    key_id: str
    public_key: rsa.RSAPublicKey
    private_key_handle: PrivateKeyHandle
    hardware_backed: bool = False


class KeyCustody:
    """Generates, stores and uses RSA signing keys addressed by key id."""

    hardware_backed = False

    def __init__(self, key_dir: Optional[Path] = None, passphrase: Optional[str] = None):
        """
        Initialize key custody.

        Args:
            key_dir: Directory for persisted keys (in-memory only if None)
            passphrase: Passphrase used to encrypt persisted private keys
        """
        self.key_dir = Path(key_dir) if key_dir is not None else None
        self._passphrase = passphrase.encode("utf-8") if passphrase else None
        self._keys: Dict[str, rsa.RSAPrivateKey] = {}
        self._lock = threading.RLock()

        if self.key_dir is not None:
            self.key_dir.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"KeyCustody(key_dir={self.key_dir!r})"

    @staticmethod
    def _get_key_path(key_dir: Path, key_id: str) -> Path:
        return key_dir / f"{KEY_ALIAS_PREFIX}{key_id}.pem"

    def _encryption(self) -> serialization.KeySerializationEncryption:
        if self._passphrase:
            return serialization.BestAvailableEncryption(self._passphrase)
        return serialization.NoEncryption()

    def _persist(self, key_dir: Path, key_id: str, private_key: rsa.RSAPrivateKey) -> None:
        pem_data = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=self._encryption(),
        )
        key_path = self._get_key_path(key_dir, key_id)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(pem_data)

    def _load(self, key_id: str) -> rsa.RSAPrivateKey:
        with self._lock:
            private_key = self._keys.get(key_id)
            if private_key is not None:
                return private_key

            if self.key_dir is None:
                raise KeyNotFoundError(key_id)
            key_path = self._get_key_path(self.key_dir, key_id)
            if not key_path.exists():
                raise KeyNotFoundError(key_id)

            try:
                pem_data = key_path.read_bytes()
                loaded = serialization.load_pem_private_key(
                    pem_data, password=self._passphrase
                )
            except (OSError, ValueError, TypeError) as e:
                raise KeyNotFoundError(key_id) from e

            if not isinstance(loaded, rsa.RSAPrivateKey):
                raise KeyNotFoundError(key_id)

            self._keys[key_id] = loaded
            return loaded

    def generate_key_pair(self) -> str:
        """
        Generate a 2048-bit RSA key pair for RS256 signing.

        Returns:
            Fresh random key id (used as the JWT ``kid``)

        Raises:
            KeyGenerationError: If the key could not be created or stored
        """
        key_id = str(uuid.uuid4())
        try:
            private_key = rsa.generate_private_key(
                public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE
            )
            with self._lock:
                if self.key_dir is not None:
                    self._persist(self.key_dir, key_id, private_key)
                self._keys[key_id] = private_key
        except (OSError, ValueError) as e:
            raise KeyGenerationError(f"Failed to generate key pair: {e}") from e

        logger.info(f"Generated signing key {key_id}")
        return key_id

    def has_key(self, key_id: str) -> bool:
        """Check if a key exists for the given key id."""
        with self._lock:
            if key_id in self._keys:
                return True
            if self.key_dir is None:
                return False
            return self._get_key_path(self.key_dir, key_id).exists()

    def delete_key(self, key_id: str) -> None:
        """Delete a key pair. No-op if it does not exist."""
        with self._lock:
            removed = self._keys.pop(key_id, None) is not None
            if self.key_dir is not None:
                key_path = self._get_key_path(self.key_dir, key_id)
                if key_path.exists():
                    key_path.unlink()
                    removed = True
        if removed:
            logger.info(f"Deleted signing key {key_id}")

    def delete_all_managed_keys(self) -> int:
        """
        Delete every key managed by this custody.

        Returns:
            Number of keys removed
        """
        with self._lock:
            key_ids = set(self._keys)
            if self.key_dir is not None:
                for key_path in self.key_dir.glob(f"{KEY_ALIAS_PREFIX}*.pem"):
                    key_ids.add(key_path.stem[len(KEY_ALIAS_PREFIX) :])
            for key_id in key_ids:
                self.delete_key(key_id)
        return len(key_ids)

    def get_key_material(self, key_id: str) -> KeyMaterial:
        """
        Get the public view of a key.

        Raises:
            KeyNotFoundError: If no key exists for ``key_id``
        """
        private_key = self._load(key_id)
        return KeyMaterial(
            key_id=key_id,
            public_key=private_key.public_key(),
            private_key_handle=PrivateKeyHandle(key_id, self),
            hardware_backed=self.hardware_backed,
        )

    def export_public_jwks(self, key_id: str) -> Dict[str, Any]:
        """
        Export the public key as a single-entry JWKS.

        Raises:
            KeyNotFoundError: If no key exists for ``key_id``
        """
        public_numbers = self._load(key_id).public_key().public_numbers()
        return {
            "keys": [
                {
                    "kty": "RSA",
                    "e": _int_to_base64url(public_numbers.e),
                    "use": "sig",
                    "kid": key_id,
                    "alg": "RS256",
                    "n": _int_to_base64url(public_numbers.n),
                }
            ]
        }

    def sign(self, key_id: str, signing_input: bytes) -> bytes:
        """
        Sign ``signing_input`` with RSASSA-PKCS1-v1_5 / SHA-256 (RS256).

        Raises:
            KeyNotFoundError: If no key exists for ``key_id``
        """
        private_key = self._load(key_id)
        return private_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())
