# dcr_device_client/credential_store.py
"""Encrypted storage for registration, token and pending flow state."""

import base64
import json
import logging
import os
import secrets
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError as ModelValidationError

from .exceptions import CredentialStoreError
from .models import DeviceRegistration, FlowKind, PendingFlowState, TokenSet

logger = logging.getLogger(__name__)

CREDENTIALS_RECORD = "credentials"
PENDING_RECORD = "pending"

REGISTRATION_FIELDS = ("serverUrl", "clientId", "keyId", "isRegistered", "registrationDate")
TOKEN_FIELDS = ("accessToken", "refreshToken", "tokenExpiresAt")

KDF_ITERATIONS = 480_000


class StoreBackend(str, Enum):
    """Available credential store backends."""

    ENCRYPTED_FILE = "encrypted_file"
    MEMORY = "memory"


class _MemoryRecords:
    """Record sets held in process memory."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    def read(self, name: str) -> Dict[str, Any]:
        return dict(self._records.get(name, {}))

    def write(self, name: str, data: Dict[str, Any]) -> None:
        self._records[name] = dict(data)


class _EncryptedFileRecords:
    """Record sets stored as Fernet-encrypted JSON files."""

    def __init__(self, storage_dir: Path, password: Optional[str] = None):
        self.storage_dir = storage_dir
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._cipher = Fernet(self._load_key(password))

    def _write_private(self, path: Path, data: bytes) -> None:
        """Write ``data`` atomically with user-only permissions."""
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    def _load_key(self, password: Optional[str]) -> bytes:
        if password:
            salt_path = self.storage_dir / "store.salt"
            if salt_path.exists():
                salt = salt_path.read_bytes()
            else:
                salt = secrets.token_bytes(16)
                self._write_private(salt_path, salt)

            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=salt,
                iterations=KDF_ITERATIONS,
            )
            return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))

        key_path = self.storage_dir / "master.key"
        if key_path.exists():
            return key_path.read_bytes()
        key = Fernet.generate_key()
        self._write_private(key_path, key)
        return key

    def _path(self, name: str) -> Path:
        return self.storage_dir / f"{name}.enc"

    def read(self, name: str) -> Dict[str, Any]:
        path = self._path(name)
        if not path.exists():
            return {}
        try:
            decrypted = self._cipher.decrypt(path.read_bytes())
            data = json.loads(decrypted)
        except InvalidToken as e:
            raise CredentialStoreError(
                f"Cannot decrypt {path.name} (wrong password or corrupted file)"
            ) from e
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialStoreError(f"Cannot read {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise CredentialStoreError(f"Unexpected content in {path.name}")
        return data

    def write(self, name: str, data: Dict[str, Any]) -> None:
        payload = self._cipher.encrypt(json.dumps(data).encode("utf-8"))
        try:
            self._write_private(self._path(name), payload)
        except OSError as e:
            raise CredentialStoreError(f"Cannot write {name}: {e}") from e


class CredentialStore:
    """
    Durable store for device registration, tokens and pending flow state.

    Two record sets are kept: ``credentials`` (registration and tokens) and
    ``pending`` (CSRF state and PKCE verifiers of in-flight flows). Every
    mutation rewrites a whole record set in one write, so a registration is
    never observable half-written.
    """

    def __init__(
        self,
        storage_dir: Optional[Path] = None,
        backend: StoreBackend = StoreBackend.ENCRYPTED_FILE,
        password: Optional[str] = None,
    ):
        """
        Initialize the credential store.

        Args:
            storage_dir: Directory for encrypted files (default: ~/.dcr_device_client)
            backend: Storage backend to use
            password: Password for the encrypted file backend (random key file if omitted)
        """
        self.backend = backend
        self._lock = threading.RLock()

        if backend == StoreBackend.MEMORY:
            self.storage_dir = None
            self._records: Any = _MemoryRecords()
        else:
            if storage_dir is None:
                storage_dir = Path.home() / ".dcr_device_client"
            self.storage_dir = Path(storage_dir)
            self._records = _EncryptedFileRecords(self.storage_dir, password)

    def __repr__(self) -> str:
        return f"CredentialStore(backend={self.backend.value}, storage_dir={self.storage_dir!r})"

    def _update(self, name: str, values: Dict[str, Any], remove=()) -> None:
        with self._lock:
            data = self._records.read(name)
            for key in remove:
                data.pop(key, None)
            data.update(values)
            self._records.write(name, data)

    # Registration

    def save_registration(self, registration: DeviceRegistration) -> None:
        """Persist a registration as a single write."""
        values = registration.model_dump(by_alias=True)
        values["isRegistered"] = True
        self._update(CREDENTIALS_RECORD, values)

    def load_registration(self) -> Optional[DeviceRegistration]:
        """
        Load the stored registration.

        Returns:
            The registration, or None unless client id and key id are both present
        """
        with self._lock:
            data = self._records.read(CREDENTIALS_RECORD)
        if not data.get("isRegistered") or not data.get("clientId") or not data.get("keyId"):
            return None
        try:
            return DeviceRegistration.model_validate(data)
        except ModelValidationError:
            logger.warning("Stored registration is incomplete, ignoring it")
            return None

    def clear_registration(self) -> None:
        """Remove the registration record (tokens are left alone)."""
        self._update(CREDENTIALS_RECORD, {}, remove=REGISTRATION_FIELDS)

    # Tokens

    def save_tokens(self, tokens: TokenSet) -> None:
        """Replace the stored token set wholesale."""
        self._update(
            CREDENTIALS_RECORD,
            tokens.model_dump(by_alias=True),
            remove=TOKEN_FIELDS,
        )

    def load_tokens(self) -> Optional[TokenSet]:
        with self._lock:
            data = self._records.read(CREDENTIALS_RECORD)
        if not data.get("accessToken"):
            return None
        try:
            return TokenSet.model_validate(data)
        except ModelValidationError:
            logger.warning("Stored token set is malformed, ignoring it")
            return None

    def clear_tokens(self) -> None:
        """Clear access token, refresh token and expiry; keep registration."""
        self._update(CREDENTIALS_RECORD, {}, remove=TOKEN_FIELDS)

    def discard_credentials(self) -> None:
        """Overwrite the credentials record without reading it first."""
        with self._lock:
            self._records.write(CREDENTIALS_RECORD, {})

    # Pending flow state

    def save_pending(self, pending: PendingFlowState) -> None:
        """Store pending state for a flow kind, replacing any previous one."""
        self._update(PENDING_RECORD, {pending.kind.value: pending.model_dump(mode="json")})

    def load_pending(self, kind: FlowKind) -> Optional[PendingFlowState]:
        with self._lock:
            entry = self._records.read(PENDING_RECORD).get(kind.value)
        if entry is None:
            return None
        return PendingFlowState.model_validate(entry)

    def consume_pending(self, kind: FlowKind) -> Optional[PendingFlowState]:
        """Return and delete the pending state for ``kind``."""
        with self._lock:
            pending = self.load_pending(kind)
            if pending is not None:
                self._update(PENDING_RECORD, {}, remove=(kind.value,))
        return pending

    def clear_pending(self, kind: Optional[FlowKind] = None) -> None:
        """Clear pending state for one flow kind, or for all of them."""
        with self._lock:
            if kind is None:
                self._records.write(PENDING_RECORD, {})
            else:
                self._update(PENDING_RECORD, {}, remove=(kind.value,))

    def clear_all(self) -> None:
        """Reset every record set."""
        with self._lock:
            self._records.write(CREDENTIALS_RECORD, {})
            self._records.write(PENDING_RECORD, {})
