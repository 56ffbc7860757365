# dcr_device_client/registration.py
"""Device enrollment and Dynamic Client Registration (RFC 7591)."""

import asyncio
import logging
import secrets
import time
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlencode

import jwt

from .assertion import parse_initial_access_token
from .config import DeviceClientConfig
from .credential_store import CredentialStore
from .exceptions import CredentialStoreError, KeyCustodyError
from .key_custody import KeyCustody
from .models import (
    ClientRegistrationRequest,
    DeviceRegistration,
    FlowKind,
    PendingFlowState,
)
from .pkce import PkceGenerator
from .results import (
    ApiResult,
    KeyStoreError,
    StateMismatchError,
    Success,
    ValidationError,
)
from .transport import ENROLL_DEVICE_PATH, TransportClient, endpoint

logger = logging.getLogger(__name__)


class RegistrationState(str, Enum):
    """Lifecycle of the device registration."""

    UNREGISTERED = "unregistered"
    ENROLLMENT_REQUESTED = "enrollment_requested"
    AWAITING_IAT = "awaiting_iat"
    REGISTERING = "registering"
    REGISTERED = "registered"


class RegistrationEngine:
    """
    Drives enrollment and client registration for this device.

    Registration generates a fresh signing key, publishes its public half
    inline as a JWKS, and registers a ``private_key_jwt`` client using the
    Initial Access Token obtained from the enrollment redirect. If anything
    fails after the key was generated, the key is deleted again.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        key_custody: KeyCustody,
        transport: TransportClient,
        config: Optional[DeviceClientConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.credential_store = credential_store
        self.key_custody = key_custody
        self.transport = transport
        self.config = config or DeviceClientConfig()
        self._clock = clock
        self._lock = asyncio.Lock()

        if self.is_device_registered():
            self.state = RegistrationState.REGISTERED
        else:
            self.state = RegistrationState.UNREGISTERED

    def build_enrollment_url(self, server_url: str, state: str) -> str:
        """Build the user-agent URL that starts device enrollment."""
        query = urlencode(
            {
                "deviceVersion": self.config.device_version,
                "deviceType": self.config.device_type,
                "deviceAttestation": self.config.device_attestation,
                "redirectUri": self.config.redirect_uri,
                "state": state,
            }
        )
        return f"{endpoint(server_url, ENROLL_DEVICE_PATH)}?{query}"

    def begin_enrollment(self, server_url: str) -> str:
        """
        Start an enrollment attempt.

        A new CSRF state is stored for the enrollment flow, replacing any
        earlier pending attempt.

        Args:
            server_url: Base URL of the authorization server

        Returns:
            Enrollment URL to open in the user agent
        """
        self.state = RegistrationState.ENROLLMENT_REQUESTED
        state = PkceGenerator.new_state()
        self.credential_store.save_pending(
            PendingFlowState(
                kind=FlowKind.ENROLLMENT, state=state, pending_server_url=server_url
            )
        )
        self.state = RegistrationState.AWAITING_IAT
        logger.info(f"Enrollment requested for {server_url}")
        return self.build_enrollment_url(server_url, state)

    async def complete_enrollment(
        self, iat: str, state: Optional[str]
    ) -> ApiResult[str]:
        """
        Handle the enrollment redirect carrying ``iat`` and ``state``.

        The pending enrollment state is consumed whatever the outcome.
        """
        try:
            pending = self.credential_store.consume_pending(FlowKind.ENROLLMENT)
        except CredentialStoreError as e:
            return ValidationError(f"Cannot read pending enrollment: {e}")

        if (
            pending is None
            or state is None
            or not secrets.compare_digest(pending.state, state)
        ):
            logger.warning("Rejected enrollment callback: state mismatch")
            self.state = RegistrationState.UNREGISTERED
            return StateMismatchError("Invalid state parameter (CSRF check failed)")

        if not pending.pending_server_url:
            self.state = RegistrationState.UNREGISTERED
            return ValidationError("Server URL not found for pending enrollment")

        return await self.register_device(pending.pending_server_url, iat)

    async def test_server_connection(self, server_url: str) -> ApiResult[bool]:
        """Check that ``server_url`` answers the system info probe."""
        return await self.transport.test_server_connection(server_url)

    async def register_device(self, server_url: str, iat: str) -> ApiResult[str]:
        """
        Register this device as an OAuth client.

        Args:
            server_url: Base URL of the authorization server
            iat: Initial Access Token from the enrollment redirect

        Returns:
            ``Success(client_id)`` or the error that stopped registration
        """
        async with self._lock:
            return await self._register_device(server_url, iat)

    async def _register_device(self, server_url: str, iat: str) -> ApiResult[str]:
        previous_state = self.state
        now = self._clock()

        try:
            parse_initial_access_token(iat, now=now)
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected IAT: {e}")
            self.state = previous_state
            return ValidationError("invalid or expired IAT")

        self.state = RegistrationState.REGISTERING
        try:
            key_id = self.key_custody.generate_key_pair()
        except KeyCustodyError as e:
            logger.error(f"Key generation failed: {e}")
            self.state = previous_state
            return KeyStoreError(f"Key generation failed: {e}")

        registered = False
        try:
            result = await self._submit_registration(server_url, iat, key_id, now)
            registered = isinstance(result, Success)
            return result
        finally:
            if not registered:
                logger.warning(f"Registration failed, deleting key {key_id}")
                self.key_custody.delete_key(key_id)
                if self.is_device_registered():
                    self.state = RegistrationState.REGISTERED
                else:
                    self.state = RegistrationState.UNREGISTERED

    async def _submit_registration(
        self, server_url: str, iat: str, key_id: str, now: float
    ) -> ApiResult[str]:
        try:
            jwks = self.key_custody.export_public_jwks(key_id)
        except KeyCustodyError as e:
            return KeyStoreError(f"Cannot export public key: {e}")

        registration_request = ClientRegistrationRequest(
            client_name=self.config.registration_client_name,
            redirect_uris=[self.config.redirect_uri],
            scope=self.config.scope,
            jwks_uri=self.config.jwks_uri,
            jwks=jwks,
        )

        result = await self.transport.register_client(server_url, iat, registration_request)
        if not isinstance(result, Success):
            return result

        client_id = result.value.client_id
        try:
            previous = self.credential_store.load_registration()
        except CredentialStoreError:
            previous = None

        try:
            self.credential_store.clear_tokens()
            self.credential_store.save_registration(
                DeviceRegistration(
                    server_url=server_url,
                    client_id=client_id,
                    key_id=key_id,
                    registered_at_epoch_ms=int(now * 1000),
                )
            )
        except CredentialStoreError as e:
            return ValidationError(f"Failed to persist registration: {e}")

        if previous is not None and previous.key_id != key_id:
            self.key_custody.delete_key(previous.key_id)

        self.state = RegistrationState.REGISTERED
        logger.info(f"Device registered with {server_url} as client {client_id}")
        return Success(client_id)

    def is_device_registered(self) -> bool:
        """True if a registration exists and its key is still in custody."""
        registration = self._load_registration()
        if registration is None:
            return False
        return self.key_custody.has_key(registration.key_id)

    def _load_registration(self) -> Optional[DeviceRegistration]:
        try:
            return self.credential_store.load_registration()
        except CredentialStoreError as e:
            logger.warning(f"Cannot read registration: {e}")
            return None

    def get_client_id(self) -> Optional[str]:
        registration = self._load_registration()
        return registration.client_id if registration else None

    def get_server_url(self) -> Optional[str]:
        registration = self._load_registration()
        return registration.server_url if registration else None

    def reset_registration(self, delete_all_keys: bool = False) -> None:
        """
        Delete the registration key, the registration and any tokens.

        Safe to call when the device is not registered.

        Args:
            delete_all_keys: Also delete every other key held by custody
        """
        try:
            registration = self.credential_store.load_registration()
        except CredentialStoreError as e:
            logger.warning(f"Cannot read registration during reset: {e}")
            registration = None

        if registration is not None:
            self.key_custody.delete_key(registration.key_id)
        if delete_all_keys:
            self.key_custody.delete_all_managed_keys()

        self.credential_store.clear_all()
        self.state = RegistrationState.UNREGISTERED
        logger.info("Registration reset")
