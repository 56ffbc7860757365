# dcr_device_client/token_engine.py
"""Authorization code flow with PKCE, token refresh and authenticated calls."""

import asyncio
import logging
import secrets
import time
from enum import Enum
from typing import Callable, Optional, Tuple, Union
from urllib.parse import urlencode

from .assertion import AssertionSigner
from .config import DeviceClientConfig
from .credential_store import CredentialStore
from .exceptions import CredentialStoreError, KeyCustodyError
from .key_custody import KeyCustody
from .models import (
    DeviceRegistration,
    FlowKind,
    PendingFlowState,
    TokenResponse,
    TokenSet,
    UserInfo,
)
from .pkce import PkceGenerator
from .results import (
    ApiResult,
    KeyStoreError,
    ProtocolError,
    StateMismatchError,
    Success,
    ValidationError,
)
from .transport import AUTHORIZE_PATH, TOKEN_PATH, TransportClient, endpoint

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of the user session on a registered device."""

    REGISTERED = "registered"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AWAITING_CODE = "awaiting_code"
    EXCHANGING = "exchanging"
    LOGGED_IN = "logged_in"
    REFRESHING = "refreshing"
    LOGGED_OUT = "logged_out"


class TokenEngine:
    """
    Obtains and maintains tokens for a registered device.

    Every token request is authenticated with a freshly signed client
    assertion. Expired access tokens are refreshed lazily, when
    :meth:`get_user_info` needs one; there is no background refresh.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        key_custody: KeyCustody,
        transport: TransportClient,
        config: Optional[DeviceClientConfig] = None,
        signer: Optional[AssertionSigner] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.credential_store = credential_store
        self.key_custody = key_custody
        self.transport = transport
        self.config = config or DeviceClientConfig()
        self.signer = signer or AssertionSigner(key_custody)
        self._clock = clock
        self._lock = asyncio.Lock()

        try:
            has_tokens = credential_store.load_tokens() is not None
        except CredentialStoreError:
            has_tokens = False
        self.state = SessionState.LOGGED_IN if has_tokens else SessionState.REGISTERED

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def build_authorization_url(
        self, server_url: str, client_id: str, state: str, code_challenge: str
    ) -> str:
        """Build the authorization URL for the PKCE authorization code flow."""
        query = urlencode(
            {
                "client_id": client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "scope": self.config.scope,
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": PkceGenerator.challenge_method,
            }
        )
        return f"{endpoint(server_url, AUTHORIZE_PATH)}?{query}"

    def _require_registration(self) -> Union[DeviceRegistration, ValidationError]:
        try:
            registration = self.credential_store.load_registration()
        except CredentialStoreError as e:
            return ValidationError(f"Cannot read registration: {e}")
        if registration is None:
            return ValidationError("Device is not registered")
        if not self.key_custody.has_key(registration.key_id):
            return KeyStoreError(
                f"Private key not found for keyId: {registration.key_id}"
            )
        return registration

    def begin_login(self) -> ApiResult[str]:
        """
        Start a login attempt.

        Stores a new CSRF state and PKCE verifier for the login flow and
        returns the authorization URL to open in the user agent.
        """
        registration = self._require_registration()
        if not isinstance(registration, DeviceRegistration):
            return registration

        self.state = SessionState.AUTHORIZATION_REQUESTED
        state = PkceGenerator.new_state()
        code_verifier = PkceGenerator.new_code_verifier()
        try:
            self.credential_store.save_pending(
                PendingFlowState(
                    kind=FlowKind.LOGIN, state=state, code_verifier=code_verifier
                )
            )
        except CredentialStoreError as e:
            return ValidationError(f"Cannot store login state: {e}")

        self.state = SessionState.AWAITING_CODE
        return Success(
            self.build_authorization_url(
                registration.server_url,
                registration.client_id,
                state,
                PkceGenerator.code_challenge(code_verifier),
            )
        )

    async def complete_login(self, code: str, state: Optional[str]) -> ApiResult[None]:
        """
        Handle the login redirect carrying ``code`` and ``state``.

        The pending login state is consumed whatever the outcome.
        """
        try:
            pending = self.credential_store.consume_pending(FlowKind.LOGIN)
        except CredentialStoreError as e:
            return ValidationError(f"Cannot read pending login: {e}")

        if (
            pending is None
            or state is None
            or not secrets.compare_digest(pending.state, state)
        ):
            logger.warning("Rejected login callback: state mismatch")
            self.state = SessionState.REGISTERED
            return StateMismatchError("Invalid state parameter (CSRF check failed)")

        if not pending.code_verifier:
            self.state = SessionState.REGISTERED
            return ValidationError("Code verifier not found for pending login")

        return await self.exchange_code_for_token(code, pending.code_verifier)

    def _client_assertion(
        self, registration: DeviceRegistration
    ) -> Union[str, KeyStoreError]:
        try:
            return self.signer.build_client_assertion(
                client_id=registration.client_id,
                token_endpoint_url=endpoint(registration.server_url, TOKEN_PATH),
                key_id=registration.key_id,
                now=self._clock(),
                ttl_seconds=self.config.assertion_ttl_seconds,
            )
        except KeyCustodyError as e:
            return KeyStoreError(f"Cannot sign client assertion: {e}")

    def _prepare(self) -> Union[Tuple[DeviceRegistration, str], ProtocolError]:
        registration = self._require_registration()
        if not isinstance(registration, DeviceRegistration):
            return registration
        assertion = self._client_assertion(registration)
        if isinstance(assertion, KeyStoreError):
            return assertion
        return registration, assertion

    def _store_tokens(
        self, token_response: TokenResponse, refresh_token: Optional[str]
    ) -> Optional[ValidationError]:
        tokens = TokenSet(
            access_token=token_response.access_token,
            refresh_token=refresh_token,
            expires_at_epoch_ms=self._now_ms() + token_response.expires_in * 1000,
        )
        try:
            self.credential_store.save_tokens(tokens)
        except CredentialStoreError as e:
            return ValidationError(f"Failed to persist tokens: {e}")
        return None

    async def exchange_code_for_token(
        self, code: str, code_verifier: str
    ) -> ApiResult[None]:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the login redirect
            code_verifier: PKCE verifier of the login attempt

        Returns:
            ``Success(None)`` once the new token set is stored
        """
        prepared = self._prepare()
        if isinstance(prepared, ProtocolError):
            return prepared
        registration, assertion = prepared

        self.state = SessionState.EXCHANGING
        result = await self.transport.exchange_code_for_token(
            server_url=registration.server_url,
            client_id=registration.client_id,
            authorization_code=code,
            redirect_uri=self.config.redirect_uri,
            client_assertion=assertion,
            code_verifier=code_verifier,
        )
        if not isinstance(result, Success):
            self.state = SessionState.REGISTERED
            return result

        error = self._store_tokens(result.value, result.value.refresh_token)
        if error is not None:
            self.state = SessionState.REGISTERED
            return error

        self.state = SessionState.LOGGED_IN
        logger.info(f"Logged in as client {registration.client_id}")
        return Success(None)

    async def refresh_access_token(self) -> ApiResult[None]:
        """
        Refresh the access token.

        A refresh token returned by the server replaces the stored one;
        otherwise the stored refresh token is kept.
        """
        async with self._lock:
            return await self._refresh_access_token()

    async def _refresh_access_token(self) -> ApiResult[None]:
        try:
            current = self.credential_store.load_tokens()
        except CredentialStoreError as e:
            return ValidationError(f"Cannot read tokens: {e}")
        if current is None or not current.refresh_token:
            return ValidationError("Refresh token not found")

        prepared = self._prepare()
        if isinstance(prepared, ProtocolError):
            return prepared
        registration, assertion = prepared

        previous_state = self.state
        self.state = SessionState.REFRESHING
        result = await self.transport.refresh_token(
            server_url=registration.server_url,
            client_id=registration.client_id,
            refresh_token=current.refresh_token,
            client_assertion=assertion,
        )
        if not isinstance(result, Success):
            self.state = previous_state
            return result

        error = self._store_tokens(
            result.value, result.value.refresh_token or current.refresh_token
        )
        if error is not None:
            self.state = previous_state
            return error

        self.state = SessionState.LOGGED_IN
        logger.info("Access token refreshed")
        return Success(None)

    async def get_user_info(self) -> ApiResult[UserInfo]:
        """
        Fetch the current user, refreshing an expired access token first.

        A failed refresh is returned unchanged.
        """
        try:
            registration = self.credential_store.load_registration()
            tokens = self.credential_store.load_tokens()
        except CredentialStoreError as e:
            return ValidationError(f"Cannot read credentials: {e}")

        if registration is None:
            return ValidationError("Device is not registered")
        if tokens is None:
            return ValidationError("Access token not found")

        if tokens.is_expired(self._now_ms()):
            logger.debug("Access token expired, refreshing")
            refresh_result = await self.refresh_access_token()
            if not isinstance(refresh_result, Success):
                return refresh_result
            try:
                tokens = self.credential_store.load_tokens()
            except CredentialStoreError as e:
                return ValidationError(f"Cannot read refreshed tokens: {e}")
            if tokens is None:
                return ValidationError("Access token not found")

        return await self.transport.get_user_info(
            registration.server_url, tokens.access_token
        )

    def _load_tokens(self) -> Optional[TokenSet]:
        try:
            return self.credential_store.load_tokens()
        except CredentialStoreError as e:
            logger.warning(f"Cannot read tokens: {e}")
            return None

    def is_logged_in(self) -> bool:
        """True if an unexpired access token is stored."""
        tokens = self._load_tokens()
        return tokens is not None and not tokens.is_expired(self._now_ms())

    def get_access_token(self) -> Optional[str]:
        tokens = self._load_tokens()
        return tokens.access_token if tokens else None

    def get_authorization_header(self) -> Optional[str]:
        access_token = self.get_access_token()
        return f"Bearer {access_token}" if access_token else None

    def logout(self) -> None:
        """
        Clear the token set. The device registration is kept.

        A credentials record that cannot be decrypted is discarded as a
        whole, registration included, so no tokens outlive the logout.
        """
        try:
            self.credential_store.clear_tokens()
        except CredentialStoreError as e:
            logger.warning(f"Cannot read stored credentials, discarding them: {e}")
            try:
                self.credential_store.discard_credentials()
            except CredentialStoreError as discard_error:
                logger.error(f"Cannot discard stored credentials: {discard_error}")

        try:
            self.credential_store.clear_pending(FlowKind.LOGIN)
        except CredentialStoreError as e:
            logger.warning(f"Cannot read pending state, discarding it: {e}")
            try:
                self.credential_store.clear_pending()
            except CredentialStoreError as discard_error:
                logger.error(f"Cannot discard pending state: {discard_error}")

        self.state = SessionState.LOGGED_OUT
        logger.info("Logged out")
