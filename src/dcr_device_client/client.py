# dcr_device_client/client.py
"""Application root wiring the device OAuth components together."""

import logging
import time
from typing import Any, Callable, Mapping, Optional, Union

from .callback import CallbackKind, route_callback
from .config import DeviceClientConfig
from .credential_store import CredentialStore
from .exceptions import CredentialStoreError
from .key_custody import KeyCustody
from .models import TokenSet, UserInfo
from .registration import RegistrationEngine
from .results import ApiResult, ProtocolError, ValidationError
from .token_engine import TokenEngine
from .transport import TransportClient

logger = logging.getLogger(__name__)


class DeviceOAuthClient:
    """Enrollment, login and authenticated calls for one device."""

    def __init__(
        self,
        config: Optional[DeviceClientConfig] = None,
        credential_store: Optional[CredentialStore] = None,
        key_custody: Optional[KeyCustody] = None,
        transport: Optional[TransportClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration (defaults built from the environment)
            credential_store: Credential store (encrypted files under ``config.storage_dir``)
            key_custody: Key custody (keys under ``config.storage_dir / "keys"``)
            transport: HTTP transport client
            clock: Time source in epoch seconds
        """
        self.config = config or DeviceClientConfig.from_env()
        self.credential_store = credential_store or CredentialStore(
            storage_dir=self.config.storage_dir,
            password=self.config.storage_password,
        )
        self.key_custody = key_custody or KeyCustody(
            key_dir=self.config.storage_dir / "keys",
            passphrase=self.config.storage_password,
        )
        self.transport = transport or TransportClient(timeout=self.config.http_timeout)

        self.registration = RegistrationEngine(
            self.credential_store,
            self.key_custody,
            self.transport,
            config=self.config,
            clock=clock,
        )
        self.tokens = TokenEngine(
            self.credential_store,
            self.key_custody,
            self.transport,
            config=self.config,
            clock=clock,
        )

    async def test_server_connection(self, server_url: str) -> ApiResult[bool]:
        return await self.registration.test_server_connection(server_url)

    def begin_enrollment(self, server_url: str) -> str:
        """Start enrollment and return the URL to open in the user agent."""
        return self.registration.begin_enrollment(server_url)

    def begin_login(self) -> ApiResult[str]:
        """Start login and return the authorization URL to open."""
        return self.tokens.begin_login()

    async def handle_callback(
        self, callback: Union[str, Mapping[str, str]]
    ) -> ApiResult[Any]:
        """
        Process a redirect callback from the user agent.

        Enrollment callbacks register the device (``Success(client_id)``),
        login callbacks exchange the code for tokens (``Success(None)``).
        Error callbacks discard all pending flow state.

        Args:
            callback: Redirect URL or its query parameters

        Returns:
            Result of the dispatched operation
        """
        params = route_callback(callback)
        logger.debug(f"Received {params.kind.value} callback")

        if params.kind == CallbackKind.ENROLLMENT and params.iat:
            return await self.registration.complete_enrollment(params.iat, params.state)

        if params.kind == CallbackKind.LOGIN and params.code:
            return await self.tokens.complete_login(params.code, params.state)

        if params.kind == CallbackKind.ERROR:
            try:
                self.credential_store.clear_pending()
            except CredentialStoreError as e:
                logger.error(f"Cannot clear pending flow state: {e}")
            logger.warning(f"Authorization server returned error: {params.error}")
            return ProtocolError(
                f"OAuth error: {params.error_description or params.error}"
            )

        return ValidationError("Unknown callback type - missing iat or code parameter")

    async def get_user_info(self) -> ApiResult[UserInfo]:
        return await self.tokens.get_user_info()

    def is_device_registered(self) -> bool:
        return self.registration.is_device_registered()

    def is_logged_in(self) -> bool:
        return self.tokens.is_logged_in()

    def load_tokens(self) -> Optional[TokenSet]:
        try:
            return self.credential_store.load_tokens()
        except CredentialStoreError as e:
            logger.warning(f"Cannot read tokens: {e}")
            return None

    def logout(self) -> None:
        """End the session; the device stays registered."""
        self.tokens.logout()

    def reset(self, delete_all_keys: bool = False) -> None:
        """Forget the registration, its key and all tokens."""
        self.registration.reset_registration(delete_all_keys=delete_all_keys)
