"""DCR Device Client - OAuth 2.0 for devices without a pre-shared secret.

This library lets a device register itself as an OAuth 2.0 client and log
users in, implementing:
- Device enrollment with a single-use Initial Access Token
- Dynamic Client Registration (RFC 7591) with an inline JWKS
- private_key_jwt client authentication (RFC 7523)
- Authorization Code Flow with PKCE (RFC 7636)
- Encrypted credential storage and key custody
"""

from .assertion import AssertionSigner, parse_initial_access_token
from .callback import CallbackKind, CallbackParams, route_callback
from .client import DeviceOAuthClient
from .config import DeviceClientConfig
from .credential_store import CredentialStore, StoreBackend
from .exceptions import (
    CredentialStoreError,
    DeviceClientError,
    KeyCustodyError,
    KeyGenerationError,
    KeyNotFoundError,
)
from .key_custody import KeyCustody, KeyMaterial, PrivateKeyHandle
from .models import (
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    DeviceRegistration,
    FlowKind,
    PendingFlowState,
    TokenResponse,
    TokenSet,
    UserInfo,
)
from .pkce import PkceGenerator
from .registration import RegistrationEngine, RegistrationState
from .results import (
    ApiResult,
    KeyStoreError,
    ProtocolError,
    StateMismatchError,
    Success,
    TransportError,
    ValidationError,
    describe,
    is_success,
)
from .token_engine import SessionState, TokenEngine
from .transport import TransportClient

__version__ = "0.1.0"

__all__ = [
    "ApiResult",
    "AssertionSigner",
    "CallbackKind",
    "CallbackParams",
    "ClientRegistrationRequest",
    "ClientRegistrationResponse",
    "CredentialStore",
    "CredentialStoreError",
    "DeviceClientConfig",
    "DeviceClientError",
    "DeviceOAuthClient",
    "DeviceRegistration",
    "FlowKind",
    "KeyCustody",
    "KeyCustodyError",
    "KeyGenerationError",
    "KeyMaterial",
    "KeyNotFoundError",
    "KeyStoreError",
    "PendingFlowState",
    "PkceGenerator",
    "PrivateKeyHandle",
    "ProtocolError",
    "RegistrationEngine",
    "RegistrationState",
    "SessionState",
    "StateMismatchError",
    "StoreBackend",
    "Success",
    "TokenEngine",
    "TokenResponse",
    "TokenSet",
    "TransportClient",
    "TransportError",
    "UserInfo",
    "ValidationError",
    "describe",
    "is_success",
    "parse_initial_access_token",
    "route_callback",
]
