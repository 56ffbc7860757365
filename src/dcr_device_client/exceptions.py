# dcr_device_client/exceptions.py
"""Exceptions raised by the storage components.

The engines convert these into result values; they never cross the
``RegistrationEngine`` / ``TokenEngine`` boundary.
"""


class DeviceClientError(Exception):
    """Base class for all device client errors."""


class KeyCustodyError(DeviceClientError):
    """The key custody backend failed or is unavailable."""


class KeyGenerationError(KeyCustodyError):
    """A signing key pair could not be generated."""


class KeyNotFoundError(KeyCustodyError):
    """No key is stored under the requested key id."""

    def __init__(self, key_id: str):
        super().__init__(f"Key not found for keyId: {key_id}")
        self.key_id = key_id


class CredentialStoreError(DeviceClientError):
    """The credential store could not be read or written."""
