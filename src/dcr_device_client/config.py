# dcr_device_client/config.py
"""Configuration for the device client."""

import os
import platform
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "DCR_DEVICE_"


def _default_storage_dir() -> Path:
    return Path.home() / ".dcr_device_client"


class DeviceClientConfig(BaseModel):
    """Static settings shared by the registration and token engines."""

    redirect_uri: str = "dhis2oauth://oauth"
    device_type: str = "python"
    device_version: str = Field(default_factory=platform.release)
    device_attestation: str = Field(
        default_factory=lambda: f"python_{platform.python_version()}"
    )
    device_id: str = Field(default_factory=lambda: platform.node() or "unknown")
    client_name: str = "DCR Device Client"
    scope: str = "openid profile username"
    jwks_uri: Optional[str] = None
    assertion_ttl_seconds: int = 60
    http_timeout: float = 30.0
    storage_dir: Path = Field(default_factory=_default_storage_dir)
    storage_password: Optional[str] = Field(default=None, repr=False)

    @property
    def registration_client_name(self) -> str:
        """Client name sent in the registration request."""
        return f"{self.client_name} - {self.device_id}"

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides
    ) -> "DeviceClientConfig":
        """
        Build a configuration from ``DCR_DEVICE_*`` environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)
            **overrides: Explicit values that win over the environment

        Returns:
            Validated configuration
        """
        if environ is None:
            environ = os.environ

        values = {}
        for field_name in cls.model_fields:
            env_value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if env_value:
                values[field_name] = env_value

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
