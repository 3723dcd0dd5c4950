"""PCE connection configuration.

Connection details for one or more PCEs are kept in a small JSON file so
commands can refer to a PCE by name. Every field can be overridden from the
environment with the ``WORKLOADER_`` prefix (``WORKLOADER_API_KEY``,
``WORKLOADER_API_USER``, ``WORKLOADER_ORG`` and so on), which lets the tool
run unattended without credentials on disk.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_CONFIG_FILE = "pce.json"

CONFIG_VERSION = 1


class ConfigError(Exception):
    """Raised when PCE configuration is missing or invalid."""

    pass


class PCESettings(BaseSettings):
    """Connection settings for a single PCE."""

    model_config = SettingsConfigDict(
        env_prefix="WORKLOADER_",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Identity
    # ==========================================================================
    name: str = Field(default="default", description="Name the PCE is stored under")

    fqdn: str = Field(description="Fully qualified domain name of the PCE")

    port: int = Field(default=8443, description="PCE API port")

    org: int = Field(default=1, description="PCE organization ID")

    # ==========================================================================
    # Credentials
    # ==========================================================================
    api_user: str = Field(default="", description="API key username (api_xxxx)")

    api_key: str = Field(default="", description="API key secret")

    # ==========================================================================
    # Transport
    # ==========================================================================
    disable_tls_verification: bool = Field(
        default=False, description="Skip TLS certificate verification"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values read from the config file.
        return env_settings, init_settings

    @classmethod
    def from_values(cls, **values: Any) -> PCESettings:
        """Validate explicit values without reading the environment.

        Used for entries written to the config file.

        Raises:
            ConfigError: If the values are invalid.
        """
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid PCE settings: {e}") from e

    @property
    def base_url(self) -> str:
        """Base URL of the PCE REST API."""
        return f"https://{self.fqdn}:{self.port}/api/v2"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage in the config file."""
        return self.model_dump(exclude={"name"})


class PCEConfigStore:
    """Named PCE entries persisted as JSON.

    Example:
        >>> store = PCEConfigStore()
        >>> store.add(PCESettings(name="lab", fqdn="pce.lab.local"), default=True)
        >>> store.save("pce.json")
        >>> PCEConfigStore.load("pce.json").get().fqdn
        'pce.lab.local'
    """

    def __init__(self) -> None:
        self.default_pce_name: str | None = None
        self._pces: dict[str, dict[str, Any]] = {}

    def add(self, settings: PCESettings, default: bool = False) -> None:
        """Add or replace a PCE entry.

        The first entry added becomes the default when none is set.
        """
        self._pces[settings.name] = settings.to_dict()
        if default or self.default_pce_name is None:
            self.default_pce_name = settings.name

    def names(self) -> list[str]:
        return sorted(self._pces)

    def get(self, name: str | None = None) -> PCESettings:
        """Resolve a PCE entry, applying environment overrides.

        Args:
            name: Stored PCE name. Uses the default PCE when omitted.

        Returns:
            Validated settings for the PCE.

        Raises:
            ConfigError: If the PCE is unknown or the settings are incomplete.
        """
        pce_name = name or self.default_pce_name
        if pce_name is None:
            # Nothing stored; allow a fully environment-driven configuration.
            if not os.environ.get("WORKLOADER_FQDN"):
                raise ConfigError(
                    "No PCE configured. Run 'workloader pce-add' or set WORKLOADER_FQDN."
                )
            values: dict[str, Any] = {}
        elif pce_name in self._pces:
            values = dict(self._pces[pce_name])
            values["name"] = pce_name
        else:
            raise ConfigError(
                f"PCE '{pce_name}' not found in configuration. Known PCEs: {self.names()}"
            )

        try:
            return PCESettings(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration for PCE '{pce_name}': {e}") from e

    def save(self, path: str | Path) -> None:
        """Write all entries to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "version": CONFIG_VERSION,
            "default_pce_name": self.default_pce_name,
            "pces": self._pces,
        }

        with path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)

    @classmethod
    def load(cls, path: str | Path) -> PCEConfigStore:
        """Load entries from a JSON file.

        A missing file yields an empty store.

        Raises:
            ConfigError: If the file is not a valid config file.
        """
        path = Path(path)
        store = cls()
        if not path.exists():
            return store

        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(
                f"Invalid config file format: expected dict, got {type(data).__name__}"
            )

        version = data.get("version")
        if version != CONFIG_VERSION:
            raise ConfigError(f"Unsupported config file version: {version}")

        pces = data.get("pces")
        if not isinstance(pces, dict):
            raise ConfigError("Invalid config file format: missing or invalid 'pces' field")

        store._pces = {name: dict(values) for name, values in pces.items()}
        store.default_pce_name = data.get("default_pce_name")
        return store
