"""Configuration management - loads license.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from iap_license.models import (
    LicenseConfig,
    ProductDefinition,
    ServiceSettings,
    StorageSettings,
    TokenSettings,
    LedgerSettings,
    VerifierSettings,
    HeaderSettings,
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader.

    Loads license.yaml and provides validated access to:
    - The accepted app identity and tenant
    - The product catalog
    - Token, ledger, storage and verifier settings
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to license.yaml. Falls back to the CONFIG_PATH env var,
                        then ./config/license.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._license_config: Optional[LicenseConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/license.yaml")

    def _load_config(self) -> None:
        """Load and validate license.yaml."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/license.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._license_config = LicenseConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")

    @property
    def settings(self) -> LicenseConfig:
        """Validated configuration."""
        if self._license_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._license_config

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def service(self) -> ServiceSettings:
        return self.settings.service

    @property
    def products(self) -> list[ProductDefinition]:
        return self.settings.products

    @property
    def tokens(self) -> TokenSettings:
        return self.settings.tokens

    @property
    def ledger(self) -> LedgerSettings:
        return self.settings.ledger

    @property
    def storage(self) -> StorageSettings:
        return self.settings.storage

    @property
    def verifier(self) -> VerifierSettings:
        return self.settings.verifier

    @property
    def headers(self) -> HeaderSettings:
        return self.settings.headers

    @property
    def package_name(self) -> str:
        """Android package name whose purchases are accepted (e.g. "com.autoplus.divisibill")."""
        return self.settings.service.package_name

    @property
    def table_prefix(self) -> str:
        """Table name prefix; debug deployments use separate tables."""
        prefix = self.settings.storage.table_prefix
        return f"{prefix}Debug" if self.settings.service.debug else prefix

    def play_credential(self) -> Optional[str]:
        """Base64 service-account JSON for the Android Publisher API, if configured."""
        return os.getenv(self.settings.verifier.credential_env) or None

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()
