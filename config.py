"""
Application configuration via Pydantic Settings.

All values can be overridden by environment variables or a .env file.  A
named environment profile (e.g. PRODUCTION) reads the same settings under an
env prefix: ``PRODUCTION_ACME_CONTACT``, ``PRODUCTION_CERTIFICATE_NAMES``, ...
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from storage.naming import (
    certificate_name,
    certificate_name_token,
    parse_certificate_names,
    resolve_directory,
)
from storage.secret_store import parse_vault_resource_id


class _SeparatedListFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings calls json.loads() on complex-typed fields (List[str])
    before field validators run.  ``example.com;*.example.com`` is not JSON
    and would raise SettingsError before parse_certificate_names() could
    split it, so hand the raw string through instead.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _SeparatedListEnvSource(_SeparatedListFallbackMixin, EnvSettingsSource):
    pass


class _SeparatedListDotEnvSource(_SeparatedListFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── ACME ───────────────────────────────────────────────────────────────
    # Shortcut (LE_STAGE, LE_PROD, ZEROSSL_PROD, ...) or a directory URL
    ACME_DIRECTORY: str = "LE_STAGE"
    ACME_CONTACT: str
    CERTIFICATE_NAMES: List[str]
    FORCE_RENEWAL: bool = False
    CERT_KEY_TYPE: Literal["rsa2048", "rsa4096", "ec256"] = "rsa2048"

    # EAB (ZeroSSL, Google Trust Services)
    ACME_EAB_KEY_ID: str = ""
    ACME_EAB_HMAC_KEY: str = ""

    # Resolved from ACME_DIRECTORY, not meant to be set directly
    ACME_DIRECTORY_URL: str = ""
    ACME_DIRECTORY_TOKEN: str = ""

    # ── Secret store (Azure Key Vault) ─────────────────────────────────────
    KEY_VAULT_RESOURCE_ID: str = ""
    KEY_VAULT_URL: str = ""

    # ── DNS-01 (Azure DNS) ─────────────────────────────────────────────────
    AZURE_SUBSCRIPTION_ID: str = ""      # defaults to the Key Vault's subscription
    AZURE_DNS_RESOURCE_GROUP: str = ""   # empty = search every zone in the subscription
    # Pre-acquired bearer tokens, one per audience; both empty = DefaultAzureCredential
    AZURE_ACCESS_TOKEN: str = ""            # Azure Resource Manager (DNS zones)
    AZURE_KEYVAULT_ACCESS_TOKEN: str = ""   # Key Vault data plane
    DNS_PROPAGATION_WAIT_SECONDS: int = 120

    # ── Local paths ────────────────────────────────────────────────────────
    STATE_DIR: str = ""                  # empty = run-scoped temporary directory
    CERT_OUTPUT_PATH: str = "./certs"
    PFX_PASSWORD: str = ""

    # ── ACME TLS (for testing against Pebble / self-signed CAs) ───────────
    ACME_CA_BUNDLE: str = ""
    ACME_INSECURE: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Carry over a runtime _env_prefix (environment profiles)
        return (
            init_settings,
            _SeparatedListEnvSource(settings_cls, env_prefix=env_settings.env_prefix),
            _SeparatedListDotEnvSource(
                settings_cls,
                env_file=dotenv_settings.env_file,
                env_prefix=dotenv_settings.env_prefix,
            ),
            file_secret_settings,
        )

    @field_validator("CERTIFICATE_NAMES", mode="before")
    @classmethod
    def parse_names(cls, v: object) -> List[str]:
        """Accept a ',' / ';' separated string or a list."""
        if isinstance(v, (str, list, tuple)):
            return parse_certificate_names(v)
        return v  # type: ignore[return-value]

    @field_validator("CERTIFICATE_NAMES")
    @classmethod
    def validate_secret_naming(cls, v: List[str]) -> List[str]:
        # The first name must form a Key Vault secret name
        certificate_name_token(certificate_name(v))
        return v

    @field_validator("ACME_CONTACT")
    @classmethod
    def validate_contact(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("mailto:"):
            v = v[len("mailto:"):]
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError(f"ACME_CONTACT must be an e-mail address, got {v!r}")
        return v

    @field_validator("DNS_PROPAGATION_WAIT_SECONDS")
    @classmethod
    def validate_wait(cls, v: int) -> int:
        if v < 0:
            raise ValueError("DNS_PROPAGATION_WAIT_SECONDS must not be negative")
        return v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        self.ACME_DIRECTORY_URL, self.ACME_DIRECTORY_TOKEN = resolve_directory(self.ACME_DIRECTORY)
        return self

    @model_validator(mode="after")
    def resolve_key_vault(self) -> "Settings":
        if not self.KEY_VAULT_URL and not self.KEY_VAULT_RESOURCE_ID:
            raise ValueError("Either KEY_VAULT_RESOURCE_ID or KEY_VAULT_URL must be set")
        if self.KEY_VAULT_RESOURCE_ID:
            parts = parse_vault_resource_id(self.KEY_VAULT_RESOURCE_ID)
            if not self.AZURE_SUBSCRIPTION_ID:
                self.AZURE_SUBSCRIPTION_ID = parts["subscription"]
        if not self.AZURE_SUBSCRIPTION_ID:
            raise ValueError(
                "AZURE_SUBSCRIPTION_ID must be set when the Key Vault is given by URL"
            )
        return self


def load_settings(environment: Optional[str] = None, **overrides) -> Settings:
    """
    Build Settings, optionally for a named environment profile.

    *overrides* (e.g. from the command line) take precedence over the
    environment; keys that are None are ignored.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    if environment:
        return Settings(_env_prefix=f"{environment.upper()}_", **values)
    return Settings(**values)
