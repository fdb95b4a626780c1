"""
Secret store adapter — the durable home of all ACME client state.

Provides:
  SecretStore (ABC)
      get_secret(name) -> str | None   (None = absent, never raises on absence)
      put_secret(name, value)          (creates a new version)

  KeyVaultSecretStore — Azure Key Vault backed implementation
                        (azure-keyvault-secrets)

  vault_url_from_resource_id(resource_id) -> str
  make_secret_store(settings, credential) -> SecretStore

Any failure other than "not found" is raised as SecretStoreError and aborts
the run; retries belong to whatever schedules the run.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.keyvault.secrets import SecretClient

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

    from config import Settings

logger = logging.getLogger(__name__)

_VAULT_RESOURCE_ID = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)"
    r"/resourceGroups/(?P<resource_group>[^/]+)"
    r"/providers/Microsoft\.KeyVault/vaults/(?P<vault>[^/]+)/?$",
    re.IGNORECASE,
)


class SecretStoreError(Exception):
    """Raised when the secret store cannot be read or written."""


class SecretStore(ABC):
    """Key/value store of opaque string secrets."""

    @abstractmethod
    def get_secret(self, name: str) -> Optional[str]:
        """Return the current value of *name*, or None if it does not exist."""

    @abstractmethod
    def put_secret(self, name: str, value: str) -> None:
        """Create *name* or add a new version holding *value*."""


class KeyVaultSecretStore(SecretStore):
    """SecretStore backed by Azure Key Vault secrets."""

    content_type = "application/json"

    def __init__(self, vault_url: str, credential: "TokenCredential") -> None:
        self.vault_url = vault_url
        self._client = SecretClient(vault_url=vault_url, credential=credential)

    def get_secret(self, name: str) -> Optional[str]:
        try:
            secret = self._client.get_secret(name)
        except ResourceNotFoundError:
            logger.debug("Secret %s not found in %s", name, self.vault_url)
            return None
        except AzureError as exc:
            raise SecretStoreError(f"Failed to read secret {name} from {self.vault_url}: {exc}") from exc
        return secret.value if secret.value is not None else ""

    def put_secret(self, name: str, value: str) -> None:
        try:
            self._client.set_secret(name, value, content_type=self.content_type)
        except AzureError as exc:
            raise SecretStoreError(f"Failed to write secret {name} to {self.vault_url}: {exc}") from exc
        logger.info("Stored new version of secret %s", name)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def parse_vault_resource_id(resource_id: str) -> dict:
    """Split a Key Vault resource ID into subscription, resource_group and vault."""
    match = _VAULT_RESOURCE_ID.match(resource_id.strip())
    if not match:
        raise ValueError(
            f"Not a Key Vault resource ID: {resource_id!r} "
            "(expected /subscriptions/<id>/resourceGroups/<rg>/providers/Microsoft.KeyVault/vaults/<name>)"
        )
    return match.groupdict()


def vault_url_from_resource_id(resource_id: str) -> str:
    """'/subscriptions/…/vaults/my-vault' → 'https://my-vault.vault.azure.net/'."""
    vault = parse_vault_resource_id(resource_id)["vault"]
    return f"https://{vault.lower()}.vault.azure.net/"


def make_secret_store(settings: "Settings", credential: "TokenCredential") -> SecretStore:
    """Build the configured secret store (explicit KEY_VAULT_URL wins)."""
    vault_url = settings.KEY_VAULT_URL or vault_url_from_resource_id(settings.KEY_VAULT_RESOURCE_ID)
    return KeyVaultSecretStore(vault_url=vault_url, credential=credential)
