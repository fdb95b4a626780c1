"""
Cloud credential providers handed to the DNS plugin and the secret store.

The orchestrator never reaches for an ambient login session itself: it is
given a CredentialProvider and passes the resulting TokenCredential along
without looking inside it.
"""
from __future__ import annotations

import base64
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)

_DEFAULT_TOKEN_LIFETIME = 3600

ARM_AUDIENCE = "https://management.azure.com"
KEY_VAULT_AUDIENCE = "https://vault.azure.net"

# Older ARM tokens carry the classic service URL as their audience
_AUDIENCE_ALIASES = {"https://management.core.windows.net": ARM_AUDIENCE}


class CredentialProvider(ABC):
    @abstractmethod
    def get_credential(self) -> TokenCredential:
        """Return a credential usable by Azure SDK clients."""


class DefaultCredentialProvider(CredentialProvider):
    """azure-identity's credential chain: environment, managed identity, Azure CLI, ..."""

    def __init__(self) -> None:
        self._credential: Optional[DefaultAzureCredential] = None

    def get_credential(self) -> TokenCredential:
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        return self._credential


class StaticTokenCredential:
    """
    TokenCredential around bearer tokens acquired by someone else.

    A bearer token is only valid for one audience, so the tokens are keyed by
    audience and picked by the requested scope.  A scope without a token, or
    a JWT whose ``aud`` claim names another audience, raises
    ClientAuthenticationError before the request is sent.
    """

    def __init__(self, tokens: Dict[str, str], expires_on: Optional[int] = None) -> None:
        self._tokens: Dict[str, AccessToken] = {}
        for audience, token in tokens.items():
            if token:
                expiry = expires_on or _jwt_expiry(token) or int(time.time()) + _DEFAULT_TOKEN_LIFETIME
                self._tokens[_audience(audience)] = AccessToken(token, expiry)

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        if not scopes:
            raise ClientAuthenticationError("get_token() needs a scope to select the access token")
        audience = _audience(scopes[0])
        token = self._tokens.get(audience)
        if token is None:
            raise ClientAuthenticationError(f"No pre-acquired access token for {audience}")
        claimed = _jwt_claims(token.token).get("aud")
        if isinstance(claimed, str) and claimed.startswith("https://") and _audience(claimed) != audience:
            raise ClientAuthenticationError(
                f"Access token for {audience} was issued for {claimed}"
            )
        return token


class StaticTokenCredentialProvider(CredentialProvider):
    def __init__(self, tokens: Dict[str, str]) -> None:
        if not any(tokens.values()):
            raise ValueError("StaticTokenCredentialProvider needs at least one token")
        self._credential = StaticTokenCredential(tokens)

    def get_credential(self) -> TokenCredential:
        return self._credential


def _audience(scope: str) -> str:
    """'https://vault.azure.net/.default' → 'https://vault.azure.net'."""
    resource = scope.removesuffix("/.default").rstrip("/").lower()
    return _AUDIENCE_ALIASES.get(resource, resource)


def _jwt_claims(token: str) -> dict:
    """Claims of a JWT access token, or {} if it is not a readable JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        return {}
    return claims if isinstance(claims, dict) else {}


def _jwt_expiry(token: str) -> Optional[int]:
    exp = _jwt_claims(token).get("exp")
    return int(exp) if isinstance(exp, (int, float)) else None


def make_credential_provider(settings: "Settings") -> CredentialProvider:
    tokens = {
        ARM_AUDIENCE: settings.AZURE_ACCESS_TOKEN,
        KEY_VAULT_AUDIENCE: settings.AZURE_KEYVAULT_ACCESS_TOKEN,
    }
    if any(tokens.values()):
        logger.info("Using pre-acquired Azure access tokens for %s", ", ".join(a for a, t in tokens.items() if t))
        return StaticTokenCredentialProvider(tokens)
    return DefaultCredentialProvider()
