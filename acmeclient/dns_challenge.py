"""
DNS-01 challenge support.

Provides:
  compute_dns_txt_value(key_authorization) -> str
      base64url(SHA-256(key_authorization)), the _acme-challenge TXT value

  DnsProvider (ABC)
      Interface every DNS provider implementation must satisfy.

  AzureDnsProvider — Azure DNS via azure-mgmt-dns

  make_dns_provider(settings, credential) -> DnsProvider

DNS-01 protocol (RFC 8555 §8.4):
  1. key_authorization = token + "." + jwk_thumbprint
  2. TXT record value = base64url(SHA-256(key_authorization))
  3. DNS name = _acme-challenge.{domain}   (wildcard "*." prefix dropped)
  4. Create record → wait for propagation → POST challenge URL → poll
"""
from __future__ import annotations

import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional, Tuple

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.dns import DnsManagementClient
from azure.mgmt.dns.models import RecordSet, TxtRecord

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

    from config import Settings

logger = logging.getLogger(__name__)

CHALLENGE_LABEL = "_acme-challenge"


class DnsProviderError(Exception):
    """Raised when a TXT record cannot be created."""


def compute_dns_txt_value(key_authorization: str) -> str:
    """Return base64url(SHA-256(key_authorization)) with no padding."""
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class DnsProvider(ABC):
    """Abstract base for DNS-01 TXT record management."""

    @abstractmethod
    def create_txt_record(self, domain: str, txt_value: str) -> None:
        """Add *txt_value* to _acme-challenge.<domain>.

        Must keep values that are already present: a certificate for
        example.com and *.example.com needs two values on the same name.
        """

    @abstractmethod
    def delete_txt_record(self, domain: str, txt_value: str) -> None:
        """Remove *txt_value* from _acme-challenge.<domain>.

        Best-effort — a missing record is not an error.
        """

    @staticmethod
    def _acme_record_name(domain: str) -> str:
        if domain.startswith("*."):
            domain = domain[2:]
        return f"{CHALLENGE_LABEL}.{domain}"


# ─── Azure DNS ────────────────────────────────────────────────────────────────


class AzureDnsProvider(DnsProvider):
    """
    DNS-01 provider backed by Azure DNS.

    The hosting zone is found by longest-suffix match over the zones visible
    in the subscription (or only those in *resource_group* when given).
    """

    ttl = 60

    def __init__(
        self,
        credential: "TokenCredential",
        subscription_id: str,
        resource_group: str = "",
        client: Optional[DnsManagementClient] = None,
    ) -> None:
        if not subscription_id:
            raise ValueError("AzureDnsProvider needs a subscription id")
        self._client = client or DnsManagementClient(credential, subscription_id)
        self._resource_group = resource_group
        self._zones: Optional[List[Tuple[str, str]]] = None  # (zone_name, resource_group)

    # ── Zone discovery ────────────────────────────────────────────────────

    def _list_zones(self) -> List[Tuple[str, str]]:
        if self._zones is None:
            if self._resource_group:
                zones = self._client.zones.list_by_resource_group(self._resource_group)
            else:
                zones = self._client.zones.list()
            self._zones = [(z.name.lower().rstrip("."), _resource_group_from_id(z.id)) for z in zones]
            logger.debug("Discovered %d Azure DNS zone(s)", len(self._zones))
        return self._zones

    def _resolve_zone(self, domain: str) -> Tuple[str, str, str]:
        """Return (resource_group, zone_name, relative_record_name)."""
        fqdn = self._acme_record_name(domain).lower()
        candidates = [
            (zone, rg)
            for zone, rg in self._list_zones()
            if fqdn == zone or fqdn.endswith("." + zone)
        ]
        if not candidates:
            raise DnsProviderError(f"No Azure DNS zone found for {domain}")
        zone, rg = max(candidates, key=lambda c: len(c[0]))
        relative = "@" if fqdn == zone else fqdn[: -len(zone) - 1]
        return rg, zone, relative

    def _existing_values(self, rg: str, zone: str, relative: str) -> List[str]:
        try:
            record_set = self._client.record_sets.get(
                resource_group_name=rg,
                zone_name=zone,
                relative_record_set_name=relative,
                record_type="TXT",
            )
        except ResourceNotFoundError:
            return []
        values: List[str] = []
        for record in record_set.txt_records or []:
            values.extend(record.value or [])
        return values

    # ── DnsProvider ───────────────────────────────────────────────────────

    def create_txt_record(self, domain: str, txt_value: str) -> None:
        rg, zone, relative = self._resolve_zone(domain)
        values = self._existing_values(rg, zone, relative)
        if txt_value in values:
            logger.debug("TXT %s.%s already holds the value — skipping create", relative, zone)
            return
        values.append(txt_value)

        try:
            self._client.record_sets.create_or_update(
                resource_group_name=rg,
                zone_name=zone,
                relative_record_set_name=relative,
                record_type="TXT",
                parameters=RecordSet(ttl=self.ttl, txt_records=[TxtRecord(value=[v]) for v in values]),
            )
        except HttpResponseError as exc:
            raise DnsProviderError(f"Failed to add TXT record for {domain}: {exc}") from exc
        logger.info("Created Azure DNS TXT record %s.%s", relative, zone)

    def delete_txt_record(self, domain: str, txt_value: str) -> None:
        try:
            rg, zone, relative = self._resolve_zone(domain)
            remaining = [v for v in self._existing_values(rg, zone, relative) if v != txt_value]
            if remaining:
                self._client.record_sets.create_or_update(
                    resource_group_name=rg,
                    zone_name=zone,
                    relative_record_set_name=relative,
                    record_type="TXT",
                    parameters=RecordSet(ttl=self.ttl, txt_records=[TxtRecord(value=[v]) for v in remaining]),
                )
            else:
                self._client.record_sets.delete(
                    resource_group_name=rg,
                    zone_name=zone,
                    relative_record_set_name=relative,
                    record_type="TXT",
                )
            logger.info("Removed Azure DNS TXT value from %s.%s", relative, zone)
        except (DnsProviderError, HttpResponseError) as exc:
            logger.warning("Failed to delete Azure DNS TXT record for %s: %s", domain, exc)


def _resource_group_from_id(resource_id: str) -> str:
    """'/subscriptions/<sub>/resourceGroups/<rg>/providers/…' → '<rg>'."""
    parts = resource_id.split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    raise DnsProviderError(f"Cannot read resource group from zone id {resource_id!r}")


def make_dns_provider(settings: "Settings", credential: "TokenCredential") -> DnsProvider:
    """Instantiate the DNS-01 provider for the configured subscription."""
    return AzureDnsProvider(
        credential=credential,
        subscription_id=settings.AZURE_SUBSCRIPTION_ID,
        resource_group=settings.AZURE_DNS_RESOURCE_GROUP,
    )
