"""
Account and order documents as persisted in the local cache and the secret
store.

The raw JSON text is the authoritative representation: reconciliation
compares it byte-for-byte, so documents are only re-rendered when something
in them actually changed.  The dataclasses below are read-only views parsed
out of that text.

acct.json
  {"id", "status", "contact": ["mailto:…"], "location", "key": {private JWK}, "alg"}

order.json
  {"name", "main_domain", "san", "location", "status", "expires",
   "authorizations", "finalize", "certificate", "key_type",
   "cert_expires", "renew_after"}
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlparse

from josepy.jwk import JWKRSA

from acmeclient import jws as jwslib

MAILTO = "mailto:"

# Order states in which a previously created order can still be driven to
# completion with a freshly generated certificate key.
RESUMABLE_ORDER_STATES = ("pending", "ready")

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def render_document(doc: dict) -> str:
    """Serialize a record document the same way every time."""
    return json.dumps(doc, indent=2) + "\n"


def _load_document(raw: str, kind: str) -> dict:
    try:
        doc = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{kind} document is not valid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise ValueError(f"{kind} document must be a JSON object, got {type(doc).__name__}")
    return doc


# ─── URL helpers ──────────────────────────────────────────────────────────────


def account_id_from_url(account_url: str) -> str:
    """'https://ca/acme/acct/123456' → '123456'."""
    segments = [s for s in urlparse(account_url).path.split("/") if s]
    if not segments:
        raise ValueError(f"Cannot derive an account id from {account_url!r}")
    return segments[-1]


def order_account_binding(order_url: str) -> Optional[str]:
    """
    Account id embedded in an order URL, e.g.
    'https://ca/acme/order/123456/789' → '123456'.

    Returns None when the server does not put the account id into its order
    URLs; such orders can never be proven to belong to the active account.
    """
    segments = [s for s in urlparse(order_url or "").path.split("/") if s]
    for i, segment in enumerate(segments[:-2]):
        if segment == "order":
            return segments[i + 1]
    return None


# ─── Account ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    contact: str
    location: str
    status: str
    key: dict = field(repr=False)
    raw_document: str = field(repr=False)

    @classmethod
    def parse(cls, raw: str) -> "AccountRecord":
        """Parse acct.json.  Raises ValueError on anything unusable."""
        doc = _load_document(raw, "Account")

        account_id = doc.get("id")
        location = doc.get("location")
        key = doc.get("key")
        if not account_id or not isinstance(account_id, str):
            raise ValueError("Account document has no 'id'")
        if not location or not isinstance(location, str):
            raise ValueError("Account document has no 'location'")
        if not isinstance(key, dict):
            raise ValueError("Account document has no 'key'")
        # Fails loudly on a truncated or foreign key rather than at signing time
        jwslib.account_key_from_json(key)

        contacts = doc.get("contact") or []
        if isinstance(contacts, str):
            contacts = [contacts]
        contact = contacts[0] if contacts else ""
        if contact.startswith(MAILTO):
            contact = contact[len(MAILTO):]

        return cls(
            account_id=account_id,
            contact=contact,
            location=location,
            status=doc.get("status", "valid"),
            key=key,
            raw_document=raw,
        )

    @property
    def document(self) -> dict:
        return json.loads(self.raw_document)

    def account_key(self) -> JWKRSA:
        return jwslib.account_key_from_json(self.key)


def new_account_document(account_key: JWKRSA, account_url: str, contact: str, body: dict) -> str:
    """Render acct.json for a freshly registered account."""
    return render_document({
        "id": account_id_from_url(account_url),
        "status": body.get("status", "valid"),
        "contact": body.get("contact") or [MAILTO + contact],
        "location": account_url,
        "key": jwslib.account_key_to_json(account_key),
        "alg": "RS256",
    })


def updated_account_document(record: AccountRecord, body: dict, contact: str) -> str:
    """Render acct.json after a contact update; id and key are retained."""
    doc = record.document
    doc["contact"] = body.get("contact") or [MAILTO + contact]
    doc["status"] = body.get("status", doc.get("status", "valid"))
    return render_document(doc)


# ─── Order ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OrderRecord:
    certificate_name: str
    domains: List[str]
    location: str
    status: str
    expires: Optional[str]
    renew_after: Optional[str]
    raw_document: str = field(repr=False)

    @classmethod
    def parse(cls, raw: str) -> "OrderRecord":
        """Parse order.json.  Raises ValueError on anything unusable."""
        doc = _load_document(raw, "Order")

        name = doc.get("name")
        main_domain = doc.get("main_domain")
        location = doc.get("location")
        if not name or not main_domain or not location:
            raise ValueError("Order document needs 'name', 'main_domain' and 'location'")
        san = doc.get("san") or []
        if not isinstance(san, list):
            raise ValueError("Order document 'san' must be a list")

        return cls(
            certificate_name=name,
            domains=list(dict.fromkeys([main_domain] + san)),
            location=location,
            status=doc.get("status", "pending"),
            expires=doc.get("expires"),
            renew_after=doc.get("renew_after"),
            raw_document=raw,
        )

    @property
    def account_binding(self) -> Optional[str]:
        return order_account_binding(self.location)

    def belongs_to(self, account_id: Optional[str]) -> bool:
        binding = self.account_binding
        return bool(account_id) and binding is not None and binding == account_id

    @property
    def document(self) -> dict:
        return json.loads(self.raw_document)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when the server-side order has expired (or the date is unknown)."""
        expires = parse_timestamp(self.expires)
        if expires is None:
            return True
        return expires <= (now or datetime.now(tz=timezone.utc))

    def renewal_due(self, now: Optional[datetime] = None) -> bool:
        renew_after = parse_timestamp(self.renew_after)
        if renew_after is None:
            return True
        return renew_after <= (now or datetime.now(tz=timezone.utc))


def new_order_document(
    cert_name: str,
    domains: List[str],
    order_url: str,
    body: dict,
    key_type: str,
) -> str:
    """Render order.json for an order just created or fetched from the server."""
    return render_document({
        "name": cert_name,
        "main_domain": domains[0],
        "san": domains[1:],
        "location": order_url,
        "status": body.get("status", "pending"),
        "expires": body.get("expires"),
        "authorizations": body.get("authorizations", []),
        "finalize": body.get("finalize", ""),
        "certificate": body.get("certificate"),
        "key_type": key_type,
        "cert_expires": None,
        "renew_after": None,
    })


def updated_order_document(raw: str, **changes) -> str:
    doc = _load_document(raw, "Order")
    doc.update(changes)
    return render_document(doc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp ('…Z' accepted); None if missing or bad."""
    if not value:
        return None
    # Some CAs send nanosecond precision; datetime stops at microseconds
    value = _EXCESS_FRACTION.sub(r"\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
