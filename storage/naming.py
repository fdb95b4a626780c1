"""
Naming rules shared by the local state cache and the secret store.

  ACME directory  → <directory-token>         "LE_STAGE" → "le-stage"
  domain list     → certificate name          "*.example.com, example.com" → "!.example.com"
  certificate name → <certname-token>         "!.example.com" → "wildcard-example-com"

Secret names:
  acme-<directory-token>-acct-json
  acme-<directory-token>-<certname-token>-order-json

Azure Key Vault only accepts [0-9a-zA-Z-] in secret names, which is why every
token is squeezed into that alphabet.

The mapping is not injective: "!.example.com" and "wildcard.example.com" both
become "wildcard-example-com" and so share one order secret.  The order
document records its certificate name, and order_rehydrator discards (with a
warning) an order written for the other certificate; runs alternating between
the two always reissue and overwrite each other's order.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Tuple
from urllib.parse import urlparse

# Well-known ACME directories, keyed by the shortcut names accepted in config.
DIRECTORY_SHORTCUTS = {
    "LE_PROD": "https://acme-v02.api.letsencrypt.org/directory",
    "LE_STAGE": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "ZEROSSL_PROD": "https://acme.zerossl.com/v2/DV90",
    "BUYPASS_PROD": "https://api.buypass.com/acme/directory",
    "BUYPASS_TEST": "https://api.test4.buypass.no/acme/directory",
    "GOOGLE_PROD": "https://dv.acme-v02.api.pki.goog/directory",
    "GOOGLE_STAGE": "https://dv.acme-v02.test-api.pki.goog/directory",
}

WILDCARD_MARKER = "*"
WILDCARD_NAME_MARKER = "!"
WILDCARD_TOKEN = "wildcard"

_SEPARATORS = re.compile(r"[,;]")
_UNSAFE = re.compile(r"[^a-z0-9]+")


# ─── ACME directory ───────────────────────────────────────────────────────────


def resolve_directory(value: str) -> Tuple[str, str]:
    """
    Return (directory_url, directory_token) for a shortcut name or a URL.

    A URL that matches a known shortcut gets the shortcut's token, so
    "LE_STAGE" and the Let's Encrypt staging URL share the same secrets.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("ACME directory must not be empty")

    shortcut = raw.upper()
    if shortcut in DIRECTORY_SHORTCUTS:
        return DIRECTORY_SHORTCUTS[shortcut], _shortcut_token(shortcut)

    parsed = urlparse(raw)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(
            f"Unknown ACME directory {raw!r}: use one of "
            f"{', '.join(sorted(DIRECTORY_SHORTCUTS))} or an https:// URL"
        )

    for name, url in DIRECTORY_SHORTCUTS.items():
        if url.rstrip("/") == raw.rstrip("/"):
            return url, _shortcut_token(name)

    return raw, directory_token_for_url(raw)


def directory_token_for_url(url: str) -> str:
    """Lowercase host + path with every unsafe run collapsed into '-'."""
    parsed = urlparse(url)
    token = _UNSAFE.sub("-", f"{parsed.netloc}{parsed.path}".lower()).strip("-")
    if not token:
        raise ValueError(f"Cannot derive a directory token from {url!r}")
    return token


def _shortcut_token(shortcut: str) -> str:
    return shortcut.lower().replace("_", "-")


# ─── Domain list / certificate name ──────────────────────────────────────────


def parse_certificate_names(value: str | Iterable[str]) -> List[str]:
    """
    Split a ',' or ';' separated domain list, trimming whitespace.

    Order is preserved (the first entry is the certificate identity) and
    empty entries such as a trailing comma are dropped.  Duplicates keep
    their first position.
    """
    if isinstance(value, str):
        parts: Iterable[str] = _SEPARATORS.split(value)
    else:
        parts = (p for item in value for p in _SEPARATORS.split(item))

    domains = [p.strip().lower() for p in parts if p and p.strip()]
    domains = list(dict.fromkeys(domains))
    if not domains:
        raise ValueError("At least one certificate name is required")
    return domains


def certificate_name(domains: List[str]) -> str:
    """Canonical certificate identity: the first domain, '*' mapped to '!'."""
    if not domains:
        raise ValueError("Cannot derive a certificate name from an empty domain list")
    main = domains[0]
    if main.startswith(WILDCARD_MARKER):
        return WILDCARD_NAME_MARKER + main[len(WILDCARD_MARKER):]
    return main


def domain_for_certificate_name(name: str) -> str:
    """Inverse of certificate_name() for the main domain."""
    if name.startswith(WILDCARD_NAME_MARKER):
        return WILDCARD_MARKER + name[len(WILDCARD_NAME_MARKER):]
    return name


def certificate_name_token(name: str) -> str:
    """'!.example.com' → 'wildcard-example-com'."""
    token = name.replace(WILDCARD_NAME_MARKER, WILDCARD_TOKEN).replace(".", "-")
    if not re.fullmatch(r"[0-9a-zA-Z-]+", token):
        raise ValueError(f"Certificate name {name!r} cannot be used in a secret name")
    return token


# ─── Secret names ────────────────────────────────────────────────────────────


def account_secret_name(directory_token: str) -> str:
    return f"acme-{directory_token}-acct-json"


def order_secret_name(directory_token: str, cert_name: str) -> str:
    return f"acme-{directory_token}-{certificate_name_token(cert_name)}-order-json"
