"""
Certificate artifact output.

Directory layout per certificate:
  <output_path>/<certname-token>/
      cert.pem        — Leaf certificate
      chain.pem       — Intermediate CA chain
      fullchain.pem   — cert + chain (nginx uses this)
      privkey.pem     — Private key (mode 0o600)
      cert.pfx        — PKCS#12 bundle for a Key Vault certificate import (mode 0o600)
      metadata.json   — Issued/expires/order metadata

All writes are atomic: temp file + fsync + atomic rename.
"""
from __future__ import annotations

import json
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from acmeclient.crypto import parse_validity, renew_after
from storage.atomic import atomic_write_bytes, atomic_write_text
from storage.naming import certificate_name_token

_OWNER_ONLY = stat.S_IRUSR | stat.S_IWUSR  # 0o600


def cert_dir(output_path: str | Path, cert_name: str) -> Path:
    """Return the Path for a certificate's artifact directory (creates it if needed)."""
    p = Path(output_path) / certificate_name_token(cert_name)
    p.mkdir(parents=True, exist_ok=True)
    return p


def write_cert_files(
    output_path: str | Path,
    cert_name: str,
    domains: List[str],
    cert_pem: str,
    chain_pem: str,
    privkey_pem: str,
    pfx: bytes,
    acme_order_url: str = "",
) -> Dict[str, str]:
    """
    Write every artifact for *cert_name* and return the metadata dict
    (issued_at, not_before, expires_at, renew_after, acme_order_url, domains).
    """
    d = cert_dir(output_path, cert_name)

    atomic_write_text(d / "cert.pem", cert_pem)
    atomic_write_text(d / "chain.pem", chain_pem)
    atomic_write_text(d / "fullchain.pem", cert_pem + chain_pem)
    atomic_write_text(d / "privkey.pem", privkey_pem, mode=_OWNER_ONLY)
    atomic_write_bytes(d / "cert.pfx", pfx, mode=_OWNER_ONLY)

    not_before, not_after = parse_validity(cert_pem)
    metadata = {
        "issued_at": datetime.now(tz=timezone.utc).isoformat(),
        "not_before": not_before.isoformat(),
        "expires_at": not_after.isoformat(),
        "renew_after": renew_after(not_before, not_after).isoformat(),
        "acme_order_url": acme_order_url,
        "domains": ",".join(domains),
    }
    atomic_write_text(d / "metadata.json", json.dumps(metadata, indent=2))

    return metadata
