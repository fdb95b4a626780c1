"""
Run-scoped working copy of the ACME client state.

Directory layout (root is passed in explicitly, never read from the
environment):

  <root>/<directory-token>/<account-id>/acct.json
  <root>/<directory-token>/<account-id>/<cert-name>/order.json
  <root>/<directory-token>/<account-id>/<cert-name>/privkey.pem

The cache is exclusively owned by one orchestrator invocation.  It is
populated from the secret store, mutated by the ACME flow and then diffed
back by the reconciliation step.
"""
from __future__ import annotations

import re
import stat
from pathlib import Path
from typing import Optional

from storage.atomic import atomic_write_text

ACCOUNT_FILE = "acct.json"
ORDER_FILE = "order.json"
PRIVKEY_FILE = "privkey.pem"

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9!._-]+$")


class LocalStateCache:
    def __init__(self, root: str | Path, directory_token: str) -> None:
        self.root = Path(root)
        self.directory_token = _segment(directory_token)

    @property
    def server_dir(self) -> Path:
        return self.root / self.directory_token

    # ── Paths ─────────────────────────────────────────────────────────────

    def account_dir(self, account_id: str) -> Path:
        return self.server_dir / _segment(account_id)

    def account_path(self, account_id: str) -> Path:
        return self.account_dir(account_id) / ACCOUNT_FILE

    def order_dir(self, account_id: str, cert_name: str) -> Path:
        return self.account_dir(account_id) / _segment(cert_name)

    def order_path(self, account_id: str, cert_name: str) -> Path:
        return self.order_dir(account_id, cert_name) / ORDER_FILE

    def privkey_path(self, account_id: str, cert_name: str) -> Path:
        return self.order_dir(account_id, cert_name) / PRIVKEY_FILE

    # ── Records ───────────────────────────────────────────────────────────

    def read_account(self, account_id: str) -> Optional[str]:
        return _read(self.account_path(account_id))

    def write_account(self, account_id: str, document: str) -> Path:
        path = self.account_path(account_id)
        atomic_write_text(path, document, mode=stat.S_IRUSR | stat.S_IWUSR)
        return path

    def read_order(self, account_id: str, cert_name: str) -> Optional[str]:
        return _read(self.order_path(account_id, cert_name))

    def write_order(self, account_id: str, cert_name: str, document: str) -> Path:
        path = self.order_path(account_id, cert_name)
        atomic_write_text(path, document)
        return path

    def write_privkey(self, account_id: str, cert_name: str, key_pem: str) -> Path:
        path = self.privkey_path(account_id, cert_name)
        atomic_write_text(path, key_pem, mode=stat.S_IRUSR | stat.S_IWUSR)
        return path

    def read_privkey(self, account_id: str, cert_name: str) -> Optional[str]:
        return _read(self.privkey_path(account_id, cert_name))


def _read(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    # newline="" keeps the bytes exactly as they came from the secret store
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _segment(value: str) -> str:
    """Reject anything that could escape the cache root."""
    if not value or value in (".", "..") or not _SAFE_SEGMENT.match(value):
        raise ValueError(f"Unsafe path segment for local state cache: {value!r}")
    return value
