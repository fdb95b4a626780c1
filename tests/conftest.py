"""
Shared pytest fixtures.

Fakes
-----
FakeSecretStore   — in-memory SecretStore that records every get/put.
FakeAcmeClient    — in-process ACME server with its own CA.  It issues real
                    X.509 certificates for the CSR public key so the PFX
                    bundle built by storage_manager is valid.
FakeDnsProvider   — records TXT values instead of talking to Azure DNS.

`lifecycle` runs the whole graph the way main.py does, each call with a
fresh local state cache directory (an ephemeral build agent).

Pebble
------
`requires_pebble` skips tests unless Pebble listens on localhost:14000.
"""
from __future__ import annotations

import datetime
import itertools
import secrets
import socket
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from acmeclient.client import AcmeError
from acmeclient.dns_challenge import DnsProvider
from agent.context import RunContext
from agent.graph import initial_state, run_lifecycle
from storage.local_cache import LocalStateCache
from storage.naming import parse_certificate_names, resolve_directory
from storage.secret_store import SecretStore

CA_BASE = "https://ca.test/acme"


# ─── Pebble availability check ────────────────────────────────────────────────

def _pebble_running(host: str = "localhost", port: int = 14000) -> bool:
    """Return True if Pebble's ACME port is open."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


requires_pebble = pytest.mark.skipif(
    not _pebble_running(),
    reason="Pebble not running on localhost:14000 (start it with PEBBLE_VA_ALWAYS_VALID=1)",
)


# ─── Secret store ─────────────────────────────────────────────────────────────

class FakeSecretStore(SecretStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.secrets: Dict[str, str] = dict(initial or {})
        self.gets: List[str] = []
        self.puts: List[tuple[str, str]] = []

    def get_secret(self, name: str) -> Optional[str]:
        self.gets.append(name)
        return self.secrets.get(name)

    def put_secret(self, name: str, value: str) -> None:
        self.puts.append((name, value))
        self.secrets[name] = value


# ─── DNS provider ─────────────────────────────────────────────────────────────

class FakeDnsProvider(DnsProvider):
    def __init__(self) -> None:
        self.records: Dict[str, List[str]] = {}
        self.created: List[tuple[str, str]] = []
        self.deleted: List[tuple[str, str]] = []

    def create_txt_record(self, domain: str, txt_value: str) -> None:
        self.created.append((domain, txt_value))
        self.records.setdefault(self._acme_record_name(domain), []).append(txt_value)

    def delete_txt_record(self, domain: str, txt_value: str) -> None:
        self.deleted.append((domain, txt_value))
        values = self.records.get(self._acme_record_name(domain), [])
        if txt_value in values:
            values.remove(txt_value)


# ─── ACME server ──────────────────────────────────────────────────────────────

class _TestCA:
    def __init__(self) -> None:
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Test CA")])
        now = datetime.datetime.now(datetime.timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )
        self.cert_pem = self.cert.public_bytes(serialization.Encoding.PEM).decode()

    def issue(self, csr_der: bytes, lifetime_days: int = 90) -> str:
        csr = x509.load_der_x509_csr(csr_der)
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        now = datetime.datetime.now(datetime.timezone.utc)
        leaf = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=1))
            .not_valid_after(now + datetime.timedelta(days=lifetime_days))
            .add_extension(san, critical=False)
            .sign(self.key, hashes.SHA256())
        )
        return leaf.public_bytes(serialization.Encoding.PEM).decode() + self.cert_pem


class FakeAcmeClient:
    """Same call signatures as acmeclient.client.AcmeClient."""

    directory = {
        "newNonce": f"{CA_BASE}/new-nonce",
        "newAccount": f"{CA_BASE}/new-acct",
        "newOrder": f"{CA_BASE}/new-order",
    }

    def __init__(self, ca: _TestCA) -> None:
        self.ca = ca
        self.accounts: Dict[str, dict] = {}
        self.orders: Dict[str, dict] = {}
        self.authorizations: Dict[str, dict] = {}
        self.certificates: Dict[str, str] = {}
        self.calls: List[str] = []
        self.fail_challenges = False
        self.lifetime_days = 90
        self._ids = itertools.count(1)

    def _nonce(self) -> str:
        return secrets.token_hex(8)

    def _account_id(self, account_url: str) -> str:
        if account_url not in self.accounts:
            raise AcmeError(400, {"type": "urn:ietf:params:acme:error:accountDoesNotExist"})
        return account_url.rsplit("/", 1)[-1]

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        return self.directory

    def get_nonce(self, directory: dict) -> str:
        self.calls.append("get_nonce")
        return self._nonce()

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(self, account_key, contact, nonce, directory, eab_key_id="", eab_hmac_key=""):
        self.calls.append("create_account")
        url = f"{CA_BASE}/acct/{next(self._ids)}"
        self.accounts[url] = {"status": "valid", "contact": [f"mailto:{contact}"]}
        return url, dict(self.accounts[url]), self._nonce()

    def update_account(self, account_key, account_url, contact, nonce):
        self.calls.append("update_account")
        self._account_id(account_url)
        self.accounts[account_url]["contact"] = [f"mailto:{contact}"]
        return dict(self.accounts[account_url]), self._nonce()

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(self, domains, account_key, account_url, nonce, directory):
        self.calls.append("create_order")
        account_id = self._account_id(account_url)
        order_id = next(self._ids)
        order_url = f"{CA_BASE}/order/{account_id}/{order_id}"
        auth_urls = []
        for i, domain in enumerate(domains):
            auth_url = f"{CA_BASE}/authz/{order_id}/{i}"
            self.authorizations[auth_url] = {
                "status": "pending",
                "identifier": {"type": "dns", "value": domain.removeprefix("*.")},
                "wildcard": domain.startswith("*."),
                "challenges": [
                    {"type": "http-01", "url": f"{auth_url}/http", "token": secrets.token_urlsafe(16)},
                    {"type": "dns-01", "url": f"{auth_url}/dns", "token": secrets.token_urlsafe(16)},
                ],
            }
            auth_urls.append(auth_url)
        self.orders[order_url] = {
            "status": "pending",
            "expires": (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=7))
            .strftime("%Y-%m-%dT%H:%M:%SZ"),
            "identifiers": [{"type": "dns", "value": d} for d in domains],
            "authorizations": auth_urls,
            "finalize": f"{order_url}/finalize",
        }
        return dict(self.orders[order_url]), order_url, self._nonce()

    def get_order(self, order_url, account_key, account_url):
        self.calls.append("get_order")
        return dict(self.orders[order_url])

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(self, auth_url, account_key, account_url):
        return dict(self.authorizations[auth_url])

    def respond_to_challenge(self, challenge_url, account_key, account_url, nonce):
        self.calls.append("respond_to_challenge")
        auth_url = challenge_url.rsplit("/", 1)[0]
        authz = self.authorizations[auth_url]
        authz["status"] = "invalid" if self.fail_challenges else "valid"
        order_url = next(u for u, o in self.orders.items() if auth_url in o["authorizations"])
        order = self.orders[order_url]
        if all(self.authorizations[a]["status"] == "valid" for a in order["authorizations"]):
            order["status"] = "ready"
        return {"status": "processing"}, self._nonce()

    def poll_authorization(self, auth_url, account_key, account_url, max_attempts=30, poll_interval=2.0):
        status = self.authorizations[auth_url]["status"]
        if status != "valid":
            raise AcmeError(200, {"type": "urn:ietf:params:acme:error:unauthorized",
                                  "detail": f"Authorization {status}"})
        return status

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(self, finalize_url, csr_der, account_key, account_url, nonce):
        self.calls.append("finalize_order")
        order_url = finalize_url.rsplit("/", 1)[0]
        order = self.orders[order_url]
        if order["status"] != "ready":
            raise AcmeError(403, {"type": "urn:ietf:params:acme:error:orderNotReady"})
        cert_url = f"{order_url}/cert"
        self.certificates[cert_url] = self.ca.issue(csr_der, self.lifetime_days)
        order.update(status="valid", certificate=cert_url)
        return dict(order), self._nonce()

    def poll_order_for_certificate(self, order_url, account_key, account_url, max_attempts=30, poll_interval=3.0):
        return dict(self.orders[order_url])

    def download_certificate(self, cert_url, account_key, account_url, nonce):
        self.calls.append("download_certificate")
        return self.certificates[cert_url], self._nonce()


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def test_ca() -> _TestCA:
    return _TestCA()


@pytest.fixture()
def secret_store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture()
def acme_server(test_ca) -> FakeAcmeClient:
    return FakeAcmeClient(test_ca)


@pytest.fixture()
def dns_provider() -> FakeDnsProvider:
    return FakeDnsProvider()


@pytest.fixture()
def make_context(tmp_path: Path, secret_store, acme_server, dns_provider):
    """Factory for a RunContext over a fresh cache directory."""
    counter = itertools.count(1)

    def _make(directory: str = "LE_STAGE") -> RunContext:
        _, token = resolve_directory(directory)
        return RunContext(
            secret_store=secret_store,
            cache=LocalStateCache(tmp_path / f"state-{next(counter)}", token),
            client=acme_server,  # type: ignore[arg-type]
            dns_provider=dns_provider,
        )

    return _make


@pytest.fixture()
def lifecycle(tmp_path: Path, make_context):
    """Run the full graph once; returns the final state."""

    def _run(
        domains: str = "example.com",
        contact: str = "a@b.com",
        force: bool = False,
        directory: str = "LE_STAGE",
    ) -> dict:
        url, token = resolve_directory(directory)
        state = initial_state(
            directory_url=url,
            directory_token=token,
            contact=contact,
            domains=parse_certificate_names(domains),
            force_renewal=force,
            cert_output_path=str(tmp_path / "certs"),
            dns_propagation_wait_seconds=0,
        )
        return run_lifecycle(state, make_context(directory))

    return _run


@pytest.fixture()
def settings_env(monkeypatch, tmp_path):
    """Minimal valid environment for config.Settings."""
    env = {
        "ACME_CONTACT": "ops@example.com",
        "CERTIFICATE_NAMES": "example.com",
        "KEY_VAULT_RESOURCE_ID": (
            "/subscriptions/00000000-0000-0000-0000-000000000001/resourceGroups/rg-certs"
            "/providers/Microsoft.KeyVault/vaults/kv-acme"
        ),
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.chdir(tmp_path)  # no stray .env
    return env
