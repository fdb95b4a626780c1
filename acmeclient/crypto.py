"""
Certificate private-key generation, CSR creation and certificate inspection.

Boundary: this module owns everything cryptographic about the *certificate*.
Account-key operations (JWK, JWS, EAB) live in acmeclient/jws.py.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

KeyType = Literal["rsa2048", "rsa4096", "ec256"]
PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

# Fraction of the certificate lifetime after which a renewal is due.
RENEWAL_FRACTION = 2 / 3


def generate_private_key(key_type: KeyType = "rsa2048") -> PrivateKey:
    """Generate a certificate private key of the requested type."""
    if key_type == "rsa2048":
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if key_type == "rsa4096":
        return rsa.generate_private_key(public_exponent=65537, key_size=4096)
    if key_type == "ec256":
        return ec.generate_private_key(ec.SECP256R1())
    raise ValueError(f"Unsupported certificate key type: {key_type!r}")


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key to an unencrypted PKCS#8 PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_private_key(pem: str) -> PrivateKey:
    return serialization.load_pem_private_key(pem.encode(), password=None)  # type: ignore[return-value]


def create_csr(private_key: PrivateKey, domains: list[str]) -> bytes:
    """
    Create a DER-encoded CSR covering *domains*.

    The first domain becomes the subject CN; all of them (deduplicated, order
    preserved) are listed as SubjectAlternativeNames, wildcards included.
    """
    if not domains:
        raise ValueError("create_csr needs at least one domain")
    all_domains = list(dict.fromkeys(domains))

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, all_domains[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
    )
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


# ─── Issued certificate ───────────────────────────────────────────────────────


def split_pem_chain(full_chain: str) -> tuple[str, str]:
    """
    Split a PEM chain into (leaf_cert_pem, chain_pem).

    ACME servers return: [leaf] [intermediate1] [intermediate2] ...
    """
    blocks = []
    current: list[str] = []
    for line in full_chain.splitlines(keepends=True):
        current.append(line)
        if "-----END CERTIFICATE-----" in line:
            blocks.append("".join(current))
            current = []

    if not blocks:
        return full_chain, ""
    return blocks[0], "".join(blocks[1:])


def parse_validity(cert_pem: str) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) as timezone-aware UTC datetimes."""
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    return cert.not_valid_before_utc, cert.not_valid_after_utc


def renew_after(not_before: datetime, not_after: datetime) -> datetime:
    """Point in time after which the certificate is due for renewal."""
    return not_before + timedelta(seconds=(not_after - not_before).total_seconds() * RENEWAL_FRACTION)


def days_until(moment: datetime) -> int:
    """Integer days until *moment* (negative if already past)."""
    return (moment - datetime.now(tz=timezone.utc)).days


def build_pfx(
    private_key: PrivateKey,
    cert_pem: str,
    chain_pem: str,
    friendly_name: str,
    password: str = "",
) -> bytes:
    """Bundle key + leaf + chain into a PKCS#12 blob (what Key Vault imports)."""
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    chain = x509.load_pem_x509_certificates(chain_pem.encode()) if chain_pem.strip() else None
    encryption = (
        serialization.BestAvailableEncryption(password.encode())
        if password
        else serialization.NoEncryption()
    )
    return pkcs12.serialize_key_and_certificates(
        name=friendly_name.encode(),
        key=private_key,
        cert=cert,
        cas=chain,
        encryption_algorithm=encryption,
    )
