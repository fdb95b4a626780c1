"""
Account key, JWS signing and External Account Binding (RFC 7515/7638/8555).

Key handling uses *josepy*, the JOSE library behind Certbot.  The account key
has no file of its own: it is serialized as a private JWK inside acct.json and
travels with that document between Key Vault and the local state cache.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Callable

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy import b64
from josepy.jwk import JWK, JWKRSA

ACCOUNT_KEY_ALG = "RS256"
EAB_ALG = "HS256"
EAB_MIN_KEY_BYTES = 16


# ─── Account key ──────────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    return JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=key_size))


def account_key_to_json(jwk: JWKRSA) -> dict:
    """Private JWK (``n``, ``e``, ``d``, ``p``, ``q``, ...) as stored in acct.json."""
    return jwk.to_json()


def account_key_from_json(data: dict) -> JWKRSA:
    """Load the key stored in acct.json; ValueError if it is not a private RSA JWK."""
    try:
        jwk = JWK.from_json(data)
    except Exception as exc:
        raise ValueError(f"Invalid account key JWK: {exc}") from exc
    if not isinstance(jwk, JWKRSA):
        raise ValueError(f"Unsupported account key type: {data.get('kty')!r}")
    if not hasattr(jwk.key, "private_bytes"):
        raise ValueError("Account key JWK has no private parameters")
    return jwk


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """RFC 7638 SHA-256 thumbprint, base64url without padding."""
    return _encode(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


# ─── Request signing ──────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Flattened JWS for an ACME POST.

    The protected header identifies the signer by ``kid`` (the account URL)
    once the account exists, and by the full public ``jwk`` before that
    (newAccount).  ``payload=None`` yields the empty payload of POST-as-GET.
    """
    header: dict = {"alg": ACCOUNT_KEY_ALG, "nonce": nonce, "url": url}
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = account_key.public_key().to_partial_json()

    return _flattened_jws(
        header,
        "" if payload is None else _encode_json(payload),
        lambda data: account_key.key.sign(data, padding.PKCS1v15(), hashes.SHA256()),
    )


def create_eab_jws(
    account_jwk: JWKRSA,
    eab_kid: str,
    eab_hmac_key_b64url: str,
    new_account_url: str,
) -> dict:
    """
    externalAccountBinding for newAccount (RFC 8555 §7.3.4): the public
    account JWK, MAC-ed with the CA-issued HMAC key.

    ValueError for an empty key id, an undecodable key, or a key shorter
    than EAB_MIN_KEY_BYTES.
    """
    if not eab_kid.strip():
        raise ValueError("EAB key ID cannot be empty")
    if not eab_hmac_key_b64url.strip():
        raise ValueError("EAB HMAC key cannot be empty")
    try:
        hmac_key = b64.b64decode(eab_hmac_key_b64url.strip().rstrip("="))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"EAB HMAC key is not valid base64url: {exc}") from exc
    if len(hmac_key) < EAB_MIN_KEY_BYTES:
        raise ValueError(
            f"EAB HMAC key is too short: {len(hmac_key)} bytes (at least {EAB_MIN_KEY_BYTES} required)"
        )

    return _flattened_jws(
        {"alg": EAB_ALG, "kid": eab_kid, "url": new_account_url},
        _encode_json(account_jwk.public_key().to_partial_json()),
        lambda data: hmac.new(hmac_key, data, hashlib.sha256).digest(),
    )


# ─── Encoding ─────────────────────────────────────────────────────────────────


def _flattened_jws(header: dict, payload_b64: str, sign: Callable[[bytes], bytes]) -> dict:
    protected = _encode_json(header)
    signature = sign(f"{protected}.{payload_b64}".encode())
    return {"protected": protected, "payload": payload_b64, "signature": _encode(signature)}


def _encode_json(obj: dict) -> str:
    return _encode(json.dumps(obj).encode())


def _encode(data: bytes) -> str:
    return b64.b64encode(data).decode()
