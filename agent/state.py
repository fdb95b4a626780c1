"""
Graph state for one certificate lifecycle run.

Key design decisions:
  - The account key is NOT stored in state.  It lives inside acct.json in the
    local state cache; nodes load it from there through the account id.
  - loaded_account / loaded_order hold the exact text rehydrated from the
    secret store.  They are the baseline the reconciliation step diffs
    against; only a successful secret write advances them.
  - AcmeOrder uses parallel lists (one entry per authorization that still
    needs a DNS-01 challenge) to support multi-domain SAN certificates.
"""
from __future__ import annotations

from typing import Dict, List, Literal, Optional

from typing_extensions import TypedDict

RenewalAction = Literal["issue", "resume", "not_due"]


class AcmeOrder(TypedDict, total=False):
    order_url: str
    status: str                       # pending | ready | processing | valid | invalid
    auth_urls: List[str]              # Authorizations still needing a challenge
    challenge_urls: List[str]         # dns-01 challenge URL per authorization
    challenge_tokens: List[str]
    key_authorizations: List[str]     # token + "." + thumbprint
    auth_domains: List[str]           # Identifier value per authorization
    dns_txt_values: List[str]         # base64url(SHA-256(key_auth)) per authorization
    finalize_url: str
    certificate_url: Optional[str]    # Set once the order is valid
    csr_der_hex: str                  # Set by csr_generator
    full_chain_pem: str               # Set by cert_downloader


class AgentState(TypedDict):
    # ── Request ────────────────────────────────────────────────────────────
    directory_url: str
    directory_token: str
    contact: str
    domains: List[str]                # First entry is the certificate identity
    certificate_name: str             # "*." mapped to "!."
    force_renewal: bool
    key_type: str
    cert_output_path: str
    pfx_password: str
    dns_propagation_wait_seconds: int

    # ── Rehydration baseline ───────────────────────────────────────────────
    loaded_account: Optional[str]     # acct.json text as read from the secret store
    loaded_order: Optional[str]       # order.json text, only if trusted

    # ── Account ────────────────────────────────────────────────────────────
    account_id: Optional[str]
    account_url: Optional[str]
    account_is_new: bool

    # ── Active ACME flow ───────────────────────────────────────────────────
    renewal_action: Optional[RenewalAction]
    current_order: Optional[AcmeOrder]
    current_nonce: Optional[str]

    # ── Results ────────────────────────────────────────────────────────────
    certificate_issued: bool
    cert_metadata: Dict[str, str]
    secrets_written: List[str]
