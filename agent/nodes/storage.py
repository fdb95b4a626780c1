"""
storage_manager node — write the certificate artifacts for the just-issued
certificate and record its validity in order.json.

Splits the full PEM chain from the CA into:
  cert.pem      — leaf certificate (first PEM block)
  chain.pem     — intermediate CA chain (remaining PEM blocks)
  fullchain.pem — cert + chain concatenated
  privkey.pem   — written by csr_generator into the local state cache
  cert.pfx      — key + leaf + chain as PKCS#12
  metadata.json — issued_at, expires_at, renew_after, acme_order_url
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient.crypto import build_pfx, load_private_key, split_pem_chain
from acmeclient.records import updated_order_document
from agent.context import get_context
from agent.errors import OrchestrationError
from agent.state import AgentState
from storage import filesystem as fs

logger = logging.getLogger(__name__)


def storage_manager(state: AgentState, config: RunnableConfig) -> dict:
    """Returns updates to: certificate_issued, cert_metadata."""
    ctx = get_context(config)
    account_id = state["account_id"]
    cert_name = state["certificate_name"]
    order = state.get("current_order") or {}

    full_chain_pem = order.get("full_chain_pem", "")
    if not full_chain_pem:
        raise OrchestrationError(f"storage_manager: no full_chain_pem in state for {cert_name}")
    privkey_pem = ctx.cache.read_privkey(account_id, cert_name)
    if privkey_pem is None:
        raise OrchestrationError(f"storage_manager: privkey.pem not found for {cert_name}")

    cert_pem, chain_pem = split_pem_chain(full_chain_pem)
    pfx = build_pfx(
        load_private_key(privkey_pem),
        cert_pem,
        chain_pem,
        friendly_name=cert_name,
        password=state["pfx_password"],
    )

    metadata = fs.write_cert_files(
        output_path=state["cert_output_path"],
        cert_name=cert_name,
        domains=state["domains"],
        cert_pem=cert_pem,
        chain_pem=chain_pem,
        privkey_pem=privkey_pem,
        pfx=pfx,
        acme_order_url=order.get("order_url", ""),
    )

    raw_order = ctx.cache.read_order(account_id, cert_name)
    if raw_order is None:
        raise OrchestrationError(f"storage_manager: order.json missing for {cert_name}")
    ctx.cache.write_order(
        account_id,
        cert_name,
        updated_order_document(
            raw_order,
            status="valid",
            certificate=order.get("certificate_url"),
            cert_expires=metadata["expires_at"],
            renew_after=metadata["renew_after"],
        ),
    )

    logger.info(
        "Stored certificate artifacts for %s (expires %s, renew after %s)",
        cert_name, metadata["expires_at"][:10], metadata["renew_after"][:10],
    )
    return {"certificate_issued": True, "cert_metadata": metadata}
