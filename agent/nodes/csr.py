"""
csr_generator node — generate the certificate private key and CSR for the
requested domain set.

The key is written to the local state cache (mode 0o600) so storage_manager
can bundle it with the issued certificate.  It is never written to the
secret store.
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient.crypto import create_csr, generate_private_key, private_key_to_pem
from agent.context import get_context
from agent.state import AgentState

logger = logging.getLogger(__name__)


def csr_generator(state: AgentState, config: RunnableConfig) -> dict:
    """Returns updates to: current_order (csr_der_hex)."""
    ctx = get_context(config)
    cert_name = state["certificate_name"]
    key_type = state["key_type"]

    logger.info("Generating %s key and CSR for %s", key_type, cert_name)
    private_key = generate_private_key(key_type)  # type: ignore[arg-type]
    key_path = ctx.cache.write_privkey(state["account_id"], cert_name, private_key_to_pem(private_key))
    logger.debug("Private key written to %s", key_path)

    csr_der = create_csr(private_key, state["domains"])

    # CSR travels through state as hex
    order = state.get("current_order") or {}
    return {"current_order": {**order, "csr_der_hex": csr_der.hex()}}
