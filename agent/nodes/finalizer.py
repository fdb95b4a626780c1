"""
order_finalizer + cert_downloader nodes.

order_finalizer  — POST CSR to /finalize, poll until certificate URL is ready.
cert_downloader  — POST-as-GET the certificate URL, return full PEM chain.
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient.client import AcmeError
from agent.context import get_context
from agent.errors import OrchestrationError
from agent.nodes.account import active_account
from agent.state import AgentState

logger = logging.getLogger(__name__)


def order_finalizer(state: AgentState, config: RunnableConfig) -> dict:
    """
    Submit the CSR to the ACME /finalize endpoint and wait for the CA to issue
    the certificate.

    Returns updates to: current_order (status, certificate_url), current_nonce.
    """
    ctx = get_context(config)
    client = ctx.client
    cert_name = state["certificate_name"]
    order = state.get("current_order") or {}

    csr_hex = order.get("csr_der_hex", "")
    if not csr_hex:
        raise OrchestrationError(f"order_finalizer: no CSR in state for {cert_name}")

    account = active_account(ctx, state)
    account_key = account.account_key()
    nonce = state.get("current_nonce") or client.get_nonce(client.get_directory())

    logger.info("Finalizing order for %s — submitting CSR", cert_name)
    try:
        _, nonce = client.finalize_order(
            order["finalize_url"], bytes.fromhex(csr_hex), account_key, account.location, nonce
        )
        final_order = client.poll_order_for_certificate(order["order_url"], account_key, account.location)
    except AcmeError as exc:
        logger.error("Finalization failed for %s: %s", cert_name, exc)
        raise

    cert_url = final_order["certificate"]
    logger.info("Certificate URL ready for %s: %s", cert_name, cert_url)
    return {
        "current_order": {**order, "status": "valid", "certificate_url": cert_url},
        "current_nonce": nonce,
    }


def cert_downloader(state: AgentState, config: RunnableConfig) -> dict:
    """
    POST-as-GET the certificate URL and store the raw PEM chain in the order.

    Returns updates to: current_order (full_chain_pem), current_nonce.
    """
    ctx = get_context(config)
    client = ctx.client
    cert_name = state["certificate_name"]
    order = state.get("current_order") or {}

    cert_url = order.get("certificate_url")
    if not cert_url:
        raise OrchestrationError(f"cert_downloader: no certificate_url in state for {cert_name}")

    account = active_account(ctx, state)
    nonce = state.get("current_nonce") or client.get_nonce(client.get_directory())

    logger.info("Downloading certificate for %s", cert_name)
    full_chain_pem, nonce = client.download_certificate(
        cert_url, account.account_key(), account.location, nonce
    )
    if "-----BEGIN CERTIFICATE-----" not in full_chain_pem:
        raise OrchestrationError(f"Certificate download for {cert_name} returned no PEM certificate")

    logger.info("Downloaded %d bytes of PEM for %s", len(full_chain_pem), cert_name)
    return {
        "current_order": {**order, "full_chain_pem": full_chain_pem},
        "current_nonce": nonce,
    }
