"""
challenge_setup and challenge_verifier nodes.

challenge_setup    — creates the _acme-challenge TXT records through the DNS
                     provider, then waits for propagation.
challenge_verifier — tells the ACME CA to check, then polls until valid.

TXT records are removed once verification is over, whether it succeeded or
not.  Cleanup is best effort and never replaces the original error.
"""
from __future__ import annotations

import logging
import time

from langchain_core.runnables import RunnableConfig

from acmeclient.client import AcmeError
from acmeclient.dns_challenge import DnsProvider
from agent.context import get_context
from agent.nodes.account import active_account
from agent.state import AcmeOrder, AgentState

logger = logging.getLogger(__name__)


# ─── challenge_setup ──────────────────────────────────────────────────────────


def challenge_setup(state: AgentState, config: RunnableConfig) -> dict:
    """Create one TXT value per pending authorization and wait for propagation."""
    ctx = get_context(config)
    order = state.get("current_order") or {}
    pairs = list(zip(order.get("auth_domains", []), order.get("dns_txt_values", [])))
    if not pairs:
        logger.info("No pending authorizations — nothing to provision")
        return {}

    created: list[tuple[str, str]] = []
    try:
        for domain, txt_value in pairs:
            ctx.dns_provider.create_txt_record(domain, txt_value)
            created.append((domain, txt_value))
            logger.info("Created TXT _acme-challenge.%s", domain.removeprefix("*."))
    except Exception:
        _cleanup(ctx.dns_provider, created)
        raise

    wait = state["dns_propagation_wait_seconds"]
    if wait > 0:
        logger.info("Waiting %d seconds for DNS propagation...", wait)
        time.sleep(wait)

    return {}  # challenge records are live until challenge_verifier removes them


# ─── challenge_verifier ───────────────────────────────────────────────────────


def challenge_verifier(state: AgentState, config: RunnableConfig) -> dict:
    """
    For each pending authorization:
      1. Tell the ACME CA to verify (POST challenge URL)
      2. Poll until valid; AcmeError on invalid or timeout

    Returns updates to: current_order (status), current_nonce.
    """
    ctx = get_context(config)
    client = ctx.client
    order: AcmeOrder = state.get("current_order") or {}
    if not order.get("auth_urls"):
        return {}

    account = active_account(ctx, state)
    account_key = account.account_key()
    account_url = account.location
    nonce = state.get("current_nonce") or client.get_nonce(client.get_directory())

    try:
        for auth_url, ch_url in zip(order["auth_urls"], order["challenge_urls"]):
            logger.info("Triggering CA verification for auth %s", auth_url)
            _, nonce = client.respond_to_challenge(ch_url, account_key, account_url, nonce)
            try:
                client.poll_authorization(auth_url, account_key, account_url)
            except AcmeError as exc:
                logger.error("Challenge failed for %s: %s", auth_url, exc)
                raise
            logger.info("Authorization %s is VALID", auth_url)
    finally:
        _cleanup(
            ctx.dns_provider,
            list(zip(order.get("auth_domains", []), order.get("dns_txt_values", []))),
        )

    return {
        "current_order": {**order, "status": "ready"},
        "current_nonce": nonce,
    }


def _cleanup(provider: DnsProvider, pairs: list[tuple[str, str]]) -> None:
    for domain, txt_value in pairs:
        try:
            provider.delete_txt_record(domain, txt_value)
        except Exception as exc:
            logger.warning("Failed to delete TXT record for %s: %s", domain, exc)
