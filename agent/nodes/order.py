"""
order_initializer node — create (or resume) the ACME order for the requested
domain set, then fetch its authorizations to collect DNS-01 challenges.

The order document is written to the local state cache straight away so the
reconciliation step can persist it once the run succeeds.
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient import jws as jwslib
from acmeclient.dns_challenge import compute_dns_txt_value
from acmeclient.records import RESUMABLE_ORDER_STATES, OrderRecord, new_order_document
from agent.context import get_context
from agent.errors import OrchestrationError
from agent.nodes.account import active_account
from agent.state import AcmeOrder, AgentState

logger = logging.getLogger(__name__)

CHALLENGE_TYPE = "dns-01"

# Parallel per-authorization lists carried in AcmeOrder
_CHALLENGE_FIELDS = (
    "auth_urls", "auth_domains", "challenge_urls", "challenge_tokens", "key_authorizations", "dns_txt_values",
)


def order_initializer(state: AgentState, config: RunnableConfig) -> dict:
    """
    Populates state["current_order"] with authorization and challenge details.

    Returns updates to: current_order, current_nonce.
    """
    ctx = get_context(config)
    client = ctx.client
    account = active_account(ctx, state)
    account_key = account.account_key()
    account_url = account.location
    cert_name = state["certificate_name"]
    domains = state["domains"]

    directory = client.get_directory()
    nonce = state.get("current_nonce") or client.get_nonce(directory)

    order_body: dict = {}
    order_url = ""
    if state.get("renewal_action") == "resume":
        prior = OrderRecord.parse(ctx.cache.read_order(account.account_id, cert_name) or "")
        logger.info("Resuming order %s for %s", prior.location, cert_name)
        order_body = client.get_order(prior.location, account_key, account_url)
        if order_body.get("status") in RESUMABLE_ORDER_STATES:
            order_url = prior.location
        else:
            logger.warning(
                "Order %s is %s on the server — creating a new one",
                prior.location, order_body.get("status"),
            )

    if not order_url:
        logger.info("Creating ACME order for %s", ", ".join(domains))
        order_body, order_url, nonce = client.create_order(
            domains=domains,
            account_key=account_key,
            account_url=account_url,
            nonce=nonce,
            directory=directory,
        )

    ctx.cache.write_order(
        account.account_id,
        cert_name,
        new_order_document(cert_name, domains, order_url, order_body, state["key_type"]),
    )

    pending = _pending_dns_challenges(client, order_body, account_key, account_url)
    current_order: AcmeOrder = {
        "order_url": order_url,
        "status": order_body.get("status", "pending"),
        "finalize_url": order_body.get("finalize", ""),
        "certificate_url": None,
        **{field: [challenge[field] for challenge in pending] for field in _CHALLENGE_FIELDS},
    }

    logger.info("Order %s is %s; %d authorization(s) need DNS-01", order_url, current_order["status"], len(pending))
    return {"current_order": current_order, "current_nonce": nonce}


def _pending_dns_challenges(client, order_body: dict, account_key, account_url: str) -> list[dict]:
    """One entry per authorization that still needs proving, keyed like AcmeOrder's lists."""
    thumbprint = jwslib.compute_jwk_thumbprint(account_key)
    pending = []
    for auth_url in order_body.get("authorizations", []):
        authz = client.get_authorization(auth_url, account_key, account_url)
        identifier = authz.get("identifier", {}).get("value", "")

        # Authorizations validated by an earlier order can be reused (RFC 8555 §7.5)
        if authz.get("status") == "valid":
            logger.info("Authorization for %s already valid", identifier)
            continue

        dns01 = [c for c in authz.get("challenges", []) if c.get("type") == CHALLENGE_TYPE]
        if not dns01:
            raise OrchestrationError(f"No {CHALLENGE_TYPE} challenge offered for {identifier} ({auth_url})")

        key_authorization = f"{dns01[0]['token']}.{thumbprint}"
        pending.append({
            "auth_urls": auth_url,
            "auth_domains": identifier,
            "challenge_urls": dns01[0]["url"],
            "challenge_tokens": dns01[0]["token"],
            "key_authorizations": key_authorization,
            "dns_txt_values": compute_dns_txt_value(key_authorization),
        })
    return pending
