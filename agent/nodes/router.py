"""
renewal_gate node + renewal_router — decide what to do with the certificate.

renewal_gate inspects the (trusted) order in the local state cache:

  force_renewal                                  → "issue"
  no order, or a different domain set            → "issue"
  valid order, renew_after still in the future   → "not_due"
  pending/ready order that has not expired       → "resume"
  anything else                                  → "issue"

renewal_router is the routing function used with add_conditional_edges().
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient.records import RESUMABLE_ORDER_STATES, OrderRecord
from agent.context import get_context
from agent.state import AgentState, RenewalAction

logger = logging.getLogger(__name__)


def renewal_gate(state: AgentState, config: RunnableConfig) -> dict:
    """Returns updates to: renewal_action."""
    ctx = get_context(config)
    cert_name = state["certificate_name"]
    action = _decide(state, ctx.cache.read_order(state["account_id"], cert_name))
    logger.info("Renewal decision for %s: %s", cert_name, action)
    return {"renewal_action": action}


def _decide(state: AgentState, raw_order: str | None) -> RenewalAction:
    if state["force_renewal"]:
        logger.info("Renewal forced — ignoring any prior order")
        return "issue"
    if raw_order is None:
        return "issue"

    order = OrderRecord.parse(raw_order)
    if set(order.domains) != set(state["domains"]):
        logger.info(
            "Domain set changed (%s → %s) — new order required",
            ", ".join(order.domains), ", ".join(state["domains"]),
        )
        return "issue"

    if order.status == "valid":
        if order.renewal_due():
            logger.info("Certificate is inside its renewal window (renew after %s)", order.renew_after)
            return "issue"
        logger.info("Certificate not due for renewal until %s", order.renew_after)
        return "not_due"

    if order.status in RESUMABLE_ORDER_STATES and not order.is_expired():
        return "resume"

    logger.info("Prior order is %s — new order required", order.status)
    return "issue"


def renewal_router(state: AgentState) -> str:
    """
    After renewal_gate: route into the ACME order flow or straight to
    reconciliation.

    Returns: "issue" | "resume" | "not_due"
    """
    return state.get("renewal_action") or "issue"
