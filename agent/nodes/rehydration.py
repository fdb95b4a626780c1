"""
account_rehydrator + order_rehydrator nodes.

Pull the account and order documents out of the secret store into the local
state cache before any ACME interaction, trusting only what is applicable:

  account_rehydrator — runs first.  A present-but-unparseable account secret
                       aborts the run (StateIntegrityError).
  order_rehydrator   — runs after acme_account_setup.  Skipped for a brand-new
                       account; otherwise the order is only materialized when
                       its embedded account binding matches the active account.
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient.records import AccountRecord, OrderRecord
from agent.context import get_context
from agent.errors import StateIntegrityError
from agent.state import AgentState
from storage.naming import account_secret_name, order_secret_name

logger = logging.getLogger(__name__)


def account_rehydrator(state: AgentState, config: RunnableConfig) -> dict:
    """
    Load acct.json for the configured directory.

    Returns updates to: loaded_account, account_id, account_url.
    """
    ctx = get_context(config)
    secret_name = account_secret_name(state["directory_token"])

    raw = ctx.secret_store.get_secret(secret_name)
    if raw is None:
        logger.info("No account secret %s — a new ACME account will be registered", secret_name)
        return {"loaded_account": None, "account_id": None, "account_url": None}

    try:
        record = AccountRecord.parse(raw)
    except ValueError as exc:
        raise StateIntegrityError(f"Account secret {secret_name} is corrupt: {exc}") from exc

    ctx.cache.write_account(record.account_id, raw)
    logger.info("Rehydrated ACME account %s from %s", record.account_id, secret_name)
    return {
        "loaded_account": raw,
        "account_id": record.account_id,
        "account_url": record.location,
    }


def order_rehydrator(state: AgentState, config: RunnableConfig) -> dict:
    """
    Load order.json for the requested certificate, if it belongs to the
    active account.

    Returns updates to: loaded_order.
    """
    if state["account_is_new"]:
        # A fresh account cannot own any prior order
        logger.info("Account %s is new — skipping order rehydration", state["account_id"])
        return {"loaded_order": None}

    ctx = get_context(config)
    cert_name = state["certificate_name"]
    secret_name = order_secret_name(state["directory_token"], cert_name)

    raw = ctx.secret_store.get_secret(secret_name)
    if raw is None:
        logger.info("No order secret %s", secret_name)
        return {"loaded_order": None}

    try:
        record = OrderRecord.parse(raw)
    except ValueError as exc:
        logger.warning("Discarding unreadable order secret %s: %s", secret_name, exc)
        return {"loaded_order": None}

    if record.certificate_name != cert_name:
        logger.warning(
            "Discarding order secret %s: it describes %s, not %s (both names map to this secret)",
            secret_name, record.certificate_name, cert_name,
        )
        return {"loaded_order": None}

    if not record.belongs_to(state["account_id"]):
        logger.info(
            "Discarding order secret %s: bound to account %s, active account is %s",
            secret_name, record.account_binding, state["account_id"],
        )
        return {"loaded_order": None}

    ctx.cache.write_order(state["account_id"], cert_name, raw)
    logger.info("Rehydrated order %s (status %s)", record.location, record.status)
    return {"loaded_order": raw}
