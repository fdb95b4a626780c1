"""
acme_account_setup node — make sure an ACME account with the requested
contact exists.

  no rehydrated account        → register one (EAB when configured), mark new
  rehydrated, contact matches  → no-op
  rehydrated, contact differs  → update the contact in place, same account id

Security note: the account key is never stored in AgentState (which could
leak into LangSmith traces).  It lives inside acct.json in the local state
cache and is loaded from there each time it is needed.
"""
from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from acmeclient import jws as jwslib
from acmeclient.records import (
    AccountRecord,
    account_id_from_url,
    new_account_document,
    updated_account_document,
)
from agent.context import RunContext, get_context
from agent.errors import OrchestrationError
from agent.state import AgentState

logger = logging.getLogger(__name__)


def acme_account_setup(state: AgentState, config: RunnableConfig) -> dict:
    """
    Returns updates to: account_id, account_url, account_is_new, current_nonce.
    """
    ctx = get_context(config)
    client = ctx.client
    contact = state["contact"]

    if state.get("account_id"):
        record = active_account(ctx, state)
        if record.contact == contact:
            logger.info("ACME account %s is up to date", record.account_id)
            return {"account_is_new": False}

        logger.info(
            "Updating contact of ACME account %s: %s → %s",
            record.account_id, record.contact or "<none>", contact,
        )
        nonce = client.get_nonce(client.get_directory())
        body, nonce = client.update_account(record.account_key(), record.location, contact, nonce)
        ctx.cache.write_account(record.account_id, updated_account_document(record, body, contact))
        return {"account_is_new": False, "current_nonce": nonce}

    logger.info("Registering new ACME account for %s", contact)
    directory = client.get_directory()
    account_key = jwslib.generate_account_key()
    account_url, body, nonce = client.create_account(
        account_key=account_key,
        contact=contact,
        nonce=client.get_nonce(directory),
        directory=directory,
        eab_key_id=ctx.eab_key_id,
        eab_hmac_key=ctx.eab_hmac_key,
    )
    account_id = account_id_from_url(account_url)
    ctx.cache.write_account(account_id, new_account_document(account_key, account_url, contact, body))
    logger.info("Registered new ACME account %s", account_url)

    return {
        "account_id": account_id,
        "account_url": account_url,
        "account_is_new": True,
        "current_nonce": nonce,
    }


def active_account(ctx: RunContext, state: AgentState) -> AccountRecord:
    """Read the active account (and its key) back from the local state cache."""
    account_id = state.get("account_id")
    raw = ctx.cache.read_account(account_id) if account_id else None
    if raw is None:
        raise OrchestrationError("No active ACME account in the local state cache")
    return AccountRecord.parse(raw)
