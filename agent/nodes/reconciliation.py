"""
state_reconciler node — write changed documents back to the secret store.

Only reached after a successful run.  Each document in the local state cache
is compared byte-for-byte with the text rehydrated at the start of the run;
a secret is written only when they differ (or nothing was loaded).  The
account goes first because the order is bound to it.
"""
from __future__ import annotations

import logging
from typing import Optional

from langchain_core.runnables import RunnableConfig

from agent.context import get_context
from agent.state import AgentState
from storage.naming import account_secret_name, order_secret_name
from storage.secret_store import SecretStore

logger = logging.getLogger(__name__)


def state_reconciler(state: AgentState, config: RunnableConfig) -> dict:
    """
    Returns updates to: secrets_written, and loaded_account / loaded_order
    advanced to what the secret store now holds.
    """
    ctx = get_context(config)
    account_id = state.get("account_id")
    written = list(state.get("secrets_written") or [])
    updates: dict = {}

    if not account_id:
        logger.info("No active account — nothing to reconcile")
        return {"secrets_written": written}

    directory_token = state["directory_token"]
    cert_name = state["certificate_name"]

    account_name = account_secret_name(directory_token)
    local_account = ctx.cache.read_account(account_id)
    if _put_if_changed(ctx.secret_store, account_name, local_account, state.get("loaded_account")):
        written.append(account_name)
        updates["loaded_account"] = local_account

    order_name = order_secret_name(directory_token, cert_name)
    local_order = ctx.cache.read_order(account_id, cert_name)
    if _put_if_changed(ctx.secret_store, order_name, local_order, state.get("loaded_order")):
        written.append(order_name)
        updates["loaded_order"] = local_order

    if len(written) == len(state.get("secrets_written") or []):
        logger.info("Secret store already up to date")
    return {**updates, "secrets_written": written}


def _put_if_changed(
    store: SecretStore,
    name: str,
    local: Optional[str],
    loaded: Optional[str],
) -> bool:
    if local is None:
        return False
    if local == loaded:
        logger.debug("Secret %s unchanged", name)
        return False
    store.put_secret(name, local)
    logger.info("Wrote secret %s", name)
    return True
