"""
LangGraph StateGraph builder for one certificate lifecycle run.

Graph topology:
  START
    → account_rehydrator        (secret store → local state cache)
    → acme_account_setup        (register / update contact)
    → order_rehydrator          (skipped for a brand-new account)
    → renewal_gate
    → [conditional: not_due → state_reconciler]
    → order_initializer         (issue / resume)
    → challenge_setup
    → challenge_verifier
    → csr_generator
    → order_finalizer
    → cert_downloader
    → storage_manager
    → state_reconciler          (local state cache → secret store, on change)
    → END

Collaborators come from config["configurable"]["context"] (see
agent/context.py).  A node that raises aborts the run before
state_reconciler, so a failed run never writes to the secret store.
"""
from __future__ import annotations

from typing import List

from langgraph.graph import END, START, StateGraph

from agent.context import RunContext
from agent.nodes.account import acme_account_setup
from agent.nodes.challenge import challenge_setup, challenge_verifier
from agent.nodes.csr import csr_generator
from agent.nodes.finalizer import cert_downloader, order_finalizer
from agent.nodes.order import order_initializer
from agent.nodes.reconciliation import state_reconciler
from agent.nodes.rehydration import account_rehydrator, order_rehydrator
from agent.nodes.router import renewal_gate, renewal_router
from agent.nodes.storage import storage_manager
from agent.state import AgentState
from storage.naming import certificate_name


# Linear issuance pipeline entered from renewal_gate on "issue" / "resume"
ISSUANCE_PIPELINE = (
    ("order_initializer", order_initializer),
    ("challenge_setup", challenge_setup),
    ("challenge_verifier", challenge_verifier),
    ("csr_generator", csr_generator),
    ("order_finalizer", order_finalizer),
    ("cert_downloader", cert_downloader),
    ("storage_manager", storage_manager),
)


def build_graph():
    """Build and compile the lifecycle StateGraph (no checkpointer: one run, one invoke)."""
    builder = StateGraph(AgentState)

    # ── Rehydration and account ───────────────────────────────────────────
    builder.add_node("account_rehydrator", account_rehydrator)
    builder.add_node("acme_account_setup", acme_account_setup)
    builder.add_node("order_rehydrator", order_rehydrator)
    builder.add_node("renewal_gate", renewal_gate)
    builder.add_edge(START, "account_rehydrator")
    builder.add_edge("account_rehydrator", "acme_account_setup")
    builder.add_edge("acme_account_setup", "order_rehydrator")
    builder.add_edge("order_rehydrator", "renewal_gate")

    # ── Issuance ──────────────────────────────────────────────────────────
    for name, node in ISSUANCE_PIPELINE:
        builder.add_node(name, node)
    for (upstream, _), (downstream, _) in zip(ISSUANCE_PIPELINE, ISSUANCE_PIPELINE[1:]):
        builder.add_edge(upstream, downstream)

    first_step, last_step = ISSUANCE_PIPELINE[0][0], ISSUANCE_PIPELINE[-1][0]
    builder.add_conditional_edges(
        "renewal_gate",
        renewal_router,
        {"issue": first_step, "resume": first_step, "not_due": "state_reconciler"},
    )

    # ── Reconciliation ────────────────────────────────────────────────────
    builder.add_node("state_reconciler", state_reconciler)
    builder.add_edge(last_step, "state_reconciler")
    builder.add_edge("state_reconciler", END)

    return builder.compile()


def initial_state(
    directory_url: str,
    directory_token: str,
    contact: str,
    domains: List[str],
    force_renewal: bool = False,
    key_type: str = "rsa2048",
    cert_output_path: str = "./certs",
    pfx_password: str = "",
    dns_propagation_wait_seconds: int = 120,
) -> dict:
    """
    Build the initial AgentState dict for a fresh run.
    *domains* must already be normalized; the first one is the identity.
    """
    return {
        "directory_url": directory_url,
        "directory_token": directory_token,
        "contact": contact,
        "domains": list(domains),
        "certificate_name": certificate_name(domains),
        "force_renewal": force_renewal,
        "key_type": key_type,
        "cert_output_path": cert_output_path,
        "pfx_password": pfx_password,
        "dns_propagation_wait_seconds": dns_propagation_wait_seconds,
        "loaded_account": None,
        "loaded_order": None,
        "account_id": None,
        "account_url": None,
        "account_is_new": False,
        "renewal_action": None,
        "current_order": None,
        "current_nonce": None,
        "certificate_issued": False,
        "cert_metadata": {},
        "secrets_written": [],
    }


def run_lifecycle(state: dict, context: RunContext, graph=None) -> dict:
    """Invoke the graph once with *context* wired in; returns the final state."""
    graph = graph or build_graph()
    return graph.invoke(state, config={"configurable": {"context": context}})
