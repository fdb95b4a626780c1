"""
Tests for the renewal decision (agent/nodes/router.py) and for the order
initializer's resume / authorization handling (agent/nodes/order.py).
"""
from __future__ import annotations

import pytest

from acmeclient import jws as jwslib
from acmeclient.records import new_account_document, render_document
from agent.errors import OrchestrationError
from agent.nodes.order import order_initializer
from agent.nodes.router import _decide, renewal_gate, renewal_router

FUTURE = "2099-01-01T00:00:00Z"
PAST = "2000-01-01T00:00:00Z"


def _order(status="valid", domains=("example.com",), expires=FUTURE, renew_after=FUTURE) -> str:
    return render_document({
        "name": "example.com",
        "main_domain": domains[0],
        "san": list(domains[1:]),
        "location": "https://ca.test/acme/order/1/2",
        "status": status,
        "expires": expires,
        "renew_after": renew_after,
    })


def _gate_state(force=False, domains=("example.com",)) -> dict:
    return {"force_renewal": force, "domains": list(domains)}


# ─── _decide ──────────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "raw, state, expected",
    [
        (None, _gate_state(), "issue"),
        (_order(), _gate_state(force=True), "issue"),
        (_order(), _gate_state(), "not_due"),
        (_order(renew_after=PAST), _gate_state(), "issue"),
        (_order(renew_after=None), _gate_state(), "issue"),
        (_order(), _gate_state(domains=("example.com", "www.example.com")), "issue"),
        (_order(status="pending"), _gate_state(), "resume"),
        (_order(status="ready"), _gate_state(), "resume"),
        (_order(status="pending", expires=PAST), _gate_state(), "issue"),
        (_order(status="processing"), _gate_state(), "issue"),
        (_order(status="invalid"), _gate_state(), "issue"),
    ],
    ids=[
        "no-order", "forced", "valid-not-due", "valid-due", "valid-no-renew-after",
        "domains-changed", "pending", "ready", "pending-expired", "processing", "invalid",
    ],
)
def test_decide(raw, state, expected):
    assert _decide(state, raw) == expected


def test_domain_order_does_not_matter():
    raw = _order(domains=("www.example.com", "example.com"))
    assert _decide(_gate_state(domains=("example.com", "www.example.com")), raw) == "not_due"


def test_renewal_router_defaults_to_issue():
    assert renewal_router({}) == "issue"
    assert renewal_router({"renewal_action": "not_due"}) == "not_due"


def test_renewal_gate_reads_cached_order(make_context):
    ctx = make_context()
    ctx.cache.write_order("1", "example.com", _order())
    state = {**_gate_state(), "account_id": "1", "certificate_name": "example.com"}

    assert renewal_gate(state, {"configurable": {"context": ctx}}) == {"renewal_action": "not_due"}


# ─── order_initializer ────────────────────────────────────────────────────────


@pytest.fixture
def account(make_context, acme_server):
    """A registered account materialized in a fresh cache; returns (ctx, state)."""
    ctx = make_context()
    key = jwslib.generate_account_key()
    url, body, _ = acme_server.create_account(key, "a@b.com", "n", acme_server.directory)
    doc = new_account_document(key, url, "a@b.com", body)
    account_id = url.rsplit("/", 1)[-1]
    ctx.cache.write_account(account_id, doc)
    state = {
        "account_id": account_id,
        "certificate_name": "example.com",
        "domains": ["example.com", "*.example.com"],
        "key_type": "rsa2048",
        "renewal_action": "issue",
        "current_nonce": "",
    }
    return ctx, state


def _config(ctx) -> dict:
    return {"configurable": {"context": ctx}}


def test_new_order_collects_dns_challenges(account, acme_server):
    ctx, state = account

    result = order_initializer(state, _config(ctx))

    order = result["current_order"]
    assert order["auth_domains"] == ["example.com", "example.com"]
    assert all(url.endswith("/dns") for url in order["challenge_urls"])
    assert len(order["dns_txt_values"]) == 2
    assert ctx.cache.read_order(state["account_id"], "example.com") is not None


def test_already_valid_authorization_is_skipped(account, acme_server, monkeypatch):
    ctx, state = account
    original = acme_server.get_authorization

    def first_valid(auth_url, key, account_url):
        authz = original(auth_url, key, account_url)
        if auth_url.endswith("/0"):
            authz["status"] = "valid"
        return authz

    monkeypatch.setattr(acme_server, "get_authorization", first_valid)

    order = order_initializer(state, _config(ctx))["current_order"]

    assert len(order["auth_urls"]) == 1
    assert order["auth_urls"][0].endswith("/1")


def test_missing_dns01_challenge_raises(account, acme_server, monkeypatch):
    ctx, state = account
    original = acme_server.get_authorization

    def http_only(auth_url, key, account_url):
        authz = original(auth_url, key, account_url)
        authz["challenges"] = [c for c in authz["challenges"] if c["type"] != "dns-01"]
        return authz

    monkeypatch.setattr(acme_server, "get_authorization", http_only)

    with pytest.raises(OrchestrationError, match="dns-01"):
        order_initializer(state, _config(ctx))


def test_resume_reuses_pending_order(account, acme_server):
    ctx, state = account
    first = order_initializer(state, _config(ctx))["current_order"]

    resumed = order_initializer({**state, "renewal_action": "resume"}, _config(ctx))["current_order"]

    assert resumed["order_url"] == first["order_url"]
    assert acme_server.calls.count("create_order") == 1


def test_resume_falls_back_when_server_order_moved_on(account, acme_server):
    ctx, state = account
    first = order_initializer(state, _config(ctx))["current_order"]
    acme_server.orders[first["order_url"]]["status"] = "invalid"

    resumed = order_initializer({**state, "renewal_action": "resume"}, _config(ctx))["current_order"]

    assert resumed["order_url"] != first["order_url"]
    assert acme_server.calls.count("create_order") == 2


def test_no_account_in_cache_raises(make_context):
    with pytest.raises(OrchestrationError):
        order_initializer({"account_id": "missing", "certificate_name": "x"}, _config(make_context()))
