"""
Unit tests for account_rehydrator / order_rehydrator.

The nodes are called directly with a RunContext in config, no graph.
"""
from __future__ import annotations

import logging

import pytest

from acmeclient import jws as jwslib
from acmeclient.records import new_account_document, new_order_document
from agent.errors import StateIntegrityError
from agent.graph import initial_state
from agent.nodes.rehydration import account_rehydrator, order_rehydrator

ACCT = "acme-le-stage-acct-json"
ORDER = "acme-le-stage-example-com-order-json"
ACCOUNT_URL = "https://ca.test/acme/acct/A2"


@pytest.fixture(scope="module")
def account_document() -> str:
    key = jwslib.generate_account_key()
    return new_account_document(key, ACCOUNT_URL, "a@b.com", {"status": "valid"})


def _order(location: str, name: str = "example.com") -> str:
    return new_order_document(name, [name], location, {"status": "valid"}, "rsa2048")


def _state(**overrides) -> dict:
    state = initial_state(
        directory_url="https://acme-staging-v02.api.letsencrypt.org/directory",
        directory_token="le-stage",
        contact="a@b.com",
        domains=["example.com"],
    )
    state.update(overrides)
    return state


def _config(ctx) -> dict:
    return {"configurable": {"context": ctx}}


# ─── account_rehydrator ───────────────────────────────────────────────────────


def test_absent_account_is_not_an_error(make_context, secret_store):
    ctx = make_context()
    result = account_rehydrator(_state(), _config(ctx))

    assert result == {"loaded_account": None, "account_id": None, "account_url": None}
    assert secret_store.gets == [ACCT]


def test_account_is_materialized_byte_for_byte(make_context, secret_store, account_document):
    secret_store.secrets[ACCT] = account_document
    ctx = make_context()

    result = account_rehydrator(_state(), _config(ctx))

    assert result["account_id"] == "A2"
    assert result["account_url"] == ACCOUNT_URL
    assert result["loaded_account"] == account_document
    assert ctx.cache.read_account("A2") == account_document


def test_corrupt_account_raises(make_context, secret_store):
    secret_store.secrets[ACCT] = '{"id": "A2", "location": "x", "key": {"kty": "RSA"}}'
    ctx = make_context()

    with pytest.raises(StateIntegrityError):
        account_rehydrator(_state(), _config(ctx))


# ─── order_rehydrator ─────────────────────────────────────────────────────────


def test_new_account_skips_order_fetch(make_context, secret_store):
    secret_store.secrets[ORDER] = _order("https://ca.test/acme/order/A2/1")
    ctx = make_context()

    result = order_rehydrator(_state(account_id="A2", account_is_new=True), _config(ctx))

    assert result == {"loaded_order": None}
    assert secret_store.gets == []


def test_matching_order_is_materialized(make_context, secret_store):
    raw = _order("https://ca.test/acme/order/A2/1")
    secret_store.secrets[ORDER] = raw
    ctx = make_context()

    result = order_rehydrator(_state(account_id="A2"), _config(ctx))

    assert result == {"loaded_order": raw}
    assert ctx.cache.read_order("A2", "example.com") == raw


@pytest.mark.parametrize(
    "location",
    [
        "https://ca.test/acme/order/A1/1",   # other account
        "https://pebble.test/my-order/xyz",  # no binding at all
    ],
)
def test_order_without_matching_binding_is_discarded(make_context, secret_store, location):
    secret_store.secrets[ORDER] = _order(location)
    ctx = make_context()

    result = order_rehydrator(_state(account_id="A2"), _config(ctx))

    assert result == {"loaded_order": None}
    assert ctx.cache.read_order("A2", "example.com") is None


def test_corrupt_order_is_discarded_with_warning(make_context, secret_store, caplog):
    secret_store.secrets[ORDER] = "not json"
    ctx = make_context()

    with caplog.at_level(logging.WARNING, logger="agent.nodes.rehydration"):
        result = order_rehydrator(_state(account_id="A2"), _config(ctx))

    assert result == {"loaded_order": None}
    assert "Discarding unreadable order secret" in caplog.text


def test_order_for_other_certificate_is_discarded(make_context, secret_store):
    secret_store.secrets[ORDER] = _order("https://ca.test/acme/order/A2/1", name="other.example.com")
    ctx = make_context()

    result = order_rehydrator(_state(account_id="A2"), _config(ctx))

    assert result == {"loaded_order": None}


def test_order_of_colliding_certificate_name_is_discarded_with_warning(make_context, secret_store, caplog):
    # "wildcard.example.com" and "*.example.com" share one order secret
    secret_store.secrets["acme-le-stage-wildcard-example-com-order-json"] = _order(
        "https://ca.test/acme/order/A2/1", name="wildcard.example.com"
    )
    ctx = make_context()
    state = _state(account_id="A2", domains=["*.example.com"], certificate_name="!.example.com")

    with caplog.at_level(logging.WARNING, logger="agent.nodes.rehydration"):
        result = order_rehydrator(state, _config(ctx))

    assert result == {"loaded_order": None}
    assert "both names map to this secret" in caplog.text
    assert ctx.cache.read_order("A2", "!.example.com") is None
