"""
Tests for the CLI entry point (main.py).
"""
from __future__ import annotations

from unittest.mock import patch

import main


def test_invalid_configuration_exits_2(settings_env, monkeypatch):
    monkeypatch.setenv("ACME_CONTACT", "not-an-email")
    with patch("main.run_once") as run_once:
        assert main.main([]) == 2
    run_once.assert_not_called()


def test_domain_outside_secret_naming_exits_2_before_any_acme_call(settings_env):
    with patch("main.run_once") as run_once:
        assert main.main(["--domains", "_svc.example.com"]) == 2
    run_once.assert_not_called()


def test_cli_flags_override_settings(settings_env):
    with patch("main.run_once") as run_once:
        code = main.main(["--directory", "LE_PROD", "--domains", "a.com;*.a.com", "--force"])

    assert code == 0
    settings = run_once.call_args.args[0]
    assert settings.ACME_DIRECTORY_TOKEN == "le-prod"
    assert settings.CERTIFICATE_NAMES == ["a.com", "*.a.com"]
    assert settings.FORCE_RENEWAL is True


def test_force_flag_absent_keeps_environment_value(settings_env, monkeypatch):
    monkeypatch.setenv("FORCE_RENEWAL", "true")
    with patch("main.run_once") as run_once:
        main.main([])
    assert run_once.call_args.args[0].FORCE_RENEWAL is True


def test_failed_run_exits_1(settings_env):
    with patch("main.run_once", side_effect=RuntimeError("boom")):
        assert main.main([]) == 1


def test_run_once_wires_context_and_state(settings_env, tmp_path):
    from config import load_settings

    settings = load_settings(STATE_DIR=str(tmp_path / "state"))
    final = {"certificate_name": "example.com", "renewal_action": "not_due", "secrets_written": []}

    with patch("agent.context.build_context") as build_context, \
            patch("agent.graph.run_lifecycle", return_value=final) as run_lifecycle, \
            patch("acmeclient.credentials.make_credential_provider"):
        assert main.run_once(settings) is final

    assert build_context.call_args.args[2] == str(tmp_path / "state")
    state = run_lifecycle.call_args.args[0]
    assert state["domains"] == ["example.com"]
    assert state["directory_token"] == "le-stage"
