"""
keyvault-acme — CLI entry point.

Runs exactly one certificate lifecycle invocation: rehydrate ACME state from
Azure Key Vault, register/update the account, issue or renew the certificate
via DNS-01 on Azure DNS, then write changed state back to Key Vault.

Usage:
  python main.py                                   # Settings from env / .env
  python main.py --environment PRODUCTION          # PRODUCTION_* settings
  python main.py --domains "example.com,*.example.com" --force
  python main.py --directory LE_PROD --contact ops@example.com

Exit status: 0 on success, 1 on any failure, 2 on invalid configuration.
"""
from __future__ import annotations

import argparse
import logging
import sys
import tempfile
from contextlib import ExitStack

import structlog
from pydantic import ValidationError

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Azure SDK HTTP logging is very chatty at INFO
logging.getLogger("azure").setLevel(logging.WARNING)

log = logging.getLogger(__name__)
events = structlog.get_logger("keyvault_acme")


# ── Lifecycle runner ──────────────────────────────────────────────────────────


def run_once(settings) -> dict:
    """Execute one certificate lifecycle run and return the final state."""
    from acmeclient.credentials import make_credential_provider
    from agent.context import build_context
    from agent.graph import initial_state, run_lifecycle

    events.info(
        "lifecycle_started",
        directory=settings.ACME_DIRECTORY_TOKEN,
        domains=",".join(settings.CERTIFICATE_NAMES),
        force=settings.FORCE_RENEWAL,
    )

    with ExitStack() as stack:
        state_dir = settings.STATE_DIR or stack.enter_context(
            tempfile.TemporaryDirectory(prefix="keyvault-acme-")
        )
        log.info("Local state cache: %s", state_dir)

        context = build_context(settings, make_credential_provider(settings), state_dir)
        state = initial_state(
            directory_url=settings.ACME_DIRECTORY_URL,
            directory_token=settings.ACME_DIRECTORY_TOKEN,
            contact=settings.ACME_CONTACT,
            domains=settings.CERTIFICATE_NAMES,
            force_renewal=settings.FORCE_RENEWAL,
            key_type=settings.CERT_KEY_TYPE,
            cert_output_path=settings.CERT_OUTPUT_PATH,
            pfx_password=settings.PFX_PASSWORD,
            dns_propagation_wait_seconds=settings.DNS_PROPAGATION_WAIT_SECONDS,
        )
        final_state = run_lifecycle(state, context)

    events.info(
        "lifecycle_complete",
        certificate=final_state["certificate_name"],
        action=final_state.get("renewal_action"),
        issued=final_state.get("certificate_issued", False),
        secrets_written=",".join(final_state.get("secrets_written") or []) or "none",
    )
    return final_state


# ── CLI ───────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ACME certificate lifecycle with state kept in Azure Key Vault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --environment TEST
  python main.py --domains "example.com;*.example.com" --force
        """,
    )
    parser.add_argument(
        "--environment",
        metavar="NAME",
        help="Settings profile; reads NAME_-prefixed variables (e.g. PRODUCTION)",
    )
    parser.add_argument(
        "--directory",
        metavar="D",
        help="ACME directory shortcut (LE_STAGE, LE_PROD, ...) or URL",
    )
    parser.add_argument("--contact", metavar="EMAIL", help="ACME account contact e-mail")
    parser.add_argument(
        "--domains",
        metavar="NAMES",
        help="Comma/semicolon separated domain names; the first is the certificate identity",
    )
    parser.add_argument(
        "--force",
        action="store_const",
        const=True,
        help="Order a new certificate even if the current one is not due",
    )
    parser.add_argument("--state-dir", metavar="DIR", help="Local state cache directory")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    from config import load_settings

    try:
        settings = load_settings(
            environment=args.environment,
            ACME_DIRECTORY=args.directory,
            ACME_CONTACT=args.contact,
            CERTIFICATE_NAMES=args.domains,
            FORCE_RENEWAL=args.force,
            STATE_DIR=args.state_dir,
        )
    except ValidationError as exc:
        log.error("Invalid configuration:\n%s", exc)
        return 2

    try:
        run_once(settings)
    except Exception as exc:
        log.exception("Lifecycle run failed: %s", exc)
        events.error("lifecycle_failed", error=type(exc).__name__)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
