"""
Collaborators of one lifecycle run.

Nodes receive them through the graph's RunnableConfig instead of reaching for
module-level singletons:

    graph.invoke(state, config={"configurable": {"context": ctx}})
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from langchain_core.runnables import RunnableConfig

from acmeclient.client import AcmeClient, make_client
from acmeclient.dns_challenge import DnsProvider, make_dns_provider
from storage.local_cache import LocalStateCache
from storage.secret_store import SecretStore, make_secret_store

if TYPE_CHECKING:
    from acmeclient.credentials import CredentialProvider
    from config import Settings


@dataclass
class RunContext:
    secret_store: SecretStore
    cache: LocalStateCache
    client: AcmeClient
    dns_provider: DnsProvider
    eab_key_id: str = ""
    eab_hmac_key: str = ""


def get_context(config: RunnableConfig) -> RunContext:
    try:
        return config["configurable"]["context"]
    except (KeyError, TypeError) as exc:
        raise RuntimeError("Graph invoked without a RunContext in config['configurable']") from exc


def build_context(
    settings: "Settings",
    credential_provider: "CredentialProvider",
    state_dir: str | Path,
) -> RunContext:
    """Wire the production collaborators for *settings*."""
    credential = credential_provider.get_credential()
    return RunContext(
        secret_store=make_secret_store(settings, credential),
        cache=LocalStateCache(state_dir, settings.ACME_DIRECTORY_TOKEN),
        client=make_client(settings),
        dns_provider=make_dns_provider(settings, credential),
        eab_key_id=settings.ACME_EAB_KEY_ID,
        eab_hmac_key=settings.ACME_EAB_HMAC_KEY,
    )
