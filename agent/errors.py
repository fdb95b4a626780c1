"""Errors that abort a lifecycle run before anything is reconciled."""
from __future__ import annotations


class OrchestrationError(Exception):
    """The ACME flow reached a state it cannot continue from."""


class StateIntegrityError(OrchestrationError):
    """State rehydrated from the secret store is corrupt.

    Never downgraded to "start fresh": a silent fallback would register a
    second account and orphan everything bound to the first one.
    """
