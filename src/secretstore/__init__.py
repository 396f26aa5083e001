"""Versioned secret material per environment."""

from .backend import InMemorySecretBackend, KubectlSecretBackend, SecretBackend
from .models import IssueKind, SecretEntry, SecretRecord, ValidationIssue, ValidationResult
from .store import SecretStore, reveal_acknowledgement

__all__ = [
    "InMemorySecretBackend",
    "IssueKind",
    "KubectlSecretBackend",
    "SecretBackend",
    "SecretEntry",
    "SecretRecord",
    "SecretStore",
    "ValidationIssue",
    "ValidationResult",
    "reveal_acknowledgement",
]
