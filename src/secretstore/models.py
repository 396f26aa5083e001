from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List

from pydantic import SecretStr

PLACEHOLDER_PATTERN = re.compile(r"CHANGE_ME|placeholder|your_|example")
KEY_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
PLACEHOLDER_VALUE = "CHANGE_ME"


@dataclass(frozen=True)
class SecretEntry:
    key: str
    value: SecretStr
    version: int
    last_rotated_at: float


class SecretRecord(Mapping):
    """Current version of every secret key in one environment."""

    def __init__(self, environment: str, entries: Dict[str, SecretEntry]) -> None:
        self.environment = environment
        self._entries = dict(entries)

    def __getitem__(self, key: str) -> SecretEntry:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"SecretRecord(environment={self.environment!r}, keys={sorted(self._entries)!r})"

    def versions(self) -> Dict[str, int]:
        return {key: entry.version for key, entry in self._entries.items()}


class IssueKind(str, Enum):
    PLACEHOLDER_FOUND = "PlaceholderFound"
    EMPTY_VALUE = "EmptyValue"
    MALFORMED_KEY = "MalformedKey"
    MISSING_KEY = "MissingKey"


@dataclass(frozen=True)
class ValidationIssue:
    kind: IssueKind
    key: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.key}"


@dataclass(frozen=True)
class ValidationResult:
    environment: str
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


def check_entry(key: str, value: SecretStr) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if not KEY_PATTERN.match(key):
        issues.append(ValidationIssue(IssueKind.MALFORMED_KEY, key))
    plaintext = value.get_secret_value()
    if not plaintext.strip():
        issues.append(ValidationIssue(IssueKind.EMPTY_VALUE, key))
    elif PLACEHOLDER_PATTERN.search(plaintext):
        issues.append(ValidationIssue(IssueKind.PLACEHOLDER_FOUND, key))
    return issues


__all__ = [
    "IssueKind",
    "KEY_PATTERN",
    "PLACEHOLDER_PATTERN",
    "PLACEHOLDER_VALUE",
    "SecretEntry",
    "SecretRecord",
    "ValidationIssue",
    "ValidationResult",
    "check_entry",
]
