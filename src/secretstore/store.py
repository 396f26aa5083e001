from __future__ import annotations

import base64
import copy
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from pydantic import SecretStr

from src.common.config import Environment
from src.common.errors import AcknowledgementRequired, SecretNotFoundError, SecretValidationError
from src.common.identity import SECRET_KEYS_ANNOTATION, SECRET_VERSIONS_ANNOTATION
from src.renderer.manifest_set import ManifestSet

from .backend import SecretBackend
from .models import (
    KEY_PATTERN,
    PLACEHOLDER_VALUE,
    IssueKind,
    SecretEntry,
    SecretRecord,
    ValidationIssue,
    ValidationResult,
    check_entry,
)

logger = structlog.get_logger(__name__)


def reveal_acknowledgement(environment: Environment) -> str:
    return f"reveal:{environment.name}"


class SecretStore:
    """Versioned secret material per environment.

    Every write produces a new version; nothing is overwritten in place. Values
    stay wrapped in ``SecretStr`` and only ``reveal`` (with an explicit
    acknowledgement) or ``materialize`` (on the way to the cluster) unwrap them.
    """

    def __init__(self, backend: SecretBackend, *, clock: Callable[[], float] = time.time) -> None:
        self.backend = backend
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def get(self, environment: Environment) -> SecretRecord:
        return SecretRecord(environment.name, self.backend.current(environment))

    def put(self, environment: Environment, key: str, value: str) -> int:
        with self._lock_for(environment):
            current = self.backend.current(environment).get(key)
            return self._write(environment, key, value, current)

    def rotate(self, environment: Environment, key: str, value: str) -> int:
        with self._lock_for(environment):
            current = self.backend.current(environment).get(key)
            if current is None:
                raise SecretNotFoundError(environment.name, key)
            version = self._write(environment, key, value, current)
        logger.info("secret_rotated", environment=environment.name, key=key, version=version)
        return version

    def delete(self, environment: Environment, key: str) -> None:
        with self._lock_for(environment):
            if key not in self.backend.current(environment):
                raise SecretNotFoundError(environment.name, key)
            self.backend.delete(environment, key)
        logger.info("secret_deleted", environment=environment.name, key=key)

    def init(self, environment: Environment, keys: Iterable[str], *, overwrite: bool = False) -> List[str]:
        """Seed placeholder values for ``keys``; existing keys are kept unless ``overwrite``."""

        written: List[str] = []
        with self._lock_for(environment):
            current = self.backend.current(environment)
            for key in sorted(set(keys)):
                if key in current and not overwrite:
                    continue
                self._write(environment, key, PLACEHOLDER_VALUE, current.get(key))
                written.append(key)
        logger.info("secrets_initialised", environment=environment.name, keys=written)
        return written

    def validate(self, environment: Environment) -> ValidationResult:
        issues: List[ValidationIssue] = []
        for key, entry in sorted(self.backend.current(environment).items()):
            issues.extend(check_entry(key, entry.value))
        return ValidationResult(environment.name, issues)

    def enforce(self, environment: Environment) -> ValidationResult:
        """Validate and apply the environment's policy: strict environments fail, others warn."""

        result = self.validate(environment)
        if result.ok:
            return result
        if environment.strict_validation:
            raise SecretValidationError(environment.name, result.issues)
        logger.warning(
            "secret_validation_warnings",
            environment=environment.name,
            issues=[str(issue) for issue in result.issues],
        )
        return result

    def reveal(self, environment: Environment, *, acknowledge: Optional[str]) -> Dict[str, str]:
        expected = reveal_acknowledgement(environment)
        if acknowledge != expected:
            raise AcknowledgementRequired(environment.name, expected)
        record = self.get(environment)
        logger.warning("secrets_revealed", environment=environment.name, keys=list(record))
        return {key: record[key].value.get_secret_value() for key in record}

    def inject(self, manifest_set: ManifestSet, environment: Environment) -> ManifestSet:
        """Pin the current version of every referenced key into store-backed Secrets."""

        record = self.get(environment)
        versions = record.versions()
        missing: List[ValidationIssue] = []
        result = manifest_set
        for identity in manifest_set:
            if identity.kind != "Secret":
                continue
            document = manifest_set[identity]
            annotations = document.get("metadata", {}).get("annotations") or {}
            keys_text = annotations.get(SECRET_KEYS_ANNOTATION)
            if not keys_text:
                continue
            keys = [key for key in str(keys_text).split(",") if key]
            absent = [key for key in keys if key not in record]
            if absent:
                missing.extend(ValidationIssue(IssueKind.MISSING_KEY, key) for key in absent)
                continue
            annotations[SECRET_VERSIONS_ANNOTATION] = ",".join(
                f"{key}={versions[key]}" for key in sorted(keys)
            )
            document["metadata"]["annotations"] = annotations
            result = result.replace(identity, document)
        if missing:
            raise SecretValidationError(environment.name, missing)
        return result

    def materialize(self, environment: Environment, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Return the payload to send to the cluster, filling pinned secret values."""

        if document is None or document.get("kind") != "Secret":
            return document
        annotations = document.get("metadata", {}).get("annotations") or {}
        pins = annotations.get(SECRET_VERSIONS_ANNOTATION)
        if not pins:
            return document
        payload = copy.deepcopy(document)
        data: Dict[str, str] = {}
        for pin in str(pins).split(","):
            key, _, version_text = pin.partition("=")
            entry = self.backend.version(environment, key, int(version_text))
            if entry is None:
                raise SecretNotFoundError(environment.name, f"{key} (version {version_text})")
            data[key] = base64.b64encode(entry.value.get_secret_value().encode("utf-8")).decode("ascii")
        payload["data"] = data
        return payload

    def _write(self, environment: Environment, key: str, value: str, current: Optional[SecretEntry]) -> int:
        if not KEY_PATTERN.match(key):
            raise SecretValidationError(environment.name, [ValidationIssue(IssueKind.MALFORMED_KEY, key)])
        version = current.version + 1 if current else self._next_version(environment, key)
        entry = SecretEntry(key=key, value=SecretStr(value), version=version, last_rotated_at=self.clock())
        self.backend.write(environment, entry)
        logger.debug("secret_written", environment=environment.name, key=key, version=version)
        return version

    def _next_version(self, environment: Environment, key: str) -> int:
        version = 1
        while self.backend.version(environment, key, version) is not None:
            version += 1
        return version

    def _lock_for(self, environment: Environment) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(environment.name, threading.Lock())


__all__ = ["SecretStore", "reveal_acknowledgement"]
