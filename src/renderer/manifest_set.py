from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Iterator, List, Tuple

import yaml

from src.common.identity import ResourceIdentity


class ManifestSet(Mapping):
    """Resolved desired state for one environment.

    Read-only: documents are deep-copied in and out, so a ManifestSet is never
    mutated after construction. Derived sets are built with ``replace``.
    """

    def __init__(self, environment: str, documents: Iterable[Tuple[ResourceIdentity, Dict[str, Any]]]) -> None:
        self.environment = environment
        ordered: Dict[ResourceIdentity, Dict[str, Any]] = {}
        for identity, document in documents:
            if identity in ordered:
                raise ValueError(f"duplicate resource {identity} in manifest set")
            ordered[identity] = copy.deepcopy(document)
        self._documents = ordered

    @classmethod
    def from_documents(cls, environment: str, documents: Iterable[Dict[str, Any]]) -> "ManifestSet":
        return cls(environment, ((ResourceIdentity.from_document(doc), doc) for doc in documents))

    def __getitem__(self, identity: ResourceIdentity) -> Dict[str, Any]:
        return copy.deepcopy(self._documents[identity])

    def __iter__(self) -> Iterator[ResourceIdentity]:
        return iter(self._documents)

    def __len__(self) -> int:
        return len(self._documents)

    def __repr__(self) -> str:
        return f"ManifestSet(environment={self.environment!r}, resources={len(self)})"

    def replace(self, identity: ResourceIdentity, document: Dict[str, Any]) -> "ManifestSet":
        if identity not in self._documents:
            raise KeyError(identity)
        return ManifestSet(
            self.environment,
            ((ident, document if ident == identity else doc) for ident, doc in self._documents.items()),
        )

    def documents(self) -> List[Dict[str, Any]]:
        return [self[identity] for identity in sorted(self._documents)]

    def to_yaml(self) -> str:
        """Canonical multi-document YAML (identity order, sorted keys)."""

        return yaml.safe_dump_all(self.documents(), sort_keys=True, default_flow_style=False)

    def digest(self) -> str:
        return hashlib.sha256(self.to_yaml().encode("utf-8")).hexdigest()

    def to_json(self) -> str:
        payload = {
            "environment": self.environment,
            "documents": self.documents(),
        }
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "ManifestSet":
        data = json.loads(raw)
        return cls.from_documents(str(data["environment"]), data.get("documents") or [])


__all__ = ["ManifestSet"]
