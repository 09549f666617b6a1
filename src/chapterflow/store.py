"""
Abstraction Store
=================

Holds the abstractions and relationships extracted for one run, in
extraction order, and loads them from a scanner payload.

Accepted payload shape (JSON or YAML)::

    project_name: my-project
    summary: One paragraph about the project.
    abstractions:
      - id: flow-engine            # optional, slugified from name/title
        name: Flow Engine          # or "title"
        description: Runs nodes    # or "summary"
        files: [src/flow.py]
    relationships:                 # or "details"
      - from: flow-engine          # id, or integer index into abstractions
        to: 1
        label: schedules
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import ValidationError

from chapterflow.errors import ScannerPayloadError
from chapterflow.models import Abstraction, Relationship

logger = logging.getLogger("chapterflow.store")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """``"Flow Engine (core)"`` -> ``"flow-engine-core"``."""
    return _SLUG_RE.sub("-", text.lower()).strip("-")


class AbstractionStore:
    """Extraction-ordered container for one run's scanner output."""

    def __init__(
        self,
        abstractions: Iterable[Abstraction] = (),
        relationships: Iterable[Relationship] = (),
        project_name: str = "",
        summary: str = "",
    ):
        self._abstractions: list[Abstraction] = list(abstractions)
        self._relationships: list[Relationship] = list(relationships)
        self.project_name = project_name
        self.summary = summary

    @property
    def abstractions(self) -> list[Abstraction]:
        return list(self._abstractions)

    @property
    def relationships(self) -> list[Relationship]:
        return list(self._relationships)

    def add_abstraction(self, abstraction: Abstraction) -> None:
        self._abstractions.append(abstraction)

    def add_relationship(self, relationship: Relationship) -> None:
        self._relationships.append(relationship)

    def get(self, abstraction_id: str) -> Optional[Abstraction]:
        for a in self._abstractions:
            if a.id == abstraction_id:
                return a
        return None

    def __len__(self) -> int:
        return len(self._abstractions)

    # ------------------------------------------------------------------
    # Payload loading
    # ------------------------------------------------------------------

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AbstractionStore":
        """Build a store from a decoded scanner payload.

        Raises:
            ScannerPayloadError: If the payload is not a mapping, an
                abstraction has no usable name, or a relationship index is
                out of range.
        """
        if not isinstance(payload, dict):
            raise ScannerPayloadError(
                f"Scanner payload must be a mapping, got {type(payload).__name__}"
            )

        raw_abstractions = payload.get("abstractions") or []
        if not isinstance(raw_abstractions, list):
            raise ScannerPayloadError("'abstractions' must be a list")

        abstractions = [_parse_abstraction(i, raw) for i, raw in enumerate(raw_abstractions)]
        ids_by_index = [a.id for a in abstractions]

        raw_relationships = payload.get("relationships")
        if raw_relationships is None:
            raw_relationships = payload.get("details") or []
        if not isinstance(raw_relationships, list):
            raise ScannerPayloadError("'relationships' must be a list")

        relationships = [
            _parse_relationship(i, raw, ids_by_index)
            for i, raw in enumerate(raw_relationships)
        ]

        logger.info(f"Loaded scanner payload: {len(abstractions)} abstractions, {len(relationships)} relationships")
        return cls(
            abstractions,
            relationships,
            project_name=str(payload.get("project_name", "") or ""),
            summary=str(payload.get("summary", "") or ""),
        )


def load_payload(path: str | Path) -> AbstractionStore:
    """Read a ``.json``/``.yaml``/``.yml`` scanner payload from disk."""
    payload_path = Path(path)
    try:
        text = payload_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ScannerPayloadError(f"Cannot read scanner payload {payload_path}: {e}") from e

    try:
        if payload_path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ScannerPayloadError(f"Malformed scanner payload {payload_path}: {e}") from e

    store = AbstractionStore.from_payload(data or {})
    if not store.project_name:
        store.project_name = payload_path.stem
    return store


def _parse_abstraction(index: int, raw: Any) -> Abstraction:
    if not isinstance(raw, dict):
        raise ScannerPayloadError(f"Abstraction #{index} must be a mapping")
    title = str(raw.get("title") or raw.get("name") or "").strip()
    abstraction_id = str(raw.get("id") or slugify(title))
    if not abstraction_id:
        raise ScannerPayloadError(f"Abstraction #{index} has neither id nor name")
    files = raw.get("files") or ()
    try:
        return Abstraction(
            id=abstraction_id,
            title=title or abstraction_id,
            summary=str(raw.get("summary") or raw.get("description") or "").strip(),
            files=tuple(str(f) for f in files),
        )
    except ValidationError as e:
        raise ScannerPayloadError(f"Abstraction #{index} is invalid: {e}") from e


def _resolve_endpoint(value: Any, ids_by_index: list[str], rel_index: int) -> str:
    # bool is an int subclass; never treat it as an index
    if isinstance(value, int) and not isinstance(value, bool):
        if not 0 <= value < len(ids_by_index):
            raise ScannerPayloadError(
                f"Relationship #{rel_index} references abstraction index {value}, "
                f"but only {len(ids_by_index)} abstractions exist"
            )
        return ids_by_index[value]
    return str(value)


def _parse_relationship(index: int, raw: Any, ids_by_index: list[str]) -> Relationship:
    if not isinstance(raw, dict):
        raise ScannerPayloadError(f"Relationship #{index} must be a mapping")
    source = raw.get("source_id", raw.get("from"))
    target = raw.get("target_id", raw.get("to"))
    if source is None or target is None:
        raise ScannerPayloadError(f"Relationship #{index} is missing an endpoint")
    return Relationship(
        source_id=_resolve_endpoint(source, ids_by_index, index),
        target_id=_resolve_endpoint(target, ids_by_index, index),
        label=str(raw.get("label", "") or "").strip(),
    )
