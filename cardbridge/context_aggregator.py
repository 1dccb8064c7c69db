# cardbridge/context_aggregator.py
"""
Subject resolution and context aggregation.

Subjects are host-owned documents shaped like
    {"id": ..., "attributes": [{"slug": ..., "value": ...}, ...], <parent-id fields>}

A SubjectConfig binds a subject kind to a resolver plus an ordered list of
parent edges. Aggregation walks those edges recursively and flattens every
attribute list into one variable map:

    root ancestors < later-declared parents < the subject itself

Each (kind, id) is expanded at most once per call tree, so parent cycles
terminate.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from pydantic import ValidationError
from sqlalchemy import Table, select
from sqlalchemy.orm import sessionmaker

from cardbridge.variants import Attribute

logger = logging.getLogger("cardbridge.context")


class SubjectResolver(Protocol):
    def fetch(self, subject_id: str) -> Optional[Dict[str, Any]]:
        ...


class MappingSubjectResolver:
    """Documents held in memory, keyed by id."""

    def __init__(self, documents: Optional[Mapping[str, Dict[str, Any]]] = None):
        self.documents: Dict[str, Dict[str, Any]] = dict(documents or {})

    def put(self, document: Dict[str, Any]) -> None:
        self.documents[str(document["id"])] = document

    def fetch(self, subject_id: str) -> Optional[Dict[str, Any]]:
        return self.documents.get(str(subject_id))


class TableSubjectResolver:
    """Reads subject documents from a host table through SQLAlchemy Core."""

    def __init__(self, session_factory: sessionmaker, table: Table, id_column: str = "id"):
        self.SessionFactory = session_factory
        self.table = table
        self.id_column = id_column

    def fetch(self, subject_id: str) -> Optional[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            row = (
                session.execute(
                    select(self.table).where(self.table.c[self.id_column] == str(subject_id))
                )
                .mappings()
                .first()
            )
            return dict(row) if row is not None else None
        finally:
            session.close()


@dataclass(frozen=True)
class ParentEdge:
    field: str          # document field holding the parent id, e.g. "event_id"
    subject_kind: str   # kind of the parent, e.g. "event"


@dataclass
class SubjectConfig:
    resolver: SubjectResolver
    parents: List[ParentEdge] = field(default_factory=list)
    table: Optional[str] = None
    tracked_fields: List[str] = field(default_factory=list)


def extract_variables(document: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    if not document:
        return variables

    attributes = document.get("attributes")
    if not isinstance(attributes, list):
        return variables

    for raw in attributes:
        try:
            attribute = Attribute.model_validate(raw)
        except ValidationError:
            logger.warning("Skipping malformed attribute on subject %s: %r", document.get("id"), raw)
            continue
        variables[attribute.slug] = attribute.value
    return variables


class ContextAggregator:
    def __init__(self, subjects: Optional[Mapping[str, SubjectConfig]] = None):
        self.subjects: Dict[str, SubjectConfig] = dict(subjects or {})

    def is_bound(self, subject_kind: str) -> bool:
        return subject_kind in self.subjects

    def fetch(self, subject_kind: str, subject_id: str) -> Optional[Dict[str, Any]]:
        config = self.subjects.get(subject_kind)
        if config is None:
            return None
        return config.resolver.fetch(subject_id)

    def resolve(self, subject_kind: str, subject_id: str) -> Dict[str, Any]:
        """The subject's own variables; {} when unbound or missing."""
        return extract_variables(self.fetch(subject_kind, subject_id))

    def aggregate(self, subject_kind: str, subject_id: str) -> Dict[str, Any]:
        result = self._aggregate(subject_kind, str(subject_id), set())
        return {
            "subject_kind": subject_kind,
            "subject_id": str(subject_id),
            "variables": result["variables"],
            "subjects": result["subjects"],
        }

    def _aggregate(self, subject_kind: str, subject_id: str, visited: Set[str]) -> Dict[str, Any]:
        key = f"{subject_kind}:{subject_id}"
        if key in visited:
            logger.debug("Cycle guard hit for %s", key)
            return {"variables": {}, "subjects": {}}
        visited.add(key)

        document = self.fetch(subject_kind, subject_id)
        if not document:
            return {"variables": {}, "subjects": {}}

        own = extract_variables(document)
        subjects: Dict[str, Dict[str, Any]] = {}
        merged: Dict[str, Any] = {}

        for edge in self.subjects[subject_kind].parents:
            parent_id = document.get(edge.field)
            if not parent_id:
                continue
            parent = self._aggregate(edge.subject_kind, str(parent_id), visited)
            merged.update(parent["variables"])
            subjects.update(parent["subjects"])

        merged.update(own)
        subjects[subject_kind] = document
        return {"variables": merged, "subjects": subjects}
