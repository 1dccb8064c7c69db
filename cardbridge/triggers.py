# cardbridge/triggers.py
"""
Host-side change hooks.

The host calls a SubjectTrigger whenever a subject document is inserted,
updated or deleted. The trigger works out which fields changed and asks the
bridge to evaluate deliverables for that subject with those fields as
`mutated_fields`. Deletes never evaluate.
"""

import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger("cardbridge.triggers")

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"

_MISSING = object()


def _attribute_map(attributes: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for attr in attributes or []:
        if isinstance(attr, dict) and "slug" in attr:
            out[attr["slug"]] = attr.get("value")
    return out


def extract_attribute_changes(
    operation: str,
    old_attributes: Optional[List[Dict[str, Any]]],
    new_attributes: Optional[List[Dict[str, Any]]],
) -> List[str]:
    """
    insert: every slug of the new document
    update: added, changed and removed slugs
    delete: nothing
    """
    if operation == DELETE:
        return []

    if operation == INSERT:
        return list(_attribute_map(new_attributes).keys())

    old_map = _attribute_map(old_attributes)
    new_map = _attribute_map(new_attributes)

    changed = [
        slug for slug, value in new_map.items()
        if old_map.get(slug, _MISSING) != value
    ]
    changed.extend(slug for slug in old_map if slug not in new_map)
    return changed


class SubjectTrigger:
    def __init__(self, bridge, subject_kind: str, tracked_fields: Optional[List[str]] = None):
        self.bridge = bridge
        self.subject_kind = subject_kind
        self.tracked_fields = list(tracked_fields or [])

    def changed_fields(
        self,
        operation: str,
        old_doc: Optional[Dict[str, Any]],
        new_doc: Optional[Dict[str, Any]],
    ) -> List[str]:
        changed = extract_attribute_changes(
            operation,
            (old_doc or {}).get("attributes"),
            (new_doc or {}).get("attributes"),
        )

        for name in self.tracked_fields:
            if operation == INSERT:
                if new_doc.get(name) is not None:
                    changed.append(name)
            elif old_doc is not None and old_doc.get(name) != new_doc.get(name):
                changed.append(name)
        return changed

    def __call__(
        self,
        operation: str,
        old_doc: Optional[Dict[str, Any]],
        new_doc: Optional[Dict[str, Any]],
    ) -> Optional[List[dict]]:
        if operation == DELETE or not new_doc:
            return None

        changed = self.changed_fields(operation, old_doc, new_doc)
        if not changed:
            logger.debug("No changes on %s:%s, skipping evaluation", self.subject_kind, new_doc.get("id"))
            return None

        return self.bridge.evaluate_deliverables(
            new_doc["organization_id"],
            self.subject_kind,
            str(new_doc["id"]),
            mutated_fields=changed,
        )


def create_triggers(bridge) -> Dict[str, SubjectTrigger]:
    """One trigger per bound subject, keyed by host table name (or subject kind)."""
    handlers: Dict[str, SubjectTrigger] = {}
    for subject_kind, config in bridge.aggregator.subjects.items():
        handlers[config.table or subject_kind] = SubjectTrigger(bridge, subject_kind, config.tracked_fields)
    return handlers
