# cardbridge/procedure_service.py

import logging
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session, sessionmaker

from cardbridge.entities import Card, Procedure, new_id
from cardbridge.errors import NotFoundError
from cardbridge.variants import (
    CardRef,
    FieldError,
    ProcedureInput,
    ProcedureSubject,
    Source,
    SubmissionResult,
    Variant,
)

logger = logging.getLogger("cardbridge.procedures")


# -----------------------
# Variant shape checks
# -----------------------

_PHONE_RE = re.compile(r"^[+\d\s().\-]+$")
_SSN_RE = re.compile(r"^(\d{3}-\d{2}-\d{4}|\d{9})$")


def _is_string(value) -> bool:
    return isinstance(value, str)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_date(value) -> bool:
    if isinstance(value, (datetime, date)) or _is_number(value):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def _is_email(value) -> bool:
    if not isinstance(value, str) or "@" not in value:
        return False
    local, _, domain = value.rpartition("@")
    return bool(local) and bool(domain)


def _is_url(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def _is_phone(value) -> bool:
    if not isinstance(value, str) or not _PHONE_RE.match(value):
        return False
    return sum(ch.isdigit() for ch in value) >= 7


def _is_ssn(value) -> bool:
    return isinstance(value, str) and bool(_SSN_RE.match(value))


VARIANT_CHECKS: Dict[str, tuple[Callable[[Any], bool], str]] = {
    Variant.STRING.value:  (_is_string, "expected a string"),
    Variant.TEXT.value:    (_is_string, "expected a string"),
    Variant.NUMBER.value:  (_is_number, "expected a number"),
    Variant.BOOLEAN.value: (lambda v: isinstance(v, bool), "expected a boolean"),
    Variant.DATE.value:    (_is_date, "expected a date"),
    Variant.EMAIL.value:   (_is_email, "expected an email address"),
    Variant.URL.value:     (_is_url, "expected a URL"),
    Variant.PHONE.value:   (_is_phone, "expected a phone number"),
    Variant.SSN.value:     (_is_ssn, "expected an SSN"),
    Variant.ADDRESS.value: (lambda v: isinstance(v, Mapping), "expected a structured address"),
    Variant.SUBJECT.value: (lambda v: isinstance(v, str) and v != "", "expected a subject id"),
    Variant.ARRAY.value:   (lambda v: isinstance(v, (list, tuple)), "expected a list"),
}


def check_variant(variant: str, value) -> Optional[str]:
    """Returns an error message, or None when `value` fits `variant`."""
    check = VARIANT_CHECKS.get(variant)
    if check is None:
        return f"unknown variant {variant}"
    fn, message = check
    return None if fn(value) else message


def _is_empty(value) -> bool:
    return value is None or value == ""


class ProcedureService:
    def __init__(self, session_factory: sessionmaker, on_insert=None):
        self.SessionFactory = session_factory
        self.on_insert = on_insert

    def _load(self, session: Session, procedure_id: str) -> Optional[Procedure]:
        return session.get(Procedure, str(procedure_id))

    def _check_card_refs(self, session: Session, organization_id: str, refs: List[CardRef]) -> None:
        ids = {r.card_id for r in refs}
        if not ids:
            return
        found = {
            row[0]
            for row in session.query(Card.id)
            .filter(Card.id.in_(list(ids)), Card.organization_id == str(organization_id))
            .all()
        }
        for ref in refs:
            if ref.card_id not in found:
                raise NotFoundError("Card", ref.card_id)

    # -----------------------
    # Administrative operations
    # -----------------------

    def create(self, data) -> dict:
        if not isinstance(data, ProcedureInput):
            data = ProcedureInput.model_validate(data)

        session = self.SessionFactory()
        try:
            self._check_card_refs(session, data.organization_id, data.card_refs)

            procedure = Procedure(
                id=data.id or new_id(),
                organization_id=data.organization_id,
                name=data.name,
                description=data.description,
                source=data.source.value,
                subject=data.subject.model_dump(mode="json") if data.subject else None,
                card_refs=[r.model_dump(mode="json") for r in data.card_refs],
            )
            session.add(procedure)
            session.commit()
            created = procedure.to_dict()
        finally:
            session.close()

        logger.info("Procedure created id=%s name=%s", created["id"], created["name"])
        if self.on_insert is not None:
            self.on_insert(created)
        return created

    def get(self, procedure_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            procedure = self._load(session, procedure_id)
            return procedure.to_dict() if procedure else None
        finally:
            session.close()

    def list(self, organization_id: str, source: Optional[str] = None, limit: int = 50) -> List[dict]:
        session = self.SessionFactory()
        try:
            query = session.query(Procedure).filter(Procedure.organization_id == str(organization_id))
            if source:
                query = query.filter(Procedure.source == Source(source).value)
            rows = query.order_by(Procedure.created_at.desc(), Procedure.id.desc()).limit(limit).all()
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    def update(self, procedure_id: str, **changes) -> dict:
        session = self.SessionFactory()
        try:
            procedure = self._load(session, procedure_id)
            if procedure is None:
                raise NotFoundError("Procedure", procedure_id)

            if changes.get("name") is not None:
                procedure.name = changes["name"]
            if changes.get("description") is not None:
                procedure.description = changes["description"]
            if changes.get("source") is not None:
                procedure.source = Source(changes["source"]).value
            if changes.get("subject") is not None:
                procedure.subject = ProcedureSubject.model_validate(changes["subject"]).model_dump(mode="json")
            if changes.get("card_refs") is not None:
                refs = [r if isinstance(r, CardRef) else CardRef.model_validate(r) for r in changes["card_refs"]]
                self._check_card_refs(session, procedure.organization_id, refs)
                procedure.card_refs = [r.model_dump(mode="json") for r in refs]

            session.commit()
            updated = procedure.to_dict()
        finally:
            session.close()

        logger.info("Procedure updated id=%s", procedure_id)
        return updated

    # -----------------------
    # Submission
    # -----------------------

    def submit(self, procedure_id: str, values: Optional[Dict[str, Any]]) -> SubmissionResult:
        """
        Validate submitted card values against the procedure's card references.

        Field problems are collected, never raised, so callers can render
        feedback per field. Nothing is written: persisting accepted values
        into host storage is the caller's job.
        """
        values = values or {}

        session = self.SessionFactory()
        try:
            procedure = self._load(session, procedure_id)
            if procedure is None:
                return SubmissionResult(
                    success=False,
                    errors=[FieldError(field="procedure_id", message="not found")],
                    validated=[],
                )

            refs = [CardRef.model_validate(r) for r in (procedure.card_refs or [])]
            cards = {
                c.id: c
                for c in session.query(Card).filter(Card.id.in_([r.card_id for r in refs])).all()
            } if refs else {}
        finally:
            session.close()

        errors: List[FieldError] = []
        validated: List[str] = []

        for ref in refs:
            card = cards.get(ref.card_id)
            if card is None:
                errors.append(FieldError(field=ref.card_id, message="card not found"))
                continue

            value = values.get(card.slug)
            if _is_empty(value):
                if ref.required:
                    errors.append(FieldError(field=card.slug, message="missing"))
                continue

            problem = check_variant(card.variant, value)
            if problem:
                errors.append(FieldError(field=card.slug, message=f"type mismatch: {problem}"))
                continue

            validated.append(card.slug)

        if errors:
            logger.debug("Submission for procedure %s rejected: %s", procedure_id, [e.field for e in errors])

        return SubmissionResult(success=not errors, errors=errors, validated=validated)
