# cardbridge/card_registry.py

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from cardbridge.entities import Card, new_id
from cardbridge.errors import ConflictError
from cardbridge.variants import CardInput

logger = logging.getLogger("cardbridge.cards")


class CardRegistry:
    """
    Named, typed field definitions scoped to an organization and subject kind.

    - `(organization_id, slug)` is unique.
    - A slug keeps its variant forever; re-declaring it with the same variant
      returns the stored card, with another variant raises ConflictError.
    """

    def __init__(self, session_factory: sessionmaker, on_insert=None):
        self.SessionFactory = session_factory
        self.on_insert = on_insert

    def _find(self, session: Session, organization_id: str, slug: str) -> Optional[Card]:
        return (
            session.query(Card)
            .filter(Card.organization_id == str(organization_id), Card.slug == slug)
            .one_or_none()
        )

    def _check_variant(self, existing: Card, data: CardInput) -> dict:
        if existing.variant != data.variant.value:
            raise ConflictError(
                f'Card "{data.slug}" exists with variant "{existing.variant}", '
                f'cannot change to "{data.variant.value}"'
            )
        logger.info("Card exists, returning slug=%s id=%s", existing.slug, existing.id)
        return existing.to_dict()

    def create(self, data) -> dict:
        if not isinstance(data, CardInput):
            data = CardInput.model_validate(data)

        session = self.SessionFactory()
        try:
            existing = self._find(session, data.organization_id, data.slug)
            if existing is not None:
                return self._check_variant(existing, data)

            card = Card(
                id=new_id(),
                organization_id=data.organization_id,
                slug=data.slug,
                label=data.label,
                variant=data.variant.value,
                security=data.security.value,
                subject_kind=data.subject_kind,
                created_by=data.created_by,
            )
            session.add(card)
            try:
                session.commit()
            except IntegrityError:
                # another writer created the slug first
                session.rollback()
                winner = self._find(session, data.organization_id, data.slug)
                if winner is None:
                    raise
                return self._check_variant(winner, data)

            created = card.to_dict()
        finally:
            session.close()

        logger.info("Card created id=%s slug=%s", created["id"], created["slug"])
        if self.on_insert is not None:
            self.on_insert(created)
        return created

    def get(self, card_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            card = session.get(Card, str(card_id))
            return card.to_dict() if card else None
        finally:
            session.close()

    def find(self, organization_id: str, slug: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            card = self._find(session, organization_id, slug)
            return card.to_dict() if card else None
        finally:
            session.close()

    def list(self, organization_id: str, subject_kind: Optional[str] = None, limit: int = 100) -> List[dict]:
        session = self.SessionFactory()
        try:
            query = session.query(Card).filter(Card.organization_id == str(organization_id))
            if subject_kind:
                query = query.filter(Card.subject_kind == subject_kind)
            rows = query.order_by(Card.created_at.asc(), Card.id.asc()).limit(limit).all()
            return [r.to_dict() for r in rows]
        finally:
            session.close()
