# cardbridge/deliverable_service.py

import logging
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

from cardbridge.entities import Deliverable, new_id
from cardbridge.errors import NotFoundError
from cardbridge.variants import DeliverableInput, DeliverableStatus, Schedule

logger = logging.getLogger("cardbridge.deliverables")

_UPDATABLE = (
    "name",
    "description",
    "required_card_slugs",
    "required_deliverable_ids",
    "callback_action",
    "callback_url",
)


class DeliverableService:
    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory

    def _load(self, session: Session, deliverable_id: str) -> Optional[Deliverable]:
        return session.get(Deliverable, str(deliverable_id))

    def create(self, data) -> dict:
        if not isinstance(data, DeliverableInput):
            data = DeliverableInput.model_validate(data)

        session = self.SessionFactory()
        try:
            deliverable = Deliverable(
                id=data.id or new_id(),
                organization_id=data.organization_id,
                name=data.name,
                description=data.description,
                subject_kind=data.subject_kind,
                required_card_slugs=list(data.required_card_slugs),
                required_deliverable_ids=list(data.required_deliverable_ids),
                schedule=data.schedule.model_dump(mode="json", exclude_none=True) if data.schedule else None,
                callback_action=data.callback_action,
                callback_url=data.callback_url,
                status=DeliverableStatus.ACTIVE.value,
            )
            session.add(deliverable)
            session.commit()
            created = deliverable.to_dict()
        finally:
            session.close()

        logger.info("Deliverable created id=%s name=%s", created["id"], created["name"])
        return created

    def get(self, deliverable_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            deliverable = self._load(session, deliverable_id)
            return deliverable.to_dict() if deliverable else None
        finally:
            session.close()

    def list(
        self,
        organization_id: str,
        subject_kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        session = self.SessionFactory()
        try:
            query = session.query(Deliverable).filter(Deliverable.organization_id == str(organization_id))
            if subject_kind:
                query = query.filter(Deliverable.subject_kind == subject_kind)
            if status:
                query = query.filter(Deliverable.status == DeliverableStatus(status).value)
            rows = query.order_by(Deliverable.created_at.desc(), Deliverable.id.desc()).limit(limit).all()
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    def update(self, deliverable_id: str, **changes) -> dict:
        session = self.SessionFactory()
        try:
            deliverable = self._load(session, deliverable_id)
            if deliverable is None:
                raise NotFoundError("Deliverable", deliverable_id)

            for key in _UPDATABLE:
                if changes.get(key) is not None:
                    value = changes[key]
                    setattr(deliverable, key, list(value) if isinstance(value, (list, tuple)) else value)

            if "schedule" in changes:
                schedule = changes["schedule"]
                if schedule is not None and not isinstance(schedule, Schedule):
                    schedule = Schedule.model_validate(schedule)
                deliverable.schedule = schedule.model_dump(mode="json", exclude_none=True) if schedule else None

            if changes.get("status") is not None:
                deliverable.status = DeliverableStatus(changes["status"]).value

            session.commit()
            updated = deliverable.to_dict()
        finally:
            session.close()

        logger.info("Deliverable updated id=%s status=%s", deliverable_id, updated["status"])
        return updated

    def pause(self, deliverable_id: str) -> dict:
        return self.update(deliverable_id, status=DeliverableStatus.PAUSED.value)

    def activate(self, deliverable_id: str) -> dict:
        return self.update(deliverable_id, status=DeliverableStatus.ACTIVE.value)
