# cardbridge/evaluation_lifecycle.py

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from cardbridge.entities import Evaluation, utcnow
from cardbridge.errors import InvalidStateError, NotFoundError
from cardbridge.variants import EvaluationResult, EvaluationStatus

logger = logging.getLogger("cardbridge.evaluations")

PENDING = EvaluationStatus.PENDING.value
RUNNING = EvaluationStatus.RUNNING.value
COMPLETED = EvaluationStatus.COMPLETED.value
FAILED = EvaluationStatus.FAILED.value


class EvaluationLifecycle:
    """
    pending -> running -> completed | failed
    pending -> failed (cancel)

    completed and failed are terminal. `completed_at` is set exactly when an
    evaluation reaches a terminal state.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
        on_complete=None,
    ):
        self.SessionFactory = session_factory
        self.clock = clock
        self.on_complete = on_complete

    def _load(self, session: Session, evaluation_id: str, for_update: bool = False) -> Evaluation:
        query = session.query(Evaluation).filter(Evaluation.id == str(evaluation_id))
        if for_update:
            query = query.with_for_update()
        evaluation = query.one_or_none()
        if evaluation is None:
            raise NotFoundError("Evaluation", evaluation_id)
        return evaluation

    # -----------------------
    # Reads
    # -----------------------

    def get(self, evaluation_id: str) -> Optional[dict]:
        session = self.SessionFactory()
        try:
            evaluation = session.get(Evaluation, str(evaluation_id))
            return evaluation.to_dict() if evaluation else None
        finally:
            session.close()

    def list(self, organization_id: str, status: Optional[str] = None, limit: int = 50) -> List[dict]:
        session = self.SessionFactory()
        try:
            query = session.query(Evaluation).filter(Evaluation.organization_id == str(organization_id))
            if status:
                query = query.filter(Evaluation.status == EvaluationStatus(status).value)
            rows = query.order_by(Evaluation.created_at.asc(), Evaluation.id.asc()).limit(limit).all()
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    def list_due(self, now: Optional[datetime] = None, limit: int = 50) -> List[dict]:
        """Pending evaluations whose scheduled time has arrived, earliest first."""
        now = now or self.clock()
        session = self.SessionFactory()
        try:
            rows = (
                session.query(Evaluation)
                .filter(
                    Evaluation.status == PENDING,
                    (Evaluation.scheduled_for.is_(None)) | (Evaluation.scheduled_for <= now),
                )
                .order_by(Evaluation.scheduled_for.asc(), Evaluation.created_at.asc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    def has_completed(self, deliverable_id: str, subject_id: str, session: Optional[Session] = None) -> bool:
        # no recency bound: any completed evaluation satisfies the prerequisite
        own_session = session is None
        session = session or self.SessionFactory()
        try:
            row = (
                session.query(Evaluation.id)
                .filter(
                    Evaluation.deliverable_id == str(deliverable_id),
                    Evaluation.subject_id == str(subject_id),
                    Evaluation.status == COMPLETED,
                )
                .first()
            )
            return row is not None
        finally:
            if own_session:
                session.close()

    # -----------------------
    # Transitions
    # -----------------------

    def start(self, evaluation_id: str) -> dict:
        session = self.SessionFactory()
        try:
            evaluation = self._load(session, evaluation_id, for_update=True)
            if evaluation.status != PENDING:
                raise InvalidStateError(evaluation.id, evaluation.status, "start")

            evaluation.status = RUNNING
            evaluation.started_at = self.clock()
            session.commit()
        finally:
            session.close()

        logger.info("Evaluation started id=%s", evaluation_id)
        return {"started": True}

    def cancel(self, evaluation_id: str) -> dict:
        session = self.SessionFactory()
        try:
            evaluation = self._load(session, evaluation_id, for_update=True)
            if evaluation.status != PENDING:
                logger.debug("Cancel ignored for evaluation %s in status %s", evaluation.id, evaluation.status)
                return {"cancelled": False}

            evaluation.status = FAILED
            evaluation.result = EvaluationResult(success=False, error="Cancelled").model_dump(exclude_none=True)
            evaluation.completed_at = self.clock()
            session.commit()
        finally:
            session.close()

        logger.info("Evaluation cancelled id=%s", evaluation_id)
        return {"cancelled": True}

    def complete(self, evaluation_id: str, result) -> dict:
        if not isinstance(result, EvaluationResult):
            result = EvaluationResult.model_validate(result)

        session = self.SessionFactory()
        try:
            evaluation = self._load(session, evaluation_id, for_update=True)
            if evaluation.is_terminal:
                raise InvalidStateError(evaluation.id, evaluation.status, "complete")

            evaluation.status = COMPLETED if result.success else FAILED
            evaluation.result = result.model_dump(exclude_none=True)
            evaluation.completed_at = self.clock()
            session.commit()
            completed = evaluation.to_dict()
        finally:
            session.close()

        logger.info("Evaluation completed id=%s success=%s", evaluation_id, result.success)
        if self.on_complete is not None:
            self.on_complete(completed)
        return {"completed": True}
