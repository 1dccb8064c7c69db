# cardbridge/readiness_evaluator.py

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from cardbridge.context_aggregator import ContextAggregator
from cardbridge.entities import Deliverable, Evaluation, new_id, utcnow
from cardbridge.evaluation_lifecycle import EvaluationLifecycle
from cardbridge.scheduler import compute_due_time
from cardbridge.variants import (
    DeliverableStatus,
    EvaluationStatus,
    TaggedValue,
    tag_variables,
    variables_to_json,
)

logger = logging.getLogger("cardbridge.readiness")

_ABSENT = TaggedValue.of(None)


def _unmet(card_ids: Optional[List[str]] = None, deliverable_ids: Optional[List[str]] = None) -> dict:
    return {"card_ids": card_ids or [], "deliverable_ids": deliverable_ids or []}


class ReadinessEvaluator:
    """
    Decides which active deliverables of a subject kind are ready for one
    subject and records a pending evaluation for each of them.

    A deliverable is ready when every required card slug has a present value
    (not None, not "") and every required deliverable has a completed
    evaluation for the same subject. Completing a prerequisite does not
    re-trigger its dependents; the caller evaluates again for that.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lifecycle: EvaluationLifecycle,
        aggregator: Optional[ContextAggregator] = None,
        clock: Callable[[], datetime] = utcnow,
        schedule_tz: Optional[str] = None,
        on_trigger=None,
    ):
        self.SessionFactory = session_factory
        self.lifecycle = lifecycle
        self.aggregator = aggregator
        self.clock = clock
        self.schedule_tz = schedule_tz
        self.on_trigger = on_trigger

    def _active_deliverables(self, organization_id: str, subject_kind: str) -> List[tuple]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(Deliverable.id, Deliverable.required_card_slugs)
                .filter(
                    Deliverable.organization_id == str(organization_id),
                    Deliverable.subject_kind == subject_kind,
                    Deliverable.status == DeliverableStatus.ACTIVE.value,
                )
                .order_by(Deliverable.created_at.asc(), Deliverable.id.asc())
                .all()
            )
            return [(r[0], list(r[1] or [])) for r in rows]
        finally:
            session.close()

    def _pending_for(self, session: Session, deliverable_id: str, subject_id: str) -> Optional[Evaluation]:
        return (
            session.query(Evaluation)
            .filter(
                Evaluation.deliverable_id == deliverable_id,
                Evaluation.subject_id == subject_id,
                Evaluation.status == EvaluationStatus.PENDING.value,
            )
            .first()
        )

    def evaluate(
        self,
        organization_id: str,
        subject_kind: str,
        subject_id: str,
        variables: Optional[Dict[str, Any]] = None,
        mutated_fields: Optional[Iterable[str]] = None,
    ) -> List[dict]:
        subject_id = str(subject_id)

        if variables is None:
            if self.aggregator is not None and self.aggregator.is_bound(subject_kind):
                variables = self.aggregator.aggregate(subject_kind, subject_id)["variables"]
            else:
                variables = {}

        tagged = tag_variables(variables)
        mutated = list(mutated_fields) if mutated_fields else None

        deliverables = self._active_deliverables(organization_id, subject_kind)
        logger.info(
            "Evaluating %d deliverables for %s:%s (mutated=%s)",
            len(deliverables), subject_kind, subject_id, mutated,
        )

        results: List[dict] = []
        for deliverable_id, required_slugs in deliverables:
            if mutated and not set(required_slugs) & set(mutated):
                logger.debug("Skipping deliverable %s: no required card mutated", deliverable_id)
                continue

            outcome = self._evaluate_one(
                deliverable_id, organization_id, subject_kind, subject_id, variables, tagged, mutated
            )
            if outcome is not None:
                results.append(outcome)
        return results

    def _evaluate_one(
        self,
        deliverable_id: str,
        organization_id: str,
        subject_kind: str,
        subject_id: str,
        variables: Dict[str, Any],
        tagged: Dict[str, TaggedValue],
        mutated: Optional[List[str]],
    ) -> Optional[dict]:
        """One atomic check-and-create for a single deliverable."""
        session = self.SessionFactory()
        try:
            deliverable = (
                session.query(Deliverable)
                .filter(Deliverable.id == deliverable_id)
                .with_for_update()
                .one_or_none()
            )
            if deliverable is None or deliverable.status != DeliverableStatus.ACTIVE.value:
                # paused or gone since the listing
                return None

            missing_cards = [
                slug for slug in (deliverable.required_card_slugs or [])
                if not tagged.get(slug, _ABSENT).is_present()
            ]
            missing_deliverables = [
                dep for dep in (deliverable.required_deliverable_ids or [])
                if not self.lifecycle.has_completed(dep, subject_id, session=session)
            ]

            if missing_cards or missing_deliverables:
                logger.debug(
                    "Deliverable %s not ready for %s: cards=%s deliverables=%s",
                    deliverable_id, subject_id, missing_cards, missing_deliverables,
                )
                return {
                    "deliverable_id": deliverable_id,
                    "ready": False,
                    "unmet": _unmet(missing_cards, missing_deliverables),
                }

            existing = self._pending_for(session, deliverable_id, subject_id)
            if existing is not None:
                logger.info("Deliverable %s already pending for %s as %s", deliverable_id, subject_id, existing.id)
                return {
                    "deliverable_id": deliverable_id,
                    "ready": True,
                    "unmet": _unmet(),
                    "evaluation_id": existing.id,
                }

            now = self.clock()
            evaluation = Evaluation(
                id=new_id(),
                deliverable_id=deliverable_id,
                organization_id=str(organization_id),
                subject_kind=subject_kind,
                subject_id=subject_id,
                mutated_fields=mutated,
                variables=variables_to_json(tagged),
                status=EvaluationStatus.PENDING.value,
                scheduled_for=compute_due_time(now, deliverable.schedule, variables, tz=self.schedule_tz),
                created_at=now,
            )
            session.add(evaluation)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent trigger created the pending evaluation first
                session.rollback()
                existing = self._pending_for(session, deliverable_id, subject_id)
                if existing is None:
                    raise
                return {
                    "deliverable_id": deliverable_id,
                    "ready": True,
                    "unmet": _unmet(),
                    "evaluation_id": existing.id,
                }

            created = evaluation.to_dict()
        finally:
            session.close()

        logger.info("Evaluation created id=%s deliverable=%s", created["id"], deliverable_id)
        if self.on_trigger is not None:
            self.on_trigger(created)

        return {
            "deliverable_id": deliverable_id,
            "ready": True,
            "unmet": _unmet(),
            "evaluation_id": created["id"],
        }
