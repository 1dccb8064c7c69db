# cardbridge/bridge.py
"""
Bridge: the single object a host application talks to.

It owns one instance of each service, all sharing the same session factory,
and wires the host's hooks into them:

    verify_access(organization_id)   called before every organization-scoped
                                     operation; raise AuthorizationDenied (or
                                     return False) to refuse
    on_card_insert(card)             after a card is created
    on_procedure_insert(procedure)   after a procedure is created
    on_trigger(evaluation)           after a new pending evaluation is created
    on_complete(evaluation)          after an evaluation reaches completed/failed

Operations that take only an evaluation or procedure id look up its
organization first and authorize against that.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from cardbridge.card_registry import CardRegistry
from cardbridge.context_aggregator import ContextAggregator, SubjectConfig
from cardbridge.deliverable_service import DeliverableService
from cardbridge.entities import utcnow
from cardbridge.errors import AuthorizationDenied, NotFoundError
from cardbridge.evaluation_lifecycle import EvaluationLifecycle
from cardbridge.executor import CallbackRegistry, DueEvaluationWorker, ExecutionResult, Executor
from cardbridge.procedure_service import ProcedureService
from cardbridge.readiness_evaluator import ReadinessEvaluator
from cardbridge.variants import CardInput, SubmissionResult

logger = logging.getLogger("cardbridge.bridge")


@dataclass
class BridgeHooks:
    verify_access: Optional[Callable[[str], Any]] = None
    on_card_insert: Optional[Callable[[dict], Any]] = None
    on_procedure_insert: Optional[Callable[[dict], Any]] = None
    on_trigger: Optional[Callable[[dict], Any]] = None
    on_complete: Optional[Callable[[dict], Any]] = None


class Bridge:
    def __init__(
        self,
        session_factory: sessionmaker,
        subjects: Optional[Mapping[str, SubjectConfig]] = None,
        hooks: Optional[BridgeHooks] = None,
        clock: Callable[[], datetime] = utcnow,
        schedule_tz: Optional[str] = None,
        registry: Optional[CallbackRegistry] = None,
    ):
        self.hooks = hooks or BridgeHooks()
        self.clock = clock

        self.cards = CardRegistry(session_factory, on_insert=self.hooks.on_card_insert)
        self.procedures = ProcedureService(session_factory, on_insert=self.hooks.on_procedure_insert)
        self.deliverables = DeliverableService(session_factory)
        self.evaluations = EvaluationLifecycle(session_factory, clock=clock, on_complete=self.hooks.on_complete)
        self.aggregator = ContextAggregator(subjects)
        self.evaluator = ReadinessEvaluator(
            session_factory,
            self.evaluations,
            aggregator=self.aggregator,
            clock=clock,
            schedule_tz=schedule_tz,
            on_trigger=self.hooks.on_trigger,
        )
        self.registry = registry or CallbackRegistry()
        self.executor = Executor(self.registry)

    # -----------------------
    # Authorization
    # -----------------------

    def _authorize(self, organization_id: Optional[str]) -> None:
        if self.hooks.verify_access is None or organization_id is None:
            return
        if self.hooks.verify_access(str(organization_id)) is False:
            logger.warning("Access denied for organization %s", organization_id)
            raise AuthorizationDenied(organization_id=str(organization_id))

    def _evaluation_org(self, evaluation_id: str) -> str:
        evaluation = self.evaluations.get(evaluation_id)
        if evaluation is None:
            raise NotFoundError("Evaluation", evaluation_id)
        return evaluation["organization_id"]

    # -----------------------
    # Cards / procedures
    # -----------------------

    def create_card(self, data) -> dict:
        if not isinstance(data, CardInput):
            data = CardInput.model_validate(data)
        self._authorize(data.organization_id)
        return self.cards.create(data)

    def submit_procedure(self, procedure_id: str, values: Optional[Dict[str, Any]]) -> SubmissionResult:
        procedure = self.procedures.get(procedure_id)
        if procedure is not None:
            self._authorize(procedure["organization_id"])
        return self.procedures.submit(procedure_id, values)

    # -----------------------
    # Subjects
    # -----------------------

    def resolve_subject(self, subject_kind: str, subject_id: str) -> Dict[str, Any]:
        document = self.aggregator.fetch(subject_kind, subject_id)
        if document:
            self._authorize(document.get("organization_id"))
        return self.aggregator.resolve(subject_kind, subject_id)

    def aggregate_subject(self, subject_kind: str, subject_id: str) -> Dict[str, Any]:
        document = self.aggregator.fetch(subject_kind, subject_id)
        if document:
            self._authorize(document.get("organization_id"))
        return self.aggregator.aggregate(subject_kind, subject_id)

    # -----------------------
    # Readiness / evaluations
    # -----------------------

    def evaluate_deliverables(
        self,
        organization_id: str,
        subject_kind: str,
        subject_id: str,
        variables: Optional[Dict[str, Any]] = None,
        mutated_fields: Optional[Iterable[str]] = None,
    ) -> List[dict]:
        self._authorize(organization_id)
        return self.evaluator.evaluate(
            organization_id, subject_kind, subject_id,
            variables=variables, mutated_fields=mutated_fields,
        )

    def start_evaluation(self, evaluation_id: str) -> dict:
        self._authorize(self._evaluation_org(evaluation_id))
        return self.evaluations.start(evaluation_id)

    def cancel_evaluation(self, evaluation_id: str) -> dict:
        self._authorize(self._evaluation_org(evaluation_id))
        return self.evaluations.cancel(evaluation_id)

    def complete_evaluation(self, evaluation_id: str, result) -> dict:
        self._authorize(self._evaluation_org(evaluation_id))
        return self.evaluations.complete(evaluation_id, result)

    # -----------------------
    # Execution
    # -----------------------

    def register(self, callback_type: str, handler) -> None:
        self.registry.register(callback_type, handler)

    def execute(self, deliverable: Dict[str, Any], context: Dict[str, Any]) -> ExecutionResult:
        self._authorize(deliverable.get("organization_id"))
        return self.executor.execute(deliverable, context)

    def worker(self, **kwargs) -> DueEvaluationWorker:
        kwargs.setdefault("clock", self.clock)
        return DueEvaluationWorker(self.evaluations, self.deliverables, self.executor, **kwargs)
