# cardbridge/executor.py
"""
Callback dispatch for due evaluations.

Routing
-------
A deliverable names its handler through `callback_action`, read as
    "<callback_type>:<anything>"
Only the prefix before the first ':' picks the handler; a deliverable without
a callback_action routes to "default".

Handlers live in a CallbackRegistry built once by the host and passed by
reference into the Executor. There is no module-level registry.

Worker
------
DueEvaluationWorker polls pending evaluations whose scheduled time has passed,
claims each one (pending -> running), runs its handler off the event loop and
reports the outcome back through the lifecycle. `max_concurrent` is a global
cap on in-flight handlers for the process.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from cardbridge import settings
from cardbridge.deliverable_service import DeliverableService
from cardbridge.entities import utcnow
from cardbridge.errors import InvalidStateError
from cardbridge.evaluation_lifecycle import EvaluationLifecycle
from cardbridge.variants import EvaluationResult

logger = logging.getLogger("cardbridge.worker")


class ExecutionResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None


# (deliverable, context) -> ExecutionResult | {"success": ..., ...}
CallbackHandler = Callable[[Dict[str, Any], Dict[str, Any]], Any]


class CallbackRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, CallbackHandler] = {}

    def register(self, callback_type: str, handler: CallbackHandler) -> None:
        if not callback_type:
            raise ValueError("callback_type is required")
        self._handlers[callback_type] = handler
        logger.debug("Registered callback handler '%s'", callback_type)

    def get(self, callback_type: str) -> Optional[CallbackHandler]:
        return self._handlers.get(callback_type)

    def __contains__(self, callback_type: str) -> bool:
        return callback_type in self._handlers


def callback_type_for(deliverable: Dict[str, Any]) -> str:
    action = deliverable.get("callback_action") or ""
    return action.split(":")[0] or "default"


class Executor:
    def __init__(self, registry: CallbackRegistry):
        self.registry = registry

    def execute(self, deliverable: Dict[str, Any], context: Dict[str, Any]) -> ExecutionResult:
        callback_type = callback_type_for(deliverable)
        handler = self.registry.get(callback_type)

        if handler is None:
            return ExecutionResult(
                success=False,
                error=f"No handler registered for callback type: {callback_type}",
            )

        try:
            outcome = handler(deliverable, context)
        except Exception as e:
            logger.exception("Handler '%s' failed for deliverable %s", callback_type, deliverable.get("id"))
            return ExecutionResult(success=False, error=str(e) or e.__class__.__name__)

        if isinstance(outcome, ExecutionResult):
            return outcome
        return ExecutionResult.model_validate(outcome)


class DueEvaluationWorker:
    def __init__(
        self,
        lifecycle: EvaluationLifecycle,
        deliverables: DeliverableService,
        executor: Executor,
        poll_interval: float = settings.WORKER_POLL_INTERVAL,
        max_concurrent: int = settings.CONCURRENT_INSTANCES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lifecycle = lifecycle
        self.deliverables = deliverables
        self.executor = executor
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self.clock = clock
        self._in_flight: set = set()
        self._tasks: set = set()

    def process(self, evaluation: Dict[str, Any]) -> Optional[ExecutionResult]:
        evaluation_id = evaluation["id"]
        try:
            self.lifecycle.start(evaluation_id)
        except InvalidStateError:
            # claimed or cancelled by someone else since the poll
            logger.info("Evaluation %s no longer pending, skipping", evaluation_id)
            return None

        try:
            return self._run_claimed(evaluation)
        except Exception as e:
            # a claimed evaluation must not stay running
            logger.exception("Evaluation %s failed outside its handler", evaluation_id)
            result = ExecutionResult(success=False, error=str(e) or e.__class__.__name__)
            try:
                self.lifecycle.complete(evaluation_id, EvaluationResult(success=False, error=result.error))
            except InvalidStateError:
                # completed already; the failure came from the on_complete hook
                logger.warning("Evaluation %s already finished, keeping its result", evaluation_id)
            return result

    def _run_claimed(self, evaluation: Dict[str, Any]) -> ExecutionResult:
        evaluation_id = evaluation["id"]
        deliverable = self.deliverables.get(evaluation["deliverable_id"])
        if deliverable is None:
            result = ExecutionResult(success=False, error=f"Deliverable not found: {evaluation['deliverable_id']}")
            self.lifecycle.complete(evaluation_id, EvaluationResult(success=False, error=result.error))
            return result

        context = {
            "subject_kind": evaluation["context"]["subject_kind"],
            "subject_id": evaluation["context"]["subject_id"],
            "mutated_fields": evaluation["context"].get("mutated_fields"),
            "variables": evaluation.get("variables") or {},
        }

        started = time.monotonic()
        result = self.executor.execute(deliverable, context)
        duration_ms = round((time.monotonic() - started) * 1000, 3)

        self.lifecycle.complete(
            evaluation_id,
            EvaluationResult(success=result.success, duration=duration_ms, error=result.error),
        )
        return result

    def poll_once(self, limit: Optional[int] = None) -> int:
        """Run every currently due evaluation inline. Returns how many were claimed."""
        due = self.lifecycle.list_due(self.clock(), limit or self.max_concurrent)
        processed = 0
        for evaluation in due:
            if self.process(evaluation) is not None:
                processed += 1
        return processed

    async def _run_one(self, evaluation: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.process, evaluation)
        except Exception:
            logger.exception("Worker failed on evaluation %s", evaluation["id"])
        finally:
            self._in_flight.discard(evaluation["id"])

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info("DueEvaluationWorker running (max_concurrent=%d)", self.max_concurrent)

        while stop is None or not stop.is_set():
            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            due = await asyncio.to_thread(self.lifecycle.list_due, self.clock(), available_slots)
            for evaluation in due:
                if evaluation["id"] in self._in_flight:
                    continue
                self._in_flight.add(evaluation["id"])
                task = asyncio.create_task(self._run_one(evaluation))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

            await asyncio.sleep(self.poll_interval)

        if self._tasks:
            logger.info("DueEvaluationWorker stopping, waiting for %d in-flight evaluations", len(self._tasks))
            await asyncio.gather(*self._tasks)
