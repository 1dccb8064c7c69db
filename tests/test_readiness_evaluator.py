"""
Tests for readiness evaluation: card and deliverable prerequisites, mutated
field filtering, pending reuse and schedule stamping.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from cardbridge.card_registry import CardRegistry
from cardbridge.context_aggregator import ContextAggregator, MappingSubjectResolver, SubjectConfig
from cardbridge.deliverable_service import DeliverableService
from cardbridge.entities import Evaluation, to_epoch_ms
from cardbridge.errors import NotFoundError
from cardbridge.evaluation_lifecycle import EvaluationLifecycle
from cardbridge.readiness_evaluator import ReadinessEvaluator


@pytest.fixture
def deliverables(session_factory):
    return DeliverableService(session_factory)


@pytest.fixture
def lifecycle(session_factory, clock):
    return EvaluationLifecycle(session_factory, clock=clock)


@pytest.fixture
def triggered():
    return []


@pytest.fixture
def evaluator(session_factory, lifecycle, clock, triggered):
    return ReadinessEvaluator(session_factory, lifecycle, clock=clock, schedule_tz="UTC", on_trigger=triggered.append)


@pytest.fixture
def email_card(session_factory):
    return CardRegistry(session_factory).create({
        "organization_id": "O1",
        "slug": "email",
        "label": "Email",
        "variant": "EMAIL",
        "subject_kind": "beneficiary",
        "created_by": "u1",
    })


def make_deliverable(deliverables, id, **fields):
    data = {
        "id": id,
        "organization_id": "O1",
        "name": id,
        "subject_kind": "beneficiary",
        "required_card_slugs": ["email"],
    }
    data.update(fields)
    return deliverables.create(data)


class TestEndToEnd:

    def test_ready_then_not_ready(self, evaluator, lifecycle, deliverables, email_card):
        make_deliverable(deliverables, "D1")

        results = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})
        assert len(results) == 1
        assert results[0]["deliverable_id"] == "D1"
        assert results[0]["ready"] is True
        assert results[0]["unmet"] == {"card_ids": [], "deliverable_ids": []}
        evaluation_id = results[0]["evaluation_id"]

        pending = lifecycle.list("O1", status="pending")
        assert [e["id"] for e in pending] == [evaluation_id]
        assert pending[0]["context"]["subject_id"] == "b1"
        assert pending[0]["variables"] == {"email": "a@b.com"}

        results = evaluator.evaluate("O1", "beneficiary", "b1", {})
        assert results == [{
            "deliverable_id": "D1",
            "ready": False,
            "unmet": {"card_ids": ["email"], "deliverable_ids": []},
        }]
        assert len(lifecycle.list("O1")) == 1

    def test_empty_string_is_not_present(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        results = evaluator.evaluate("O1", "beneficiary", "b1", {"email": ""})
        assert results[0]["ready"] is False


class TestPendingReuse:

    def test_repeated_ready_check_reuses_pending(self, evaluator, lifecycle, deliverables, triggered):
        make_deliverable(deliverables, "D1")
        first = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})
        second = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "c@d.com"})

        assert first[0]["evaluation_id"] == second[0]["evaluation_id"]
        assert len(lifecycle.list("O1")) == 1
        assert len(triggered) == 1

    def test_new_evaluation_after_completion(self, evaluator, lifecycle, deliverables):
        make_deliverable(deliverables, "D1")
        first = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        lifecycle.start(first)
        lifecycle.complete(first, {"success": True})

        second = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        assert second != first

    def test_other_subject_gets_its_own_evaluation(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        a = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        b = evaluator.evaluate("O1", "beneficiary", "b2", {"email": "a@b.com"})[0]["evaluation_id"]
        assert a != b


class TestDeliverablePrerequisites:

    def test_waits_for_completed_prerequisite(self, evaluator, lifecycle, deliverables):
        make_deliverable(deliverables, "D0")
        make_deliverable(deliverables, "D1", required_deliverable_ids=["D0"])

        results = {r["deliverable_id"]: r for r in evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})}
        assert results["D0"]["ready"] is True
        assert results["D1"]["ready"] is False
        assert results["D1"]["unmet"]["deliverable_ids"] == ["D0"]

        d0_eval = results["D0"]["evaluation_id"]
        lifecycle.start(d0_eval)
        lifecycle.complete(d0_eval, {"success": True})

        results = {r["deliverable_id"]: r for r in evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})}
        assert results["D1"]["ready"] is True

    def test_failed_prerequisite_does_not_count(self, evaluator, lifecycle, deliverables):
        make_deliverable(deliverables, "D0")
        make_deliverable(deliverables, "D1", required_deliverable_ids=["D0"])

        d0_eval = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        lifecycle.start(d0_eval)
        lifecycle.complete(d0_eval, {"success": False, "error": "boom"})

        results = {r["deliverable_id"]: r for r in evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})}
        assert results["D1"]["ready"] is False

    def test_prerequisite_completion_does_not_cascade(self, evaluator, lifecycle, deliverables):
        make_deliverable(deliverables, "D0")
        make_deliverable(deliverables, "D1", required_deliverable_ids=["D0"])

        d0_eval = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        lifecycle.start(d0_eval)
        lifecycle.complete(d0_eval, {"success": True})

        assert [e["deliverable_id"] for e in lifecycle.list("O1")] == ["D0"]


class TestFiltering:

    def test_unrelated_mutation_skips_deliverable(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        assert evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"}, mutated_fields=["phone"]) == []

    def test_related_mutation_evaluates(self, evaluator, lifecycle, deliverables):
        make_deliverable(deliverables, "D1")
        results = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"}, mutated_fields=["email"])
        assert results[0]["ready"] is True
        evaluation = lifecycle.get(results[0]["evaluation_id"])
        assert evaluation["context"]["mutated_fields"] == ["email"]

    def test_paused_deliverable_skipped(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        deliverables.pause("D1")
        assert evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"}) == []

    def test_other_subject_kind_and_organization_ignored(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1", subject_kind="event")
        make_deliverable(deliverables, "D2", organization_id="O2")
        assert evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"}) == []


class TestScheduling:

    def test_scheduled_for_from_delay(self, evaluator, lifecycle, deliverables, clock):
        make_deliverable(deliverables, "D1", schedule={"delay": "1h"})
        evaluation_id = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        evaluation = lifecycle.get(evaluation_id)
        assert evaluation["scheduled_for"] == to_epoch_ms(clock.now + timedelta(hours=1))

    def test_immediate_without_schedule(self, evaluator, lifecycle, deliverables, clock):
        make_deliverable(deliverables, "D1")
        evaluation_id = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["evaluation_id"]
        assert lifecycle.get(evaluation_id)["scheduled_for"] == to_epoch_ms(clock.now)

    def test_out_of_range_event_time_does_not_break_evaluation(self, evaluator, lifecycle, deliverables, clock):
        make_deliverable(deliverables, "D1", schedule={"date": {"days_before_event": 1}})
        make_deliverable(deliverables, "D2")

        results = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com", "event_at": 10**18})
        by_id = {r["deliverable_id"]: r for r in results}
        assert by_id["D1"]["ready"] is True
        assert by_id["D2"]["ready"] is True
        evaluation = lifecycle.get(by_id["D1"]["evaluation_id"])
        assert evaluation["scheduled_for"] == to_epoch_ms(clock.now)


class TestAggregatedVariables:

    def test_variables_aggregated_when_not_given(self, session_factory, lifecycle, deliverables, clock):
        resolver = MappingSubjectResolver({
            "b1": {"id": "b1", "attributes": [{"slug": "email", "value": "a@b.com"}]},
        })
        aggregator = ContextAggregator({"beneficiary": SubjectConfig(resolver=resolver)})
        evaluator = ReadinessEvaluator(session_factory, lifecycle, aggregator=aggregator, clock=clock)
        make_deliverable(deliverables, "D1")

        results = evaluator.evaluate("O1", "beneficiary", "b1")
        assert results[0]["ready"] is True

    def test_unbound_kind_uses_empty_variables(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        assert evaluator.evaluate("O1", "beneficiary", "b1")[0]["ready"] is False


class TestDeliverableAdministration:

    def test_reactivated_deliverable_evaluates_again(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        deliverables.pause("D1")
        assert deliverables.activate("D1")["status"] == "active"
        assert evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})[0]["ready"] is True

    def test_update_required_cards(self, evaluator, deliverables):
        make_deliverable(deliverables, "D1")
        updated = deliverables.update("D1", required_card_slugs=["email", "phone"], schedule={"delay": "2h"})
        assert updated["required_card_slugs"] == ["email", "phone"]
        assert updated["schedule"] == {"delay": "2h"}

        results = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})
        assert results[0]["unmet"]["card_ids"] == ["phone"]

    def test_list_filters_status(self, deliverables):
        make_deliverable(deliverables, "D1")
        make_deliverable(deliverables, "D2")
        deliverables.pause("D2")
        assert [d["id"] for d in deliverables.list("O1", status="paused")] == ["D2"]
        assert len(deliverables.list("O1", subject_kind="beneficiary")) == 2

    def test_update_unknown(self, deliverables):
        with pytest.raises(NotFoundError):
            deliverables.update("missing", name="x")


class TestDuplicatePendingGuard:

    def _insert_pending(self, session_factory, clock, id="E-existing"):
        session = session_factory()
        try:
            session.add(Evaluation(
                id=id,
                deliverable_id="D1",
                organization_id="O1",
                subject_kind="beneficiary",
                subject_id="b1",
                variables={},
                status="pending",
                created_at=clock(),
            ))
            session.commit()
        finally:
            session.close()

    def test_lost_race_returns_winner(self, evaluator, lifecycle, deliverables, session_factory, clock, monkeypatch):
        make_deliverable(deliverables, "D1")
        self._insert_pending(session_factory, clock)

        # the first pending lookup misses, as if the other writer committed after it
        real_pending_for = evaluator._pending_for
        calls = []

        def pending_for(session, deliverable_id, subject_id):
            calls.append(deliverable_id)
            if len(calls) == 1:
                return None
            return real_pending_for(session, deliverable_id, subject_id)

        monkeypatch.setattr(evaluator, "_pending_for", pending_for)

        results = evaluator.evaluate("O1", "beneficiary", "b1", {"email": "a@b.com"})
        assert results[0]["ready"] is True
        assert results[0]["evaluation_id"] == "E-existing"
        assert len(calls) == 2
        assert [e["id"] for e in lifecycle.list("O1")] == ["E-existing"]

    def test_index_rejects_second_pending_row(self, session_factory, clock):
        self._insert_pending(session_factory, clock, id="E1")
        with pytest.raises(IntegrityError):
            self._insert_pending(session_factory, clock, id="E2")

    def test_index_allows_pending_next_to_terminal(self, session_factory, clock):
        self._insert_pending(session_factory, clock, id="E1")
        session = session_factory()
        try:
            session.get(Evaluation, "E1").status = "completed"
            session.commit()
        finally:
            session.close()
        self._insert_pending(session_factory, clock, id="E2")
