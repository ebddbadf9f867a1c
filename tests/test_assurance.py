"""Tests for the assurance service."""

import threading

import pytest

from decision_orchestrator.assurance.service import (
    AssuranceError,
    AssuranceService,
    build_artifact,
    build_invalidation_checklist,
    confidence_label,
)
from decision_orchestrator.config import GuardrailConfig, OrchestratorConfig
from decision_orchestrator.models.assurance import (
    AssuranceErrorCode,
    AssuranceRecord,
    AssuranceStatus,
    PaymentStatus,
)
from decision_orchestrator.models.output import AI_OUTPUT_ADAPTER
from decision_orchestrator.models.records import EventType
from decision_orchestrator.ops.guardrails import GuardrailTracker
from decision_orchestrator.ops.health_signals import HealthSignals
from decision_orchestrator.storage.assurance_store import AssuranceStore
from decision_orchestrator.storage.decision_store import DecisionStore
from decision_orchestrator.storage.event_store import EventStore
from decision_orchestrator.storage.kv import ConditionalCheckFailed, KeyValueStore

from factories import make_decision_output, make_envelope, make_refusal_output


class TestHelpers:
    def test_confidence_label(self):
        assert confidence_label(0.85) == "High"
        assert confidence_label(0.7) == "High"
        assert confidence_label(0.55) == "Medium"
        assert confidence_label(0.3) == "Low"

    def test_invalidation_checklist(self):
        decisions = DecisionStore(KeyValueStore())
        raw = make_decision_output()
        raw["decision"]["assumptions"][1]["confidence"] = 0.6
        _, record = decisions.store(make_envelope(), AI_OUTPUT_ADAPTER.validate_python(raw))

        checklist = build_invalidation_checklist(record)

        assert checklist[:2] == record.change_conditions
        assert checklist[2] == "Verify assumption: The group is comfortable with two internal flights"
        assert checklist[-1] == "If budget constraints change significantly"
        assert len(checklist) == 6

    def test_checklist_capped(self):
        decisions = DecisionStore(KeyValueStore())
        raw = make_decision_output()
        raw["decision"]["change_conditions"] = ["c1", "c2", "c3", "c4"]
        raw["decision"]["assumptions"] = [
            {"id": f"a{i}", "text": f"Assumption {i}", "confidence": 0.3} for i in range(5)
        ]
        _, record = decisions.store(make_envelope(), AI_OUTPUT_ADAPTER.validate_python(raw))
        assert len(build_invalidation_checklist(record)) == 8


class TestAssuranceStore:
    def setup_method(self):
        self.kv = KeyValueStore()
        self.store = AssuranceStore(self.kv)
        _, self.decision = DecisionStore(self.kv).store(
            make_envelope(), AI_OUTPUT_ADAPTER.validate_python(make_decision_output())
        )

    def _record(self, assurance_id):
        return AssuranceRecord(
            assurance_id=assurance_id,
            decision_id=self.decision.decision_id,
            session_id="sess_001",
            created_at="2026-02-01T00:00:00Z",
            updated_at="2026-02-01T00:00:00Z",
            artifact=build_artifact(self.decision),
            amount_cents=2900,
            currency="USD",
        )

    def test_second_assurance_for_decision_rejected(self):
        self.store.create(self._record("asr_first"))
        with pytest.raises(ConditionalCheckFailed):
            self.store.create(self._record("asr_second"))
        assert self.store.get("asr_second") is None
        assert self.store.get_by_decision(self.decision.decision_id).assurance_id == "asr_first"

    def test_failed_write_releases_claim(self):
        self.kv.put("assurances", "asr_taken", {"decision_id": "dec_other"})
        with pytest.raises(ConditionalCheckFailed):
            self.store.create(self._record("asr_taken"))
        assert self.store.create(self._record("asr_fresh")).assurance_id == "asr_fresh"


class TestAssuranceService:
    def setup_method(self):
        kv = KeyValueStore()
        self.health = HealthSignals()
        self.guardrails = GuardrailTracker(GuardrailConfig(assurance_consecutive_failures=3), self.health)
        self.decisions = DecisionStore(kv)
        self.events = EventStore(kv)
        self.service = AssuranceService(
            self.decisions,
            AssuranceStore(kv),
            self.events,
            self.guardrails,
            self.health,
            OrchestratorConfig(assurance_price_cents=2900, assurance_min_confidence=0.5),
        )

    def _decision(self, raw=None):
        decision_id, _ = self.decisions.store(
            make_envelope(), AI_OUTPUT_ADAPTER.validate_python(raw or make_decision_output()), topic_id="tz-feb"
        )
        return decision_id

    def _paid(self):
        record = self.service.generate(self._decision(), "sess_001", "trav_001")
        self.service.update_payment(record.assurance_id, "pay_1", PaymentStatus.COMPLETED)
        return record

    def test_generate_pending_assurance(self):
        decision_id = self._decision()
        record = self.service.generate(decision_id, "sess_001", "trav_001")

        assert record.assurance_id.startswith("asr_")
        assert record.payment_status == PaymentStatus.PENDING
        assert record.status == AssuranceStatus.DRAFT
        assert record.amount_cents == 2900
        assert record.artifact.verdict.confidence_label == "High"
        assert record.artifact.provenance.decision_id == decision_id
        assert [e.event_type for e in self.events.query_by_session("sess_001")] == [
            EventType.ASSURANCE_ISSUED,
            EventType.ASSURANCE_REQUESTED,
        ]
        assert self.health.counters().assurances_issued == 1

    def test_missing_decision(self):
        with pytest.raises(AssuranceError) as exc:
            self.service.generate("dec_missing", "sess_001")
        assert exc.value.status_code == 404
        assert exc.value.code == AssuranceErrorCode.DECISION_NOT_FOUND

    def test_refusal_not_eligible(self):
        with pytest.raises(AssuranceError) as exc:
            self.service.generate(self._decision(make_refusal_output()), "sess_001")
        assert exc.value.status_code == 422
        assert exc.value.code == AssuranceErrorCode.DECISION_IS_REFUSAL

    def test_low_confidence_not_eligible(self):
        with pytest.raises(AssuranceError) as exc:
            self.service.generate(self._decision(make_decision_output(confidence=0.4)), "sess_001")
        assert exc.value.code == AssuranceErrorCode.CONFIDENCE_BELOW_THRESHOLD

    def test_clarification_not_eligible(self):
        clarification = {
            "type": "clarification",
            "clarification": {"questions": [{"id": "q1", "question": "Which month?", "why_it_matters": "Rains"}]},
        }
        with pytest.raises(AssuranceError) as exc:
            self.service.generate(self._decision(clarification), "sess_001")
        assert exc.value.code == AssuranceErrorCode.MISSING_REQUIRED_FIELDS

    def test_flagged_decision_not_eligible(self):
        decision_id = self._decision()
        self.decisions.update_review(decision_id, needs_review=True, reason="MANUAL_FLAG")
        with pytest.raises(AssuranceError) as exc:
            self.service.generate(decision_id, "sess_001")
        assert exc.value.code == AssuranceErrorCode.DECISION_FLAGGED_FOR_REVIEW

    def test_one_assurance_per_decision(self):
        decision_id = self._decision()
        self.service.generate(decision_id, "sess_001")
        with pytest.raises(AssuranceError) as exc:
            self.service.generate(decision_id, "sess_001")
        assert exc.value.status_code == 409

    def test_paused_service(self):
        for _ in range(3):
            self.guardrails.track_assurance_result(False)
        with pytest.raises(AssuranceError) as exc:
            self.service.generate(self._decision(), "sess_001")
        assert exc.value.status_code == 503
        assert exc.value.retry_after_seconds == 600

    def test_download_requires_payment(self):
        record = self.service.generate(self._decision(), "sess_001")
        with pytest.raises(AssuranceError) as exc:
            self.service.get(record.assurance_id)
        assert exc.value.status_code == 402

    def test_download_after_payment(self):
        record = self._paid()
        downloaded = self.service.get(record.assurance_id)
        assert downloaded.status == AssuranceStatus.ISSUED
        assert downloaded.download_count == 1
        assert downloaded.last_accessed_at is not None
        assert self.service.get(record.assurance_id).download_count == 2

    def test_download_missing(self):
        with pytest.raises(AssuranceError) as exc:
            self.service.get("asr_missing")
        assert exc.value.status_code == 404

    def test_refund_revokes(self):
        record = self.service.generate(self._decision(), "sess_001")
        result = self.service.update_payment(record.assurance_id, "pay_1", PaymentStatus.REFUNDED)
        assert result.status == AssuranceStatus.REVOKED
        with pytest.raises(AssuranceError) as exc:
            self.service.get(record.assurance_id)
        assert exc.value.status_code == 410

    def test_payment_replay_acknowledged(self):
        record = self._paid()
        replay = self.service.update_payment(record.assurance_id, "pay_1", PaymentStatus.COMPLETED)
        assert replay.already_processed is True
        assert replay.status == AssuranceStatus.ISSUED
        assert len(self.events.query_by_type(EventType.ASSURANCE_PAID)) == 1

    def test_conflicting_payment_rejected(self):
        record = self._paid()
        with pytest.raises(AssuranceError) as exc:
            self.service.update_payment(record.assurance_id, "pay_2", PaymentStatus.REFUNDED)
        assert exc.value.status_code == 409

    def test_pending_status_invalid(self):
        with pytest.raises(AssuranceError) as exc:
            self.service.update_payment("asr_any", "pay_1", PaymentStatus.PENDING)
        assert exc.value.status_code == 400

    def test_payment_for_missing_assurance(self):
        with pytest.raises(AssuranceError) as exc:
            self.service.update_payment("asr_missing", "pay_1", PaymentStatus.COMPLETED)
        assert exc.value.status_code == 404

    def test_concurrent_generate_issues_one_assurance(self):
        decision_id = self._decision()
        barrier = threading.Barrier(2, timeout=5)
        lookup = self.service.assurance_store.get_by_decision

        def racing_lookup(did):
            found = lookup(did)
            barrier.wait()
            return found

        self.service.assurance_store.get_by_decision = racing_lookup
        created, conflicts = [], []

        def generate():
            try:
                created.append(self.service.generate(decision_id, "sess_001"))
            except AssuranceError as exc:
                conflicts.append(exc.status_code)

        threads = [threading.Thread(target=generate) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert conflicts == [409]
        assert lookup(decision_id).assurance_id == created[0].assurance_id
        assert not self.guardrails.is_assurance_paused()
