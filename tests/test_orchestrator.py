"""Tests for the decision orchestrator flow."""

import logging
import threading
from datetime import timedelta

from decision_orchestrator.api.app import create_app
from decision_orchestrator.cache.snapshot_store import hash_inputs
from decision_orchestrator.config import GuardrailConfig, OrchestratorConfig
from decision_orchestrator.models.records import DecisionState, EventType, ReviewReasonCode
from decision_orchestrator.orchestrator.handler import OrchestratorState
from decision_orchestrator.orchestrator.refusals import DATES_MISSING
from decision_orchestrator.timeutil import utcnow

from factories import (
    ScriptedEngine,
    make_decision_output,
    make_envelope,
    make_envelope_dict,
    make_refusal_output,
    with_headline,
)

S = OrchestratorState

HYPED = with_headline(make_decision_output(), "An unforgettable Serengeti February!")


class _GatedEngine(ScriptedEngine):
    """Blocks inside complete() until released."""

    def __init__(self, *script):
        super().__init__(*script)
        self.entered = threading.Event()
        self.release = threading.Event()

    def complete(self, system_prompt, user_prompt, temperature):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().complete(system_prompt, user_prompt, temperature)


def _build(*script, **config):
    engine = ScriptedEngine(*script)
    app = create_app(OrchestratorConfig(**config), engine=engine)
    return app.state, engine


def _plant_snapshot(state, age, outcome="wait", topic_id="tz-feb"):
    """Store a default-input snapshot created `age` ago."""
    created = utcnow() - age
    response = {
        "decision_id": "dec_previous",
        "output": make_decision_output(outcome=outcome),
        "metadata": {"logic_version": "rules_v1.0", "ai_used": True, "retry_count": 0, "persisted": True},
    }
    inputs_hash = hash_inputs(make_envelope(default_inputs=True, topic_id=topic_id))
    lock = state.snapshot_store.acquire_lock(topic_id, now=created)
    assert state.snapshot_store.store_snapshot(topic_id, response, inputs_hash, lock.lock_id, now=created)


class TestCleanDecision:
    def setup_method(self):
        self.state, self.engine = _build(make_decision_output())
        self.result = self.state.orchestrator.evaluate(make_envelope_dict())

    def test_issued_and_persisted(self):
        body = self.result.body
        assert self.result.status_code == 200
        assert body["decision_id"].startswith("dec_")
        assert body["output"]["type"] == "decision"
        assert body["metadata"]["ai_used"] is True
        assert body["metadata"]["retry_count"] == 0
        assert body["metadata"]["persisted"] is True

        record = self.state.decision_store.get(body["decision_id"])
        assert record.state.value == "ISSUED"
        assert record.ai_trace.model == "test-model"
        assert record.topic_id == "tz-feb"

    def test_trace(self):
        assert self.result.trace == [
            S.RECEIVED, S.VALIDATED, S.CACHE_CHECK, S.GENERATING, S.ENFORCING, S.PERSISTED, S.RESPONDED,
        ]

    def test_side_effects(self):
        assert len(self.state.event_store.query_by_type(EventType.DECISION_ISSUED)) == 1
        assert self.state.health.counters().decisions_issued == 1
        assert self.state.guardrails.topic_stats("tz-feb").total == 1
        assert self.engine.call_count == 1

    def test_personalized_input_is_not_cached(self):
        assert self.state.snapshot_store.get_snapshot("tz-feb", "any").status.value == "miss"


class TestRetries:
    def test_corrective_retry_then_valid(self):
        state, engine = _build(HYPED, make_decision_output())
        result = state.orchestrator.evaluate(make_envelope_dict())

        assert result.body["output"]["type"] == "decision"
        assert result.body["metadata"]["retry_count"] == 1
        assert engine.call_count == 2
        assert "Specific violations" in engine.calls[1]["user"]
        assert "decision.headline" in engine.calls[1]["user"]
        assert engine.calls[1]["temperature"] < engine.calls[0]["temperature"]
        assert S.RETRY in result.trace

    def test_attempts_numbered_from_zero(self, caplog):
        state, _ = _build(HYPED, make_decision_output())
        with caplog.at_level(logging.INFO, logger="decision_orchestrator.generation.gateway"):
            state.orchestrator.evaluate(make_envelope_dict())
        completed = [r for r in caplog.records if r.getMessage() == "Generation completed"]
        assert [r.attempt for r in completed] == [0, 1]

    def test_retry_ceiling_ends_in_quality_refusal(self):
        state, engine = _build(HYPED)
        result = state.orchestrator.evaluate(make_envelope_dict())

        body = result.body
        assert engine.call_count == 3
        assert body["output"]["type"] == "refusal"
        assert body["output"]["refusal"]["code"] == "QUALITY_GATE_FAILED"
        assert body["metadata"]["retry_count"] == 2
        assert body["metadata"]["persisted"] is True

        reviews = state.review_queue.pending()
        assert [r.reason_code for r in reviews] == [ReviewReasonCode.QUALITY_GATE_FAILED]
        assert reviews[0].decision_id == body["decision_id"]
        assert state.decision_store.get(body["decision_id"]).review.needs_review
        assert state.guardrails.schema_violations == 3

    def test_engine_failures_end_in_degraded_refusal(self):
        state, engine = _build(RuntimeError("throttled"))
        result = state.orchestrator.evaluate(make_envelope_dict())

        body = result.body
        assert engine.call_count == 3
        assert body["output"]["refusal"]["code"] == "SERVICE_DEGRADED"
        assert body["metadata"]["ai_used"] is False
        assert body["metadata"]["persisted"] is True
        assert state.health.counters().generation_failures == 3

    def test_unparseable_completion_counts_as_attempt(self):
        state, engine = _build("I cannot answer that", make_decision_output())
        result = state.orchestrator.evaluate(make_envelope_dict())
        assert result.body["output"]["type"] == "decision"
        assert result.body["metadata"]["retry_count"] == 1

    def test_generated_refusal_is_accepted(self):
        state, _ = _build(make_refusal_output())
        result = state.orchestrator.evaluate(make_envelope_dict())
        assert result.body["output"]["type"] == "refusal"
        assert len(state.event_store.query_by_type(EventType.DECISION_REFUSED)) == 1

    def test_envelope_forbidden_phrase_enforced(self):
        state, engine = _build(make_decision_output())
        raw = make_envelope_dict(policy__forbidden_phrases=["calving season"])
        result = state.orchestrator.evaluate(raw)
        assert engine.call_count == 3
        assert result.body["output"]["refusal"]["code"] == "QUALITY_GATE_FAILED"


class TestImmediateRefusal:
    def test_policy_refusal_skips_generation(self):
        state, engine = _build(make_decision_output())
        raw = make_envelope_dict(
            user_context__dates={"type": "unknown"},
            policy__must_refuse_if=["missing_material_inputs"],
        )
        result = state.orchestrator.evaluate(raw)

        body = result.body
        assert engine.call_count == 0
        assert S.IMMEDIATE_REFUSAL in result.trace
        assert body["output"]["refusal"]["code"] == "MISSING_INPUTS"
        assert DATES_MISSING in body["output"]["refusal"]["missing_or_conflicting_inputs"]
        assert body["metadata"]["ai_used"] is False
        assert state.decision_store.get(body["decision_id"]).ai_used is False

    def test_conflict_without_policy_still_generates(self):
        state, engine = _build(make_decision_output())
        raw = make_envelope_dict(user_context__dates={"type": "unknown"})
        result = state.orchestrator.evaluate(raw)
        assert engine.call_count == 1
        assert result.body["output"]["type"] == "decision"


class TestSnapshotCache:
    def test_second_default_request_is_cached(self):
        state, engine = _build(make_decision_output())
        first = state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))
        second = state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))

        assert S.LOCK_CHECK in first.trace
        assert first.body["metadata"]["cached"] is False
        assert second.body["metadata"]["cached"] is True
        assert second.body["metadata"]["cache_age_seconds"] >= 0
        assert second.body["decision_id"] == first.body["decision_id"]
        assert engine.call_count == 1

    def test_refusals_are_not_cached(self):
        state, engine = _build(make_refusal_output())
        state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))
        state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))
        assert engine.call_count == 2

    def test_locked_topic_gets_capacity_refusal(self):
        state, engine = _build(make_decision_output())
        state.snapshot_store.acquire_lock("tz-feb")
        result = state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))

        body = result.body
        assert engine.call_count == 0
        assert body["decision_id"].startswith("cap_")
        assert body["output"]["refusal"]["code"] == "SERVICE_DEGRADED"
        assert 0 < body["output"]["refusal"]["retry_after_seconds"] <= 30
        assert body["metadata"]["persisted"] is False

    def test_concurrent_default_requests_generate_once(self):
        engine = _GatedEngine(make_decision_output())
        state = create_app(OrchestratorConfig(), engine=engine).state
        results = []

        def evaluate():
            results.append(state.orchestrator.evaluate(make_envelope_dict(default_inputs=True)))

        generating = threading.Thread(target=evaluate)
        generating.start()
        assert engine.entered.wait(timeout=5)

        waiting = threading.Thread(target=evaluate)
        waiting.start()
        waiting.join(timeout=5)
        engine.release.set()
        generating.join(timeout=5)

        assert engine.call_count == 1
        assert sorted(r.body["decision_id"][:4] for r in results) == ["cap_", "dec_"]
        assert state.snapshot_store.get_snapshot(
            "tz-feb", hash_inputs(make_envelope(default_inputs=True))
        ).status.value == "hit"

    def test_lock_released_after_refusal(self):
        state, _ = _build(RuntimeError("down"))
        state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))
        assert state.snapshot_store.acquire_lock("tz-feb").status.value == "acquired"

    def test_stale_snapshot_refreshed(self):
        state, engine = _build(make_decision_output())
        _plant_snapshot(state, timedelta(hours=25))
        result = state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))

        assert engine.call_count == 1
        assert result.body["decision_id"] != "dec_previous"
        assert state.review_queue.pending() == []

    def test_outcome_change_flagged_on_refresh(self):
        state, _ = _build(make_decision_output(outcome="book"), snapshot_ttl_hours=1)
        _plant_snapshot(state, timedelta(hours=2), outcome="wait")
        state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))

        reviews = state.review_queue.pending()
        assert [r.reason_code for r in reviews] == [ReviewReasonCode.OUTCOME_CHANGED]
        assert reviews[0].metadata == {"previous_outcome": "wait", "new_outcome": "book"}


class TestCircuitOpen:
    def _open(self, state):
        for _ in range(3):
            state.guardrails.track_generation_result(False)

    def test_refuses_without_calling_engine(self):
        state, engine = _build(make_decision_output())
        self._open(state)
        result = state.orchestrator.evaluate(make_envelope_dict())

        body = result.body
        assert engine.call_count == 0
        assert body["decision_id"].startswith("cap_")
        assert body["output"]["refusal"]["retry_after_seconds"] == 300
        assert body["metadata"]["persisted"] is False

    def test_serves_stale_snapshot(self):
        state, engine = _build(make_decision_output())
        _plant_snapshot(state, timedelta(hours=25))
        self._open(state)
        result = state.orchestrator.evaluate(make_envelope_dict(default_inputs=True))

        body = result.body
        assert engine.call_count == 0
        assert body["decision_id"] == "dec_previous"
        assert body["metadata"]["cached"] is True
        assert body["metadata"]["stale"] is True

    def test_circuit_opens_during_retries(self):
        state, engine = _build(RuntimeError("down"), guardrails=GuardrailConfig(generation_consecutive_failures=1))
        state.orchestrator.evaluate(make_envelope_dict())
        assert engine.call_count == 1


class TestFailureModes:
    def test_invalid_input_is_400(self):
        state, engine = _build()
        result = state.orchestrator.evaluate({"task": "DECISION"})
        assert result.status_code == 400
        assert result.body["error"] == "Invalid input structure"
        assert {d["field"] for d in result.body["details"]} >= {"user_context", "request"}
        assert engine.call_count == 0

    def test_non_object_input_is_400(self):
        state, _ = _build()
        assert state.orchestrator.evaluate(["not", "an", "object"]).status_code == 400

    def test_unexpected_failure_returns_fallback(self, monkeypatch):
        state, _ = _build(make_decision_output())

        def broken_store(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(state.decision_store, "store", broken_store)
        result = state.orchestrator.evaluate(make_envelope_dict())

        body = result.body
        assert result.status_code == 200
        assert result.trace[-1] == S.ERROR_RESPONDED
        assert body["decision_id"].startswith("err_")
        assert body["output"]["refusal"]["code"] == "SERVICE_DEGRADED"
        assert body["metadata"]["persisted"] is False
        assert state.health.counters().decisions_failed == 1

    def test_every_outcome_is_decision_or_refusal(self):
        scripts = [
            (make_decision_output(),),
            (HYPED,),
            (RuntimeError("down"),),
            ("not json",),
            ({"type": "decision"},),
            ({"type": "clarification", "clarification": {"questions": []}},),
        ]
        for script in scripts:
            state, _ = _build(*script)
            result = state.orchestrator.evaluate(make_envelope_dict())
            assert result.status_code == 200
            assert result.body["output"]["type"] in {"decision", "refusal"}


class TestOtherTasks:
    def test_clarification_is_persisted(self):
        clarification = {
            "type": "clarification",
            "clarification": {
                "questions": [
                    {"id": "q1", "question": "Which month are you travelling?", "why_it_matters": "Migration timing"}
                ]
            },
        }
        state, _ = _build(clarification)
        result = state.orchestrator.evaluate(make_envelope_dict(task="CLARIFICATION"))

        body = result.body
        assert body["output"]["type"] == "clarification"
        assert body["decision_id"].startswith("dec_")
        assert body["metadata"]["persisted"] is True
        assert S.PERSISTED in result.trace

        record = state.decision_store.get(body["decision_id"])
        assert record.state == DecisionState.ANSWERED
        assert record.verdict.outcome == "clarification"
        assert state.event_store.query_by_type(EventType.DECISION_ISSUED) == []

    def test_decision_not_allowed_for_clarification_task(self):
        state, engine = _build(make_decision_output())
        result = state.orchestrator.evaluate(make_envelope_dict(task="CLARIFICATION"))
        assert engine.call_count == 3
        assert result.body["output"]["refusal"]["code"] == "QUALITY_GATE_FAILED"

    def test_revision_is_persisted(self):
        revision = {
            "type": "revision",
            "revision": {
                "what_changed": "Dates moved into March",
                "decision": make_decision_output(outcome="wait")["decision"],
            },
        }
        state, _ = _build(revision)
        result = state.orchestrator.evaluate(make_envelope_dict(task="REVISION"))

        body = result.body
        assert body["decision_id"].startswith("dec_")
        assert state.decision_store.get(body["decision_id"]).verdict.outcome == "wait"
