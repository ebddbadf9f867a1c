"""Tests for the guardrail tracker and health signals."""

from decision_orchestrator.config import GuardrailConfig
from decision_orchestrator.models.health import AlertSeverity, OverallStatus, SignalStatus
from decision_orchestrator.ops.guardrails import GuardrailTracker
from decision_orchestrator.ops.health_signals import HealthSignals


class _Clock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _alert_ids(state):
    return [a.id for a in state.alerts]


class TestGenerationCircuit:
    def setup_method(self):
        self.tracker = GuardrailTracker(GuardrailConfig(generation_consecutive_failures=3))

    def test_opens_after_consecutive_failures(self):
        self.tracker.track_generation_result(False)
        self.tracker.track_generation_result(False)
        assert not self.tracker.is_generation_circuit_open()
        self.tracker.track_generation_result(False)
        assert self.tracker.is_generation_circuit_open()

    def test_success_resets_count(self):
        self.tracker.track_generation_result(False)
        self.tracker.track_generation_result(False)
        self.tracker.track_generation_result(True)
        self.tracker.track_generation_result(False)
        assert not self.tracker.is_generation_circuit_open()

    def test_success_does_not_close_open_circuit(self):
        for _ in range(3):
            self.tracker.track_generation_result(False)
        self.tracker.track_generation_result(True)
        assert self.tracker.is_generation_circuit_open()

    def test_manual_reset(self):
        for _ in range(3):
            self.tracker.track_generation_result(False)
        self.tracker.reset_generation_circuit()
        assert not self.tracker.is_generation_circuit_open()

    def test_alert_raised_while_open(self):
        for _ in range(3):
            self.tracker.track_generation_result(False)
        state = self.tracker.evaluate_guardrails()
        assert "generation-circuit-open" in _alert_ids(state)
        assert state.interventions.generation_circuit_open
        assert state.alerts[0].severity == AlertSeverity.CRITICAL


class TestAssuranceCircuit:
    def test_pauses_and_resets(self):
        tracker = GuardrailTracker(GuardrailConfig(assurance_consecutive_failures=2))
        tracker.track_assurance_result(False)
        tracker.track_assurance_result(False)
        assert tracker.is_assurance_paused()
        assert "assurance-paused" in _alert_ids(tracker.evaluate_guardrails())
        tracker.reset_assurance_circuit()
        assert not tracker.is_assurance_paused()


class TestDerivedAlerts:
    def test_no_alerts_when_quiet(self):
        state = GuardrailTracker().evaluate_guardrails()
        assert state.alerts == []
        assert not state.interventions.generation_circuit_open

    def test_schema_violation_alert(self):
        tracker = GuardrailTracker()
        tracker.track_schema_violation()
        assert tracker.schema_violations == 1
        assert "schema-violations" in _alert_ids(tracker.evaluate_guardrails())

    def test_refusal_spike_names_topic(self):
        tracker = GuardrailTracker(GuardrailConfig(refusal_spike_rate=0.6, refusal_spike_min_samples=5))
        for _ in range(5):
            tracker.track_topic_decision("tz-feb", True)
        for topic_id in ("ke-aug", "bw-jun"):
            for _ in range(10):
                tracker.track_topic_decision(topic_id, False)

        spike = [a for a in tracker.evaluate_guardrails().alerts if a.id == "refusal-spike"]
        assert len(spike) == 1
        assert "tz-feb" in spike[0].description
        assert "ke-aug" not in spike[0].description

    def test_refusal_spike_ignores_global_counters(self):
        health = HealthSignals()
        tracker = GuardrailTracker(GuardrailConfig(refusal_spike_min_samples=5), health)
        for _ in range(10):
            health.record_decision_refused()
        assert "refusal-spike" not in _alert_ids(tracker.evaluate_guardrails())

    def test_refusal_spike_needs_samples(self):
        tracker = GuardrailTracker(GuardrailConfig(refusal_spike_min_samples=5))
        for _ in range(4):
            tracker.track_topic_decision("tz-feb", True)
        assert "refusal-spike" not in _alert_ids(tracker.evaluate_guardrails())

    def test_refusal_spike_below_rate(self):
        tracker = GuardrailTracker(GuardrailConfig(refusal_spike_rate=0.6, refusal_spike_min_samples=5))
        for refused in (True, True, False, False, False):
            tracker.track_topic_decision("tz-feb", refused)
        assert "refusal-spike" not in _alert_ids(tracker.evaluate_guardrails())

    def test_review_queue_capacity(self):
        tracker = GuardrailTracker(GuardrailConfig(review_queue_capacity=30))
        assert "review-queue-capacity" not in _alert_ids(tracker.evaluate_guardrails(pending_reviews=29))
        assert "review-queue-capacity" in _alert_ids(tracker.evaluate_guardrails(pending_reviews=30))

    def test_reset_all_clears_state(self):
        tracker = GuardrailTracker()
        for _ in range(3):
            tracker.track_generation_result(False)
        tracker.track_schema_violation()
        tracker.track_topic_decision("tz-feb", True)
        tracker.reset_all()
        assert tracker.evaluate_guardrails().alerts == []
        assert tracker.tracked_topic_count() == 0


class TestTopicTracking:
    def test_refusal_rate(self):
        tracker = GuardrailTracker()
        tracker.track_topic_decision("tz-feb", True)
        tracker.track_topic_decision("tz-feb", False)
        tracker.track_topic_decision("tz-feb", False)
        tracker.track_topic_decision("tz-feb", True)
        stats = tracker.topic_stats("tz-feb")
        assert stats.total == 4
        assert stats.refusal_rate == 0.5

    def test_unknown_topic(self):
        stats = GuardrailTracker().topic_stats("nowhere")
        assert stats.total == 0
        assert stats.refusal_rate == 0.0

    def test_window_is_bounded(self):
        tracker = GuardrailTracker(GuardrailConfig(topic_window_size=5))
        for _ in range(5):
            tracker.track_topic_decision("tz-feb", True)
        for _ in range(5):
            tracker.track_topic_decision("tz-feb", False)
        stats = tracker.topic_stats("tz-feb")
        assert stats.total == 5
        assert stats.refused == 0

    def test_topic_count_is_bounded(self):
        tracker = GuardrailTracker(GuardrailConfig(max_tracked_topics=3))
        for topic in ("a", "b", "c", "d"):
            tracker.track_topic_decision(topic, False)
        assert tracker.tracked_topic_count() == 3
        assert tracker.topic_stats("a").total == 0
        assert tracker.topic_stats("d").total == 1


class TestHealthSignals:
    def test_healthy_when_idle(self):
        snapshot = HealthSignals().snapshot()
        assert snapshot.status == OverallStatus.HEALTHY
        assert not snapshot.action_required
        assert {s.name for s in snapshot.signals} == {
            "decision_failure_rate",
            "refusal_rate",
            "generation_failure_rate",
            "assurance_success_rate",
            "review_queue_growth",
            "total_decisions",
        }

    def test_generation_failures_go_critical(self):
        health = HealthSignals()
        health.record_generation_call(True)
        health.record_generation_call(False)
        signals = {s.name: s for s in health.compute_signals()}
        assert signals["generation_failure_rate"].value == 0.5
        assert signals["generation_failure_rate"].status == SignalStatus.CRITICAL
        snapshot = health.snapshot()
        assert snapshot.status == OverallStatus.CRITICAL
        assert snapshot.action_required

    def test_assurance_success_rate(self):
        health = HealthSignals()
        for _ in range(3):
            health.record_assurance(True)
        health.record_assurance(False)
        signals = {s.name: s for s in health.compute_signals()}
        assert signals["assurance_success_rate"].value == 0.75
        assert signals["assurance_success_rate"].status == SignalStatus.WARNING

    def test_review_queue_growth(self):
        health = HealthSignals()
        for _ in range(3):
            health.record_review_created()
        health.record_review_resolved()
        signals = {s.name: s for s in health.compute_signals()}
        assert signals["review_queue_growth"].value == 2.0

    def test_window_rolls_after_an_hour(self):
        clock = _Clock()
        health = HealthSignals(time_fn=clock)
        health.record_decision_issued()
        clock.now += 3601
        assert health.counters().decisions_issued == 0

    def test_counters_report_window_age(self):
        clock = _Clock()
        health = HealthSignals(time_fn=clock)
        clock.now += 120
        assert health.counters().window_age_seconds == 120

    def test_critical_health_alert_only_when_otherwise_quiet(self):
        health = HealthSignals()
        tracker = GuardrailTracker(health=health)
        health.record_decision_failed()
        assert _alert_ids(tracker.evaluate_guardrails()) == ["health-critical"]
