"""
Guardrail Tracker — circuit breakers and alerts for the orchestrator.

Behavioral Contract:
- One tracker per process, owned by the application factory and injected
  into the components that report to it.
- Consecutive generation failures at or above the threshold open the
  generation circuit; consecutive assurance failures pause assurance.
  A success resets the matching counter but never closes an open circuit.
- Circuits close only through an explicit operator reset.
- Per-topic tallies are bounded: a fixed window of recent outcomes per
  topic and a cap on the number of topics tracked. The refusal-spike alert
  names every topic whose window crosses the spike rate.
- Alerts are derived on every read; nothing is stored.
"""

import logging
import threading
from collections import OrderedDict, deque
from typing import Deque, List, Optional

from decision_orchestrator.config import GuardrailConfig
from decision_orchestrator.models.health import (
    AlertSeverity,
    GuardrailAlert,
    GuardrailState,
    Interventions,
    OverallStatus,
)
from decision_orchestrator.ops.health_signals import HealthSignals
from decision_orchestrator.timeutil import isoformat

logger = logging.getLogger(__name__)


class TopicStats:
    def __init__(self, total: int, refused: int):
        self.total = total
        self.refused = refused

    @property
    def refusal_rate(self) -> float:
        return self.refused / self.total if self.total else 0.0


class GuardrailTracker:
    def __init__(self, config: Optional[GuardrailConfig] = None, health: Optional[HealthSignals] = None):
        self.config = config or GuardrailConfig()
        self.health = health or HealthSignals()
        self._lock = threading.Lock()
        self._generation_failures = 0
        self._assurance_failures = 0
        self._schema_violations = 0
        self._generation_circuit_open = False
        self._assurance_paused = False
        self._topics: "OrderedDict[str, Deque[bool]]" = OrderedDict()

    # --- Tracking ---

    def track_generation_result(self, success: bool) -> None:
        with self._lock:
            if success:
                self._generation_failures = 0
                return
            self._generation_failures += 1
            if (
                not self._generation_circuit_open
                and self._generation_failures >= self.config.generation_consecutive_failures
            ):
                self._generation_circuit_open = True
                logger.error(
                    "Generation circuit opened",
                    extra={"consecutive_failures": self._generation_failures},
                )

    def track_assurance_result(self, success: bool) -> None:
        with self._lock:
            if success:
                self._assurance_failures = 0
                return
            self._assurance_failures += 1
            if (
                not self._assurance_paused
                and self._assurance_failures >= self.config.assurance_consecutive_failures
            ):
                self._assurance_paused = True
                logger.error(
                    "Assurance generation paused",
                    extra={"consecutive_failures": self._assurance_failures},
                )

    def track_schema_violation(self) -> None:
        with self._lock:
            self._schema_violations += 1

    def track_topic_decision(self, topic_id: str, refused: bool) -> None:
        with self._lock:
            window = self._topics.get(topic_id)
            if window is None:
                window = deque(maxlen=self.config.topic_window_size)
                self._topics[topic_id] = window
            self._topics.move_to_end(topic_id)
            window.append(refused)
            while len(self._topics) > self.config.max_tracked_topics:
                self._topics.popitem(last=False)

    def topic_stats(self, topic_id: str) -> TopicStats:
        with self._lock:
            window = self._topics.get(topic_id) or ()
            return TopicStats(total=len(window), refused=sum(1 for r in window if r))

    def tracked_topic_count(self) -> int:
        with self._lock:
            return len(self._topics)

    # --- Interventions ---

    def is_generation_circuit_open(self) -> bool:
        with self._lock:
            return self._generation_circuit_open

    def is_assurance_paused(self) -> bool:
        with self._lock:
            return self._assurance_paused

    @property
    def schema_violations(self) -> int:
        with self._lock:
            return self._schema_violations

    def reset_generation_circuit(self) -> None:
        with self._lock:
            self._generation_circuit_open = False
            self._generation_failures = 0
        logger.info("Generation circuit reset")

    def reset_assurance_circuit(self) -> None:
        with self._lock:
            self._assurance_paused = False
            self._assurance_failures = 0
        logger.info("Assurance circuit reset")

    def reset_all(self) -> None:
        with self._lock:
            self._generation_failures = 0
            self._assurance_failures = 0
            self._schema_violations = 0
            self._generation_circuit_open = False
            self._assurance_paused = False
            self._topics.clear()
        logger.info("All guardrails reset")

    # --- Evaluation ---

    def evaluate_guardrails(self, pending_reviews: int = 0) -> GuardrailState:
        now = isoformat()
        with self._lock:
            generation_failures = self._generation_failures
            generation_open = self._generation_circuit_open
            assurance_failures = self._assurance_failures
            assurance_paused = self._assurance_paused
            schema_violations = self._schema_violations
            spike_topics = [
                topic_id
                for topic_id, window in self._topics.items()
                if len(window) >= self.config.refusal_spike_min_samples
                and sum(1 for r in window if r) / len(window) >= self.config.refusal_spike_rate
            ]

        alerts: List[GuardrailAlert] = []

        if generation_open:
            alerts.append(GuardrailAlert(
                id="generation-circuit-open",
                severity=AlertSeverity.CRITICAL,
                title="Generation engine circuit open",
                description=(
                    f"{generation_failures} consecutive generation failures. "
                    "New evaluations are refused with a retry hint or served from snapshots."
                ),
                action="Check engine availability, then reset the generation circuit.",
                detected_at=now,
            ))

        if assurance_paused:
            alerts.append(GuardrailAlert(
                id="assurance-paused",
                severity=AlertSeverity.CRITICAL,
                title="Assurance generation paused",
                description=f"{assurance_failures} consecutive assurance failures.",
                action="Inspect assurance errors, then reset the assurance circuit.",
                detected_at=now,
            ))

        if schema_violations >= self.config.schema_violation_threshold:
            alerts.append(GuardrailAlert(
                id="schema-violations",
                severity=AlertSeverity.WARNING,
                title="Generated output failed validation",
                description=f"{schema_violations} outputs rejected by the output enforcer since last reset.",
                action="Review recent generations and prompt version.",
                detected_at=now,
            ))

        if spike_topics:
            alerts.append(GuardrailAlert(
                id="refusal-spike",
                severity=AlertSeverity.WARNING,
                title="Refusal rate spike",
                description=(
                    f"Topics refusing at {self.config.refusal_spike_rate:.0%} or more: "
                    f"{', '.join(spike_topics)}"
                ),
                action="Check input quality and recent policy changes for these topics.",
                detected_at=now,
            ))

        if pending_reviews >= self.config.review_queue_capacity:
            alerts.append(GuardrailAlert(
                id="review-queue-capacity",
                severity=AlertSeverity.WARNING,
                title="Review queue at capacity",
                description=f"{pending_reviews} reviews pending.",
                action="Work through pending reviews.",
                detected_at=now,
            ))

        health_snapshot = self.health.snapshot()
        if not alerts and health_snapshot.status == OverallStatus.CRITICAL:
            alerts.append(GuardrailAlert(
                id="health-critical",
                severity=AlertSeverity.CRITICAL,
                title="Health signals critical",
                description=health_snapshot.summary,
                action="Inspect health signals.",
                detected_at=now,
            ))

        return GuardrailState(
            alerts=alerts,
            interventions=Interventions(
                generation_circuit_open=generation_open,
                assurance_paused=assurance_paused,
            ),
            last_check=now,
        )
