"""
Review Triggers — conditions that put a decision or topic in front of a human.

- QUALITY_GATE_FAILED: generation exhausted its attempts without valid output
- REPEATED_TOPIC_VISIT: one session evaluated the same topic repeatedly
- OUTCOME_CHANGED: a refreshed snapshot flipped its outcome within the window
- HIGH_REFUSAL_RATE: a topic's recent refusal rate crossed the threshold
- CONFIDENCE_DRIFT: a topic's recent confidence fell below its baseline
- MANUAL_FLAG: an operator flagged it
"""

import logging
from typing import List, Optional

from decision_orchestrator.config import ReviewTriggerConfig
from decision_orchestrator.models.records import ReviewReasonCode, ReviewRecord
from decision_orchestrator.ops.guardrails import GuardrailTracker
from decision_orchestrator.review.queue import ReviewQueue
from decision_orchestrator.storage.decision_store import DecisionStore

logger = logging.getLogger(__name__)


class ReviewTriggers:
    def __init__(
        self,
        queue: ReviewQueue,
        decision_store: DecisionStore,
        guardrails: GuardrailTracker,
        config: Optional[ReviewTriggerConfig] = None,
    ):
        self.queue = queue
        self.decision_store = decision_store
        self.guardrails = guardrails
        self.config = config or ReviewTriggerConfig()

    def quality_gate_failed(self, topic_id: str, decision_id: str, errors: List[str]) -> ReviewRecord:
        return self.queue.flag(
            topic_id=topic_id,
            decision_id=decision_id,
            reason_code=ReviewReasonCode.QUALITY_GATE_FAILED,
            reason_details=f"Output failed validation after all attempts: {'; '.join(errors[:5])}",
            metadata={"errors": errors[:10]},
        )

    def check_repeated_visits(
        self, topic_id: str, session_id: Optional[str], decision_id: Optional[str] = None
    ) -> Optional[ReviewRecord]:
        """Fires once, when the session reaches the threshold for a topic."""
        if not session_id:
            return None
        decisions = self.decision_store.list_by_requester(session_id, kind="session", limit=50)
        visits = sum(1 for d in decisions if d.topic_id == topic_id)
        if visits != self.config.repeated_visit_count:
            return None
        return self.queue.flag(
            topic_id=topic_id,
            decision_id=decision_id,
            reason_code=ReviewReasonCode.REPEATED_TOPIC_VISIT,
            reason_details=f"Session evaluated this topic {visits} times",
            metadata={"session_id": session_id, "visit_count": visits},
        )

    def check_outcome_change(
        self,
        topic_id: str,
        previous_outcome: Optional[str],
        new_outcome: str,
        hours_since_previous: float,
        decision_id: Optional[str] = None,
    ) -> Optional[ReviewRecord]:
        if not previous_outcome or previous_outcome == new_outcome:
            return None
        if hours_since_previous > self.config.outcome_change_window_hours:
            return None
        return self.queue.flag(
            topic_id=topic_id,
            decision_id=decision_id,
            reason_code=ReviewReasonCode.OUTCOME_CHANGED,
            reason_details=(
                f"Outcome changed from {previous_outcome} to {new_outcome} "
                f"within {hours_since_previous:.1f} hours"
            ),
            metadata={"previous_outcome": previous_outcome, "new_outcome": new_outcome},
        )

    def check_refusal_rate(self, topic_id: str) -> Optional[ReviewRecord]:
        stats = self.guardrails.topic_stats(topic_id)
        if stats.total < self.config.refusal_rate_min_samples:
            return None
        if stats.refusal_rate < self.config.refusal_rate_threshold:
            return None
        if self.queue.review_store.has_pending(topic_id, ReviewReasonCode.HIGH_REFUSAL_RATE):
            return None
        return self.queue.flag(
            topic_id=topic_id,
            reason_code=ReviewReasonCode.HIGH_REFUSAL_RATE,
            reason_details=(
                f"Refusal rate {stats.refusal_rate:.0%} over the last {stats.total} decisions"
            ),
            metadata={"refusal_rate": stats.refusal_rate, "sample_size": stats.total},
        )

    def check_confidence_drift(
        self, topic_id: str, current_avg: float, baseline_avg: float
    ) -> Optional[ReviewRecord]:
        drift = baseline_avg - current_avg
        if drift < self.config.confidence_drift_threshold:
            return None
        if self.queue.review_store.has_pending(topic_id, ReviewReasonCode.CONFIDENCE_DRIFT):
            return None
        return self.queue.flag(
            topic_id=topic_id,
            reason_code=ReviewReasonCode.CONFIDENCE_DRIFT,
            reason_details=(
                f"Average confidence {current_avg:.2f} is {drift:.2f} below baseline {baseline_avg:.2f}"
            ),
            metadata={"current_avg": current_avg, "baseline_avg": baseline_avg, "drift": drift},
        )

    def manual_flag(
        self, topic_id: str, reason_details: str, decision_id: Optional[str] = None, flagged_by: Optional[str] = None
    ) -> ReviewRecord:
        return self.queue.flag(
            topic_id=topic_id,
            decision_id=decision_id,
            reason_code=ReviewReasonCode.MANUAL_FLAG,
            reason_details=reason_details,
            metadata={"flagged_by": flagged_by} if flagged_by else None,
        )
