"""
Truth metrics — how a topic's decisions hold up over time.

Computed from stored decision records on demand; nothing is cached.
"""

from collections import Counter
from typing import Dict, Optional

from pydantic import BaseModel, Field

from decision_orchestrator.models.records import DecisionState
from decision_orchestrator.storage.decision_store import DecisionStore

RECENT_WINDOW = 10
MIN_DRIFT_SAMPLES = 5
DEFAULT_DRIFT_THRESHOLD = 0.15


class TopicMetrics(BaseModel):
    topic_id: str
    total: int = 0
    issued: int = 0
    refused: int = 0
    completion_rate: float = 0.0
    refusal_rate: float = 0.0
    avg_confidence: Optional[float] = None
    outcome_distribution: Dict[str, int] = Field(default_factory=dict)


class ConfidenceDrift(BaseModel):
    topic_id: str
    drifted: bool
    current_avg: Optional[float] = None
    baseline_avg: float
    drift: Optional[float] = None
    sample_size: int = 0


class TruthMetrics:
    def __init__(self, decision_store: DecisionStore, scan_limit: int = 500):
        self.decision_store = decision_store
        self.scan_limit = scan_limit

    def topic_metrics(self, topic_id: str) -> TopicMetrics:
        records = self.decision_store.list_by_topic(topic_id, limit=self.scan_limit)
        issued = [r for r in records if r.state == DecisionState.ISSUED]
        refused = len(records) - len(issued)
        total = len(records)

        return TopicMetrics(
            topic_id=topic_id,
            total=total,
            issued=len(issued),
            refused=refused,
            completion_rate=len(issued) / total if total else 0.0,
            refusal_rate=refused / total if total else 0.0,
            avg_confidence=(
                sum(r.confidence for r in issued) / len(issued) if issued else None
            ),
            outcome_distribution=dict(Counter(r.verdict.outcome for r in issued)),
        )

    def detect_confidence_drift(
        self,
        topic_id: str,
        baseline_avg: float,
        threshold: float = DEFAULT_DRIFT_THRESHOLD,
    ) -> ConfidenceDrift:
        """Compare the latest issued decisions against a baseline average."""
        records = self.decision_store.list_by_topic(topic_id, limit=self.scan_limit)
        recent = [r for r in records if r.state == DecisionState.ISSUED][:RECENT_WINDOW]

        if len(recent) < MIN_DRIFT_SAMPLES:
            return ConfidenceDrift(
                topic_id=topic_id,
                drifted=False,
                baseline_avg=baseline_avg,
                sample_size=len(recent),
            )

        current_avg = sum(r.confidence for r in recent) / len(recent)
        drift = baseline_avg - current_avg
        return ConfidenceDrift(
            topic_id=topic_id,
            drifted=drift >= threshold,
            current_avg=current_avg,
            baseline_avg=baseline_avg,
            drift=drift,
            sample_size=len(recent),
        )
