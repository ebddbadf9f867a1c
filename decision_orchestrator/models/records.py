"""Persisted records: decisions, reviews, events and snapshots."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from decision_orchestrator.models.output import Assumption, Tradeoffs


class DecisionType(str, Enum):
    TIMING_VERDICT = "timing_verdict"
    FIT_ASSESSMENT = "fit_assessment"
    COMPARISON = "comparison"
    REFUSAL = "refusal"


class DecisionState(str, Enum):
    ISSUED = "ISSUED"
    REFUSED = "REFUSED"
    ANSWERED = "ANSWERED"  # clarification or trade-off explanation, no verdict


class ReviewStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ReviewReasonCode(str, Enum):
    QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"
    REPEATED_TOPIC_VISIT = "REPEATED_TOPIC_VISIT"
    OUTCOME_CHANGED = "OUTCOME_CHANGED"
    HIGH_REFUSAL_RATE = "HIGH_REFUSAL_RATE"
    CONFIDENCE_DRIFT = "CONFIDENCE_DRIFT"
    MANUAL_FLAG = "MANUAL_FLAG"


class Verdict(BaseModel):
    outcome: str  # book | wait | switch | discard | refused | clarification | tradeoff_explanation
    headline: str
    summary: str


class AITrace(BaseModel):
    model: str
    prompt_version: str
    safety_flags: List[str] = Field(default_factory=list)


class DecisionReview(BaseModel):
    needs_review: bool = False
    reason: Optional[str] = None
    status: ReviewStatus = ReviewStatus.NONE


class DecisionRecord(BaseModel):
    """A persisted decision or refusal. Written once; only `review` changes."""

    decision_id: str
    traveler_id: Optional[str] = None
    session_id: Optional[str] = None
    lead_id: Optional[str] = None
    topic_id: Optional[str] = None
    created_at: str
    updated_at: str
    decision_type: DecisionType
    state: DecisionState
    verdict: Verdict
    assumptions: List[Assumption] = Field(default_factory=list)
    tradeoffs: Optional[Tradeoffs] = None
    change_conditions: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    inputs_snapshot: Dict[str, Any] = Field(default_factory=dict)
    logic_version: str
    ai_used: bool
    ai_trace: Optional[AITrace] = None
    review: DecisionReview = Field(default_factory=DecisionReview)


class ReviewRecord(BaseModel):
    review_id: str
    created_at: str
    topic_id: str
    decision_id: Optional[str] = None
    reason_code: ReviewReasonCode
    reason_details: str
    status: ReviewStatus = ReviewStatus.PENDING
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[str] = None
    resolution_notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventType(str, Enum):
    DECISION_ISSUED = "DECISION_ISSUED"
    DECISION_REFUSED = "DECISION_REFUSED"
    ASSURANCE_REQUESTED = "ASSURANCE_REQUESTED"
    ASSURANCE_ISSUED = "ASSURANCE_ISSUED"
    ASSURANCE_PAID = "ASSURANCE_PAID"
    ASSURANCE_REFUNDED = "ASSURANCE_REFUNDED"


class EventRecord(BaseModel):
    """Immutable audit event."""

    event_id: str
    created_at: str
    event_type: EventType
    traveler_id: Optional[str] = None
    session_id: Optional[str] = None
    lead_id: Optional[str] = None
    decision_id: Optional[str] = None
    assurance_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class SnapshotRecord(BaseModel):
    """Cached response for a topic evaluated with default inputs."""

    topic_id: str
    decision_response: Optional[Dict[str, Any]] = None
    inputs_hash: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    ttl_epoch: Optional[int] = None
    lock_until: Optional[str] = None
    lock_id: Optional[str] = None
