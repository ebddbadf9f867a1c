"""Paid assurance artifact models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from decision_orchestrator.models.output import Assumption, Tradeoffs


class AssuranceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    REVOKED = "revoked"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class AssuranceErrorCode(str, Enum):
    DECISION_NOT_FOUND = "DECISION_NOT_FOUND"
    DECISION_IS_REFUSAL = "DECISION_IS_REFUSAL"
    DECISION_FLAGGED_FOR_REVIEW = "DECISION_FLAGGED_FOR_REVIEW"
    CONFIDENCE_BELOW_THRESHOLD = "CONFIDENCE_BELOW_THRESHOLD"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    ALREADY_ISSUED = "ALREADY_ISSUED"
    SERVICE_PAUSED = "SERVICE_PAUSED"
    ASSURANCE_NOT_FOUND = "ASSURANCE_NOT_FOUND"
    ASSURANCE_REVOKED = "ASSURANCE_REVOKED"
    INVALID_PAYMENT_STATUS = "INVALID_PAYMENT_STATUS"
    PAYMENT_ALREADY_PROCESSED = "PAYMENT_ALREADY_PROCESSED"


class AssuranceVerdict(BaseModel):
    outcome: str
    headline: str
    summary: str
    confidence: float
    confidence_label: str  # High | Medium | Low


class AssuranceProvenance(BaseModel):
    decision_id: str
    logic_version: str
    ai_used: bool
    decision_created_at: str


class AssuranceArtifact(BaseModel):
    """Immutable copy of a decision, sold as a downloadable record."""

    verdict: AssuranceVerdict
    assumptions: List[Assumption]
    tradeoffs: Tradeoffs
    change_conditions: List[str]
    invalidation_checklist: List[str] = Field(max_length=8)
    provenance: AssuranceProvenance


class AssuranceRecord(BaseModel):
    assurance_id: str
    decision_id: str
    topic_id: Optional[str] = None
    traveler_id: Optional[str] = None
    session_id: str
    created_at: str
    updated_at: str
    artifact: AssuranceArtifact
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_id: Optional[str] = None
    amount_cents: int
    currency: str
    download_count: int = 0
    last_accessed_at: Optional[str] = None
    status: AssuranceStatus = AssuranceStatus.DRAFT
    revocation_reason: Optional[str] = None
