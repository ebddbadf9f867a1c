"""
Assurance Service — paid, immutable copies of issued decisions.

Behavioral Contract:
- Only issued, unflagged decisions with confidence >= the minimum and a
  complete verdict, assumptions and trade-offs are eligible.
- One assurance per decision. The store claims the decision id
  conditionally, so concurrent requests yield one artifact and one 409.
- Artifacts are downloadable only after payment completes; refunds revoke.
- Payment status moves pending → completed | refunded exactly once. A
  replay of the same transition is acknowledged without change.
- Every generate attempt reports success or failure to the guardrail
  tracker; a paused assurance circuit refuses new artifacts.
"""

import logging
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from decision_orchestrator.config import OrchestratorConfig
from decision_orchestrator.models.assurance import (
    AssuranceArtifact,
    AssuranceErrorCode,
    AssuranceProvenance,
    AssuranceRecord,
    AssuranceStatus,
    AssuranceVerdict,
    PaymentStatus,
)
from decision_orchestrator.models.records import DecisionRecord, DecisionState, EventType
from decision_orchestrator.ops.guardrails import GuardrailTracker
from decision_orchestrator.ops.health_signals import HealthSignals
from decision_orchestrator.storage.assurance_store import AssuranceStore
from decision_orchestrator.storage.decision_store import DecisionStore
from decision_orchestrator.storage.event_store import EventStore
from decision_orchestrator.storage.kv import ConditionalCheckFailed
from decision_orchestrator.timeutil import isoformat

logger = logging.getLogger(__name__)

MAX_CHECKLIST_ITEMS = 8
LOW_CONFIDENCE_ASSUMPTION = 0.7
STANDARD_CHECKLIST = [
    "If travel dates change by more than 2 weeks",
    "If group size or composition changes",
    "If budget constraints change significantly",
]


class AssuranceError(Exception):
    """Request could not be served. Carries the HTTP status and error code."""

    def __init__(self, status_code: int, code: AssuranceErrorCode, message: str, retry_after_seconds: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retry_after_seconds = retry_after_seconds


class PaymentResult(BaseModel):
    assurance_id: str
    payment_status: PaymentStatus
    status: AssuranceStatus
    already_processed: bool = False


def confidence_label(confidence: float) -> str:
    if confidence >= 0.7:
        return "High"
    if confidence >= 0.5:
        return "Medium"
    return "Low"


def build_invalidation_checklist(decision: DecisionRecord) -> list:
    checklist = list(decision.change_conditions)
    checklist += [
        f"Verify assumption: {a.text}"
        for a in decision.assumptions
        if a.confidence < LOW_CONFIDENCE_ASSUMPTION
    ]
    checklist += STANDARD_CHECKLIST
    return checklist[:MAX_CHECKLIST_ITEMS]


def check_eligibility(decision: DecisionRecord, min_confidence: float) -> Optional[AssuranceError]:
    """First reason the decision cannot be sold as an assurance, if any."""
    if decision.state == DecisionState.REFUSED:
        return AssuranceError(422, AssuranceErrorCode.DECISION_IS_REFUSAL, "Refusals cannot be assured")
    if decision.state != DecisionState.ISSUED:
        return AssuranceError(422, AssuranceErrorCode.MISSING_REQUIRED_FIELDS, "Only issued decisions carry a verdict")
    if decision.review.needs_review:
        return AssuranceError(
            422, AssuranceErrorCode.DECISION_FLAGGED_FOR_REVIEW, "Decision is awaiting review"
        )
    if decision.confidence < min_confidence:
        return AssuranceError(
            422,
            AssuranceErrorCode.CONFIDENCE_BELOW_THRESHOLD,
            f"Decision confidence {decision.confidence:.2f} is below {min_confidence:.2f}",
        )
    verdict = decision.verdict
    if not (verdict.outcome and verdict.headline and verdict.summary):
        return AssuranceError(422, AssuranceErrorCode.MISSING_REQUIRED_FIELDS, "Decision verdict is incomplete")
    if len(decision.assumptions) < 2:
        return AssuranceError(422, AssuranceErrorCode.MISSING_REQUIRED_FIELDS, "Decision needs at least 2 assumptions")
    if decision.tradeoffs is None or not decision.tradeoffs.gains or not decision.tradeoffs.losses:
        return AssuranceError(422, AssuranceErrorCode.MISSING_REQUIRED_FIELDS, "Decision trade-offs are incomplete")
    return None


def build_artifact(decision: DecisionRecord) -> AssuranceArtifact:
    return AssuranceArtifact(
        verdict=AssuranceVerdict(
            outcome=decision.verdict.outcome,
            headline=decision.verdict.headline,
            summary=decision.verdict.summary,
            confidence=decision.confidence,
            confidence_label=confidence_label(decision.confidence),
        ),
        assumptions=list(decision.assumptions),
        tradeoffs=decision.tradeoffs,
        change_conditions=list(decision.change_conditions),
        invalidation_checklist=build_invalidation_checklist(decision),
        provenance=AssuranceProvenance(
            decision_id=decision.decision_id,
            logic_version=decision.logic_version,
            ai_used=decision.ai_used,
            decision_created_at=decision.created_at,
        ),
    )


class AssuranceService:
    def __init__(
        self,
        decision_store: DecisionStore,
        assurance_store: AssuranceStore,
        event_store: EventStore,
        guardrails: GuardrailTracker,
        health: Optional[HealthSignals] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.decision_store = decision_store
        self.assurance_store = assurance_store
        self.event_store = event_store
        self.guardrails = guardrails
        self.health = health
        self.config = config or OrchestratorConfig()

    def _report(self, success: bool) -> None:
        self.guardrails.track_assurance_result(success)
        if self.health:
            self.health.record_assurance(success)

    def generate(
        self, decision_id: str, session_id: str, traveler_id: Optional[str] = None
    ) -> AssuranceRecord:
        """Create a pending-payment assurance. Raises AssuranceError."""
        if self.guardrails.is_assurance_paused():
            raise AssuranceError(
                503,
                AssuranceErrorCode.SERVICE_PAUSED,
                "Assurance generation is temporarily paused",
                retry_after_seconds=self.config.assurance_paused_retry_after_seconds,
            )

        decision = self.decision_store.get(decision_id)
        if decision is None:
            raise AssuranceError(404, AssuranceErrorCode.DECISION_NOT_FOUND, "Decision not found")

        existing = self.assurance_store.get_by_decision(decision_id)
        if existing is not None:
            raise AssuranceError(409, AssuranceErrorCode.ALREADY_ISSUED, "An assurance already exists for this decision")

        ineligible = check_eligibility(decision, self.config.assurance_min_confidence)
        if ineligible is not None:
            logger.info(
                "Assurance refused",
                extra={"decision_id": decision_id, "error_code": ineligible.code.value},
            )
            raise ineligible

        self.event_store.log_event(
            EventType.ASSURANCE_REQUESTED,
            payload={"topic_id": decision.topic_id},
            traveler_id=traveler_id,
            session_id=session_id,
            decision_id=decision_id,
        )

        now = isoformat()
        record = AssuranceRecord(
            assurance_id=f"asr_{uuid4().hex[:12]}",
            decision_id=decision_id,
            topic_id=decision.topic_id,
            traveler_id=traveler_id,
            session_id=session_id,
            created_at=now,
            updated_at=now,
            artifact=build_artifact(decision),
            amount_cents=self.config.assurance_price_cents,
            currency=self.config.assurance_currency,
        )
        try:
            self.assurance_store.create(record)
        except ConditionalCheckFailed:
            logger.info("Assurance already claimed for decision", extra={"decision_id": decision_id})
            raise AssuranceError(409, AssuranceErrorCode.ALREADY_ISSUED, "An assurance already exists for this decision")
        except Exception:
            self._report(False)
            raise
        self._report(True)

        self.event_store.log_event(
            EventType.ASSURANCE_ISSUED,
            payload={"topic_id": decision.topic_id, "amount_cents": record.amount_cents},
            traveler_id=traveler_id,
            session_id=session_id,
            decision_id=decision_id,
            assurance_id=record.assurance_id,
        )
        logger.info("Assurance created", extra={"assurance_id": record.assurance_id, "decision_id": decision_id})
        return record

    def get(self, assurance_id: str) -> AssuranceRecord:
        """Paid artifact download. Raises AssuranceError for 404 / 410 / 402."""
        record = self.assurance_store.get(assurance_id)
        if record is None:
            raise AssuranceError(404, AssuranceErrorCode.ASSURANCE_NOT_FOUND, "Assurance not found")
        if record.status == AssuranceStatus.REVOKED:
            raise AssuranceError(410, AssuranceErrorCode.ASSURANCE_REVOKED, "Assurance has been revoked")
        if record.payment_status != PaymentStatus.COMPLETED:
            raise AssuranceError(402, AssuranceErrorCode.PAYMENT_REQUIRED, "Payment required")
        return self.assurance_store.record_access(assurance_id)

    def update_payment(
        self, assurance_id: str, payment_id: str, payment_status: PaymentStatus
    ) -> PaymentResult:
        """Payment webhook. Raises AssuranceError for 400 / 404 / 409."""
        if payment_status == PaymentStatus.PENDING:
            raise AssuranceError(400, AssuranceErrorCode.INVALID_PAYMENT_STATUS, "Payment status must be completed or refunded")

        try:
            record = self.assurance_store.update_payment(assurance_id, payment_id, payment_status)
        except ConditionalCheckFailed:
            existing = self.assurance_store.get(assurance_id)
            if existing is None:
                raise AssuranceError(404, AssuranceErrorCode.ASSURANCE_NOT_FOUND, "Assurance not found")
            if existing.payment_status == payment_status and existing.payment_id == payment_id:
                return PaymentResult(
                    assurance_id=assurance_id,
                    payment_status=existing.payment_status,
                    status=existing.status,
                    already_processed=True,
                )
            raise AssuranceError(409, AssuranceErrorCode.PAYMENT_ALREADY_PROCESSED, "Payment already processed")

        event_type = (
            EventType.ASSURANCE_PAID if payment_status == PaymentStatus.COMPLETED
            else EventType.ASSURANCE_REFUNDED
        )
        self.event_store.log_event(
            event_type,
            payload={"payment_id": payment_id, "topic_id": record.topic_id},
            traveler_id=record.traveler_id,
            session_id=record.session_id,
            decision_id=record.decision_id,
            assurance_id=assurance_id,
        )
        logger.info(
            "Assurance payment updated",
            extra={"assurance_id": assurance_id, "payment_status": payment_status.value},
        )
        return PaymentResult(
            assurance_id=assurance_id,
            payment_status=record.payment_status,
            status=record.status,
        )
