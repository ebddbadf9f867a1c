"""
Decision Store — durable record of every evaluation outcome: issued
decisions, refusals, and verdict-free answers (clarifications and trade-off
explanations).

Behavioral Contract:
- A record is written exactly once, guarded by attribute_not_exists(decision_id).
  An id collision regenerates the id and retries (bounded).
- After creation only the `review` sub-record and `updated_at` change, and
  only through update_review().
- Records are never deleted.
- Queryable by requester (traveler, lead or session), by topic and by
  review flag.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from decision_orchestrator.models.envelope import StandardInputEnvelope, TaskType
from decision_orchestrator.models.output import (
    AIOutput,
    ClarificationOutput,
    RefusalOutput,
    decision_body_of,
)
from decision_orchestrator.models.records import (
    AITrace,
    DecisionRecord,
    DecisionReview,
    DecisionState,
    DecisionType,
    ReviewStatus,
    Verdict,
)
from decision_orchestrator.storage.kv import (
    ConditionalCheckFailed,
    KeyValueStore,
    attribute_exists,
    attribute_not_exists,
)
from decision_orchestrator.timeutil import isoformat

logger = logging.getLogger(__name__)

TABLE = "decisions"
MAX_ID_ATTEMPTS = 3

_EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{7,}\d")
_TIMING_PATTERN = re.compile(r"\b(when|timing|month)\b", re.IGNORECASE)

_REQUESTER_FIELDS = {
    "traveler": "traveler_id",
    "lead": "lead_id",
    "session": "session_id",
}


def generate_decision_id() -> str:
    return f"dec_{uuid4().hex[:12]}"


def redact_text(text: str) -> str:
    """Mask emails and phone numbers before they reach durable storage."""
    text = _EMAIL_PATTERN.sub("[redacted]", text)
    return _PHONE_PATTERN.sub("[redacted]", text)


def classify_decision(envelope: StandardInputEnvelope, output: AIOutput) -> DecisionType:
    if isinstance(output, RefusalOutput):
        return DecisionType.REFUSAL
    if envelope.task == TaskType.DECISION and _TIMING_PATTERN.search(envelope.request.question):
        return DecisionType.TIMING_VERDICT
    if len(envelope.request.destinations_considered) > 1:
        return DecisionType.COMPARISON
    return DecisionType.FIT_ASSESSMENT


def build_inputs_snapshot(envelope: StandardInputEnvelope, topic_id: Optional[str]) -> Dict[str, Any]:
    """Redacted copy of the inputs that shaped a decision."""
    return {
        "task": envelope.task.value,
        "topic_id": topic_id,
        "user_context": envelope.user_context.model_dump(mode="json"),
        "request": {
            "question": redact_text(envelope.request.question),
            "scope": envelope.request.scope,
            "destinations_considered": list(envelope.request.destinations_considered),
        },
    }


def _answer_verdict(output: AIOutput) -> Verdict:
    if isinstance(output, ClarificationOutput):
        questions = [q.question for q in output.clarification.questions]
        return Verdict(outcome=output.type, headline="Clarification needed", summary=" ".join(questions))
    return Verdict(outcome=output.type, headline="Trade-off explanation", summary=output.explanation.text)


class DecisionStore:
    """Persistence for decision records, backed by the shared item store."""

    def __init__(
        self,
        kv: KeyValueStore,
        logic_version: str = "rules_v1.0",
        prompt_version: str = "prompt_v1.0",
        id_factory=generate_decision_id,
    ):
        self.kv = kv
        self.logic_version = logic_version
        self.prompt_version = prompt_version
        self._id_factory = id_factory
        for field in ("traveler_id", "lead_id", "session_id", "topic_id", "review.needs_review"):
            kv.create_index(TABLE, field)

    def build_record(
        self,
        decision_id: str,
        envelope: StandardInputEnvelope,
        output: AIOutput,
        topic_id: Optional[str] = None,
        ai_used: bool = True,
        model_id: Optional[str] = None,
        review: Optional[DecisionReview] = None,
        session_id: Optional[str] = None,
        traveler_id: Optional[str] = None,
        lead_id: Optional[str] = None,
    ) -> DecisionRecord:
        now = isoformat()
        decision = decision_body_of(output)

        if decision is not None:
            state = DecisionState.ISSUED
            verdict = Verdict(
                outcome=decision.outcome.value,
                headline=decision.headline,
                summary=decision.summary,
            )
            assumptions = list(decision.assumptions)
            tradeoffs = decision.tradeoffs
            change_conditions = list(decision.change_conditions)
            confidence = decision.confidence
        elif isinstance(output, RefusalOutput):
            state = DecisionState.REFUSED
            verdict = Verdict(
                outcome="refused",
                headline="Unable to provide a recommendation",
                summary=output.refusal.reason,
            )
            assumptions = []
            tradeoffs = None
            change_conditions = []
            confidence = 0.0
        else:
            state = DecisionState.ANSWERED
            verdict = _answer_verdict(output)
            assumptions = []
            tradeoffs = None
            change_conditions = []
            confidence = 0.0

        ai_trace = None
        if ai_used:
            ai_trace = AITrace(model=model_id or "unknown", prompt_version=self.prompt_version)

        return DecisionRecord(
            decision_id=decision_id,
            traveler_id=traveler_id or envelope.traveler_id,
            session_id=session_id or envelope.session_id,
            lead_id=lead_id or envelope.lead_id,
            topic_id=topic_id,
            created_at=now,
            updated_at=now,
            decision_type=classify_decision(envelope, output),
            state=state,
            verdict=verdict,
            assumptions=assumptions,
            tradeoffs=tradeoffs,
            change_conditions=change_conditions,
            confidence=confidence,
            inputs_snapshot=build_inputs_snapshot(envelope, topic_id),
            logic_version=self.logic_version,
            ai_used=ai_used,
            ai_trace=ai_trace,
            review=review or DecisionReview(),
        )

    def store(
        self,
        envelope: StandardInputEnvelope,
        output: AIOutput,
        session_id: Optional[str] = None,
        traveler_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        topic_id: Optional[str] = None,
        ai_used: bool = True,
        model_id: Optional[str] = None,
        review: Optional[DecisionReview] = None,
    ) -> Tuple[str, DecisionRecord]:
        """
        Persist an evaluation outcome. Returns (decision_id, record).
        Raises ConditionalCheckFailed if every generated id collided.
        """
        attempt = 0
        while attempt < MAX_ID_ATTEMPTS:
            attempt += 1
            decision_id = self._id_factory()
            record = self.build_record(
                decision_id,
                envelope,
                output,
                topic_id=topic_id,
                ai_used=ai_used,
                model_id=model_id,
                review=review,
                session_id=session_id,
                traveler_id=traveler_id,
                lead_id=lead_id,
            )
            try:
                self.kv.put(TABLE, decision_id, record.model_dump(mode="json"), condition=attribute_not_exists)
            except ConditionalCheckFailed:
                logger.warning("Decision id collision, regenerating", extra={"decision_id": decision_id})
                continue
            logger.info(
                "Decision stored",
                extra={"decision_id": decision_id, "state": record.state.value, "topic_id": topic_id},
            )
            return decision_id, record
        else:
            raise ConditionalCheckFailed(
                f"Could not allocate a unique decision id after {MAX_ID_ATTEMPTS} attempts"
            )

    def get(self, decision_id: str) -> Optional[DecisionRecord]:
        item = self.kv.get(TABLE, decision_id)
        return DecisionRecord.model_validate(item) if item else None

    def list_by_requester(
        self, requester_id: str, kind: str = "traveler", limit: int = 20
    ) -> List[DecisionRecord]:
        """Decisions for a traveler, lead or session, newest first."""
        if kind not in _REQUESTER_FIELDS:
            raise ValueError(f"Unknown requester kind: {kind}")
        items = self.kv.query(TABLE, _REQUESTER_FIELDS[kind], requester_id, limit=limit)
        return [DecisionRecord.model_validate(i) for i in items]

    def list_by_topic(self, topic_id: str, limit: int = 100) -> List[DecisionRecord]:
        items = self.kv.query(TABLE, "topic_id", topic_id, limit=limit)
        return [DecisionRecord.model_validate(i) for i in items]

    def list_needing_review(self, limit: int = 50) -> List[DecisionRecord]:
        items = self.kv.query(TABLE, "review.needs_review", True, limit=limit)
        return [DecisionRecord.model_validate(i) for i in items]

    def update_review(
        self,
        decision_id: str,
        needs_review: bool,
        reason: Optional[str] = None,
        status: ReviewStatus = ReviewStatus.PENDING,
    ) -> DecisionRecord:
        """
        The only mutation allowed on a stored decision.
        Raises ConditionalCheckFailed if the decision does not exist.
        """
        item = self.kv.update(
            TABLE,
            decision_id,
            set_fields={
                "review": DecisionReview(
                    needs_review=needs_review, reason=reason, status=status
                ).model_dump(mode="json"),
                "updated_at": isoformat(),
            },
            condition=attribute_exists,
        )
        return DecisionRecord.model_validate(item)
