"""
Event Store — immutable audit log of decision and assurance outcomes.

Events are append-only (attribute_not_exists on the event id) and feed the
operator topic breakdown.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from decision_orchestrator.models.records import DecisionRecord, EventRecord, EventType
from decision_orchestrator.storage.kv import KeyValueStore, attribute_not_exists
from decision_orchestrator.timeutil import isoformat

logger = logging.getLogger(__name__)

TABLE = "events"


class EventStore:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        for field in ("event_type", "traveler_id", "session_id", "decision_id"):
            kv.create_index(TABLE, field)

    def log_event(
        self,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        traveler_id: Optional[str] = None,
        session_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        decision_id: Optional[str] = None,
        assurance_id: Optional[str] = None,
    ) -> EventRecord:
        event = EventRecord(
            event_id=f"evt_{uuid4().hex[:12]}",
            created_at=isoformat(),
            event_type=event_type,
            traveler_id=traveler_id,
            session_id=session_id,
            lead_id=lead_id,
            decision_id=decision_id,
            assurance_id=assurance_id,
            payload=payload or {},
        )
        self.kv.put(TABLE, event.event_id, event.model_dump(mode="json"), condition=attribute_not_exists)
        logger.debug("Event logged", extra={"event_id": event.event_id, "event_type": event_type.value})
        return event

    def log_decision_issued(self, record: DecisionRecord) -> EventRecord:
        return self.log_event(
            EventType.DECISION_ISSUED,
            payload={
                "outcome": record.verdict.outcome,
                "confidence": record.confidence,
                "logic_version": record.logic_version,
                "ai_used": record.ai_used,
                "topic_id": record.topic_id,
            },
            traveler_id=record.traveler_id,
            session_id=record.session_id,
            lead_id=record.lead_id,
            decision_id=record.decision_id,
        )

    def log_decision_refused(
        self,
        record: DecisionRecord,
        missing_inputs_count: int,
        refusal_code: Optional[str] = None,
    ) -> EventRecord:
        return self.log_event(
            EventType.DECISION_REFUSED,
            payload={
                "reason": record.verdict.summary,
                "refusal_code": refusal_code,
                "missing_inputs_count": missing_inputs_count,
                "logic_version": record.logic_version,
                "topic_id": record.topic_id,
            },
            traveler_id=record.traveler_id,
            session_id=record.session_id,
            lead_id=record.lead_id,
            decision_id=record.decision_id,
        )

    def query_by_type(
        self, event_type: EventType, since: Optional[str] = None, limit: Optional[int] = None
    ) -> List[EventRecord]:
        items = self.kv.query(TABLE, "event_type", event_type.value, limit=limit, since=since)
        return [EventRecord.model_validate(i) for i in items]

    def query_by_traveler(self, traveler_id: str, limit: int = 50) -> List[EventRecord]:
        items = self.kv.query(TABLE, "traveler_id", traveler_id, limit=limit)
        return [EventRecord.model_validate(i) for i in items]

    def query_by_session(self, session_id: str, limit: int = 50) -> List[EventRecord]:
        items = self.kv.query(TABLE, "session_id", session_id, limit=limit)
        return [EventRecord.model_validate(i) for i in items]
