"""
Assurance Store — paid artifacts derived from issued decisions.

Behavioral Contract:
- One artifact per decision: create() first claims the decision id in a
  claims table with attribute_not_exists, then writes the record. A losing
  racer gets ConditionalCheckFailed and nothing is written.
- The artifact body never changes after creation.
- payment_status moves pending → completed | refunded exactly once, guarded
  by a conditional update on payment_status == pending.
"""

from typing import Optional

from decision_orchestrator.models.assurance import (
    AssuranceRecord,
    AssuranceStatus,
    PaymentStatus,
)
from decision_orchestrator.storage.kv import KeyValueStore, attribute_not_exists
from decision_orchestrator.timeutil import isoformat

TABLE = "assurances"
CLAIMS_TABLE = "assurance_claims"


def _payment_pending(item) -> bool:
    return item is not None and item.get("payment_status") == PaymentStatus.PENDING.value


class AssuranceStore:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        kv.create_index(TABLE, "decision_id")

    def create(self, record: AssuranceRecord) -> AssuranceRecord:
        """Raises ConditionalCheckFailed if the decision already has an assurance."""
        self.kv.put(
            CLAIMS_TABLE,
            record.decision_id,
            {"decision_id": record.decision_id, "assurance_id": record.assurance_id},
            condition=attribute_not_exists,
        )
        try:
            self.kv.put(TABLE, record.assurance_id, record.model_dump(mode="json"), condition=attribute_not_exists)
        except Exception:
            self.kv.delete(CLAIMS_TABLE, record.decision_id)
            raise
        return record

    def get(self, assurance_id: str) -> Optional[AssuranceRecord]:
        item = self.kv.get(TABLE, assurance_id)
        return AssuranceRecord.model_validate(item) if item else None

    def get_by_decision(self, decision_id: str) -> Optional[AssuranceRecord]:
        items = self.kv.query(TABLE, "decision_id", decision_id, limit=1)
        return AssuranceRecord.model_validate(items[0]) if items else None

    def record_access(self, assurance_id: str) -> AssuranceRecord:
        item = self.kv.update(
            TABLE,
            assurance_id,
            set_fields={"last_accessed_at": isoformat()},
            increments={"download_count": 1},
            condition=lambda current: current is not None,
        )
        return AssuranceRecord.model_validate(item)

    def update_payment(
        self, assurance_id: str, payment_id: str, payment_status: PaymentStatus
    ) -> AssuranceRecord:
        """
        Settle a pending payment. Raises ConditionalCheckFailed when the
        record is missing or no longer pending.
        """
        now = isoformat()
        changes = {
            "payment_status": payment_status.value,
            "payment_id": payment_id,
            "updated_at": now,
        }
        if payment_status == PaymentStatus.COMPLETED:
            changes["status"] = AssuranceStatus.ISSUED.value
        elif payment_status == PaymentStatus.REFUNDED:
            changes["status"] = AssuranceStatus.REVOKED.value
            changes["revocation_reason"] = "refunded"
        item = self.kv.update(TABLE, assurance_id, set_fields=changes, condition=_payment_pending)
        return AssuranceRecord.model_validate(item)
