"""Operational health, guardrail and topic breakdown models."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class SignalStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class OverallStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class GuardrailAlert(BaseModel):
    id: str
    severity: AlertSeverity
    title: str
    description: str
    action: str
    detected_at: str


class Interventions(BaseModel):
    generation_circuit_open: bool = False
    assurance_paused: bool = False


class GuardrailState(BaseModel):
    alerts: List[GuardrailAlert] = Field(default_factory=list)
    interventions: Interventions = Field(default_factory=Interventions)
    last_check: str


class HealthSignal(BaseModel):
    name: str
    value: float
    status: SignalStatus
    threshold_warning: Optional[float] = None
    threshold_critical: Optional[float] = None


class HealthSnapshot(BaseModel):
    timestamp: str
    status: OverallStatus
    signals: List[HealthSignal]
    action_required: bool
    summary: str


class WindowCounters(BaseModel):
    decisions_issued: int = 0
    decisions_refused: int = 0
    decisions_failed: int = 0
    assurances_issued: int = 0
    assurances_failed: int = 0
    generation_calls: int = 0
    generation_failures: int = 0
    reviews_created: int = 0
    reviews_resolved: int = 0
    window_age_seconds: int = 0


class TopicCounter(BaseModel):
    topic_id: str
    issued: int = 0
    refused: int = 0
    quality_gate_failed: int = 0
    refusal_rate: float = 0.0


class RefusalReasonCount(BaseModel):
    reason: str
    count: int


class TopicBreakdownResult(BaseModel):
    topic_counters: Optional[Dict[str, TopicCounter]] = None
    top_refusal_reasons: Optional[List[RefusalReasonCount]] = None
    skipped: bool = False
    skip_reason: Optional[str] = None  # too_many_events | query_error
