"""Decision orchestrator data models."""

from decision_orchestrator.models.assurance import (
    AssuranceArtifact,
    AssuranceErrorCode,
    AssuranceRecord,
    AssuranceStatus,
    PaymentStatus,
)
from decision_orchestrator.models.envelope import (
    BudgetBand,
    DateType,
    Facts,
    PacePreference,
    Policy,
    RiskTolerance,
    StandardInputEnvelope,
    TaskType,
    TrackingContext,
    TravelDates,
    TravelerType,
    TravelRequest,
    UserContext,
)
from decision_orchestrator.models.health import (
    AlertSeverity,
    GuardrailAlert,
    GuardrailState,
    HealthSignal,
    HealthSnapshot,
    OverallStatus,
    SignalStatus,
    TopicBreakdownResult,
    TopicCounter,
    WindowCounters,
)
from decision_orchestrator.models.output import (
    AI_OUTPUT_ADAPTER,
    AIOutput,
    Assumption,
    ClarificationOutput,
    DecisionBody,
    DecisionOutcome,
    DecisionOutput,
    RefusalBody,
    RefusalCode,
    RefusalOutput,
    RevisionOutput,
    TradeoffExplanationOutput,
    Tradeoffs,
)
from decision_orchestrator.models.records import (
    AITrace,
    DecisionRecord,
    DecisionReview,
    DecisionState,
    DecisionType,
    EventRecord,
    EventType,
    ReviewReasonCode,
    ReviewRecord,
    ReviewStatus,
    SnapshotRecord,
    Verdict,
)
from decision_orchestrator.models.responses import DecisionResponse, ResponseMetadata

__all__ = [
    "AI_OUTPUT_ADAPTER",
    "AIOutput",
    "AITrace",
    "AlertSeverity",
    "AssuranceArtifact",
    "AssuranceErrorCode",
    "AssuranceRecord",
    "AssuranceStatus",
    "Assumption",
    "BudgetBand",
    "ClarificationOutput",
    "DateType",
    "DecisionBody",
    "DecisionOutcome",
    "DecisionOutput",
    "DecisionRecord",
    "DecisionResponse",
    "DecisionReview",
    "DecisionState",
    "DecisionType",
    "EventRecord",
    "EventType",
    "Facts",
    "GuardrailAlert",
    "GuardrailState",
    "HealthSignal",
    "HealthSnapshot",
    "OverallStatus",
    "PacePreference",
    "PaymentStatus",
    "Policy",
    "RefusalBody",
    "RefusalCode",
    "RefusalOutput",
    "ResponseMetadata",
    "ReviewReasonCode",
    "ReviewRecord",
    "ReviewStatus",
    "RevisionOutput",
    "RiskTolerance",
    "SignalStatus",
    "SnapshotRecord",
    "StandardInputEnvelope",
    "TaskType",
    "TopicBreakdownResult",
    "TopicCounter",
    "TrackingContext",
    "TradeoffExplanationOutput",
    "Tradeoffs",
    "TravelDates",
    "TravelerType",
    "TravelRequest",
    "UserContext",
    "Verdict",
    "WindowCounters",
]
