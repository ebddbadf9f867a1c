"""Request envelope — the immutable input to every evaluation."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskType(str, Enum):
    DECISION = "DECISION"
    REFUSAL = "REFUSAL"
    REVISION = "REVISION"
    CLARIFICATION = "CLARIFICATION"
    TRADEOFF_EXPLANATION = "TRADEOFF_EXPLANATION"


class TravelerType(str, Enum):
    FIRST_TIME = "first_time"
    REPEAT = "repeat"
    FAMILY = "family"
    HONEYMOON = "honeymoon"
    PHOTOGRAPHER = "photographer"
    UNKNOWN = "unknown"


class BudgetBand(str, Enum):
    BUDGET = "budget"
    FAIR_VALUE = "fair_value"
    PREMIUM = "premium"
    UNKNOWN = "unknown"


class PacePreference(str, Enum):
    SLOW = "slow"
    BALANCED = "balanced"
    FAST = "fast"
    UNKNOWN = "unknown"


class RiskTolerance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


class DateType(str, Enum):
    FIXED_DATES = "fixed_dates"
    MONTH_YEAR = "month_year"
    FLEXIBLE = "flexible"
    UNKNOWN = "unknown"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class TravelDates(_Frozen):
    type: DateType
    start: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    end: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    month: Optional[str] = None
    year: Optional[int] = None

    @field_validator("year")
    @classmethod
    def _year_not_in_past(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < datetime.now().year:
            raise ValueError("year must be the current year or later")
        return value


class UserContext(_Frozen):
    traveler_type: TravelerType
    budget_band: BudgetBand
    pace_preference: PacePreference
    drive_tolerance_hours: float = Field(ge=0)
    risk_tolerance: RiskTolerance
    dates: TravelDates
    group_size: int = Field(ge=0)
    prior_decisions: List[str] = Field(default_factory=list)


class TravelRequest(_Frozen):
    question: str = Field(min_length=1)
    scope: str
    destinations_considered: List[str] = Field(default_factory=list)
    constraints: Dict[str, Any] = Field(default_factory=dict)


class Facts(_Frozen):
    known_constraints: List[str] = Field(default_factory=list)
    known_tradeoffs: List[str] = Field(default_factory=list)
    destination_notes: List[str] = Field(default_factory=list)


class Policy(_Frozen):
    must_refuse_if: List[str] = Field(default_factory=list)
    forbidden_phrases: List[str] = Field(default_factory=list)


class TrackingContext(_Frozen):
    session_id: Optional[str] = None
    traveler_id: Optional[str] = None
    lead_id: Optional[str] = None


class StandardInputEnvelope(_Frozen):
    """A complete evaluation request. Never mutated after validation."""

    task: TaskType
    tracking: Optional[TrackingContext] = None
    user_context: UserContext
    request: TravelRequest
    facts: Facts
    policy: Policy

    @property
    def session_id(self) -> Optional[str]:
        return self.tracking.session_id if self.tracking else None

    @property
    def traveler_id(self) -> Optional[str]:
        return self.tracking.traveler_id if self.tracking else None

    @property
    def lead_id(self) -> Optional[str]:
        return self.tracking.lead_id if self.tracking else None
