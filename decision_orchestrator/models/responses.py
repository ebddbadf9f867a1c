"""Evaluation response envelope."""

from typing import Optional

from pydantic import BaseModel

from decision_orchestrator.models.output import AIOutput


class ResponseMetadata(BaseModel):
    logic_version: str
    ai_used: bool
    retry_count: int = 0
    persisted: bool
    cached: bool = False
    cache_age_seconds: Optional[int] = None
    stale: Optional[bool] = None


class DecisionResponse(BaseModel):
    decision_id: str
    output: AIOutput
    metadata: ResponseMetadata
