from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    status: str  # queued|ignored|pong
    run_id: Optional[str] = None
    reason: Optional[str] = None


class GateSchema(BaseModel):
    verdict: str
    statuses: dict[str, str] = Field(default_factory=dict)
    failed: list[str] = Field(default_factory=list)


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    state: str  # running|success|failure
    started_at: float
    finished_at: Optional[float] = None
    commit: Optional[str] = None
    jobs: dict[str, str] = Field(default_factory=dict)
    gates: dict[str, GateSchema] = Field(default_factory=dict)


class ArtifactSchema(BaseModel):
    name: str
    job: str
    files: list[str]
    uploaded_at: float
