from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    detail: Optional[str] = None


class PlanOut(BaseModel):
    """Delta plan for one org: change set plus the ordered package."""

    context_id: str
    org_alias: str
    reference_source: str
    reference_snapshot_hash: str
    local_snapshot_hash: str
    change_set: Dict[str, Any]
    package: Dict[str, Any]


class ValidateIn(BaseModel):
    """Validate a previously planned package, or plan afresh when context_id is omitted."""

    context_id: Optional[str] = None


class DeployIn(BaseModel):
    context_id: str
    validation_context_id: Optional[str] = None
    quick: bool = False
    receipt: Optional[Dict[str, Any]] = None


class RunOut(BaseModel):
    """Terminal state of a validation or deploy run."""

    context_id: str
    operation: str
    state: str
    job_id: str
    elapsed_seconds: float
    detail: Optional[str] = None
    job: Optional[Dict[str, Any]] = None
    receipt: Optional[Dict[str, Any]] = None


class SnapshotOut(BaseModel):
    org_alias: Optional[str] = None
    source: str
    snapshot_hash: str
    captured_at: str
    components: List[Dict[str, Any]] = Field(default_factory=list)


class DeployedSnapshotOut(BaseModel):
    seq: int
    snapshot_hash: str
    deploy_job_id: Optional[str] = None
    stored_at: str


class ContextSummaryOut(BaseModel):
    """A persisted WorkflowContext summary."""

    context_id: str
    created_at: str
    org_alias: Optional[str] = None
    operation_name: Optional[str] = None
    event_count: int = 0


class ContextDetailOut(BaseModel):
    context: ContextSummaryOut
    events: List[Dict[str, Any]] = Field(default_factory=list)
    integrity_ok: bool = True
