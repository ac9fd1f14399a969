# models.py
# Data contracts for the FieldFix repair pipeline.
# No business logic lives here, only schema and validation.

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


SessionStatus = Literal["created", "analyzing", "complete", "error"]
KBSource = Literal["manual", "runbook", "incident"]
IssueKind = Literal["MISSING_CITATIONS", "UNKNOWN_CITATION", "MODEL_FINDING"]
QASource = Literal["hard_rules", "hard+gemini"]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Record(BaseModel):
    """Base for every persisted entity."""

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=utcnow)


class Session(Record):
    """One end-to-end repair workflow run."""

    scenario: str
    user_description: str
    status: SessionStatus = "created"


class SessionOwned(Record):
    session_id: str


class Observation(SessionOwned):
    """Structured output of image analysis. Immutable once created."""

    equipment_type: str
    problem_summary: str
    risk_flags: list[str] = Field(default_factory=list)
    environmental_notes: str | None = None
    image_path: str | None = None


class KBSnapshot(SessionOwned):
    """Point-in-time copy of a KB hit. The session's set is the citation allow-list."""

    source: KBSource
    kb_id: str | None = None
    title: str
    snippet: str
    raw: dict[str, Any] = Field(default_factory=dict)


class PlanStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_number: int = Field(..., alias="stepNumber", description="1-based, matches array position.")
    action: str
    duration: float = Field(..., description="Minutes.")
    citations: list[str]


class Plan(SessionOwned):
    """Ordered repair steps. Citation resolution is checked by the QA gate."""

    observation_id: str | None = None
    steps: list[PlanStep]
    kb_ids_used: list[str] = Field(default_factory=list)
    fallback: bool = False


class SafetyCheck(SessionOwned):
    plan_id: str
    pass_: bool = Field(..., alias="pass")
    ppe_required: list[str] = Field(default_factory=list)
    hazards: list[str] = Field(default_factory=list)
    required_presteps: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class QAIssue(BaseModel):
    kind: IssueKind
    detail: str
    step: int | None = None


class QAResult(SessionOwned):
    plan_id: str | None = None
    pass_: bool = Field(..., alias="pass")
    issues: list[QAIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    score: float | None = None
    source: QASource = "hard_rules"

    model_config = ConfigDict(populate_by_name=True)


class WorkOrder(SessionOwned):
    plan_id: str
    work_order_number: str
    summary: str
    parts: list[str]
    estimated_time: float = Field(..., description="Total minutes across all plan steps.")


class Event(SessionOwned):
    """Append-only audit entry. Ordered by timestamp."""

    event_type: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class KBResult(BaseModel):
    """A single ranked knowledge-base hit."""

    id: str
    title: str
    snippet: str
    source: KBSource
    score: int


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class StageError(BaseModel):
    kind: Literal[
        "input",
        "not_found",
        "precondition",
        "generator",
        "parse",
        "schema",
        "setup_required",
        "internal",
    ]
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class StageResult(BaseModel):
    """Structured outcome returned by every pipeline stage. Never raised."""

    stage: str
    ok: bool
    data: dict[str, Any] | None = None
    error: StageError | None = None
