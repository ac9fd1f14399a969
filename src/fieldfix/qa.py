# qa.py
# Citation-integrity gate.
#
# Runs before any model-based QA. A plan only reaches the model reviewer if
# every step cites at least one KB id from the session's snapshot set.

from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import BaseModel

from fieldfix.models import KBSnapshot, Plan, PlanStep, QAIssue


@dataclass(frozen=True)
class CanonicalStep:
    number: int
    citations: tuple[str, ...]


@dataclass
class HardQAResult:
    pass_: bool
    issues: list[QAIssue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Plan shape normalization
# ---------------------------------------------------------------------------


def _raw_steps(plan: Any) -> list:
    """Find the step list in any of the plan shapes seen in stored payloads."""
    if isinstance(plan, Plan):
        return list(plan.steps)
    if isinstance(plan, list):
        return plan
    if isinstance(plan, BaseModel):
        plan = plan.model_dump(by_alias=True)
    if not isinstance(plan, dict):
        return []

    for key in ("steps", "stepsRequired"):
        if isinstance(plan.get(key), list):
            return plan[key]
    nested = plan.get("plan")
    if isinstance(nested, dict) and isinstance(nested.get("steps"), list):
        return nested["steps"]
    return []


def _step_number(step: Any) -> int | None:
    if isinstance(step, PlanStep):
        return step.step_number
    if isinstance(step, dict):
        for key in ("stepNumber", "step_number", "n"):
            value = step.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def _step_citations(step: Any) -> tuple[str, ...]:
    if isinstance(step, PlanStep):
        return tuple(step.citations)
    if isinstance(step, dict) and isinstance(step.get("citations"), list):
        return tuple(str(c) for c in step["citations"])
    return ()


def normalize_plan_steps(plan: Any) -> list[CanonicalStep]:
    """Reduce any accepted plan shape to numbered steps with their citations."""
    steps = []
    for index, raw in enumerate(_raw_steps(plan)):
        number = _step_number(raw)
        steps.append(CanonicalStep(number=number if number is not None else index + 1, citations=_step_citations(raw)))
    return steps


# ---------------------------------------------------------------------------
# Hard rules
# ---------------------------------------------------------------------------


def citation_allow_list(snapshots: Iterable[KBSnapshot | dict]) -> set[str]:
    """KB ids the session may cite. Falls back to the snapshot's own id when kb_id is absent."""
    allowed: set[str] = set()
    for snapshot in snapshots:
        if isinstance(snapshot, KBSnapshot):
            kb_id, own_id = snapshot.kb_id, snapshot.id
        else:
            kb_id = snapshot.get("kb_id") or snapshot.get("kbId")
            own_id = snapshot.get("id")
        if kb_id:
            allowed.add(kb_id)
        elif own_id:
            allowed.add(own_id)
    return allowed


def validate_hard_qa(plan: Any, snapshots: Iterable[KBSnapshot | dict]) -> HardQAResult:
    steps = normalize_plan_steps(plan)

    if not steps:
        issue = QAIssue(kind="MISSING_CITATIONS", detail="Plan has no steps to validate.", step=None)
        return HardQAResult(pass_=False, issues=[issue])

    allowed = citation_allow_list(snapshots)
    issues: list[QAIssue] = []

    for step in steps:
        if not step.citations:
            issues.append(QAIssue(kind="MISSING_CITATIONS", detail="Step has no citations.", step=step.number))
            continue
        for citation in step.citations:
            if citation not in allowed:
                issues.append(
                    QAIssue(kind="UNKNOWN_CITATION", detail=f"Unknown citation: {citation}.", step=step.number)
                )

    return HardQAResult(pass_=not issues, issues=issues)
