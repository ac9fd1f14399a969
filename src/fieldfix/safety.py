# safety.py
# Deterministic safety rules.
#
# Pure function of the observation's risk flags and the plan's step text.
# No model call, no I/O: the same input always yields the same check, so a
# stored SafetyCheck can be re-derived at any time.
#
# Policy: only a fire/smoke/flame signal fails the check. Every other rule
# adds hazards, PPE and pre-steps but leaves pass=True.

from dataclasses import dataclass, field
from typing import Iterable

from fieldfix.models import PlanStep

BASELINE_PPE = ("safety glasses", "work gloves")

ELECTRICAL_PLAN_TERMS = ("open panel", "wiring", "multimeter", "power module", "electrical")
FIRE_TERMS = ("fire", "smoke", "flame")
HEIGHT_TERMS = ("height", "ladder", "roof")

STOP_WORK = "STOP WORK: call emergency services and follow site fire protocol"
LOCKOUT_TAGOUT = "Lockout/Tagout"


class _OrderedSet:
    """Insertion-ordered set of strings."""

    def __init__(self, items: Iterable[str] = ()) -> None:
        self._items: dict[str, None] = {}
        for item in items:
            self.add(item)

    def add(self, item: str) -> None:
        self._items.setdefault(item, None)

    def normalized(self) -> list[str]:
        return [item.strip() for item in self._items if item.strip()]


@dataclass
class SafetyRulesOutput:
    pass_: bool
    ppe_required: list[str] = field(default_factory=list)
    hazards: list[str] = field(default_factory=list)
    required_presteps: list[str] = field(default_factory=list)

    def as_payload(self) -> dict:
        return {
            "pass": self.pass_,
            "ppeRequired": list(self.ppe_required),
            "hazards": list(self.hazards),
            "requiredPresteps": list(self.required_presteps),
        }


def _step_action(step: PlanStep | dict | str) -> str:
    if isinstance(step, PlanStep):
        return step.action
    if isinstance(step, dict):
        return str(step.get("action", ""))
    return str(step)


def _contains_any(text: str, terms: Iterable[str]) -> bool:
    return any(term in text for term in terms)


def run_safety_rules(risk_flags: Iterable[str], plan_steps: Iterable[PlanStep | dict | str]) -> SafetyRulesOutput:
    """
    Apply the rule table and return the resulting check.

    Flag rules match per flag (case-insensitive). Plan rules match against
    the lowercased action text of all steps joined with spaces.
    """
    flags = [str(flag).lower() for flag in risk_flags]
    plan_text = " ".join(_step_action(step).lower() for step in plan_steps)

    ppe = _OrderedSet(BASELINE_PPE)
    hazards = _OrderedSet()
    presteps = _OrderedSet()

    for flag in flags:
        if "water" in flag and "power" in flag:
            hazards.add("electrocution")
            presteps.add("Isolate power & keep area dry")
            ppe.add("insulated gloves")

        if "exposed" in flag and "wire" in flag:
            hazards.add("electrical shock")
            presteps.add(LOCKOUT_TAGOUT)
            ppe.add("insulated gloves")

        if "heavy" in flag:
            hazards.add("crushing injury")
            presteps.add("Use proper lifting equipment")
            ppe.add("steel-toe boots")

        if "chemical" in flag:
            hazards.add("chemical exposure")
            presteps.add("Review chemical SDS")
            ppe.add("chemical-resistant gloves")
            ppe.add("safety goggles")

    if _contains_any(plan_text, ELECTRICAL_PLAN_TERMS):
        presteps.add(LOCKOUT_TAGOUT)
        ppe.add("insulated gloves")
        hazards.add("electrical hazard")

    fire = any(_contains_any(flag, FIRE_TERMS) for flag in flags) or _contains_any(plan_text, FIRE_TERMS)
    if fire:
        hazards.add("fire hazard")
        presteps.add(STOP_WORK)

    if _contains_any(plan_text, HEIGHT_TERMS):
        hazards.add("fall hazard")
        presteps.add("Secure ladder and use fall protection")
        ppe.add("harness")

    return SafetyRulesOutput(
        pass_=not fire,
        ppe_required=ppe.normalized(),
        hazards=hazards.normalized(),
        required_presteps=presteps.normalized(),
    )
