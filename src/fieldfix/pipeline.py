# pipeline.py
# FieldFix stage orchestration.
#
# The Pipeline owns control flow, state transitions and the audit trail.
# The model is a passive responder: every output it produces is parsed,
# repaired at most once, validated and run through deterministic rules
# before anything is persisted.
#
# Stage order (each guarded by the previous stage's persisted artifact):
#   Session → Analyze → KB search → Plan → Safety → QA → WorkOrder
#
# Every public stage returns a StageResult. Errors are caught at the stage
# boundary, logged, and reported in StageResult.error. Nothing is raised.

import json
import time
from typing import Any, Awaitable, Callable, Iterable

from pydantic import ValidationError

from fieldfix.config import AppContext
from fieldfix.errors import (
    FieldFixError,
    InputError,
    NotFoundError,
    OutputParseError,
    PreconditionError,
    SchemaValidationError,
)
from fieldfix.generator import Generation, ImagePart
from fieldfix.kb import format_results_for_prompt
from fieldfix.log import get_logger
from fieldfix.models import (
    Event,
    KBResult,
    KBSnapshot,
    Observation,
    Plan,
    PlanStep,
    QAIssue,
    QAResult,
    SafetyCheck,
    Session,
    StageError,
    StageResult,
    WorkOrder,
)
from fieldfix.parsing import safe_json_parse
from fieldfix.prompts import VISION_PROMPT, describe_observation, fix_json_prompt, plan_prompt, qa_prompt
from fieldfix.qa import validate_hard_qa
from fieldfix.retry import GeneratorError, RetryStats, is_quota_error
from fieldfix.safety import run_safety_rules
from fieldfix.scenarios import load_fallback_plan, mock_observation, scenario_from_path
from fieldfix.schemas import (
    ValidationResult,
    validate_observation,
    validate_plan,
    validate_qa,
    validate_safety_check,
)

logger = get_logger(__name__)

EXPORT_VERSION = "1.0"
BASELINE_MINUTES = 35
QA_SOURCE_HARD = "hard_rules"
QA_SOURCE_LAYERED = "hard+gemini"

_STATUS_RANK = {"created": 0, "analyzing": 1, "complete": 2}

# keyword in plan text -> part to order
PART_RULES: list[tuple[tuple[str, ...], str]] = [
    (("filter",), "Replacement filter"),
    (("belt",), "Drive belt"),
    (("fuse",), "Fuse kit"),
    (("capacitor",), "Capacitor"),
    (("wire", "wiring"), "Electrical wire connectors"),
    (("seal", "gasket"), "Gasket/seal kit"),
]
DEFAULT_PART = "Standard repair kit"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if value is None or (isinstance(value, str) and not value.strip())]
    if missing:
        raise InputError("Missing required fields", fields=missing)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def derive_parts(steps: Iterable[PlanStep]) -> list[str]:
    """Heuristic parts list from the plan's action text."""
    plan_text = " ".join(step.action.lower() for step in steps)
    parts = [part for keywords, part in PART_RULES if any(k in plan_text for k in keywords)]
    return parts or [DEFAULT_PART]


def work_order_number(epoch_ms: int) -> str:
    return f"WO-{str(epoch_ms)[-6:]}"


def _ordered_citations(steps: Iterable[PlanStep]) -> list[str]:
    seen: dict[str, None] = {}
    for step in steps:
        for citation in step.citations:
            seen.setdefault(citation, None)
    return list(seen)


def _dump(records: Iterable[Any]) -> list[dict]:
    return [r.model_dump(mode="json") for r in records]


def _seconds_between(start: Event | None, end: Event | None) -> int | None:
    if start is None or end is None:
        return None
    return round((end.timestamp - start.timestamp).total_seconds())


def _first(events: list[Event], *event_types: str) -> Event | None:
    return next((e for e in events if e.event_type in event_types), None)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class Pipeline:
    """
    Stage orchestrator for one process. Safe to share across concurrent
    sessions: all per-session state lives in the store.

    Example:
        pipeline = Pipeline(build_context())
        session = await pipeline.create_session("scenario3", "Pump leaking near panel")
        observation = await pipeline.analyze(session.data["id"], "frames/scenario3.jpg")
    """

    def __init__(self, context: AppContext) -> None:
        self.ctx = context
        self.store = context.store

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    async def _guard(
        self, stage: str, work: Callable[[], Awaitable[dict]], session_id: str | None = None
    ) -> StageResult:
        started = time.perf_counter()
        logger.debug("%s started (session=%s)", stage, session_id)
        try:
            data = await work()
            logger.info("%s done in %d ms", stage, _elapsed_ms(started))
            return StageResult(stage=stage, ok=True, data=data)
        except FieldFixError as exc:
            logger.warning("%s failed [%s]: %s", stage, exc.kind, exc.message)
            return StageResult(
                stage=stage, ok=False, error=StageError(kind=exc.kind, message=exc.message, details=exc.details)
            )
        except GeneratorError as exc:
            logger.error("%s failed: generator %s (model=%s, status=%s): %s", stage, exc.kind.value, exc.model, exc.status, exc)
            return StageResult(
                stage=stage,
                ok=False,
                error=StageError(
                    kind="generator",
                    message=str(exc),
                    details={"error_kind": exc.kind.value, "status": exc.status, "model": exc.model},
                ),
            )
        except Exception as exc:
            logger.exception("%s crashed for session %s", stage, session_id)
            if session_id:
                await self._mark_error(session_id)
            return StageResult(stage=stage, ok=False, error=StageError(kind="internal", message=str(exc)))

    async def _mark_error(self, session_id: str) -> None:
        try:
            session = await self.store.get(Session, session_id)
            if session is not None and session.status != "error":
                session.status = "error"
                await self.store.update(session)
        except Exception:
            logger.exception("could not mark session %s as error", session_id)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _event(self, session_id: str, event_type: str, data: dict | None = None) -> Event:
        event = Event(session_id=session_id, event_type=event_type, timestamp=self.ctx.clock(), data=data)
        return await self.store.create(event)

    async def _session(self, session_id: str) -> Session:
        session = await self.store.get(Session, session_id)
        if session is None:
            raise NotFoundError("Session not found", session_id=session_id)
        return session

    async def _advance_status(self, session: Session, status: str) -> Session:
        """Move forward along created → analyzing → complete. Never leaves 'error'."""
        current = await self._session(session.id)
        if current.status == "error" or _STATUS_RANK[status] <= _STATUS_RANK[current.status]:
            return current
        current.status = status
        return await self.store.update(current)

    async def _plan_observation(self, plan: Plan) -> Observation:
        """The observation the plan was built from; latest in the session if the plan names none."""
        if plan.observation_id is None:
            observation = await self.store.latest_for_session(Observation, plan.session_id)
        else:
            observation = await self.store.get(Observation, plan.observation_id)
            if observation is not None and observation.session_id != plan.session_id:
                observation = None
        if observation is None:
            raise NotFoundError("Observation not found", observation_id=plan.observation_id)
        return observation

    async def _generate_json(
        self,
        prompt: str,
        image: ImagePart | None,
        stats: RetryStats,
        validator: Callable[[Any], ValidationResult],
    ) -> tuple[Any, Generation, int]:
        """
        Generate, parse, repair once, validate.

        Returns (validated value, last generation, repair count).
        """
        generation = await self.ctx.generator.generate(prompt, image, stats=stats)
        parsed = safe_json_parse(generation.text)
        repairs = 0

        if parsed is None:
            repairs = 1
            logger.info("model output was not JSON, re-prompting with repair instructions")
            generation = await self.ctx.generator.generate(fix_json_prompt(generation.text, prompt), image, stats=stats)
            parsed = safe_json_parse(generation.text)

        if parsed is None:
            raise OutputParseError("Failed to parse model response", raw_response=generation.text)

        result = validator(parsed)
        if not result.ok:
            raise SchemaValidationError("Model response failed schema validation", violations=result.violations)
        return result.value, generation, repairs

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, scenario: str, user_description: str) -> StageResult:
        async def work() -> dict:
            _require(scenario=scenario, user_description=user_description)
            session = await self.store.create(
                Session(scenario=scenario, user_description=user_description, created_at=self.ctx.clock())
            )
            await self._event(session.id, "SESSION_CREATED")
            return session.model_dump(mode="json")

        return await self._guard("session", work)

    async def log_event(self, session_id: str, event_type: str, data: dict | None = None) -> StageResult:
        async def work() -> dict:
            _require(session_id=session_id, event_type=event_type)
            await self._session(session_id)
            event = await self._event(session_id, event_type, data)
            return event.model_dump(mode="json")

        return await self._guard("event", work)

    # ------------------------------------------------------------------
    # Stage 1: Analyze
    # ------------------------------------------------------------------

    async def analyze(self, session_id: str, image_path: str) -> StageResult:
        """Image → Observation. Missing images use the scenario's canned observation."""

        async def work() -> dict:
            _require(session_id=session_id, image_path=image_path)
            session = await self._session(session_id)

            started = time.perf_counter()
            await self._event(session_id, "ANALYZE_START")

            stats = RetryStats()
            repairs = 0
            model: str | None = None
            mock_reason: str | None = None
            payload = None

            full_path = self.ctx.settings.media_root / image_path.lstrip("/")
            if not full_path.is_file():
                logger.info("image not found at %s, using mock observation", full_path)
                mock_reason = "IMAGE_MISSING"
            else:
                try:
                    payload, generation, repairs = await self._generate_json(
                        VISION_PROMPT, ImagePart.from_file(full_path), stats, validate_observation
                    )
                    model = generation.model
                except (GeneratorError, OutputParseError, SchemaValidationError) as exc:
                    if not self.ctx.settings.analyze_mock_on_error:
                        raise
                    logger.warning("vision call failed (%s), falling back to mock observation", exc)
                    mock_reason = "MODEL_ERROR"

            scenario = None
            if mock_reason:
                scenario, raw = mock_observation(scenario_from_path(image_path) or session.scenario)
                payload = validate_observation(raw).value

            observation = await self.store.create(
                Observation(
                    session_id=session_id,
                    equipment_type=payload.equipment_type,
                    problem_summary=payload.problem_summary,
                    risk_flags=list(payload.risk_flags),
                    environmental_notes=payload.environmental_notes,
                    image_path=image_path,
                    created_at=self.ctx.clock(),
                )
            )
            await self._advance_status(session, "analyzing")

            await self._event(
                session_id,
                "ANALYZE_DONE",
                {
                    "model": model,
                    "latency_ms": _elapsed_ms(started),
                    "schema_pass": True,
                    "retries": repairs,
                    "attempts": stats.attempts,
                    "used_mock": mock_reason is not None,
                    "mock_reason": mock_reason,
                    "mock_scenario": scenario,
                },
            )
            return {
                "observation_id": observation.id,
                "equipment_type": observation.equipment_type,
                "problem_summary": observation.problem_summary,
                "risk_flags": observation.risk_flags,
                "environmental_notes": observation.environmental_notes,
            }

        return await self._guard("analyze", work, session_id)

    # ------------------------------------------------------------------
    # Stage 2: KB search
    # ------------------------------------------------------------------

    async def search_kb(self, query: str, max_results: int = 10, session_id: str | None = None) -> StageResult:
        """
        Rank the knowledge base for `query`.

        With a session id, the hits replace that session's KB snapshots,
        which become the citation allow-list for its plan.
        """

        async def work() -> dict:
            _require(query=query)
            if session_id:
                await self._session(session_id)

            results = self.ctx.kb.search(query, max_results)

            if session_id:
                snapshots = [
                    KBSnapshot(
                        session_id=session_id,
                        source=r.source,
                        kb_id=r.id,
                        title=r.title,
                        snippet=r.snippet,
                        raw=r.model_dump(),
                        created_at=self.ctx.clock(),
                    )
                    for r in results
                ]
                await self.store.replace_for_session(KBSnapshot, session_id, snapshots)
                await self._event(session_id, "KB_SEARCH_DONE", {"hits": len(results), "query": query})

            return {"results": [r.model_dump() for r in results]}

        return await self._guard("kb_search", work, session_id)

    # ------------------------------------------------------------------
    # Stage 3: Plan
    # ------------------------------------------------------------------

    async def plan(self, session_id: str, observation_id: str, kb_results: list[KBResult | dict] | None) -> StageResult:
        """Observation + KB hits → Plan. Quota-limited calls use the scenario's static plan."""

        async def work() -> dict:
            _require(session_id=session_id, observation_id=observation_id, kb_results=kb_results)
            session = await self._session(session_id)

            observation = await self.store.get(Observation, observation_id)
            if observation is None or observation.session_id != session_id:
                raise NotFoundError("Observation not found", observation_id=observation_id)

            try:
                hits = [r if isinstance(r, KBResult) else KBResult.model_validate(r) for r in kb_results]
            except ValidationError as exc:
                raise InputError("Malformed kb_results", errors=exc.errors(include_url=False)) from exc

            started = time.perf_counter()
            await self._event(session_id, "PLAN_START")

            prompt = plan_prompt(
                describe_observation(
                    observation.equipment_type,
                    observation.problem_summary,
                    observation.risk_flags,
                    observation.environmental_notes,
                ),
                format_results_for_prompt(hits),
            )

            stats = RetryStats()
            repairs = 0
            model: str | None = None
            fallback_reason: str | None = None

            try:
                steps, generation, repairs = await self._generate_json(prompt, None, stats, validate_plan)
                model = generation.model
            except GeneratorError as exc:
                if not is_quota_error(exc):
                    raise
                raw = load_fallback_plan(session.scenario, self.ctx.settings.fallback_dir)
                if raw is None:
                    raise GeneratorError(
                        exc.kind,
                        "Generator quota exceeded and no fallback plan available",
                        status=exc.status,
                        model=exc.model,
                    ) from exc
                checked = validate_plan(raw)
                if not checked.ok:
                    raise SchemaValidationError("Fallback plan failed schema validation", violations=checked.violations)
                logger.warning("quota exceeded (%s), using fallback plan for %s", exc.kind.value, session.scenario)
                steps = checked.value
                fallback_reason = "QUOTA_429"

            plan = await self.store.create(
                Plan(
                    session_id=session_id,
                    observation_id=observation_id,
                    steps=steps,
                    kb_ids_used=_ordered_citations(steps),
                    fallback=fallback_reason is not None,
                    created_at=self.ctx.clock(),
                )
            )

            event_type = "PLAN_FALLBACK_USED" if fallback_reason else "PLAN_READY"
            await self._event(
                session_id,
                event_type,
                {
                    "model": model,
                    "latency_ms": _elapsed_ms(started),
                    "schema_pass": True,
                    "retries": repairs,
                    "attempts": stats.attempts,
                    "fallback": fallback_reason is not None,
                    "reason": fallback_reason,
                },
            )
            return {"plan_id": plan.id, "steps": _dump(plan.steps), "fallback": plan.fallback}

        return await self._guard("plan", work, session_id)

    # ------------------------------------------------------------------
    # Stage 4: Safety
    # ------------------------------------------------------------------

    async def safety(self, session_id: str, plan_id: str) -> StageResult:
        async def work() -> dict:
            _require(session_id=session_id, plan_id=plan_id)
            await self._session(session_id)

            plan = await self.store.get(Plan, plan_id)
            if plan is None or plan.session_id != session_id:
                raise NotFoundError("Plan not found", plan_id=plan_id)
            observation = await self._plan_observation(plan)

            started = time.perf_counter()
            await self._event(session_id, "SAFETY_START")

            rules = run_safety_rules(observation.risk_flags, plan.steps)
            checked = validate_safety_check(rules.as_payload())
            if not checked.ok:
                raise SchemaValidationError("Safety check failed schema validation", violations=checked.violations)

            check = await self.store.create(
                SafetyCheck(
                    session_id=session_id,
                    plan_id=plan.id,
                    pass_=rules.pass_,
                    ppe_required=rules.ppe_required,
                    hazards=rules.hazards,
                    required_presteps=rules.required_presteps,
                    created_at=self.ctx.clock(),
                )
            )
            await self._event(
                session_id,
                "SAFETY_DONE",
                {
                    "model": None,
                    "latency_ms": _elapsed_ms(started),
                    "schema_pass": True,
                    "retries": 0,
                    "pass": check.pass_,
                    "hazards": len(check.hazards),
                },
            )
            return {
                "safety_check_id": check.id,
                "pass": check.pass_,
                "ppe_required": check.ppe_required,
                "hazards": check.hazards,
                "required_presteps": check.required_presteps,
            }

        return await self._guard("safety", work, session_id)

    # ------------------------------------------------------------------
    # Stage 5: QA
    # ------------------------------------------------------------------

    async def qa(self, session_id: str) -> StageResult:
        """
        Citation gate first, model review second.

        A hard-rule failure is a normal, persisted outcome (source
        'hard_rules'); the model is only consulted once the gate passes, and
        its findings are appended to the (empty) hard-rule issue list.
        """

        async def work() -> dict:
            _require(session_id=session_id)
            await self._session(session_id)

            plan = await self.store.latest_for_session(Plan, session_id)
            if plan is None:
                raise PreconditionError("No plan for this session; run the plan stage first")
            snapshots = await self.store.list_for_session(KBSnapshot, session_id)
            if not snapshots:
                raise PreconditionError("No KB snapshots for this session; run a KB search first")

            started = time.perf_counter()
            await self._event(session_id, "QA_START")

            hard = validate_hard_qa(plan, snapshots)
            stats = RetryStats()
            repairs = 0
            model: str | None = None

            if not hard.pass_:
                result = QAResult(
                    session_id=session_id,
                    plan_id=plan.id,
                    pass_=False,
                    issues=hard.issues,
                    source=QA_SOURCE_HARD,
                    created_at=self.ctx.clock(),
                )
            else:
                plan_json = json.dumps({"steps": [s.model_dump(by_alias=True) for s in plan.steps]}, indent=2)
                review, generation, repairs = await self._generate_json(qa_prompt(plan_json), None, stats, validate_qa)
                model = generation.model
                result = QAResult(
                    session_id=session_id,
                    plan_id=plan.id,
                    pass_=review.pass_,
                    issues=hard.issues + [QAIssue(kind="MODEL_FINDING", detail=issue) for issue in review.issues],
                    recommendations=list(review.recommendations),
                    score=review.score,
                    source=QA_SOURCE_LAYERED,
                    created_at=self.ctx.clock(),
                )

            await self.store.create(result)

            qa = {
                "qa_result_id": result.id,
                "pass": result.pass_,
                "issues": _dump(result.issues),
                "recommendations": result.recommendations,
                "score": result.score,
                "source": result.source,
            }
            await self._event(
                session_id,
                "QA_DONE",
                {
                    **qa,
                    "model": model,
                    "latency_ms": _elapsed_ms(started),
                    "schema_pass": True,
                    "retries": repairs,
                    "attempts": stats.attempts,
                },
            )
            return {"qa": qa}

        return await self._guard("qa", work, session_id)

    # ------------------------------------------------------------------
    # Stage 6: Work order
    # ------------------------------------------------------------------

    async def work_order(self, session_id: str, plan_id: str, acknowledge_safety: bool = False) -> StageResult:
        """
        Plan → WorkOrder, completing the session.

        Requires a safety check for this plan. A failed check blocks the work
        order unless the caller explicitly acknowledges it.
        """

        async def work() -> dict:
            _require(session_id=session_id, plan_id=plan_id)
            session = await self._session(session_id)

            plan = await self.store.get(Plan, plan_id)
            if plan is None or plan.session_id != session_id:
                raise NotFoundError("Plan not found", plan_id=plan_id)
            observation = await self._plan_observation(plan)

            checks = [c for c in await self.store.list_for_session(SafetyCheck, session_id) if c.plan_id == plan.id]
            if not checks:
                raise PreconditionError("No safety check for this plan; run the safety stage first", plan_id=plan_id)
            safety = checks[-1]
            if not safety.pass_ and not acknowledge_safety:
                raise PreconditionError(
                    "Safety check failed; acknowledge the hazards to create a work order",
                    hazards=safety.hazards,
                    required_presteps=safety.required_presteps,
                )

            started = time.perf_counter()
            await self._event(session_id, "WO_START")

            now = self.ctx.clock()
            order = await self.store.create(
                WorkOrder(
                    session_id=session_id,
                    plan_id=plan.id,
                    work_order_number=work_order_number(int(now.timestamp() * 1000)),
                    summary=f"{observation.equipment_type} - {observation.problem_summary[:100]}",
                    parts=derive_parts(plan.steps),
                    estimated_time=sum(step.duration for step in plan.steps),
                    created_at=now,
                )
            )
            await self._advance_status(session, "complete")

            await self._event(
                session_id,
                "WO_CREATED",
                {
                    "latency_ms": _elapsed_ms(started),
                    "work_order_number": order.work_order_number,
                    "safety_acknowledged": not safety.pass_,
                },
            )
            return {
                "work_order_id": order.id,
                "work_order_number": order.work_order_number,
                "summary": order.summary,
                "parts": order.parts,
                "estimated_time": order.estimated_time,
            }

        return await self._guard("work_order", work, session_id)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def _session_record(self, session_id: str) -> dict:
        session = await self._session(session_id)
        qa_results = await self.store.list_for_session(QAResult, session_id)
        return {
            "session": session.model_dump(mode="json"),
            "observations": _dump(await self.store.list_for_session(Observation, session_id)),
            "kb_snapshots": _dump(await self.store.list_for_session(KBSnapshot, session_id)),
            "plans": _dump(await self.store.list_for_session(Plan, session_id)),
            "safety_checks": _dump(await self.store.list_for_session(SafetyCheck, session_id)),
            "qa_results": _dump(qa_results),
            "work_orders": _dump(await self.store.list_for_session(WorkOrder, session_id)),
            "events": _dump(await self.store.list_for_session(Event, session_id)),
            "qa": qa_results[-1].model_dump(mode="json") if qa_results else None,
        }

    async def get_session(self, session_id: str) -> StageResult:
        async def work() -> dict:
            _require(session_id=session_id)
            return await self._session_record(session_id)

        return await self._guard("session", work)

    async def export_session(self, session_id: str) -> StageResult:
        """Full session record as one JSON-ready document."""

        async def work() -> dict:
            _require(session_id=session_id)
            data = await self._session_record(session_id)
            return {
                "exported_at": self.ctx.clock().isoformat(),
                "version": EXPORT_VERSION,
                "session_id": session_id,
                "data": data,
            }

        return await self._guard("export", work)

    async def similar_sessions(self, session_id: str, limit: int = 3) -> StageResult:
        """Most recent other sessions with the same scenario."""

        async def work() -> dict:
            _require(session_id=session_id)
            session = await self._session(session_id)
            matches = await self.store.find_sessions(scenario=session.scenario, exclude_id=session_id, limit=limit)
            return {"sessions": [{"id": s.id, "scenario": s.scenario, "created_at": s.created_at.isoformat()} for s in matches]}

        return await self._guard("similar_sessions", work)

    async def session_metrics(self, session_id: str) -> StageResult:
        """Stage latencies from the event timeline, compared with the manual baseline."""

        async def work() -> dict:
            _require(session_id=session_id)
            await self._session(session_id)
            events = await self.store.list_for_session(Event, session_id)

            analyze_s = _seconds_between(_first(events, "ANALYZE_START"), _first(events, "ANALYZE_DONE"))
            plan_s = _seconds_between(_first(events, "PLAN_START"), _first(events, "PLAN_READY", "PLAN_FALLBACK_USED"))
            end_to_end_s = _seconds_between(events[0] if events else None, _first(events, "WO_CREATED"))

            minutes_saved = efficiency = None
            if end_to_end_s is not None:
                minutes_saved = round(BASELINE_MINUTES - end_to_end_s / 60, 1)
                efficiency = round(minutes_saved / BASELINE_MINUTES * 100, 1)

            return {
                "analyze_latency_s": analyze_s,
                "plan_latency_s": plan_s,
                "end_to_end_s": end_to_end_s,
                "baseline_minutes": BASELINE_MINUTES,
                "minutes_saved": minutes_saved,
                "efficiency_gain_pct": efficiency,
                "event_count": len(events),
            }

        return await self._guard("metrics", work)
