import json
import re
from unittest.mock import MagicMock

import pytest

from fakes import ApiError, plan_json, script
from fieldfix.models import Event, Plan, PlanStep, Session
from fieldfix.pipeline import derive_parts, work_order_number
from fieldfix.timeline import render_timeline

QA_OK = json.dumps({"pass": True, "issues": ["Torque values missing"], "recommendations": ["Photograph the seal"], "score": 88})


async def _prepared(pipeline, scenario="scenario3", query="pump seal leak water electrical"):
    """Session + mock observation + KB snapshots. Returns (session_id, observation, kb hits)."""
    created = await pipeline.create_session(scenario, "Pump leaking next to the panel")
    session_id = created.data["id"]
    observed = await pipeline.analyze(session_id, f"frames/{scenario}.jpg")
    searched = await pipeline.search_kb(query, 5, session_id=session_id)
    return session_id, observed.data, searched.data["results"]


async def _events(pipeline, session_id) -> list[str]:
    return [e.event_type for e in await pipeline.store.list_for_session(Event, session_id)]


async def _status(pipeline, session_id) -> str:
    return (await pipeline.store.get(Session, session_id)).status


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_derive_parts():
    steps = [PlanStep(step_number=1, action="Replace fuse and drive BELT", duration=5, citations=["X"])]
    assert derive_parts(steps) == ["Drive belt", "Fuse kit"]
    steps = [PlanStep(step_number=1, action="Tighten bolts", duration=5, citations=["X"])]
    assert derive_parts(steps) == ["Standard repair kit"]


def test_work_order_number_uses_last_six_digits():
    assert work_order_number(1767225600123) == "WO-600123"


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_run_water_pump(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    assert observation["equipment_type"] == "Industrial Water Pump"
    assert await _status(pipeline, session_id) == "analyzing"

    ids = [h["id"] for h in hits[:2]]
    client.chat.completions.create.side_effect = script("```json\n" + plan_json(ids) + "\n```", QA_OK)

    planned = await pipeline.plan(session_id, observation["observation_id"], hits)
    assert planned.ok, planned.error
    assert planned.data["fallback"] is False
    assert [s["step_number"] for s in planned.data["steps"]] == [1, 2, 3]
    plan_id = planned.data["plan_id"]

    checked = await pipeline.safety(session_id, plan_id)
    assert checked.data["pass"] is True
    assert checked.data["hazards"][:3] == ["electrocution", "electrical shock", "crushing injury"]
    assert "electrical hazard" in checked.data["hazards"]

    reviewed = await pipeline.qa(session_id)
    qa = reviewed.data["qa"]
    assert qa["pass"] is True
    assert qa["source"] == "hard+gemini"
    assert qa["score"] == 88
    assert qa["issues"] == [{"kind": "MODEL_FINDING", "detail": "Torque values missing", "step": None}]

    ordered = await pipeline.work_order(session_id, plan_id)
    assert ordered.ok, ordered.error
    assert re.fullmatch(r"WO-\d{6}", ordered.data["work_order_number"])
    assert ordered.data["summary"].startswith("Industrial Water Pump - Water pump showing active leak")
    assert ordered.data["parts"] == ["Electrical wire connectors", "Gasket/seal kit"]
    assert ordered.data["estimated_time"] == 60
    assert await _status(pipeline, session_id) == "complete"

    assert await _events(pipeline, session_id) == [
        "SESSION_CREATED",
        "ANALYZE_START",
        "ANALYZE_DONE",
        "KB_SEARCH_DONE",
        "PLAN_START",
        "PLAN_READY",
        "SAFETY_START",
        "SAFETY_DONE",
        "QA_START",
        "QA_DONE",
        "WO_START",
        "WO_CREATED",
    ]


@pytest.mark.asyncio
async def test_done_events_carry_telemetry(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json([hits[0]["id"]]))
    await pipeline.plan(session_id, observation["observation_id"], hits)

    events = {e.event_type: e.data for e in await pipeline.store.list_for_session(Event, session_id)}
    ready = events["PLAN_READY"]
    assert ready["model"] == "google/gemini-2.5-flash"
    assert ready["schema_pass"] is True
    assert ready["retries"] == 0
    assert ready["attempts"] == 1
    assert isinstance(ready["latency_ms"], int)
    assert events["ANALYZE_DONE"]["used_mock"] is True
    assert events["ANALYZE_DONE"]["mock_reason"] == "IMAGE_MISSING"


# ---------------------------------------------------------------------------
# Analyze
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_analyze_sends_image_to_model(pipeline, client, tmp_path):
    (tmp_path / "frames").mkdir()
    (tmp_path / "frames" / "unit.jpg").write_bytes(b"\xff\xd8\xff")
    client.chat.completions.create.side_effect = script(
        json.dumps({"equipmentType": "Rooftop Chiller", "problemSummary": "Iced coil", "riskFlags": ["height"]})
    )
    session_id = (await pipeline.create_session("scenario1", "Chiller icing")).data["id"]

    observed = await pipeline.analyze(session_id, "/frames/unit.jpg")

    assert observed.ok, observed.error
    assert observed.data["equipment_type"] == "Rooftop Chiller"
    content = client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_analyze_model_failure_propagates_by_default(pipeline, client, tmp_path):
    (tmp_path / "scenario2.jpg").write_bytes(b"\xff\xd8\xff")
    client.chat.completions.create.side_effect = script(ApiError("invalid api key", 401))
    session_id = (await pipeline.create_session("scenario2", "No start")).data["id"]

    observed = await pipeline.analyze(session_id, "scenario2.jpg")

    assert not observed.ok
    assert observed.error.kind == "generator"
    assert observed.error.details["error_kind"] == "unknown"
    assert await _status(pipeline, session_id) == "created"
    assert "ANALYZE_DONE" not in await _events(pipeline, session_id)


@pytest.mark.asyncio
async def test_analyze_model_failure_can_fall_back_to_mock(pipeline, client, tmp_path):
    pipeline.ctx.settings.analyze_mock_on_error = True
    (tmp_path / "scenario2.jpg").write_bytes(b"\xff\xd8\xff")
    client.chat.completions.create.side_effect = script(ApiError("invalid api key", 401))
    session_id = (await pipeline.create_session("scenario1", "No start")).data["id"]

    observed = await pipeline.analyze(session_id, "scenario2.jpg")

    assert observed.ok
    assert observed.data["equipment_type"] == "Backup Generator"


@pytest.mark.asyncio
async def test_analyze_input_and_lookup_errors(pipeline):
    missing = await pipeline.analyze("nope", "frames/x.jpg")
    assert missing.error.kind == "not_found"

    session_id = (await pipeline.create_session("scenario1", "desc")).data["id"]
    blank = await pipeline.analyze(session_id, "  ")
    assert blank.error.kind == "input"
    assert blank.error.details["fields"] == ["image_path"]
    assert await _events(pipeline, session_id) == ["SESSION_CREATED"]


@pytest.mark.asyncio
async def test_create_session_requires_fields(pipeline):
    result = await pipeline.create_session("", "desc")
    assert result.error.kind == "input"
    assert await pipeline.store.find_sessions() == []


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plan_uses_fallback_on_quota(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(*[ApiError("Too Many Requests", 429)] * 6)

    planned = await pipeline.plan(session_id, observation["observation_id"], hits)

    assert planned.ok, planned.error
    assert planned.data["fallback"] is True
    assert len(planned.data["steps"]) == 5
    events = await pipeline.store.list_for_session(Event, session_id)
    fallback = [e for e in events if e.event_type == "PLAN_FALLBACK_USED"]
    assert fallback[0].data["reason"] == "QUOTA_429"
    assert "PLAN_READY" not in [e.event_type for e in events]


@pytest.mark.asyncio
async def test_plan_service_unavailable_is_not_a_fallback_case(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(*[ApiError("overloaded", 503)] * 6)

    planned = await pipeline.plan(session_id, observation["observation_id"], hits)

    assert planned.error.kind == "generator"
    assert planned.error.details["error_kind"] == "service_unavailable"
    assert await pipeline.store.list_for_session(Plan, session_id) == []
    assert await _status(pipeline, session_id) == "analyzing"


@pytest.mark.asyncio
async def test_plan_repairs_unparseable_output_once(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script("Sure, here are the steps in prose.", plan_json([hits[0]["id"]]))

    planned = await pipeline.plan(session_id, observation["observation_id"], hits)

    assert planned.ok
    repair_prompt = client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
    assert "Sure, here are the steps in prose." in repair_prompt
    ready = await pipeline.store.latest_for_session(Event, session_id)
    assert ready.event_type == "PLAN_READY"
    assert ready.data["retries"] == 1


@pytest.mark.asyncio
async def test_plan_parse_error_after_failed_repair(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script("no json", "still no json")

    planned = await pipeline.plan(session_id, observation["observation_id"], hits)

    assert planned.error.kind == "parse"
    assert planned.error.details["raw_response"] == "still no json"
    assert await pipeline.store.list_for_session(Plan, session_id) == []


@pytest.mark.asyncio
async def test_plan_schema_violation(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json(["MAN-003"], actions=["one", "two"]))

    planned = await pipeline.plan(session_id, observation["observation_id"], hits)

    assert planned.error.kind == "schema"
    assert planned.error.details["violations"][0]["field"] == "steps"


@pytest.mark.asyncio
async def test_plan_rejects_foreign_observation(pipeline):
    session_id, _, hits = await _prepared(pipeline)
    _, other_observation, _ = await _prepared(pipeline)

    planned = await pipeline.plan(session_id, other_observation["observation_id"], hits)
    assert planned.error.kind == "not_found"

    malformed = await pipeline.plan(session_id, other_observation["observation_id"], None)
    assert malformed.error.kind == "input"


@pytest.mark.asyncio
async def test_safety_and_work_order_use_the_plans_own_observation(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json([hits[0]["id"]]))
    plan_id = (await pipeline.plan(session_id, observation["observation_id"], hits)).data["plan_id"]

    reanalyzed = await pipeline.analyze(session_id, "frames/scenario1.jpg")
    assert reanalyzed.data["equipment_type"] != observation["equipment_type"]

    checked = await pipeline.safety(session_id, plan_id)
    assert "electrocution" in checked.data["hazards"]
    assert "crushing injury" in checked.data["hazards"]

    ordered = await pipeline.work_order(session_id, plan_id)
    assert ordered.data["summary"].startswith("Industrial Water Pump - ")


# ---------------------------------------------------------------------------
# QA
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_qa_hard_rule_failure_skips_model(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json(["MAN-999"]))
    await pipeline.plan(session_id, observation["observation_id"], hits)

    reviewed = await pipeline.qa(session_id)

    qa = reviewed.data["qa"]
    assert qa["pass"] is False
    assert qa["source"] == "hard_rules"
    assert {i["kind"] for i in qa["issues"]} == {"UNKNOWN_CITATION"}
    assert client.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_qa_preconditions(pipeline, client):
    session_id = (await pipeline.create_session("scenario3", "desc")).data["id"]
    no_plan = await pipeline.qa(session_id)
    assert no_plan.error.kind == "precondition"
    assert "QA_START" not in await _events(pipeline, session_id)

    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json([hits[0]["id"]]))
    await pipeline.plan(session_id, observation["observation_id"], hits)
    emptied = await pipeline.search_kb("zzzz qqqq", session_id=session_id)
    assert emptied.data["results"] == []

    no_snapshots = await pipeline.qa(session_id)
    assert no_snapshots.error.kind == "precondition"


# ---------------------------------------------------------------------------
# Safety gate on work orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_work_order_requires_safety_check(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json([hits[0]["id"]]))
    plan_id = (await pipeline.plan(session_id, observation["observation_id"], hits)).data["plan_id"]

    ordered = await pipeline.work_order(session_id, plan_id)

    assert ordered.error.kind == "precondition"
    assert "WO_START" not in await _events(pipeline, session_id)


@pytest.mark.asyncio
async def test_failed_safety_blocks_work_order_until_acknowledged(pipeline, client):
    session_id, observation, hits = await _prepared(pipeline)
    actions = ["Check for smoke damage behind the panel", "Replace the seal", "Test the pump"]
    client.chat.completions.create.side_effect = script(plan_json([hits[0]["id"]], actions))
    plan_id = (await pipeline.plan(session_id, observation["observation_id"], hits)).data["plan_id"]

    checked = await pipeline.safety(session_id, plan_id)
    assert checked.data["pass"] is False

    blocked = await pipeline.work_order(session_id, plan_id)
    assert blocked.error.kind == "precondition"
    assert "fire hazard" in blocked.error.details["hazards"]

    acknowledged = await pipeline.work_order(session_id, plan_id, acknowledge_safety=True)
    assert acknowledged.ok
    created = await pipeline.store.latest_for_session(Event, session_id)
    assert created.event_type == "WO_CREATED"
    assert created.data["safety_acknowledged"] is True


# ---------------------------------------------------------------------------
# Errors and session state
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unexpected_error_marks_session_error(pipeline):
    session_id = (await pipeline.create_session("scenario3", "desc")).data["id"]
    pipeline.ctx.kb = MagicMock()
    pipeline.ctx.kb.search.side_effect = RuntimeError("disk gone")

    result = await pipeline.search_kb("pump", session_id=session_id)

    assert result.error.kind == "internal"
    assert await _status(pipeline, session_id) == "error"

    again = await pipeline.analyze(session_id, "frames/scenario3.jpg")
    assert again.ok
    assert await _status(pipeline, session_id) == "error"


@pytest.mark.asyncio
async def test_search_without_session_persists_nothing(pipeline):
    result = await pipeline.search_kb("generator battery")
    assert result.ok
    assert result.data["results"]
    assert all(set(r) == {"id", "title", "snippet", "source", "score"} for r in result.data["results"])


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


async def _complete_run(pipeline, client) -> str:
    session_id, observation, hits = await _prepared(pipeline)
    client.chat.completions.create.side_effect = script(plan_json([hits[0]["id"]]), QA_OK)
    plan_id = (await pipeline.plan(session_id, observation["observation_id"], hits)).data["plan_id"]
    await pipeline.safety(session_id, plan_id)
    await pipeline.qa(session_id)
    await pipeline.work_order(session_id, plan_id)
    return session_id


@pytest.mark.asyncio
async def test_get_and_export_session(pipeline, client):
    session_id = await _complete_run(pipeline, client)

    record = await pipeline.get_session(session_id)
    assert record.data["session"]["status"] == "complete"
    assert record.data["qa"]["source"] == "hard+gemini"
    assert len(record.data["work_orders"]) == 1

    exported = await pipeline.export_session(session_id)
    assert exported.data["version"] == "1.0"
    assert exported.data["session_id"] == session_id
    assert exported.data["data"]["events"][0]["event_type"] == "SESSION_CREATED"

    tree = render_timeline(exported.data)
    labels = [str(child.label) for child in tree.children]
    assert any("Analyze" in label for label in labels)
    assert any("WO-" in label for label in labels)


@pytest.mark.asyncio
async def test_session_metrics(pipeline, client):
    session_id = await _complete_run(pipeline, client)

    metrics = (await pipeline.session_metrics(session_id)).data

    assert metrics["baseline_minutes"] == 35
    assert metrics["end_to_end_s"] is not None
    assert metrics["minutes_saved"] <= 35
    assert metrics["event_count"] == 12


@pytest.mark.asyncio
async def test_session_metrics_before_work_order(pipeline):
    session_id = (await pipeline.create_session("scenario1", "desc")).data["id"]
    metrics = (await pipeline.session_metrics(session_id)).data
    assert metrics["end_to_end_s"] is None
    assert metrics["minutes_saved"] is None


@pytest.mark.asyncio
async def test_similar_sessions_and_custom_events(pipeline):
    earlier = [(await pipeline.create_session("scenario3", f"leak {i}")).data["id"] for i in range(2)]
    await pipeline.create_session("scenario1", "hvac")
    current = (await pipeline.create_session("scenario3", "leak again")).data["id"]

    similar = await pipeline.similar_sessions(current)
    assert {s["id"] for s in similar.data["sessions"]} == set(earlier)

    logged = await pipeline.log_event(current, "TECH_NOTE", {"note": "arrived on site"})
    assert logged.data["data"] == {"note": "arrived on site"}
    assert (await pipeline.log_event("missing", "TECH_NOTE")).error.kind == "not_found"
