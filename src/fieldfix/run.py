# run.py
# Demo entry point. Config and wiring only; no pipeline logic lives here.
#
# Swap model strings for any OpenRouter-supported model via FIELDFIX_MODEL /
# FIELDFIX_FALLBACK_MODEL. https://openrouter.ai/models

import argparse
import asyncio

from fieldfix import display
from fieldfix.config import build_context, load_settings
from fieldfix.log import configure_logging
from fieldfix.models import StageResult
from fieldfix.pipeline import Pipeline
from fieldfix.sql_store import SqlStore
from fieldfix.timeline import render_timeline

# Technician descriptions for the bundled scenarios.
DESCRIPTIONS = {
    "scenario1": "Rooftop AC unit is blowing warm air and the compressor sounds strained.",
    "scenario2": "Backup generator will not start during the weekly test run.",
    "scenario3": "Pump is leaking next to the electrical panel, floor is wet.",
}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="fieldfix-demo", description="Run the FieldFix pipeline end to end.")
    parser.add_argument("--scenario", default="scenario1", help="scenario key (scenario1..scenario3)")
    parser.add_argument("--image", default=None, help="image path under the media root; defaults to frames/<scenario>.jpg")
    parser.add_argument("--description", default=None, help="technician description of the problem")
    parser.add_argument("--database-url", default=None, help="override DATABASE_URL ('memory' for in-process)")
    parser.add_argument("--acknowledge-safety", action="store_true", help="create the work order even if safety fails")
    parser.add_argument("--timeline", action="store_true", help="print the session timeline at the end")
    return parser.parse_args(argv)


def _ok(result: StageResult) -> bool:
    if not result.ok:
        display.stage_failed(result)
    return result.ok


async def run_demo(args: argparse.Namespace) -> int:
    overrides = {"database_url": args.database_url} if args.database_url else {}
    settings = load_settings(**overrides)
    configure_logging(settings.log_level)

    context = build_context(settings)
    if isinstance(context.store, SqlStore):
        await context.store.create_schema()

    pipeline = Pipeline(context)
    display.banner(settings.model, settings.fallback_model, settings.database_url)

    try:
        description = args.description or DESCRIPTIONS.get(args.scenario, "Equipment fault reported on site.")
        created = await pipeline.create_session(args.scenario, description)
        if not _ok(created):
            return 1
        session_id = created.data["id"]
        display.session_created(created.data)

        display.stage_start("analyze")
        analyzed = await pipeline.analyze(session_id, args.image or f"frames/{args.scenario}.jpg")
        if not _ok(analyzed):
            return 1
        display.observation(analyzed.data)

        display.stage_start("kb search")
        query = f"{analyzed.data['equipment_type']} {analyzed.data['problem_summary']}"
        searched = await pipeline.search_kb(query, 5, session_id=session_id)
        if not _ok(searched):
            return 1
        display.kb_results(searched.data["results"])

        display.stage_start("plan")
        planned = await pipeline.plan(session_id, analyzed.data["observation_id"], searched.data["results"])
        if not _ok(planned):
            return 1
        display.plan(planned.data)
        plan_id = planned.data["plan_id"]

        display.stage_start("safety")
        checked = await pipeline.safety(session_id, plan_id)
        if not _ok(checked):
            return 1
        display.safety(checked.data)

        display.stage_start("qa")
        reviewed = await pipeline.qa(session_id)
        if not _ok(reviewed):
            return 1
        display.qa(reviewed.data)

        display.stage_start("work order")
        ordered = await pipeline.work_order(session_id, plan_id, acknowledge_safety=args.acknowledge_safety)
        if not _ok(ordered):
            return 1
        display.work_order(ordered.data)

        metrics = await pipeline.session_metrics(session_id)
        if _ok(metrics):
            display.metrics(metrics.data)

        similar = await pipeline.similar_sessions(session_id)
        if _ok(similar):
            display.similar(similar.data["sessions"])

        if args.timeline:
            exported = await pipeline.export_session(session_id)
            if _ok(exported):
                display.console.print()
                display.console.print(render_timeline(exported.data))
        return 0
    finally:
        await context.store.close()


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(run_demo(_parse_args(argv)))


if __name__ == "__main__":
    raise SystemExit(main())
