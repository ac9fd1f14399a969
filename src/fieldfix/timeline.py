# timeline.py
# Renders an exported session as a rich Tree: one branch per stage, with the
# stage's events and their telemetry underneath.

from rich.tree import Tree

# event type prefix -> stage label
STAGE_OF_EVENT = {
    "SESSION": "Session",
    "ANALYZE": "Analyze",
    "KB": "KB search",
    "PLAN": "Plan",
    "SAFETY": "Safety",
    "QA": "QA",
    "WO": "Work order",
}

_TELEMETRY_KEYS = ("model", "latency_ms", "attempts", "retries", "schema_pass", "reason", "pass", "source")


def stage_for(event_type: str) -> str:
    return STAGE_OF_EVENT.get(event_type.split("_", 1)[0], "Other")


def _event_label(event: dict) -> str:
    data = event.get("data") or {}
    parts = [f"{k}={data[k]}" for k in _TELEMETRY_KEYS if data.get(k) is not None]
    suffix = f"  [dim]{' '.join(parts)}[/dim]" if parts else ""
    color = "yellow" if event["event_type"].endswith("FALLBACK_USED") else "white"
    return f"[{color}]{event['event_type']}[/{color}]{suffix}"


def render_timeline(export: dict) -> Tree:
    """Build the stage/event tree for the output of Pipeline.export_session."""
    data = export["data"]
    session = data["session"]
    status_color = {"complete": "green", "error": "red"}.get(session["status"], "cyan")

    graph = Tree(
        f"[bold]Session {session['id'][:8]}[/bold]  "
        f"[dim]{session['scenario']}[/dim]  [{status_color}]{session['status']}[/{status_color}]"
    )

    branches: dict[str, Tree] = {}
    for event in data["events"]:
        stage = stage_for(event["event_type"])
        if stage not in branches:
            branches[stage] = graph.add(f"[bold cyan]{stage}[/bold cyan]")
        branches[stage].add(_event_label(event))

    for order in data["work_orders"]:
        graph.add(f"[bold green]{order['work_order_number']}[/bold green]  {order['summary']}")

    return graph
