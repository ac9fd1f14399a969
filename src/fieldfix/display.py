# display.py
# All terminal output for the FieldFix demo run.
#
# This module owns presentation entirely. pipeline.py never formats strings;
# run.py passes stage results to the named functions here.
#
# Colour language:
#   cyan    stage scaffolding
#   blue    model output (observation, plan)
#   yellow  safety and QA checkpoints
#   green   success / work order
#   red     failures and blocked stages

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from fieldfix.models import StageResult

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _bullets(items: list[str], color: str = "white") -> str:
    if not items:
        return "[dim]none[/dim]"
    return "\n".join(f"  • [{color}]{item}[/{color}]" for item in items)


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(model: str, fallback_model: str | None, database_url: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]FieldFix Repair Pipeline[/bold cyan]\n"
            "[dim]Image → Observation → KB → Plan → Safety → QA → Work Order[/dim]\n\n"
            f"[dim]Model    :[/dim] [white]{model}[/white]\n"
            f"[dim]Fallback :[/dim] [white]{fallback_model or '-'}[/white]\n"
            f"[dim]Store    :[/dim] [white]{database_url}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def session_created(session: dict) -> None:
    console.print()
    console.print(Rule(f"[cyan]SESSION {session['id'][:8]}[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{session['user_description']}[/white]",
            title=_label(f"SCENARIO: {session['scenario']}", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def stage_start(stage: str) -> None:
    console.print()
    console.print(_label("STAGE", "cyan"), f"[cyan] → {stage}…[/cyan]")


# ---------------------------------------------------------------------------
# Stage output
# ---------------------------------------------------------------------------


def observation(data: dict) -> None:
    flags = ", ".join(data["risk_flags"]) or "none"
    console.print(
        Panel(
            f"[bold white]{data['equipment_type']}[/bold white]\n\n"
            f"[white]{data['problem_summary']}[/white]\n\n"
            f"[dim]Risk flags :[/dim] [yellow]{flags}[/yellow]\n"
            f"[dim]Notes      :[/dim] {data.get('environmental_notes') or '-'}",
            title=_label("OBSERVATION", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )


def kb_results(results: list[dict]) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="cyan", header_style="bold cyan", padding=(0, 1))
    table.add_column("ID", width=8)
    table.add_column("Source", width=9)
    table.add_column("Score", justify="right", width=6)
    table.add_column("Title", style="white")

    for hit in results:
        table.add_row(hit["id"], hit["source"], str(hit["score"]), _mono(hit["title"], 60))

    console.print(
        Panel(
            table,
            title=_label(f"KB HITS: {len(results)}", "cyan"),
            border_style="cyan",
            padding=(0, 1),
        )
    )


def plan(data: dict) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="blue", header_style="bold blue", padding=(0, 1))
    table.add_column("#", justify="center", width=3)
    table.add_column("Action", style="white")
    table.add_column("Min", justify="right", width=5)
    table.add_column("Cites", style="dim white", width=18)

    for step in data["steps"]:
        table.add_row(
            str(step["step_number"]),
            step["action"],
            f"{step['duration']:g}",
            ", ".join(step["citations"]),
        )

    subtitle = "[yellow]fallback plan (quota)[/yellow]" if data.get("fallback") else "[dim]generated[/dim]"
    console.print(
        Panel(
            table,
            title=_label("PLAN", "blue"),
            subtitle=subtitle,
            border_style="blue",
            padding=(0, 1),
        )
    )


def safety(data: dict) -> None:
    passed = data["pass"]
    color = "green" if passed else "red"
    headline = (
        "[bold green]Plan may proceed with the PPE and pre-steps below.[/bold green]"
        if passed
        else "[bold red]Work must not proceed. Acknowledge hazards to override.[/bold red]"
    )
    console.print(
        Panel(
            f"{headline}\n\n"
            f"[dim]PPE required:[/dim]\n{_bullets(data['ppe_required'])}\n\n"
            f"[dim]Hazards:[/dim]\n{_bullets(data['hazards'], 'yellow')}\n\n"
            f"[dim]Pre-steps:[/dim]\n{_bullets(data['required_presteps'])}",
            title=_label("SAFETY: PASS ✓" if passed else "SAFETY: FAIL ✗", color),
            border_style=color,
            padding=(0, 2),
        )
    )


def qa(data: dict) -> None:
    result = data["qa"]
    passed = result["pass"]
    color = "green" if passed else "yellow"
    issues = [f"{i['kind']}: {i['detail']}" for i in result["issues"]]
    score = "-" if result.get("score") is None else f"{result['score']:g}"
    console.print(
        Panel(
            f"[dim]Source :[/dim] {result['source']}\n"
            f"[dim]Score  :[/dim] {score}\n\n"
            f"[dim]Issues:[/dim]\n{_bullets(issues, 'yellow')}\n\n"
            f"[dim]Recommendations:[/dim]\n{_bullets(result.get('recommendations') or [])}",
            title=_label("QA: PASS ✓" if passed else "QA: ISSUES", color),
            border_style=color,
            padding=(0, 2),
        )
    )


def work_order(data: dict) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{data['work_order_number']}[/bold white]\n\n"
            f"[white]{data['summary']}[/white]\n\n"
            f"[dim]Parts          :[/dim] {', '.join(data['parts'])}\n"
            f"[dim]Estimated time :[/dim] {data['estimated_time']:g} min",
            title=_label("WORK ORDER", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )


# ---------------------------------------------------------------------------
# Failures and summary
# ---------------------------------------------------------------------------


def stage_failed(result: StageResult) -> None:
    error = result.error
    details = "\n".join(f"[dim]{k}:[/dim] {_mono(str(v), 200)}" for k, v in (error.details or {}).items())
    console.print()
    console.print(
        Panel(
            f"[bold red]{error.message}[/bold red]" + (f"\n\n{details}" if details else ""),
            title=_label(f"{result.stage.upper()} FAILED: {error.kind}", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def metrics(data: dict) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="dim", header_style="bold dim", padding=(0, 1))
    table.add_column("Metric", width=24)
    table.add_column("Value", justify="right", style="white")

    rows = [
        ("Analyze latency (s)", data["analyze_latency_s"]),
        ("Plan latency (s)", data["plan_latency_s"]),
        ("End to end (s)", data["end_to_end_s"]),
        ("Manual baseline (min)", data["baseline_minutes"]),
        ("Minutes saved", data["minutes_saved"]),
        ("Efficiency gain (%)", data["efficiency_gain_pct"]),
        ("Events", data["event_count"]),
    ]
    for name, value in rows:
        table.add_row(name, "-" if value is None else str(value))

    console.print()
    console.print(Panel(table, title="[dim]SESSION METRICS[/dim]", border_style="dim", padding=(0, 1)))


def similar(sessions: list[dict]) -> None:
    if not sessions:
        return
    lines = "\n".join(f"  • {s['id'][:8]}  [dim]{s['created_at']}[/dim]" for s in sessions)
    console.print(f"[dim]Similar past sessions:[/dim]\n{lines}")
