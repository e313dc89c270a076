"""
CLI interface for Bubble.

Provides command-line access to the tutor, usage counters and diagnostics.
"""

import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Awaitable, List, Optional, TypeVar

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from bubble.backend.sync import run_deep_system_check
from bubble.core.errors import BubbleError
from bubble.runtime import Runtime, attach_user, build_runtime, forget_session, persist_session, restore_user
from bubble.storage.repository import initialize_schema
from bubble.tutor.models import (
    ConceptDepth,
    ConceptSettings,
    DrillSettings,
    IBLevel,
    MathSolution,
    UserInput,
)

app = typer.Typer()
console = Console()

T = TypeVar("T")

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _runtime(ctx: typer.Context) -> Runtime:
    runtime = build_runtime((ctx.obj or {}).get("config_path"))
    if runtime.backend is not None:
        _run(runtime, restore_user(runtime))
    return runtime


def _run(runtime: Runtime, coro: Awaitable[T]) -> T:
    """Run a command coroutine, then flush background usage logs."""
    async def run_and_drain() -> T:
        try:
            return await coro
        finally:
            await runtime.client.drain()

    return asyncio.run(run_and_drain())


def _read_input(source: str) -> UserInput:
    """A path to an image/PDF/text file, or the problem text itself."""
    path = Path(source)
    if path.is_file():
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        if mime_type.startswith("text/"):
            return UserInput.from_text(path.read_text(encoding="utf-8"))
        return UserInput.from_bytes(path.read_bytes(), mime_type, file_name=path.name)
    return UserInput.from_text(source)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to bubble.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Bubble - IB Math tutor CLI."""
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("Bubble - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the local Bubble database."""
    try:
        runtime = _runtime(ctx)
        initialize_schema(runtime.config.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show key and usage status."""
    runtime = _runtime(ctx)
    usage = runtime.usage.daily_usage()
    console.print(f"Model: {runtime.config.model}")
    console.print(f"API key: {runtime.credentials.fingerprint()}")
    console.print(f"Today: {usage['count']}/{usage['limit']} requests")
    console.print(f"Cloud sync: {'enabled' if runtime.backend else 'disabled'}")


def _display_solution(index: int, solution: MathSolution) -> None:
    console.print(f"\n[bold]Problem {index + 1}[/bold]")
    console.print(Markdown(solution.exercise_statement))
    for number, step in enumerate(solution.steps, start=1):
        console.print(f"\n[bold cyan]{number}. {step.title}[/] [dim]({step.section})[/]")
        console.print(Markdown(step.explanation))
        if step.key_equation:
            console.print(f"  {step.key_equation}")
    console.print("\n[bold]Final answer[/bold]")
    console.print(Markdown(solution.final_answer))
    if solution.markscheme:
        console.print("\n[bold]Markscheme[/bold]")
        console.print(Markdown(solution.markscheme))


async def _solve(runtime: Runtime, inputs: List[UserInput], markscheme: bool) -> List[Optional[MathSolution]]:
    results, task = await runtime.tutor.solve_problems(inputs)
    await task.wait()
    for index, error in sorted(task.errors.items()):
        console.print(f"[yellow]Problem {index + 1} failed:[/] {error}")
    if markscheme:
        for solution in results:
            if solution is not None:
                steps = "\n".join(f"{s.title}: {s.key_equation}" for s in solution.steps)
                solution.markscheme = await runtime.tutor.get_markscheme(solution.exercise_statement, steps)
    return results


@app.command()
def solve(
    ctx: typer.Context,
    sources: List[str] = typer.Argument(..., help="Problem text or image/PDF paths"),
    markscheme: bool = typer.Option(False, "--markscheme", "-m", help="Also generate a markscheme"),
):
    """Solve one or more problems step by step."""
    try:
        runtime = _runtime(ctx)
        inputs = [_read_input(s) for s in sources]
        results = _run(runtime, _solve(runtime, inputs, markscheme))
    except BubbleError as e:
        _fail(e)
    for index, solution in enumerate(results):
        if solution is not None:
            _display_solution(index, solution)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def drill(
    ctx: typer.Context,
    topic: List[str] = typer.Option([], "--topic", "-t", help="Topic (repeatable)"),
    count: int = typer.Option(3, "--count", "-n", min=1, help="Questions in the batch"),
    difficulty: float = typer.Option(3.0, "--difficulty", "-d", min=1, max=10, help="Starting difficulty"),
):
    """Generate a batch of practice questions with rising difficulty."""
    try:
        runtime = _runtime(ctx)
        settings = DrillSettings(topics=list(topic))
        questions = _run(runtime, runtime.tutor.generate_drill_batch(1, difficulty, count, settings, []))
    except BubbleError as e:
        _fail(e)

    if not questions:
        console.print("[yellow]No questions could be generated.[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Drill")
    table.add_column("#", justify="right")
    table.add_column("Topic")
    table.add_column("Level", justify="right")
    table.add_column("Question")
    table.add_column("Answer")
    for q in questions:
        table.add_row(str(q.number), q.topic, f"{q.difficulty_level:.1f}", q.question_text, q.short_answer)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def concept(
    ctx: typer.Context,
    topic: str = typer.Argument(..., help="Concept to explain"),
    level: IBLevel = typer.Option(IBLevel.SL, "--level", "-l", case_sensitive=False),
    depth: ConceptDepth = typer.Option(ConceptDepth.SUMMARY, "--depth", case_sensitive=False),
):
    """Explain a concept with worked examples."""
    try:
        runtime = _runtime(ctx)
        explanation = _run(runtime, runtime.tutor.generate_concept_explanation(
            [], ConceptSettings(topic=topic, level=level, depth=depth)
        ))
    except BubbleError as e:
        _fail(e)

    console.print(f"\n[bold]{explanation.topic_title}[/bold]")
    console.print(Markdown(explanation.introduction))
    for block in explanation.concept_blocks:
        console.print(f"\n[bold cyan]{block.title}[/]")
        console.print(Markdown(block.content))
    for example in explanation.examples:
        console.print(f"\n[bold]Example ({example.difficulty})[/bold]")
        console.print(Markdown(example.question))
        console.print(f"[dim]Answer:[/] {example.final_answer}")
    sys.exit(EXIT_CODE_PASS)


@app.command("markscheme")
def markscheme_command(
    ctx: typer.Context,
    question: str = typer.Argument(..., help="Problem statement"),
    solution: str = typer.Option("", "--solution", "-s", help="Reference solution"),
):
    """Generate an IB-style markscheme table for a problem."""
    runtime = _runtime(ctx)
    table = _run(runtime, runtime.tutor.get_markscheme(question, solution))
    if not table:
        console.print("[yellow]Markscheme unavailable.[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(Markdown(table))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(ctx: typer.Context):
    """Show daily and lifetime request counters."""
    runtime = _runtime(ctx)
    daily = runtime.usage.daily_usage()
    lifetime = runtime.usage.lifetime_stats()

    table = Table(title="Usage")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests today", str(daily["count"]))
    table.add_row("Daily soft limit", str(daily["limit"]))
    table.add_row("Lifetime requests", str(lifetime["total_requests"]))
    table.add_row("Estimated credits", str(lifetime["estimated_credits"]))
    console.print(table)

    if daily["count"] >= daily["limit"]:
        console.print("[yellow]Daily soft limit reached.[/] Requests still go through.")


@app.command("set-limit")
def set_limit(ctx: typer.Context, limit: int = typer.Argument(..., help="New daily soft limit")):
    """Change the daily soft limit."""
    runtime = _runtime(ctx)
    try:
        runtime.usage.update_daily_limit(limit)
    except ValueError as e:
        _fail(e)
    console.print(f"[green]✓[/] Daily limit set to {limit}")


@app.command("set-key")
def set_key(ctx: typer.Context, key: str = typer.Argument(..., help="Gemini API key")):
    """Store a personal Gemini API key locally."""
    runtime = _runtime(ctx)
    try:
        runtime.credentials.save_local(key)
    except ValueError as e:
        _fail(e)
    console.print(f"[green]✓[/] API key saved ({runtime.credentials.fingerprint()})")


@app.command()
def logs(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Entries to show"),
    mode: Optional[str] = typer.Option(None, "--mode", help="Filter by mode (SOLVER, DRILL, ...)"),
):
    """Show the most recent API request attempts."""
    runtime = _runtime(ctx)
    entries = runtime.logs.recent(limit=limit, mode=mode.upper() if mode else None)
    if not entries:
        console.print("[dim]No requests recorded yet.[/]")
        return

    table = Table(title="Recent requests")
    for column in ("Time", "Type", "Mode", "Model", "Key", "Status", "Latency", "Error"):
        table.add_column(column)
    for entry in entries:
        colour = "green" if entry.status.value == "SUCCESS" else "red"
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            entry.request_type.value,
            entry.mode,
            entry.model,
            entry.key_fingerprint,
            f"[{colour}]{entry.status.value}[/]",
            f"{entry.latency_ms}ms" if entry.latency_ms is not None else "-",
            entry.error_message or entry.db_error or "",
        )
    console.print(table)


async def _login(runtime: Runtime, email: str, password: str):
    user = await runtime.backend.login(email, password)
    synced = await attach_user(runtime, user)
    await persist_session(runtime)
    return user, synced


@app.command()
def login(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
):
    """Sign in to cloud sync and reconcile the stored API key."""
    runtime = _runtime(ctx)
    if runtime.backend is None:
        console.print("[red]Error:[/] Cloud sync is not configured. Set SUPABASE_URL and SUPABASE_KEY.")
        sys.exit(EXIT_CODE_FAIL)
    try:
        user, synced = _run(runtime, _login(runtime, email, password))
    except BubbleError as e:
        _fail(e)
    console.print(f"[green]✓[/] Signed in as {user.name}")
    if not synced:
        console.print("[yellow]No API key stored locally or in the cloud.[/] Use set-key to add one.")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def logout(ctx: typer.Context):
    """Sign out of cloud sync and forget the stored session."""
    runtime = _runtime(ctx)
    if runtime.backend is not None:
        _run(runtime, runtime.backend.logout())
    forget_session(runtime)
    console.print("[green]✓[/] Signed out")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ping(ctx: typer.Context):
    """Run a single connectivity test against the model API."""
    try:
        runtime = _runtime(ctx)
        _run(runtime, runtime.client.ping())
    except BubbleError as e:
        _fail(e)
    console.print("[green]✓[/] Gemini API reachable")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def doctor(ctx: typer.Context):
    """Deep system check: local storage, cloud key copy and API latency."""
    runtime = _runtime(ctx)
    report = _run(runtime, run_deep_system_check(runtime.credentials, runtime.client, runtime.backend))

    table = Table(title="System health")
    table.add_column("Check")
    table.add_column("Result")
    for name, ok in vars(report.checks).items():
        table.add_row(name, "[green]yes[/]" if ok else "[red]no[/]")
    table.add_row("key_mode", report.key_mode)
    table.add_row("latency", f"{report.latency_ms}ms")
    console.print(table)


if __name__ == "__main__":
    app()
