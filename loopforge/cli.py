"""CLI commands for running agent loops from the command line."""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from pathlib import Path
from typing import Literal, Optional

import click
from rich.console import Console
from rich.markup import escape

from loopforge.config import load_settings
from loopforge.constants import DEFAULT_PROMPT_DOCUMENT, TRACKING_DOCUMENT
from loopforge.errors import LoopForgeError
from loopforge.fsm.loop_state import LoopState
from loopforge.logging_utils import setup_logging
from loopforge.loop.contracts import AutoContinuePolicy, LoopConfig
from loopforge.loop.controller import LoopController
from loopforge.loop.events import EventType, LoopEvent
from loopforge.loop.parser import extract_event_text
from loopforge.loop.tracking import ProjectDocuments, UNCHECKED_ITEM
from loopforge.review.contracts import ReviewResult

DEFAULT_MAX_AUTO_ITERATIONS = 3

console = Console()
logger = logging.getLogger(__name__)


def format_event(event: LoopEvent) -> None:
    """Print one loop event to the terminal.

    Args:
        event: Event published on the bus
    """
    data = event.data
    if event.type is EventType.STDOUT:
        if "raw" in data:
            console.print(data["raw"], markup=False, highlight=False)
        else:
            text = extract_event_text(data)
            if text:
                end = "\n" if data.get("type") == "assistant" else ""
                console.print(text, markup=False, highlight=False, end=end)
    elif event.type is EventType.STDERR:
        console.print(f"[red]{escape(data.get('message', ''))}[/red]", highlight=False)
    elif event.type is EventType.SYSTEM:
        console.print(f"[cyan]{escape(data.get('message', ''))}[/cyan]", highlight=False)
    elif event.type is EventType.RALPH_STATUS:
        console.print(
            "[magenta]Status:[/magenta] "
            + escape(
                f"completed={data.get('taskCompleted')!r} "
                f"next={data.get('nextTask')!r} exit={data.get('exitSignal')}"
            )
        )
    elif event.type is EventType.ITERATION_UPDATE:
        limit = data.get("maxIterations") or "∞"
        console.print(f"[bold]Iteration {data.get('iteration')}/{limit}[/bold]")
    elif event.type is EventType.COMPLETE:
        console.print(
            f"[green]Loop finished:[/green] {escape(str(data.get('reason')))} "
            f"[dim](exit {data.get('exitCode')}, {data.get('totalIterations')} iterations)[/dim]"
        )
    elif event.type in (EventType.ERROR, EventType.REVIEW_ERROR, EventType.E2E_ERROR):
        console.print(f"[red]Error: {escape(str(data.get('message') or data.get('error')))}[/red]")
    elif event.type is EventType.REVIEW_START:
        console.print("[cyan]Review started[/cyan]")


def print_review_summary(result: ReviewResult) -> None:
    """Print a review result to the terminal."""
    colour = {"COMPLETE": "green", "PARTIAL": "yellow"}.get(result.review_status, "red")
    console.print(
        f"[{colour}]Review: {result.review_status}[/{colour}] ({result.overall_score:g}/100)"
    )
    console.print(f"[dim]{escape(result.summary)}[/dim]")
    if result.missing_items:
        console.print()
        console.print("[yellow]Missing:[/yellow]")
        for item in result.missing_items[:10]:
            console.print(f"  • \\[{item.priority}] {escape(item.description)}")
        if len(result.missing_items) > 10:
            console.print(f"  [dim]...and {len(result.missing_items) - 10} more[/dim]")


def _install_stop_handler(controller: LoopController, session_id: str) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.stop, session_id)
    except NotImplementedError:
        logger.debug("Signal handlers unavailable; Ctrl-C will interrupt without a graceful stop")


@click.group()
@click.version_option(package_name="loopforge")
def cli() -> None:
    """Supervise autonomous coding-agent loops."""


@cli.command()
@click.argument("project", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--prompt", default=DEFAULT_PROMPT_DOCUMENT, help="Prompt document inside PROJECT.")
@click.option("--mode", type=click.Choice(["plan", "build"]), default="build", help="Loop mode.")
@click.option("--model", default=None, help="Agent model (default from settings).")
@click.option("--agent-cli", default=None, help="Path to the agent binary.")
@click.option("--max-iterations", type=int, default=0, help="Stop after N runs (0 = unbounded).")
@click.option("--auto-push", is_flag=True, help="Push the branch after each successful run.")
@click.option("--auto-review", is_flag=True, help="Review the project when the loop completes.")
@click.option(
    "--auto-continue", is_flag=True, help="Start continuation cycles from review findings."
)
@click.option(
    "--max-auto-iterations",
    type=int,
    default=DEFAULT_MAX_AUTO_ITERATIONS,
    show_default=True,
    help="Cap on automatic continuation cycles.",
)
@click.option("--session-id", default=None, help="Session id (default: random).")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and agent output.")
def run(
    project: Path,
    prompt: str,
    mode: Literal["plan", "build"],
    model: Optional[str],
    agent_cli: Optional[str],
    max_iterations: int,
    auto_push: bool,
    auto_review: bool,
    auto_continue: bool,
    max_auto_iterations: int,
    session_id: Optional[str],
    verbose: bool,
) -> None:
    """Run an agent loop against PROJECT until it completes or is stopped.

    Ctrl-C stops the loop gracefully: the agent gets SIGTERM and is killed
    if it does not exit within the grace period.
    """
    setup_logging(verbose)
    settings = load_settings()
    session_id = session_id or uuid.uuid4().hex[:8]

    config = LoopConfig(
        session_id=session_id,
        project_path=str(project.resolve()),
        prompt_file=prompt,
        mode=mode,
        model=model or settings.default_model,
        agent_cli_path=agent_cli or settings.agent_cli_path,
        max_iterations=max_iterations,
        auto_push=auto_push,
        verbose=verbose,
        auto_review=auto_review or auto_continue,
        auto_continue=AutoContinuePolicy(
            enabled=auto_continue, max_auto_iterations=max_auto_iterations
        ),
    )

    async def run_loop() -> LoopState:
        controller = LoopController(settings=settings)
        controller.bus.add_listener(format_event)
        await controller.start(config)
        _install_stop_handler(controller, session_id)
        await controller.wait(session_id)
        status = controller.status(session_id)
        if status and status.latest_review:
            console.print()
            print_review_summary(status.latest_review)
        return status.state if status else LoopState.STOPPED

    try:
        final_state = asyncio.run(run_loop())
    except KeyboardInterrupt:
        console.print("\n[yellow]Loop interrupted[/yellow]")
        raise SystemExit(130)
    except LoopForgeError as e:
        raise click.ClickException(str(e))

    if final_state is not LoopState.COMPLETED:
        raise SystemExit(1)


@cli.command()
@click.argument("project", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--model", default=None, help="Agent model (default from settings).")
@click.option("--agent-cli", default=None, help="Path to the agent binary.")
@click.option(
    "--output",
    type=click.Choice(["json", "terminal"]),
    default="terminal",
    help="Output format (default: terminal)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging.")
def review(
    project: Path,
    model: Optional[str],
    agent_cli: Optional[str],
    output: Literal["json", "terminal"],
    verbose: bool,
) -> None:
    """Run a read-only review pass over PROJECT."""
    setup_logging(verbose)
    settings = load_settings()

    async def run_review() -> ReviewResult:
        controller = LoopController(settings=settings)
        if output == "terminal":
            controller.bus.add_listener(format_event)
        return await controller.trigger_review(
            uuid.uuid4().hex[:8],
            project_path=str(project.resolve()),
            model=model,
            agent_cli_path=agent_cli,
        )

    try:
        result = asyncio.run(run_review())
    except KeyboardInterrupt:
        console.print("\n[yellow]Review interrupted[/yellow]")
        raise SystemExit(130)
    except LoopForgeError as e:
        raise click.ClickException(str(e))

    if output == "json":
        console.print_json(result.model_dump_json(by_alias=True, exclude={"raw_output"}))
    else:
        console.print()
        print_review_summary(result)

    if result.review_status == "ERROR":
        raise SystemExit(1)


@cli.command("plan-status")
@click.argument("project", type=click.Path(exists=True, file_okay=False, path_type=Path))
def plan_status(project: Path) -> None:
    """Show how many tracking-document items remain in PROJECT."""
    docs = ProjectDocuments(project)
    content = docs.read_tracking()
    if content is None:
        raise click.ClickException(f"{TRACKING_DOCUMENT} not found in {project}")

    remaining = len(UNCHECKED_ITEM.findall(content))
    if docs.is_plan_exhausted():
        console.print(f"[green]✓ All tasks in {TRACKING_DOCUMENT} are checked off[/green]")
    else:
        console.print(f"[yellow]{remaining} unchecked item(s) in {TRACKING_DOCUMENT}[/yellow]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
