"""Command line entry point for turnloop."""

import asyncio
import signal
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from turnloop.agent import LoopCallbacks, LoopRequest, LoopResult
from turnloop.compaction import compact_task_context
from turnloop.config import Config, get_config, set_config
from turnloop.exceptions import LoopCancelledError, TurnLoopError
from turnloop.hooks.ralph import RalphLoopHook
from turnloop.logging import configure_logging, get_logger
from turnloop.messages import user_message
from turnloop.runtime import build_runtime

log = get_logger(__name__)

app = typer.Typer(help="turnloop - autonomous agent loop for coding tasks")
console = Console()


def _load_config(config_path: str, model: str, verbose: bool) -> Config:
    config = Config.from_yaml(config_path or None)
    if model:
        config.model.model = model
    set_config(config)
    configure_logging("DEBUG" if verbose else None)
    return config


def _render_result(result: LoopResult) -> None:
    table = Table(show_header=False, box=None)
    table.add_row("Stop reason", result.stop_reason.value)
    if result.stop_message:
        table.add_row("Message", result.stop_message)
    table.add_row("Iterations", str(result.iterations))
    table.add_row("Turns", str(result.turns))
    style = "green" if result.success else "yellow"
    console.print(Panel(table, title="Run finished", border_style=style))


async def _run_task(
    prompt: str,
    task_id: str,
    workspace: Path,
    autonomous: bool | None,
    max_iterations: int | None,
) -> LoopResult:
    runtime = build_runtime(get_config(), workspace=workspace)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        log.debug("Signal handlers unavailable, Ctrl-C will not cancel gracefully")

    try:
        if autonomous is not None:
            runtime.settings.set_autonomy(task_id, autonomous)
        ralph = runtime.pipeline.get("ralph-loop")
        if isinstance(ralph, RalphLoopHook) and max_iterations:
            ralph.configure_task(task_id, max_iterations=max_iterations)

        history = await runtime.message_store.read_all(task_id)
        message = user_message(prompt)
        await runtime.message_store.append(task_id, message)

        callbacks = LoopCallbacks(
            on_chunk=lambda text: console.print(text, end="", markup=False, highlight=False),
            on_status=lambda status: log.debug("Status", status=status),
            on_tool_message=lambda msg: console.print(
                f"\n[dim]tool {msg.tool_results[0].tool_name}: "
                f"{'error' if msg.tool_results[0].is_error else 'ok'}[/dim]"
            ),
        )
        request = LoopRequest(task_id=task_id, messages=[*history, message])
        result = await runtime.create_loop().run(request, callbacks=callbacks, cancel_event=cancel_event)
        console.print()
        return result
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await runtime.close()


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Task for the agent"),
    task_id: str = typer.Option("", "-t", "--task", help="Task id (new task if omitted)"),
    workspace: Path = typer.Option(Path("."), "-w", "--workspace", help="Project directory"),
    autonomous: Optional[bool] = typer.Option(None, "--autonomous/--no-autonomous", help="Override Ralph Loop mode"),
    max_iterations: int = typer.Option(0, "--max-iterations", help="Ralph Loop iteration budget"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run a task until the completion hooks stop it."""
    _load_config(config, model, verbose)
    task_id = task_id or uuid.uuid4().hex[:12]
    console.print(f"[bold]Task[/bold] {task_id}")
    try:
        result = asyncio.run(
            _run_task(prompt, task_id, workspace.resolve(), autonomous, max_iterations or None)
        )
    except LoopCancelledError:
        console.print("\n[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=130)
    except TurnLoopError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    _render_result(result)
    if not result.success:
        raise typer.Exit(code=2)


@app.command()
def compact(
    task_id: str = typer.Argument(..., help="Task whose history to compact"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Compact a task's saved history into the context artifact."""
    _load_config(config, "", verbose)

    async def _compact():
        runtime = build_runtime(get_config())
        try:
            return await compact_task_context(
                task_id, runtime.message_store, runtime.artifacts, runtime.compactor
            )
        finally:
            await runtime.close()

    outcome = asyncio.run(_compact())
    style = "green" if outcome.success else "yellow"
    console.print(f"[{style}]{outcome.message}[/{style}]")
    if outcome.error:
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from turnloop import __version__

    console.print(f"turnloop v{__version__}")


if __name__ == "__main__":
    app()
