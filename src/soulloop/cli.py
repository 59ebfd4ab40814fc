"""CLI commands for managing souls and their iteration loops."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer

from .agents.executor import AgentExecutor, AgentLaunchError, SubprocessAgentExecutor
from .config import DEFAULT_CONFIG_NAME, ConfigError, load_config, write_default_config
from .controller import IterationController, SoulStateError
from .memory.errors import SoulConflictError, SoulNotFoundError, StoreError
from .memory.schema import Soul, SoulStatus
from .memory.store import SoulStore
from .prompts import render_feedback_summary

APP_HELP = "Drive projects to production readiness with alternating test and development agents."

WAIT_POLL_SECONDS = 1.0

app = typer.Typer(help=APP_HELP)

_verbose = False

ConfigOption = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the soul loop configuration file.",
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Drive projects to production readiness with alternating test and development agents."""
    global _verbose
    _verbose = verbose


def _configure_logging(config_data: Dict[str, Any]) -> None:
    logging_cfg = config_data.get("logging") or {}
    level_name = "DEBUG" if _verbose else str(logging_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("soulloop").setLevel(level)


def _load(config: str) -> Dict[str, Any]:
    try:
        config_data = load_config(Path(config))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    _configure_logging(config_data)
    return config_data


def _build_executor(config_data: Dict[str, Any]) -> AgentExecutor:
    return SubprocessAgentExecutor.from_config(config_data)


@contextmanager
def _open_store(config_data: Dict[str, Any]) -> Iterator[SoulStore]:
    try:
        store = SoulStore.from_config(config_data)
    except StoreError as error:
        typer.echo(f"Failed to open soul store: {error}")
        raise typer.Exit(code=1) from error
    with store:
        yield store


@contextmanager
def _open_controller(config_data: Dict[str, Any]) -> Iterator[IterationController]:
    with _open_store(config_data) as store:
        controller = IterationController.from_config(config_data, store, _build_executor(config_data))
        try:
            yield controller
        finally:
            controller.shutdown()


def _wait_for_loop(controller: IterationController) -> None:
    """Block until no work is queued and no agent is running.

    Agents are supervised by threads of this process and their completions
    drive the next iteration, so a launching command only returns once the
    loop is idle. Interrupting it stops the loop for every soul it started.
    """
    running_count = getattr(controller.executor, "running_count", None)
    while True:
        controller.wait_idle()
        if running_count is None or running_count() == 0:
            # a completion may still be on its way to the dispatcher
            time.sleep(WAIT_POLL_SECONDS)
            if controller.dispatcher.pending_count() == 0 and (
                running_count is None or running_count() == 0
            ):
                return
            continue
        time.sleep(WAIT_POLL_SECONDS)


def _fail(message: str, error: Exception) -> None:
    typer.echo(f"{message}: {error}")
    raise typer.Exit(code=1) from error


def _echo_soul_line(soul: Soul) -> None:
    latest = soul.latest_iteration()
    iteration_text = f"iteration #{latest.number}" if latest else "no iterations"
    typer.echo(f"- {soul.id} [{soul.status.value}] {soul.name} ({soul.project_path}) {iteration_text}")


def _items(values: Optional[List[str]]) -> List[str]:
    return [value.strip() for value in values or [] if value and value.strip()]


@app.command()
def init(config: str = ConfigOption) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        typer.echo(f"Configuration already exists at {config_path}.")
        return
    write_default_config(config_path)
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def create(
    project_path: Path = typer.Argument(..., help="Folder holding the project to develop."),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name for the soul."),
    objective: List[str] = typer.Option(None, "--objective", "-o", help="Objective (repeatable)."),
    requirement: List[str] = typer.Option(None, "--requirement", "-r", help="Requirement (repeatable)."),
    start: bool = typer.Option(
        True,
        "--start/--no-start",
        help="Run the loop now, staying in the foreground until it goes idle.",
    ),
    config: str = ConfigOption,
) -> None:
    """Create a soul for PROJECT_PATH."""
    config_data = _load(config)
    folder = project_path.expanduser().resolve()
    if not folder.is_dir():
        typer.echo(f"Project folder does not exist: {folder}")
        raise typer.Exit(code=1)

    with _open_controller(config_data) as controller:
        try:
            soul = controller.create_soul(
                str(folder),
                name=name,
                objectives=_items(objective),
                requirements=_items(requirement),
                start=start,
            )
        except SoulConflictError as error:
            _fail("Unable to create soul", error)
        typer.echo(f"Created soul {soul.id} ({soul.name}) for {soul.project_path}.")
        if start:
            typer.echo("First test iteration queued.")
            _wait_for_loop(controller)


@app.command("list")
def list_souls(
    status: Optional[SoulStatus] = typer.Option(None, "--status", "-s", help="Only list souls in this state."),
    config: str = ConfigOption,
) -> None:
    """List souls, most recently updated first."""
    config_data = _load(config)
    with _open_store(config_data) as store:
        souls = store.list(status=status)
    if not souls:
        typer.echo("No souls found.")
        return
    for soul in souls:
        _echo_soul_line(soul)


@app.command()
def show(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    as_json: bool = typer.Option(False, "--json", help="Print the full soul as JSON."),
    config: str = ConfigOption,
) -> None:
    """Show a soul with its goals, iterations and gathered feedback."""
    config_data = _load(config)
    with _open_store(config_data) as store:
        try:
            soul = store.get(soul_id)
        except SoulNotFoundError as error:
            _fail("Unknown soul", error)

    if as_json:
        typer.echo(soul.model_dump_json(indent=2))
        return

    typer.echo(f"Soul: {soul.name} [{soul.id}]")
    typer.echo(f"Project: {soul.project_path}")
    typer.echo(f"Status: {soul.status.value}")
    for title, items in (("Objectives", soul.objectives), ("Requirements", soul.requirements)):
        if items:
            typer.echo(f"{title}:")
            for item in items:
                typer.echo(f"- {item}")
    if soul.iterations:
        typer.echo("Iterations:")
        for iteration in soul.iterations:
            state = "running" if iteration.is_running else "done"
            typer.echo(
                f"- #{iteration.number} {iteration.kind.value} ({state}) agent {iteration.agent_id}: "
                f"{iteration.purpose}"
            )
    summary = render_feedback_summary(soul.feedback)
    if summary:
        typer.echo(summary)


@app.command()
def delete(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    config: str = ConfigOption,
) -> None:
    """Delete a soul."""
    config_data = _load(config)
    with _open_store(config_data) as store:
        try:
            store.delete(soul_id)
        except SoulNotFoundError as error:
            _fail("Unknown soul", error)
    typer.echo(f"Deleted soul {soul_id}.")


@app.command()
def objectives(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    items: List[str] = typer.Argument(..., help="Objectives replacing the current list."),
    config: str = ConfigOption,
) -> None:
    """Replace the objectives of a soul."""
    config_data = _load(config)
    with _open_store(config_data) as store:
        try:
            store.update_objectives(soul_id, _items(items))
        except SoulNotFoundError as error:
            _fail("Unknown soul", error)
    typer.echo(f"Updated objectives for soul {soul_id}.")


@app.command()
def requirements(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    items: List[str] = typer.Argument(..., help="Requirements replacing the current list."),
    config: str = ConfigOption,
) -> None:
    """Replace the requirements of a soul."""
    config_data = _load(config)
    with _open_store(config_data) as store:
        try:
            store.update_requirements(soul_id, _items(items))
        except SoulNotFoundError as error:
            _fail("Unknown soul", error)
    typer.echo(f"Updated requirements for soul {soul_id}.")


def _report_launch(agent_id: Optional[str], kind: str, soul_id: str) -> bool:
    if agent_id is None:
        typer.echo("Iterations are paused; nothing launched.")
        return False
    typer.echo(f"Launched {kind} iteration for soul {soul_id} (agent {agent_id}).")
    return True


@app.command()
def launch(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    purpose: Optional[str] = typer.Option(None, "--purpose", "-p", help="Purpose of the development iteration."),
    feedback: Optional[str] = typer.Option(None, "--feedback", "-f", help="Feedback to address."),
    config: str = ConfigOption,
) -> None:
    """Launch a development iteration."""
    config_data = _load(config)
    with _open_controller(config_data) as controller:
        try:
            agent_id = controller.launch_development_iteration(soul_id, feedback=feedback, purpose=purpose)
        except (SoulNotFoundError, AgentLaunchError) as error:
            _fail("Unable to launch iteration", error)
        if _report_launch(agent_id, "development", soul_id):
            _wait_for_loop(controller)


@app.command()
def test(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    config: str = ConfigOption,
) -> None:
    """Launch a test iteration."""
    config_data = _load(config)
    with _open_controller(config_data) as controller:
        try:
            agent_id = controller.launch_test_iteration(soul_id)
        except (SoulNotFoundError, AgentLaunchError) as error:
            _fail("Unable to launch iteration", error)
        if _report_launch(agent_id, "test", soul_id):
            _wait_for_loop(controller)


@app.command("run-again")
def run_again(
    soul_id: str = typer.Argument(..., help="Soul identifier."),
    config: str = ConfigOption,
) -> None:
    """Restart the loop for a soul in standby."""
    config_data = _load(config)
    with _open_controller(config_data) as controller:
        try:
            agent_id = controller.run_again(soul_id)
        except (SoulNotFoundError, SoulStateError, AgentLaunchError) as error:
            _fail("Unable to run again", error)
        if _report_launch(agent_id, "test", soul_id):
            _wait_for_loop(controller)


@app.command()
def pause(config: str = ConfigOption) -> None:
    """Stop launching new iterations."""
    config_data = _load(config)
    with _open_controller(config_data) as controller:
        try:
            controller.set_paused(True)
        except StoreError as error:
            _fail("Unable to pause", error)
    typer.echo("Soul iterations paused.")


@app.command()
def resume(config: str = ConfigOption) -> None:
    """Clear the pause flag and restart interrupted souls."""
    config_data = _load(config)
    with _open_controller(config_data) as controller:
        try:
            resumed = controller.set_paused(False)
        except StoreError as error:
            _fail("Unable to resume", error)
        typer.echo("Soul iterations resumed.")
        if resumed:
            typer.echo(f"Restarting {len(resumed)} soul(s):")
            for soul_id in resumed:
                typer.echo(f"- {soul_id}")
            _wait_for_loop(controller)


@app.command()
def status(config: str = ConfigOption) -> None:
    """Report the pause flag and soul counts."""
    config_data = _load(config)
    with _open_store(config_data) as store:
        paused = store.is_paused()
        souls = store.list()
        db_path = store.db_path
    working = sum(1 for soul in souls if soul.status == SoulStatus.WORKING)
    typer.echo(f"Database: {db_path}")
    typer.echo(f"Paused: {'yes' if paused else 'no'}")
    typer.echo(f"Souls: total {len(souls)} | working {working} | standby {len(souls) - working}")


if __name__ == "__main__":  # pragma: no cover
    app()
