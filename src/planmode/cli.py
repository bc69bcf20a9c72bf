"""CLI commands for configuring and running plan-mode sessions."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    PlanModeConfig,
    copy_config_template,
    load_config,
    write_config,
)
from .engine import EngineState, ExecutionEngine
from .errors import ConfigError
from .mode import Mode, ModeState, status_line
from .models import LLMClient, OfflineLLMClient, ResponsesClient
from .planner import StructuredPlanner, WorkspaceContextProvider
from .questions import collect_answer_block
from .session import PlanSession
from .tools.actions import DryRunActionExecutor, SubprocessActionExecutor
from .tools.checkpoints import DryRunCheckpointRunner, SubprocessCheckpointRunner
from .tools.run_logs import load_run_log

APP_HELP = "Plan-mode orchestration for assistant sessions."
TOGGLE_SEQUENCES = {"\x1b[Z", "/toggle"}
EXIT_COMMANDS = {"/exit", "/quit"}

app = typer.Typer(help=APP_HELP)


def _load(config_path: Path) -> PlanModeConfig:
    try:
        return load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _build_client(config: PlanModeConfig, use_remote: bool) -> LLMClient:
    """Instantiate the planner client, falling back to the offline stub."""
    model_name = config.models.planner
    if not use_remote or model_name == "offline":
        typer.echo("Using offline planner.")
        return OfflineLLMClient()

    client_kwargs = {"timeout": config.models.timeout}
    if config.models.base_url:
        client_kwargs["base_url"] = config.models.base_url
    try:
        return ResponsesClient(model=model_name, api_key=config.models.api_key, **client_kwargs)
    except ValueError as error:
        typer.echo(
            f"Failed to initialise planner client: {error} "
            "Set PLANMODE_API_KEY or re-run with --no-use-remote."
        )
        raise typer.Exit(code=1) from error


def _read_line() -> Optional[str]:
    line = sys.stdin.readline()
    if not line:
        return None
    return line.rstrip("\r\n")


def _prompt(state: ModeState) -> None:
    marker = "[PLAN] " if state.mode == Mode.PLAN else ""
    typer.echo(f"{marker}{state.mode.value}> ", nl=False)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the plan-mode configuration file.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file with the defaults.",
    ),
) -> None:
    """Write a default planmode.yaml."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        return
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command()
def mode(
    value: Optional[str] = typer.Argument(None, help="New default mode: plan, normal, or auto."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the plan-mode configuration file.",
    ),
) -> None:
    """Show or change the repository's default interaction mode."""
    config_path = Path(config)
    settings = _load(config_path)
    if value is None:
        state = ModeState(
            mode=settings.session.default_mode,
            default_mode=settings.session.default_mode,
            auto_enabled=settings.session.auto_mode,
        )
        typer.echo(f"Default: {status_line(state, settings.session.toggle_key)}")
        return

    try:
        target = Mode.parse(value)
    except ValueError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    if target == Mode.AUTO and not settings.session.auto_mode:
        typer.echo("Auto mode is disabled in this configuration.")
        raise typer.Exit(code=1)

    data = settings.model_dump(mode="json")
    data["session"]["default_mode"] = target.value
    write_config(config_path, data)
    typer.echo(f"Default mode set to {target.value} in {config_path}")


@app.command()
def session(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the plan-mode configuration file.",
    ),
    goal: Optional[str] = typer.Option(
        None,
        "--goal",
        "-g",
        help="Start a plan-mode run for this goal immediately.",
    ),
    execute: bool = typer.Option(
        False,
        "--execute/--dry-run",
        help="Run action and checkpoint commands instead of recording them.",
    ),
    use_remote: bool = typer.Option(
        False,
        "--use-remote/--no-use-remote",
        help="Call the configured planner model instead of the offline stub.",
    ),
) -> None:
    """Run an interactive plan-mode session on stdin/stdout."""
    config_path = Path(config)
    settings = _load(config_path)
    repo_root = config_path.resolve().parent

    planner = StructuredPlanner(_build_client(settings, use_remote))
    if execute:
        executor = SubprocessActionExecutor(cwd=repo_root, timeout=settings.checkpoints.timeout)
        checkpoints = SubprocessCheckpointRunner(settings.checkpoints, cwd=repo_root)
    else:
        executor = DryRunActionExecutor()
        checkpoints = DryRunCheckpointRunner(settings.checkpoints)

    engine = ExecutionEngine(
        planner,
        executor,
        checkpoints,
        config=settings,
        context_provider=WorkspaceContextProvider(repo_root),
        logs_root=settings.logs_root(repo_root),
    )
    plan_session = PlanSession(engine, config=settings)
    typer.echo(plan_session.status_line())

    if goal:
        _echo_reply(plan_session.submit(f"/plan {goal}").messages)

    while True:
        _prompt(plan_session.mode_state)
        line = _read_line()
        if line is None or line.strip() in EXIT_COMMANDS:
            typer.echo("")
            break
        if line in TOGGLE_SEQUENCES:
            plan_session.handle_key(settings.session.toggle_key)
            typer.echo(plan_session.status_line())
            continue

        if engine.state == EngineState.AWAITING_ANSWERS and engine.round is not None and not line.startswith("/"):
            open_round = engine.round
            pending = [line]

            def _next_line() -> Optional[str]:
                if pending:
                    return pending.pop()
                return _read_line()

            line = collect_answer_block(open_round, _next_line)

        reply = plan_session.submit(line)
        if reply.passthrough is not None:
            typer.echo(f"(sent to assistant in {plan_session.mode_state.mode.value} mode)")
        _echo_reply(reply.messages)

    plan_session.close()
    if engine.run_log_path is not None:
        typer.echo(f"Run log: {engine.run_log_path}")


@app.command("show-log")
def show_log(path: Path = typer.Argument(..., help="Run log JSON file.")) -> None:
    """Summarise a stored plan-mode run log."""
    try:
        entry = load_run_log(path)
    except (OSError, ValueError) as error:
        typer.echo(f"Failed to read run log: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(f"Goal: {entry.goal or '(none)'}")
    typer.echo(f"Transitions: {len(entry.transitions)}")
    typer.echo(f"Final state: {entry.final_state or '(unknown)'}")
    decisions = entry.decisions
    if decisions:
        typer.echo("Decisions:")
        for decision in decisions:
            typer.echo(f"- {decision.get('key')}: {decision.get('value')}")
    else:
        typer.echo("Decisions: (none)")


def _echo_reply(messages: list[str]) -> None:
    for message in messages:
        typer.echo(message)
        typer.echo("")


if __name__ == "__main__":
    app()
