from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from marathon.backends import (
    CapabilityPort,
    ClaudeCodeBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from marathon.config import CONFIG_FILENAME, BackendName, MarathonConfig, load_config, save_config
from marathon.errors import InvalidInput, MarathonError
from marathon.graph import ThreadNode
from marathon.orchestrator import PhaseOrchestrator
from marathon.scenarios import SCENARIOS, get_scenario
from marathon.snapshot import export_session, load_session, write_snapshot

EventHook = Callable[[dict[str, Any]], None]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, model: str | None
) -> ClaudeCodeBackend | OpenAIBackend:
    if backend_name == "openai":
        return OpenAIBackend(model=model) if model else OpenAIBackend()
    return ClaudeCodeBackend(working_directory=repo_root, model=model)


def _build_backend(
    config: MarathonConfig, repo_root: Path, event_hook: EventHook | None = None
) -> CapabilityPort:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(
            primary_name, repo_root, config.backend.model or None
        ),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root, None),
        retry_policy=policy,
        event_hook=event_hook,
    )


def _echo_event(event: dict[str, Any]) -> None:
    click.echo(json.dumps(event, ensure_ascii=False, default=str), err=True)


def _describe_node(node: ThreadNode, depth: int) -> list[str]:
    message = node.message
    headline = message.body.splitlines()[0] if message.body else ""
    lines = [f"{'  ' * depth}- [{message.role}] {headline[:100]}"]
    if node.original is not None:
        original = node.original.body.splitlines()[0] if node.original.body else ""
        lines.append(f"{'  ' * (depth + 1)}revises: {original[:80]}")
        if message.changes:
            lines.append(f"{'  ' * (depth + 1)}changes: {message.changes[:80]}")
    for child in node.children:
        lines.extend(_describe_node(child, depth + 1))
    return lines


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Marathon multi-agent pipeline CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "openai"]), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")
    click.echo(f"Phases: {', '.join(config.pipeline.phases)}")


@cli.command("run")
@click.argument("description", required=False)
@click.option("--scenario", "scenario_slug", type=click.Choice(sorted(SCENARIOS)), default=None)
@click.option(
    "--export",
    "export_value",
    is_flag=False,
    flag_value="",
    default=None,
    help="Write a session snapshot (defaults to the export directory).",
)
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    description: str | None,
    scenario_slug: str | None,
    export_value: str | None,
    show_events: bool,
    config_value: str,
) -> None:
    if scenario_slug and description:
        raise click.UsageError("Pass either DESCRIPTION or --scenario, not both.")
    if scenario_slug:
        description = get_scenario(scenario_slug).task_description()
    if not description:
        raise click.UsageError("Missing DESCRIPTION (or --scenario).")

    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    hook = _echo_event if show_events else None
    backend = _build_backend(config, repo_root, hook)
    orchestrator = PhaseOrchestrator.from_config(backend, config, event_hook=hook)
    try:
        task = asyncio.run(orchestrator.run(description))
    except InvalidInput as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Task {task.id}: {task.status}")
    for phase in task.phases:
        score = "-" if phase.audit_score is None else f"{phase.audit_score}/100"
        click.echo(
            f"  {phase.number}. {phase.name:<15} {phase.status:<12} "
            f"score={score} attempts={phase.attempts}"
        )
    if task.failure_reason:
        click.echo(f"Reason: {task.failure_reason}")

    if export_value is not None:
        target = Path(export_value or config.export.directory)
        if not target.is_absolute():
            target = repo_root / target
        payload = export_session(task, orchestrator.graph, orchestrator.memory_for(task))
        written = write_snapshot(target, payload)
        click.echo(f"Snapshot: {written}")


@cli.command("show")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--phase", "phase_number", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
def show_command(snapshot: Path, phase_number: int | None, as_json: bool) -> None:
    try:
        session = load_session(snapshot)
    except MarathonError as exc:
        raise click.ClickException(str(exc)) from exc

    forest = session.graph.forest(session.task.id)
    if phase_number is not None:
        forest = {phase_number: forest.get(phase_number, [])}

    if as_json:
        payload = {
            str(number): [node.to_dict() for node in roots] for number, roots in forest.items()
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    task = session.task
    click.echo(f"Task {task.id}: {task.status}")
    names = {phase.number: phase for phase in task.phases}
    for number, roots in forest.items():
        phase = names.get(number)
        label = f"{phase.name} [{phase.status}]" if phase else "unknown phase"
        click.echo(f"Phase {number}: {label}")
        if not roots:
            click.echo("  (no threads)")
        for root in roots:
            for line in _describe_node(root, 1):
                click.echo(line)


@cli.command("scenarios")
def scenarios_command() -> None:
    for slug, scenario in sorted(SCENARIOS.items()):
        click.echo(f"{slug:<22} {scenario.name}: {scenario.summary}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["claude", "openai"]))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
