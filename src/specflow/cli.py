from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from specflow.backends import (
    CapabilityFailure,
    ClaudeCodeBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from specflow.capability import AgentCapability
from specflow.config import (
    BackendName,
    SpecflowConfig,
    configure_logging,
    load_config,
    save_config,
)
from specflow.documents import DocumentRejected, ImportedDocuments
from specflow.gates import ConsoleHuman
from specflow.graph import InvalidPlanGraph, PlanGraph, build_plan_graph, plan_graph_from_tasks
from specflow.parsing import parse_task_extraction
from specflow.pipeline import (
    PipelineCancelled,
    PipelineController,
    PipelineHalted,
    StageTransitionError,
)
from specflow.scheduler import InvalidTransition
from specflow.state import RunStore, StateStoreError

BACKEND_CHOICES = ["claude", "openai"]
DEFAULT_CONFIG = "specflow.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: SpecflowConfig
    store: RunStore
    controller: PipelineController


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _workspace(repo_root: Path, config: SpecflowConfig) -> Path:
    workspace = Path(config.project.workspace_dir)
    if not workspace.is_absolute():
        workspace = repo_root / workspace
    return workspace


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> ClaudeCodeBackend | OpenAIBackend:
    if backend_name == "openai":
        return OpenAIBackend()
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backend(config: SpecflowConfig, repo_root: Path, store: RunStore) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
        event_hook=store.record_event,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(config)
    store = RunStore.create(_workspace(repo_root, config))
    backend = _build_backend(config, repo_root, store)
    capability = AgentCapability.from_backend(
        backend,
        model=config.agents.model or None,
        reviewer_model=config.agents.reviewer_model or None,
        structured_retries=config.backend.structured_retries,
        backoff_seconds=config.backend.retry_backoff_seconds,
    )
    controller = PipelineController(capability, ConsoleHuman(), config, store=store)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        controller=controller,
    )


def _load_plan_file(path: Path) -> PlanGraph:
    raw_text = path.read_text(encoding="utf-8")
    try:
        payload: Any = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc
    if isinstance(payload, dict) and "tasks" in payload:
        return plan_graph_from_tasks(parse_task_extraction(raw_text))
    if not isinstance(payload, dict):
        raise click.ClickException("A plan file must hold a JSON object.")
    return build_plan_graph(payload)


@click.group()
def cli() -> None:
    """specflow: specification-driven development orchestrator."""


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_CHOICES), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        if config.backend.fallback == backend:
            config.backend.fallback = next(  # type: ignore[assignment]
                name for name in BACKEND_CHOICES if name != backend
            )
    save_config(config_path, config)

    workspace = _workspace(repo_root, config)
    (workspace / "runs").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized specflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Workspace: {workspace}")
    click.echo(f"Backend: {config.backend.primary} (fallback: {config.backend.fallback})")


@cli.command("run")
@click.argument("request", required=False, default="")
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Start from an existing specification instead of drafting one.",
)
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Start from an existing development plan; requires --spec.",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--concurrency", type=click.IntRange(min=1), default=None)
def run_command(
    request: str,
    spec_file: Path | None,
    plan_file: Path | None,
    config_value: str,
    concurrency: int | None,
) -> None:
    if plan_file is not None and spec_file is None:
        raise click.UsageError("--plan requires --spec.")
    if spec_file is None and not request.strip():
        raise click.UsageError("Give a REQUEST or start from an existing document with --spec.")
    imported: ImportedDocuments | None = None
    if spec_file is not None:
        try:
            imported = ImportedDocuments.from_paths(spec_file, plan_file)
        except DocumentRejected as exc:
            raise click.ClickException(str(exc)) from exc

    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if concurrency is not None:
        runtime.config.execution.max_concurrency = concurrency
    try:
        result = asyncio.run(runtime.controller.run(request, imported=imported))
    except (
        PipelineHalted,
        PipelineCancelled,
        DocumentRejected,
        StageTransitionError,
        InvalidTransition,
        InvalidPlanGraph,
        CapabilityFailure,
        StateStoreError,
    ) as exc:
        raise click.ClickException(str(exc)) from exc

    approved = result.report.approved
    click.echo(f"Run ID: {result.state.run_id}")
    click.echo(f"Tasks approved: {len(approved)}/{len(result.graph)}")
    for node_id in result.report.blocked:
        click.echo(f"Blocked: {node_id}: {result.graph.node(node_id).blocked_reason}")
    for document in result.documents:
        click.echo(f"Wrote {document}")


@cli.command("status")
@click.option("--run", "run_id", default=None, help="Run id; defaults to the latest run.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(run_id: str | None, verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    workspace = _workspace(repo_root, config)
    if run_id is not None:
        if run_id not in RunStore.list_runs(workspace):
            raise click.ClickException(f"Run not found: {run_id}")
        store: RunStore | None = RunStore(workspace, run_id)
    else:
        store = RunStore.open_latest(workspace)
    if store is None:
        raise click.ClickException("No runs found. Start one with `specflow run REQUEST`.")

    context = store.get_context()
    payload: dict[str, Any] = {
        "run_id": store.run_id,
        "stage": context.get("stage"),
        "request": context.get("request"),
        "tasks": {
            task_id: record.get("status") for task_id, record in store.get_tasks().items()
        },
        "outstanding_gates": context.get("outstanding_gates", []),
        "event_counts": store.get_metrics().get("event_counts", {}),
    }
    if verbose:
        payload["decisions"] = store.get_decisions()
        payload["gates"] = store.get_gates()
        payload["history"] = context.get("history", [])
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("check-plan")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def check_plan_command(plan_file: Path) -> None:
    """Validate a plan's dependency graph and print its execution levels."""
    try:
        graph = _load_plan_file(plan_file)
    except (InvalidPlanGraph, CapabilityFailure) as exc:
        raise click.ClickException(f"Invalid plan: {exc}") from exc
    click.echo(f"Plan is valid: {len(graph)} task(s), {len(graph.levels)} level(s)")
    for index, level in enumerate(graph.levels):
        click.echo(f"Level {index}: {', '.join(level)}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(BACKEND_CHOICES))
@click.option("--fallback", type=click.Choice(BACKEND_CHOICES), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def backend_command(backend_name: str, fallback: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    if fallback:
        config.backend.fallback = fallback  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
    if fallback:
        click.echo(f"Fallback backend set to {fallback}")
