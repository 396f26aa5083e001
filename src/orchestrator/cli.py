from __future__ import annotations

import json
from pathlib import Path
from typing import NoReturn, Optional

import typer

from src.common.config import OrchestratorConfig
from src.common.errors import OrchestratorError, RolloutFailure
from src.common.logging import configure_logging
from src.planner.diff import render_diff
from src.rollout.controller import RolloutHandle, RolloutOutcome
from src.secretstore.cli import app as secret_app

from .service import Orchestrator

app = typer.Typer(help="Render, plan and roll out manifests to dev, stage and prod.")
app.add_typer(secret_app, name="secret")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file (or ROLLOUT_CONFIG)."),
    manifests_dir: Optional[Path] = typer.Option(None, "--manifests-dir", help="Directory holding base/ and overlays/."),
    history_db: Optional[Path] = typer.Option(None, "--history-db", help="SQLite rollout history."),
    kubectl_cmd: Optional[str] = typer.Option(None, "--kubectl", help="kubectl binary."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines."),
) -> None:
    if ctx.obj is not None:
        return
    try:
        settings = OrchestratorConfig.from_env(
            config_path=config,
            manifests_dir=manifests_dir,
            history_db=history_db,
            kubectl_cmd=kubectl_cmd,
        )
    except OrchestratorError as exc:
        _fail(exc)
    configure_logging(log_level or settings.log_level, json_logs or settings.log_json)
    ctx.obj = Orchestrator.from_config(settings)


def _fail(exc: OrchestratorError, orchestrator: Optional[Orchestrator] = None, environment: Optional[str] = None) -> NoReturn:
    typer.echo(f"Error: {exc}", err=True)
    if orchestrator is not None and environment is not None and not isinstance(exc, RolloutFailure):
        try:
            head = orchestrator.head(environment)
        except OrchestratorError:
            head = None
        typer.echo(f"Current record: {head.id if head else 'none'}", err=True)
    raise typer.Exit(code=exc.exit_code)


def _report(outcome: RolloutOutcome) -> None:
    typer.echo(f"Rollout {outcome.record_id} in {outcome.environment}: {outcome.phase.value}")
    if outcome.detail:
        typer.echo(f"  {outcome.detail}")
    if not outcome.succeeded:
        raise typer.Exit(code=RolloutFailure.exit_code)


def _wait(handle: RolloutHandle) -> RolloutOutcome:
    typer.echo(f"Started rollout {handle.record_id} in {handle.environment}")
    return handle.wait()


@app.command()
def render(
    ctx: typer.Context,
    environment: str = typer.Argument(..., help="dev, stage or prod"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write YAML here instead of stdout."),
) -> None:
    """Render the environment's overlay to YAML."""

    orchestrator: Orchestrator = ctx.obj
    try:
        manifest_set = orchestrator.render(environment)
    except OrchestratorError as exc:
        _fail(exc)
    text = manifest_set.to_yaml()
    if out is None:
        typer.echo(text, nl=False)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8")
    typer.echo(f"Rendered {len(manifest_set)} resource(s) to {out}")


@app.command()
def plan(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    diff: bool = typer.Option(False, "--diff", help="Show a unified diff per action."),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
    skip_validation: bool = typer.Option(False, "--skip-validation"),
) -> None:
    """Show what apply would change."""

    orchestrator: Orchestrator = ctx.obj
    try:
        prepared = orchestrator.plan(environment, skip_validation=skip_validation)
    except OrchestratorError as exc:
        _fail(exc, orchestrator, environment)
    if as_json:
        typer.echo(json.dumps(json.loads(prepared.plan.to_json()), indent=2))
        return
    _print_plan(prepared.plan)
    if diff and not prepared.empty:
        typer.echo(render_diff(prepared.plan), nl=False)


def _print_plan(plan_obj) -> None:
    if plan_obj.empty:
        typer.echo(f"No changes for {plan_obj.environment}")
        return
    typer.echo(f"Plan {plan_obj.id} for {plan_obj.environment}:")
    for action in plan_obj:
        typer.echo(f"  {action.type.value:<7} {action.identity}")
    summary = plan_obj.summary()
    typer.echo(", ".join(f"{count} {kind.lower()}" for kind, count in summary.items()))


@app.command()
def apply(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan and have the cluster dry-run it without applying."),
    skip_validation: bool = typer.Option(
        False, "--skip-validation", help="Skip image policy checks and the cluster dry run."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    backup_dir: Optional[Path] = typer.Option(
        None, "--backup-dir", help="Back up observed state here first (default: the configured backup_dir)."
    ),
    no_backup: bool = typer.Option(False, "--no-backup", help="Do not back up observed state before applying."),
) -> None:
    """Apply the rendered manifests and wait for the rollout to finish."""

    orchestrator: Orchestrator = ctx.obj
    try:
        env = orchestrator.environment(environment)
        prepared = orchestrator.plan(environment, skip_validation=skip_validation)
        _print_plan(prepared.plan)
        if dry_run or not skip_validation:
            orchestrator.validate(prepared)
    except OrchestratorError as exc:
        _fail(exc, orchestrator, environment)
    if dry_run or prepared.empty:
        if dry_run:
            typer.echo("Dry run: no changes applied")
        return
    if env.requires_confirmation and not yes:
        typer.echo(f"You are about to deploy to {env.name.upper()} (namespace {env.namespace}).")
        typer.echo(f"kubectl context: {env.context or 'current context'}")
        answer = typer.prompt("Type 'yes' to proceed")
        if answer != "yes":
            typer.echo("Deployment cancelled")
            return
    try:
        if not no_backup:
            path = orchestrator.backup(environment, backup_dir or orchestrator.config.backup_dir)
            typer.echo(f"Backup saved: {path}")
        handle = orchestrator.start(prepared)
        if handle is None:
            return
        outcome = _wait(handle)
    except OrchestratorError as exc:
        _fail(exc, orchestrator, environment)
    _report(outcome)


@app.command()
def rollback(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y"),
) -> None:
    """Return the environment to its previous successful rollout."""

    orchestrator: Orchestrator = ctx.obj
    try:
        env = orchestrator.environment(environment)
    except OrchestratorError as exc:
        _fail(exc)
    if env.requires_confirmation and not yes:
        answer = typer.prompt(f"Roll back {env.name.upper()}? Type 'yes' to proceed")
        if answer != "yes":
            typer.echo("Rollback cancelled")
            return
    try:
        outcome = _wait(orchestrator.rollback(environment))
    except OrchestratorError as exc:
        _fail(exc, orchestrator, environment)
    _report(outcome)


@app.command()
def reconcile(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
) -> None:
    """Finish or roll back a rollout interrupted by a crash."""

    orchestrator: Orchestrator = ctx.obj
    try:
        outcome = orchestrator.reconcile(environment)
    except OrchestratorError as exc:
        _fail(exc, orchestrator, environment)
    if outcome is None:
        typer.echo(f"Nothing to reconcile in {environment}")
        return
    _report(outcome)


@app.command()
def status(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
) -> None:
    orchestrator: Orchestrator = ctx.obj
    try:
        report = orchestrator.status(environment)
    except OrchestratorError as exc:
        _fail(exc, orchestrator, environment)
    typer.echo(json.dumps(report, indent=2))


@app.command()
def history(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    limit: int = typer.Option(10, "--limit", "-n", min=1),
) -> None:
    orchestrator: Orchestrator = ctx.obj
    try:
        records = orchestrator.history_of(environment, limit)
    except OrchestratorError as exc:
        _fail(exc)
    if not records:
        typer.echo(f"No rollouts recorded for {environment}")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.kind.value}\t{record.result.value}\t{record.applied_at:.0f}\t"
            f"previous={record.previous_id or '-'}"
        )


@app.command()
def backup(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    out_dir: Optional[Path] = typer.Option(
        None, "--out-dir", help="Directory for backup files (default: the configured backup_dir)."
    ),
) -> None:
    """Save the environment's observed managed resources as YAML."""

    orchestrator: Orchestrator = ctx.obj
    try:
        path = orchestrator.backup(environment, out_dir or orchestrator.config.backup_dir)
    except OrchestratorError as exc:
        _fail(exc)
    typer.echo(f"Backup saved: {path}")


@app.command()
def check(ctx: typer.Context) -> None:
    """Check prerequisites: manifests layout, kubectl, cluster access."""

    orchestrator: Orchestrator = ctx.obj
    checks = orchestrator.check()
    for name, ok in checks.items():
        typer.echo(f"{'ok' if ok else 'FAIL':<5}{name}")
    if not all(checks.values()):
        raise typer.Exit(code=1)


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8080, help="Bind port."),
) -> None:
    """Run the rollout HTTP API."""

    import uvicorn

    from .server import create_app, get_orchestrator

    api = create_app()
    orchestrator: Orchestrator = ctx.obj
    api.dependency_overrides[get_orchestrator] = lambda: orchestrator
    uvicorn.run(api, host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    app()
