from __future__ import annotations

import json
from typing import TYPE_CHECKING, List, Optional

import typer

from src.common.errors import OrchestratorError

from .store import reveal_acknowledgement

if TYPE_CHECKING:
    from src.orchestrator.service import Orchestrator

app = typer.Typer(help="Manage versioned secret material per environment.")


def _orchestrator(ctx: typer.Context) -> "Orchestrator":
    if ctx.obj is None:
        raise typer.BadParameter("secret commands must run under rolloutctl")
    return ctx.obj


def _fail(exc: OrchestratorError) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=exc.exit_code)


@app.command()
def init(
    ctx: typer.Context,
    environment: str = typer.Argument(..., help="Environment to seed."),
    keys: List[str] = typer.Option(..., "--key", "-k", help="Secret key to create (repeatable)."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Reset existing keys to the placeholder."),
) -> None:
    orchestrator = _orchestrator(ctx)
    try:
        env = orchestrator.environment(environment)
        written = orchestrator.secrets.init(env, keys, overwrite=overwrite)
    except OrchestratorError as exc:
        _fail(exc)
        return
    typer.echo(f"Seeded {len(written)} key(s) in {env.name}: {', '.join(written) or '-'}")
    if written:
        typer.echo("Replace the CHANGE_ME placeholders with 'rolloutctl secret rotate' before deploying.")


@app.command()
def validate(
    ctx: typer.Context,
    environment: str = typer.Argument(..., help="Environment to validate."),
) -> None:
    orchestrator = _orchestrator(ctx)
    try:
        env = orchestrator.environment(environment)
        result = orchestrator.secrets.validate(env)
    except OrchestratorError as exc:
        _fail(exc)
        return
    if result.ok:
        typer.echo(f"Secrets for {env.name} are valid")
        return
    for issue in result.issues:
        typer.echo(f"  {issue}")
    if env.strict_validation:
        typer.echo(f"Secret validation failed for {env.name}", err=True)
        raise typer.Exit(code=4)
    typer.echo(f"Secret validation warnings for {env.name}")


@app.command()
def rotate(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    key: str = typer.Argument(...),
    value: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
) -> None:
    """Replace an existing key with a new version."""

    orchestrator = _orchestrator(ctx)
    try:
        version = orchestrator.secrets.rotate(orchestrator.environment(environment), key, value)
    except OrchestratorError as exc:
        _fail(exc)
        return
    typer.echo(f"Rotated {key} in {environment} to version {version}")


@app.command()
def put(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    key: str = typer.Argument(...),
    value: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
) -> None:
    orchestrator = _orchestrator(ctx)
    try:
        version = orchestrator.secrets.put(orchestrator.environment(environment), key, value)
    except OrchestratorError as exc:
        _fail(exc)
        return
    typer.echo(f"Stored {key} in {environment} as version {version}")


@app.command()
def delete(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    key: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    orchestrator = _orchestrator(ctx)
    if not yes:
        answer = typer.prompt(f"Delete {key} from {environment}? (type 'yes' to confirm)")
        if answer != "yes":
            typer.echo("Deletion cancelled")
            return
    try:
        orchestrator.secrets.delete(orchestrator.environment(environment), key)
    except OrchestratorError as exc:
        _fail(exc)
        return
    typer.echo(f"Deleted {key} from {environment}")


@app.command()
def view(
    ctx: typer.Context,
    environment: str = typer.Argument(...),
    acknowledge: Optional[str] = typer.Option(
        None,
        "--acknowledge",
        help="Must be 'reveal:<environment>'; values are printed in plaintext.",
    ),
    show_values: bool = typer.Option(False, "--show-values", help="Print values instead of versions."),
) -> None:
    """List keys and versions; with --show-values and --acknowledge, print values."""

    orchestrator = _orchestrator(ctx)
    try:
        env = orchestrator.environment(environment)
        if show_values:
            revealed = orchestrator.secrets.reveal(env, acknowledge=acknowledge)
            typer.echo(json.dumps(revealed, indent=2, sort_keys=True))
            return
        record = orchestrator.secrets.get(env)
    except OrchestratorError as exc:
        _fail(exc)
        return
    for key in sorted(record):
        entry = record[key]
        typer.echo(f"{key}\tv{entry.version}\t{entry.value}")
    if not record:
        typer.echo(f"No secrets stored for {env.name}")
    typer.echo(f"Use --show-values --acknowledge {reveal_acknowledgement(env)} to print values.", err=True)


__all__ = ["app"]
