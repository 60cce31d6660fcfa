"""Command-line entry point, meant to be called from CI jobs.

Examples::

    runrelay run run.json
    runrelay verify work/<run_id>/bundle-<run_id>.zip
    runrelay gate bundle-<run_id>.zip run.json
"""

from __future__ import annotations

import asyncio
import json
import zipfile
from pathlib import Path

import typer
from pydantic import ValidationError

from runrelay.config import settings
from runrelay.core.run.models import RunContext, RunDefinition, RunStatus
from runrelay.dependencies import open_orchestrator
from runrelay.engine.bundler import verify_bundle
from runrelay.engine.gate import evaluate_bundle
from runrelay.engine.pipeline import RunResult
from runrelay.utils.exceptions import RunAbortedError, RunRelayError
from runrelay.utils.logging import setup_logging

app = typer.Typer(help="Run orchestration engine: gather, bundle, gate and publish DAG runs.")


def _load_definition(path: Path) -> RunDefinition:
    try:
        return RunDefinition.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        typer.echo(f"Invalid run definition {path}: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _summary(result: RunResult) -> dict:
    return {
        "run_id": result.run_id,
        "status": result.status.value,
        "gate_passed": result.verdict.passed if result.verdict else None,
        "justification": result.verdict.justification if result.verdict else "",
        "package": result.publication.package if result.publication else None,
        "bundle": result.bundle.name if result.bundle else None,
        "nodes": {name: o.status for name, o in result.nodes.items()},
        "error": result.error,
    }


@app.command()
def run(
    definition: Path = typer.Argument(..., exists=True, dir_okay=False, help="Run definition JSON."),
    run_id: str = typer.Option("", "--run-id", help="Use this run id instead of generating one."),
    fail_on_quarantine: bool = typer.Option(
        True, help="Exit with status 1 when the run is quarantined."
    ),
) -> None:
    """Execute one run of the DAG and publish its bundle."""
    setup_logging(debug=settings.debug, json_logs=settings.json_logs)
    run_definition = _load_definition(definition)
    if run_id:
        run_definition = run_definition.model_copy(update={"run_id": run_id})

    try:
        context = RunContext.from_definition(run_definition, settings)
    except ValidationError as exc:
        typer.echo(f"Invalid run configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    async def _execute() -> RunResult:
        async with open_orchestrator(settings) as orchestrator:
            return await orchestrator.run(context)

    try:
        result = asyncio.run(_execute())
    except RunAbortedError as exc:
        if exc.result is not None:
            typer.echo(json.dumps(_summary(exc.result), indent=2))
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    typer.echo(json.dumps(_summary(result), indent=2))
    if result.status == RunStatus.QUARANTINED and fail_on_quarantine:
        raise typer.Exit(code=1)


@app.command()
def verify(
    bundle: Path = typer.Argument(..., exists=True, dir_okay=False, help="Bundle archive."),
) -> None:
    """Check every file hash of a bundle against its manifest."""
    problems = verify_bundle(bundle)
    if problems:
        for problem in problems:
            typer.echo(problem, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{bundle.name}: OK")


@app.command()
def gate(
    bundle: Path = typer.Argument(..., exists=True, dir_okay=False, help="Bundle archive."),
    definition: Path = typer.Argument(..., exists=True, dir_okay=False, help="Run definition JSON."),
) -> None:
    """Re-evaluate the gate of a run definition over an existing bundle."""
    run_definition = _load_definition(definition)
    try:
        verdict = evaluate_bundle(bundle, run_definition.gate)
    except (RunRelayError, ValueError, OSError, zipfile.BadZipFile) as exc:
        typer.echo(f"Cannot evaluate {bundle}: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    typer.echo(verdict.model_dump_json(indent=2))
    if not verdict.passed:
        raise typer.Exit(code=1)


@app.command()
def serve() -> None:
    """Run the HTTP service."""
    import uvicorn

    uvicorn.run("runrelay.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    app()
