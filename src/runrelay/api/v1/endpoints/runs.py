"""Run submission and inspection endpoints.

Keeps an in-memory record of the most recent ``MAX_STORED_RUNS`` finished
runs keyed by run id.  Runs do not outlive the process; the bus holds the
permanent record.
"""

from __future__ import annotations

from collections import OrderedDict

from fastapi import APIRouter, Depends, HTTPException

from runrelay.api.v1.schemas.common import ErrorResponse
from runrelay.api.v1.schemas.run import NodeInfo, RunResponse
from runrelay.config import Settings
from runrelay.core.run.models import RunContext, RunDefinition
from runrelay.dependencies import get_orchestrator, get_settings
from runrelay.engine.pipeline import RunOrchestrator, RunResult
from runrelay.utils.exceptions import RunAbortedError
from runrelay.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

MAX_STORED_RUNS = 256

_runs: OrderedDict[str, RunResponse] = OrderedDict()


def to_response(result: RunResult) -> RunResponse:
    publication = result.publication
    return RunResponse(
        run_id=result.run_id,
        status=result.status.value,
        gate_passed=result.verdict.passed if result.verdict else None,
        justification=result.verdict.justification if result.verdict else "",
        package=publication.package if publication else None,
        bundle_name=result.bundle.name if result.bundle else None,
        bundle_url=publication.bundle_url if publication else None,
        nodes=[
            NodeInfo(
                name=o.name,
                ref=o.ref,
                slot=o.slot,
                status=o.status,
                job_id=o.job_id,
                error=o.error,
            )
            for o in result.nodes.values()
        ],
        error=result.error,
    )


def store_run(response: RunResponse) -> None:
    _runs[response.run_id] = response
    while len(_runs) > MAX_STORED_RUNS:
        _runs.popitem(last=False)


def get_run(run_id: str) -> RunResponse | None:
    return _runs.get(run_id)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/runs",
    response_model=RunResponse,
    responses={409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Execute a run",
    description=(
        "Resolve, gather, bundle, gate and publish one run of the node DAG.  "
        "Blocks until the run is accepted, quarantined or aborted."
    ),
)
async def execute_run(
    definition: RunDefinition,
    settings: Settings = Depends(get_settings),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> RunResponse:
    context = RunContext.from_definition(definition, settings)
    if context.run_id in _runs:
        raise HTTPException(status_code=409, detail=f"Run already exists: {context.run_id}")

    try:
        result = await orchestrator.run(context)
    except RunAbortedError as exc:
        if exc.result is not None:
            store_run(to_response(exc.result))
        raise

    response = to_response(result)
    store_run(response)
    return response


@router.get(
    "/runs/{run_id}",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get run outcome",
)
async def get_run_status(run_id: str) -> RunResponse:
    run = get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"No run found: {run_id}")
    return run
