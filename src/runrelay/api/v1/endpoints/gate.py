"""Gate re-evaluation endpoint.

Only bundles under the service's work directory can be evaluated.
"""

from __future__ import annotations

import zipfile
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException

from runrelay.api.v1.schemas.common import ErrorResponse
from runrelay.api.v1.schemas.run import GateEvaluateRequest
from runrelay.config import Settings
from runrelay.core.run.models import GateVerdict
from runrelay.dependencies import get_settings
from runrelay.engine.gate import evaluate_bundle
from runrelay.utils.file_utils import is_within

router = APIRouter()


@router.post(
    "/gate/evaluate",
    response_model=GateVerdict,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    summary="Evaluate gate predicates over a bundle",
    description="Re-run the gate over a bundle in the work directory.  The bundle is only read.",
)
async def evaluate(
    request: GateEvaluateRequest,
    settings: Settings = Depends(get_settings),
) -> GateVerdict:
    path = Path(request.bundle_path)
    if not is_within(Path(settings.work_dir), path) or not path.is_file():
        raise HTTPException(status_code=404, detail=f"Bundle not found: {request.bundle_path}")
    try:
        return evaluate_bundle(path, request.gate)
    except (ValueError, OSError, zipfile.BadZipFile) as exc:
        raise HTTPException(status_code=422, detail=f"Unreadable bundle: {exc}") from exc
