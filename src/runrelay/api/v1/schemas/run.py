"""Request/response schemas for run submission, inspection and gating."""

from pydantic import BaseModel

from runrelay.core.run.models import GatePredicate


class NodeInfo(BaseModel):
    """Status summary for a single node of a run."""

    name: str
    ref: str
    slot: str
    status: str
    job_id: int | None = None
    error: str = ""


class RunResponse(BaseModel):
    """Serialised view of a run outcome suitable for the API consumer."""

    run_id: str
    status: str
    gate_passed: bool | None = None
    justification: str = ""
    package: str | None = None
    bundle_name: str | None = None
    bundle_url: str | None = None
    nodes: list[NodeInfo] = []
    error: str = ""


class GateEvaluateRequest(BaseModel):
    """Re-run the gate over a bundle archive available to the service."""

    bundle_path: str
    gate: list[GatePredicate]
