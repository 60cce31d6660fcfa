"""Records returned by the pipeline host adapter."""

from pydantic import BaseModel


class TriggerRelationship(BaseModel):
    """A trigger bridge of the orchestrator's pipeline and what it spawned."""

    name: str
    downstream_unit_id: str | None = None
    downstream_run_id: str | None = None


class JobInfo(BaseModel):
    """One executed job of a downstream pipeline."""

    job_id: int
    name: str
    status: str = ""
    has_artifacts: bool = False


class UnitHandle(BaseModel):
    """A downstream pipeline started by the orchestrator."""

    unit_id: str
    run_id: str
    status: str = ""
    web_url: str = ""
