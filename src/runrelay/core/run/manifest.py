"""The manifest: permanent, self-describing index of a run.

It is written once by the bundler at the root of the canonical tree and
sealed into the bundle.  Because the bundle exists before the gate decides,
the sealed copy carries ``status: "pending"`` and ``gate_passed: null``;
the publisher uploads a finalized copy next to the bundle.
"""

from __future__ import annotations

from pydantic import BaseModel

from runrelay.core.run.models import GateCheck, GateVerdict, OrchestratorIdentity, RunStatus

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1


class FileEntry(BaseModel):
    file: str
    hash: str


class NodeEntry(BaseModel):
    ref: str
    status: str
    slot: str
    downstream_project_id: str | None = None
    downstream_pipeline_id: str | None = None
    job_id: int | None = None
    error: str = ""


class BusCoordinates(BaseModel):
    project_id: str
    package: str
    quarantine_package: str
    version: str


class BundleIdentity(BaseModel):
    name: str
    path: str


class GateSummary(BaseModel):
    passed: bool
    justification: str = ""
    checks: list[GateCheck] = []


class Manifest(BaseModel):
    """Structured record of one run.

    Attributes:
        manifest_version: Layout version of this document.
        run_id: The run's id; also the bus package version.
        status: ``pending`` inside the bundle, ``failed`` for diagnostic
            bundles, the run status once finalized.
        gate_passed: Gate verdict; ``None`` until the gate has run.
        orchestrator: Project, pipeline id and URL of the orchestrator.
        nodes: Per-node version reference, completion status and origin.
        files: Per-slot ``{file, hash}`` entries, paths relative to the slot.
        hash_algorithm: ``hashlib`` name used for every entry.
        bus: Where the bundle is published.
        bundle: Name and local path of the bundle archive.
        created_at: ISO-8601 UTC timestamp of bundling.
        gate: Gate justification, filled when finalized.
    """

    manifest_version: int = MANIFEST_VERSION
    run_id: str
    status: str = "pending"
    gate_passed: bool | None = None
    orchestrator: OrchestratorIdentity
    nodes: dict[str, NodeEntry] = {}
    files: dict[str, list[FileEntry]] = {}
    hash_algorithm: str = "sha256"
    bus: BusCoordinates
    bundle: BundleIdentity
    created_at: str
    gate: GateSummary | None = None

    def finalize(self, verdict: GateVerdict, status: RunStatus) -> "Manifest":
        """Return a copy carrying the gate verdict and terminal status."""
        return self.model_copy(
            update={
                "status": status.value,
                "gate_passed": verdict.passed,
                "gate": GateSummary(
                    passed=verdict.passed,
                    justification=verdict.justification,
                    checks=verdict.checks,
                ),
            }
        )

    def to_json(self) -> str:
        return self.model_dump_json(indent=2) + "\n"
