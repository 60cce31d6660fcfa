"""Run-related data models for the orchestration engine.

Defines the static run definition (nodes, bus target, gate predicates), the
immutable :class:`RunContext` built once at kickoff, and the per-node and
per-run outcome records produced while the run executes.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_JOB_PATTERN = "run|publish_success|publish_failed|publish"
DEFAULT_METADATA_FILE = "meta.json"

_SLOT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_run_id(value: str) -> str:
    # The run id names the run directory and the package version.
    if not _SLOT_RE.match(value):
        raise ValueError(f"Invalid run id {value!r}: use letters, digits, '.', '_' or '-'")
    return value


def new_run_id() -> str:
    """Return a sortable, unique run id such as ``20261017T120501Z-3f9a1c0d``."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


class RunStatus(str, Enum):
    """Terminal states of a run."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    QUARANTINED = "quarantined"
    ABORTED = "aborted"


class NodeStatus(str, Enum):
    """Node states.  The first group mirrors the pipeline host's terminal
    statuses; the rest are set by the orchestrator itself."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    MANUAL = "manual"

    PENDING = "pending"
    NOT_STARTED = "not_started"
    TIMED_OUT = "timed_out"
    GATHER_FAILED = "gather_failed"


TERMINAL_HOST_STATUSES = frozenset(
    {
        NodeStatus.SUCCESS.value,
        NodeStatus.FAILED.value,
        NodeStatus.CANCELED.value,
        NodeStatus.SKIPPED.value,
        NodeStatus.MANUAL.value,
    }
)


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------


class NodeSpec(BaseModel):
    """One DAG vertex: an independently versioned unit of work.

    Attributes:
        name: Unique node name within the run.
        ref: Pinned version reference (branch, tag or commit) to execute.
        depends_on: Names of nodes that must complete first.
        trigger: Name of the trigger bridge in the orchestrator's pipeline.
        project_id: When set, the node is started directly on this project
            instead of being resolved from a trigger bridge.
        variables: Extra input variables for a directly started node.
        slot: Namespaced slot name in the canonical tree.
        job_pattern: Regex selecting the job whose artifacts are harvested.
        artifact_root: Directory inside the artifact archive holding the
            node's output contract.
        metadata_file: Mandatory self-describing metadata file.
        required_files: Further outputs the node declares.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    ref: str = "main"
    depends_on: tuple[str, ...] = ()
    trigger: str = ""
    project_id: str | None = None
    variables: dict[str, str] = {}
    slot: str = ""
    job_pattern: str = DEFAULT_JOB_PATTERN
    artifact_root: str = "."
    metadata_file: str = DEFAULT_METADATA_FILE
    required_files: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("name"):
            data = dict(data)
            if not data.get("trigger"):
                data["trigger"] = f"trigger_{data['name']}"
            if not data.get("slot"):
                data["slot"] = data["name"]
        return data

    @field_validator("slot")
    @classmethod
    def _check_slot(cls, value: str) -> str:
        if not _SLOT_RE.match(value):
            raise ValueError(f"Invalid slot name: {value!r}")
        return value

    @field_validator("job_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        re.compile(value)
        return value


class BusTarget(BaseModel):
    """Coordinates of the durable store receiving the run's bundle."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    package: str
    quarantine_package: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fill_quarantine(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("package") and not data.get("quarantine_package"):
            data = dict(data)
            data["quarantine_package"] = f"{data['package']}-quarantine"
        return data

    @model_validator(mode="after")
    def _check_distinct(self) -> "BusTarget":
        if self.quarantine_package == self.package:
            raise ValueError("quarantine_package must differ from package")
        return self


class NodesSucceeded(BaseModel):
    """Every listed node (all nodes when empty) finished with ``success``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["nodes_succeeded"] = "nodes_succeeded"
    nodes: tuple[str, ...] = ()


class FileContains(BaseModel):
    """A file inside a slot contains *token*."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["file_contains"] = "file_contains"
    slot: str
    path: str
    token: str


class JsonField(BaseModel):
    """A dotted key of a JSON file inside a slot compares true against *value*."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["json_field"] = "json_field"
    slot: str
    path: str = DEFAULT_METADATA_FILE
    key: str
    op: Literal["eq", "ne", "gt", "ge", "lt", "le"] = "eq"
    value: Any = None


GatePredicate = Annotated[
    Union[NodesSucceeded, FileContains, JsonField],
    Field(discriminator="kind"),
]


class RunDefinition(BaseModel):
    """Static description of one DAG run, usually loaded from JSON."""

    nodes: list[NodeSpec]
    bus: BusTarget
    gate: list[GatePredicate] = Field(default_factory=lambda: [NodesSucceeded()])
    run_id: str = ""

    @field_validator("run_id")
    @classmethod
    def _valid_run_id(cls, value: str) -> str:
        if value:
            _check_run_id(value)
        return value

    @model_validator(mode="after")
    def _check_nodes(self) -> "RunDefinition":
        names = [n.name for n in self.nodes]
        if len(names) != len(set(names)):
            raise ValueError("Node names must be unique")
        slots = [n.slot for n in self.nodes]
        if len(slots) != len(set(slots)):
            raise ValueError("Slot names must be unique")
        return self


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


class OrchestratorIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str = ""
    pipeline_id: str = ""
    url: str = ""


class RunContext(BaseModel):
    """Immutable run configuration passed by reference to every component."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    bus: BusTarget
    nodes: tuple[NodeSpec, ...]
    gate: tuple[GatePredicate, ...] = ()
    orchestrator: OrchestratorIdentity = OrchestratorIdentity()
    api_url: str
    work_dir: str
    hash_algorithm: str = "sha256"
    bundle_prefix: str = "bundle"
    poll_interval: float = 10.0
    node_timeout: float = 3600.0

    @field_validator("run_id")
    @classmethod
    def _valid_run_id(cls, value: str) -> str:
        return _check_run_id(value)

    @classmethod
    def from_definition(cls, definition: RunDefinition, settings) -> "RunContext":
        return cls(
            run_id=definition.run_id or settings.run_id or new_run_id(),
            bus=definition.bus,
            nodes=tuple(definition.nodes),
            gate=tuple(definition.gate),
            orchestrator=OrchestratorIdentity(
                project_id=settings.project_id,
                pipeline_id=settings.pipeline_id,
                url=settings.pipeline_url,
            ),
            api_url=settings.api_url.rstrip("/"),
            work_dir=settings.work_dir,
            hash_algorithm=settings.hash_algorithm,
            bundle_prefix=settings.bundle_prefix,
            poll_interval=settings.poll_interval,
            node_timeout=settings.node_timeout,
        )

    def get_node(self, name: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    @property
    def run_dir(self) -> Path:
        return Path(self.work_dir) / self.run_id

    @property
    def tree_dir(self) -> Path:
        return self.run_dir / "tree"

    @property
    def scratch_dir(self) -> Path:
        return self.run_dir / "scratch"

    @property
    def bundle_name(self) -> str:
        return f"{self.bundle_prefix}-{self.run_id}.zip"

    @property
    def bundle_path(self) -> Path:
        return self.run_dir / self.bundle_name


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class NodeOutcome(BaseModel):
    """What happened to one node during the run.

    Attributes:
        name: Node name.
        ref: Version reference the node ran at.
        slot: Namespaced slot its artifacts were written to.
        status: Host status or orchestrator status (see :class:`NodeStatus`).
        downstream_project_id: Project that ran the node.
        downstream_pipeline_id: Pipeline id the node ran as.
        job_id: Job whose artifacts were gathered.
        error: Failure description, empty on success.
    """

    name: str
    ref: str
    slot: str
    status: str = NodeStatus.PENDING.value
    downstream_project_id: str | None = None
    downstream_pipeline_id: str | None = None
    job_id: int | None = None
    gathered: bool = False
    error: str = ""


class GateCheck(BaseModel):
    """Result of a single gate predicate."""

    name: str
    passed: bool
    detail: str = ""


class GateVerdict(BaseModel):
    """Accept/reject decision plus the justification that produced it."""

    passed: bool
    checks: list[GateCheck] = []
    justification: str = ""
