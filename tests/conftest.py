import io
import json
import re
import zipfile
from urllib.parse import parse_qs

import httpx
import pytest

from runrelay.config import Settings
from runrelay.core.run.models import (
    BusTarget,
    FileContains,
    JsonField,
    NodeSpec,
    NodesSucceeded,
    RunContext,
    RunDefinition,
)

API_URL = "http://gitlab.test/api/v4"
ORCH_PROJECT = "100"
ORCH_PIPELINE = "5000"
BUS_PROJECT = "777"


def build_zip(files: dict) -> bytes:
    """Zip a ``{path: str | bytes | dict}`` mapping; dicts are written as JSON."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for path, content in files.items():
            if isinstance(content, dict):
                content = json.dumps(content)
            if isinstance(content, str):
                content = content.encode("utf-8")
            zf.writestr(path, content)
    return buffer.getvalue()


class FakeGitLab:
    """In-memory stand-in for the GitLab API v4 endpoints the engine uses."""

    def __init__(self):
        self.bridges: list[dict] = []
        self.pipelines: dict[str, str] = {}
        self.jobs: dict[str, list[dict]] = {}
        self.artifacts: dict[int, bytes] = {}
        self.uploads: list[dict] = []
        self.triggered: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.put_failures = 0
        self.failing_files: set[str] = set()
        self._next_pipeline = 9500

    # ----- setup ------------------------------------------------------------

    def add_node(self, trigger, project_id, pipeline_id, files=None, status="success", job_name="run"):
        self.bridges.append(
            {
                "name": trigger,
                "downstream_pipeline": {"id": int(pipeline_id), "project_id": int(project_id)},
            }
        )
        self.add_pipeline(pipeline_id, files, status=status, job_name=job_name)

    def add_pipeline(self, pipeline_id, files=None, status="success", job_name="run"):
        self.pipelines[str(pipeline_id)] = status
        job_id = int(pipeline_id) * 10
        self.jobs[str(pipeline_id)] = [
            {"id": job_id - 5, "name": "prepare", "status": "success", "artifacts_file": None},
            {
                "id": job_id,
                "name": job_name,
                "status": status,
                "artifacts_file": {"filename": "artifacts.zip"} if files is not None else None,
            },
        ]
        if files is not None:
            self.artifacts[job_id] = build_zip(files)

    # ----- queries ----------------------------------------------------------

    def uploads_to(self, package):
        return [u for u in self.uploads if u["package"] == package]

    # ----- transport --------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        prefix = "/api/v4/projects/"
        if not path.startswith(prefix):
            return httpx.Response(404)
        rest = path[len(prefix):]

        if request.method == "GET":
            if m := re.fullmatch(r"([^/]+)/pipelines/(\d+)/bridges", rest):
                if m.group(2) != ORCH_PIPELINE:
                    return httpx.Response(200, json=[])
                return httpx.Response(200, json=self.bridges)
            if m := re.fullmatch(r"([^/]+)/pipelines/(\d+)/jobs", rest):
                return httpx.Response(200, json=self.jobs.get(m.group(2), []))
            if m := re.fullmatch(r"([^/]+)/pipelines/(\d+)", rest):
                status = self.pipelines.get(m.group(2))
                if status is None:
                    return httpx.Response(404)
                return httpx.Response(200, json={"id": int(m.group(2)), "status": status})
            if m := re.fullmatch(r"([^/]+)/jobs/(\d+)/artifacts", rest):
                data = self.artifacts.get(int(m.group(2)))
                if data is None:
                    return httpx.Response(404)
                return httpx.Response(200, content=data)

        if request.method == "PUT":
            if m := re.fullmatch(r"([^/]+)/packages/generic/([^/]+)/([^/]+)/([^/]+)", rest):
                if m.group(4) in self.failing_files:
                    return httpx.Response(503)
                if self.put_failures > 0:
                    self.put_failures -= 1
                    return httpx.Response(503)
                self.uploads.append(
                    {
                        "project": m.group(1),
                        "package": m.group(2),
                        "version": m.group(3),
                        "file": m.group(4),
                        "body": request.read(),
                        "headers": dict(request.headers),
                    }
                )
                return httpx.Response(201, json={"message": "201 Created"})

        if request.method == "POST":
            if m := re.fullmatch(r"([^/]+)/trigger/pipeline", rest):
                form = {k: v[0] for k, v in parse_qs(request.read().decode()).items()}
                self._next_pipeline += 1
                pipeline_id = self._next_pipeline
                self.triggered.append({"project": m.group(1), "pipeline_id": pipeline_id, **form})
                return httpx.Response(
                    201,
                    json={"id": pipeline_id, "project_id": int(m.group(1)), "status": "created"},
                )

        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


BUILDER_FILES = {
    "meta.json": {"name": "builder", "exit_code": 0, "version": "1.2.0"},
    "build.log": "compiled 42 modules\n",
    "dist/app.tar": b"\x00\x01binary",
}
METRICS_FILES = {
    "meta.json": {"name": "metrics", "exit_code": 0},
    "metrics.json": {"accuracy": 0.93, "latency_ms": 120},
}
SANDBOX_FILES = {
    "meta.json": {"name": "sandbox", "exit_code": 0},
    "stdout.txt": "hello from the sandbox\n",
}


@pytest.fixture
def build_archive():
    return build_zip


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_url=API_URL,
        project_id=ORCH_PROJECT,
        pipeline_id=ORCH_PIPELINE,
        pipeline_url="http://gitlab.test/group/orchestrator/-/pipelines/5000",
        job_token="job-token",
        bus_token="bus-token",
        max_retries=3,
        retry_delay=0,
        poll_interval=0,
        node_timeout=5,
        work_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def fake_gitlab():
    return FakeGitLab()


@pytest.fixture
def three_node_gitlab(fake_gitlab):
    fake_gitlab.add_node("trigger_builder", 201, 9001, BUILDER_FILES)
    fake_gitlab.add_node("trigger_metrics", 202, 9002, METRICS_FILES, job_name="publish_success")
    fake_gitlab.add_node("trigger_sandbox", 203, 9003, SANDBOX_FILES)
    return fake_gitlab


@pytest.fixture
def definition():
    return RunDefinition(
        run_id="20261017T120000Z-deadbeef",
        nodes=[
            NodeSpec(name="builder", ref="v1.2.0"),
            NodeSpec(name="metrics", ref="main", depends_on=["builder"], required_files=["metrics.json"]),
            NodeSpec(name="sandbox", ref="main", depends_on=["builder"], required_files=["stdout.txt"]),
        ],
        bus=BusTarget(project_id=BUS_PROJECT, package="runs"),
        gate=[
            NodesSucceeded(),
            JsonField(slot="sandbox", key="exit_code", value=0),
            FileContains(slot="sandbox", path="stdout.txt", token="hello"),
        ],
    )


@pytest.fixture
def context(definition, settings):
    return RunContext.from_definition(definition, settings)
