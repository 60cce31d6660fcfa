"""End-to-end runs against an in-memory GitLab."""
import io
import json
import zipfile

import pytest
from structlog.testing import capture_logs

from runrelay.core.run.models import NodeSpec, RunContext, RunStatus
from runrelay.dependencies import open_orchestrator
from runrelay.engine.bundler import verify_bundle
from runrelay.utils.exceptions import RunAbortedError
from tests.conftest import BUILDER_FILES, BUS_PROJECT, SANDBOX_FILES


async def _run(settings, fake, context):
    async with open_orchestrator(settings, transport=fake.transport()) as orchestrator:
        return await orchestrator.run(context)


def _members(upload):
    with zipfile.ZipFile(io.BytesIO(upload["body"])) as zf:
        return sorted(zf.namelist())


class TestAcceptedRun:
    @pytest.mark.asyncio
    async def test_publishes_to_primary_package(self, settings, three_node_gitlab, context):
        result = await _run(settings, three_node_gitlab, context)

        assert result.status == RunStatus.ACCEPTED
        assert result.verdict.passed is True
        assert {n: o.status for n, o in result.nodes.items()} == {
            "builder": "success",
            "metrics": "success",
            "sandbox": "success",
        }

        uploads = three_node_gitlab.uploads_to("runs")
        assert [u["file"] for u in uploads] == [context.bundle_name, "manifest.json"]
        assert {u["version"] for u in uploads} == {context.run_id}
        assert {u["project"] for u in uploads} == {BUS_PROJECT}
        assert three_node_gitlab.uploads_to("runs-quarantine") == []

        assert _members(uploads[0]) == [
            "builder/build.log",
            "builder/dist/app.tar",
            "builder/meta.json",
            "manifest.json",
            "metrics/meta.json",
            "metrics/metrics.json",
            "sandbox/meta.json",
            "sandbox/stdout.txt",
        ]
        sidecar = json.loads(uploads[1]["body"])
        assert sidecar["status"] == "accepted"
        assert sidecar["gate_passed"] is True
        assert sidecar["nodes"]["builder"]["ref"] == "v1.2.0"
        assert sidecar["nodes"]["metrics"]["job_id"] == 90020

    @pytest.mark.asyncio
    async def test_bundle_is_intact(self, settings, three_node_gitlab, context):
        result = await _run(settings, three_node_gitlab, context)
        assert verify_bundle(result.bundle.path) == []

    @pytest.mark.asyncio
    async def test_credentials_are_kept_apart(self, settings, three_node_gitlab, context):
        await _run(settings, three_node_gitlab, context)

        for upload in three_node_gitlab.uploads:
            assert upload["headers"]["job-token"] == "bus-token"
        reads = [r for r in three_node_gitlab.requests if r.method == "GET"]
        assert reads
        assert all(r.headers["job-token"] == "job-token" for r in reads)

    @pytest.mark.asyncio
    async def test_scratch_is_cleaned(self, settings, three_node_gitlab, context):
        await _run(settings, three_node_gitlab, context)
        assert not context.scratch_dir.exists()

    @pytest.mark.asyncio
    async def test_logs_follow_run_phases(self, settings, three_node_gitlab, context):
        with capture_logs() as logs:
            await _run(settings, three_node_gitlab, context)
        events = [e["event"] for e in logs]
        assert events.index("run_start") < events.index("bundle_created") < events.index("gate_evaluated")
        assert "run_complete" in events


class TestQuarantinedRun:
    @pytest.mark.asyncio
    async def test_gate_rejection(self, settings, fake_gitlab, context):
        fake_gitlab.add_node("trigger_builder", 201, 9001, BUILDER_FILES)
        fake_gitlab.add_node(
            "trigger_metrics", 202, 9002, {"meta.json": {}, "metrics.json": {}}, job_name="publish_success"
        )
        fake_gitlab.add_node(
            "trigger_sandbox", 203, 9003, {"meta.json": {"exit_code": 0}, "stdout.txt": "segfault\n"}
        )

        result = await _run(settings, fake_gitlab, context)

        assert result.status == RunStatus.QUARANTINED
        assert "file_contains:sandbox/stdout.txt" in result.verdict.justification
        assert fake_gitlab.uploads_to("runs") == []
        quarantined = fake_gitlab.uploads_to("runs-quarantine")
        assert [u["file"] for u in quarantined] == [context.bundle_name, "manifest.json"]
        assert quarantined[0]["version"] == context.run_id

    @pytest.mark.asyncio
    async def test_failed_node_is_still_gathered(self, settings, fake_gitlab, context):
        fake_gitlab.add_node("trigger_builder", 201, 9001, BUILDER_FILES)
        fake_gitlab.add_node(
            "trigger_metrics", 202, 9002, {"meta.json": {}, "metrics.json": {}}, job_name="publish_failed"
        )
        fake_gitlab.add_node("trigger_sandbox", 203, 9003, SANDBOX_FILES, status="failed")

        result = await _run(settings, fake_gitlab, context)

        assert result.nodes["sandbox"].status == "failed"
        assert result.nodes["sandbox"].gathered is True
        assert result.status == RunStatus.QUARANTINED
        assert "sandbox=failed" in result.verdict.justification
        assert "sandbox/stdout.txt" in _members(fake_gitlab.uploads_to("runs-quarantine")[0])

    @pytest.mark.asyncio
    async def test_gather_failure_produces_diagnostic_bundle(self, settings, fake_gitlab, context):
        fake_gitlab.add_node("trigger_builder", 201, 9001, BUILDER_FILES)
        fake_gitlab.add_node("trigger_metrics", 202, 9002, files=None)
        fake_gitlab.add_node("trigger_sandbox", 203, 9003, SANDBOX_FILES)

        result = await _run(settings, fake_gitlab, context)

        assert result.status == RunStatus.QUARANTINED
        assert result.bundle.diagnostic is True
        assert result.nodes["metrics"].status == "gather_failed"
        assert "No artifacts job matched" in result.nodes["metrics"].error
        assert result.nodes["sandbox"].gathered is True
        assert result.verdict.justification == "artifacts not gathered for: metrics"

        members = _members(fake_gitlab.uploads_to("runs-quarantine")[0])
        assert "sandbox/stdout.txt" in members
        assert not any(m.startswith("metrics/") for m in members)
        assert fake_gitlab.uploads_to("runs") == []

    @pytest.mark.asyncio
    async def test_unresolvable_trigger(self, settings, fake_gitlab, context):
        fake_gitlab.add_node("trigger_builder", 201, 9001, BUILDER_FILES)
        fake_gitlab.add_node("trigger_sandbox", 203, 9003, SANDBOX_FILES)

        result = await _run(settings, fake_gitlab, context)

        assert result.nodes["metrics"].status == "gather_failed"
        assert "trigger_metrics" in result.nodes["metrics"].error
        assert result.status == RunStatus.QUARANTINED

    @pytest.mark.asyncio
    async def test_node_timeout(self, settings, three_node_gitlab, context):
        three_node_gitlab.pipelines["9003"] = "running"
        context = context.model_copy(update={"node_timeout": 0.2, "poll_interval": 0.02})

        result = await _run(settings, three_node_gitlab, context)

        assert result.nodes["sandbox"].status == "timed_out"
        assert result.nodes["metrics"].gathered is True
        assert result.status == RunStatus.QUARANTINED


class TestStartedNodes:
    @pytest.mark.asyncio
    async def test_start_unit_then_gather(self, settings, fake_gitlab, definition):
        fake_gitlab.add_pipeline(9501, BUILDER_FILES)
        nodes = [
            NodeSpec(name="builder", ref="v1.2.0", project_id="201", variables={"TARGET": "linux"}),
        ]
        definition = definition.model_copy(update={"nodes": nodes, "gate": definition.gate[:1]})
        context = RunContext.from_definition(definition, settings)

        result = await _run(settings, fake_gitlab, context)

        assert fake_gitlab.triggered == [
            {
                "project": "201",
                "pipeline_id": 9501,
                "token": "job-token",
                "ref": "v1.2.0",
                "variables[TARGET]": "linux",
            }
        ]
        assert result.nodes["builder"].downstream_pipeline_id == "9501"
        assert result.status == RunStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_not_started_after_failed_dependency(self, settings, fake_gitlab, definition):
        fake_gitlab.add_node("trigger_builder", 201, 9001, files=None)
        nodes = [
            NodeSpec(name="builder"),
            NodeSpec(name="deploy", project_id="301", depends_on=["builder"]),
        ]
        definition = definition.model_copy(update={"nodes": nodes, "gate": definition.gate[:1]})
        context = RunContext.from_definition(definition, settings)

        result = await _run(settings, fake_gitlab, context)

        assert result.nodes["deploy"].status == "not_started"
        assert fake_gitlab.triggered == []
        assert result.status == RunStatus.QUARANTINED


class TestAbortedRun:
    @pytest.mark.asyncio
    async def test_cycle_publishes_nothing(self, settings, three_node_gitlab, definition):
        nodes = [
            NodeSpec(name="builder", depends_on=["sandbox"]),
            NodeSpec(name="sandbox", depends_on=["builder"]),
        ]
        definition = definition.model_copy(update={"nodes": nodes})
        context = RunContext.from_definition(definition, settings)

        with pytest.raises(RunAbortedError, match="Cyclic dependency") as exc_info:
            await _run(settings, three_node_gitlab, context)

        assert exc_info.value.result.status == RunStatus.ABORTED
        assert three_node_gitlab.requests == []

    @pytest.mark.asyncio
    async def test_publish_exhaustion_aborts(self, settings, three_node_gitlab, context):
        three_node_gitlab.put_failures = settings.max_retries

        with pytest.raises(RunAbortedError) as exc_info:
            await _run(settings, three_node_gitlab, context)

        result = exc_info.value.result
        assert result.status == RunStatus.ABORTED
        assert result.publication is None
        assert "failed after 3 attempts" in result.error
        assert three_node_gitlab.uploads == []

    @pytest.mark.asyncio
    async def test_upload_recovers_within_retry_budget(self, settings, three_node_gitlab, context):
        settings = settings.model_copy(update={"max_retries": 5})
        three_node_gitlab.put_failures = 4

        with capture_logs() as logs:
            result = await _run(settings, three_node_gitlab, context)

        assert result.status == RunStatus.ACCEPTED
        retries = [e for e in logs if e["event"] == "http_retry" and e["method"] == "PUT"]
        assert [e["attempt"] for e in retries] == [1, 2, 3, 4]
        assert len(three_node_gitlab.uploads_to("runs")) == 2


class TestPublicationCommit:
    @pytest.mark.asyncio
    async def test_sidecar_failure_keeps_run_published(self, settings, three_node_gitlab, context):
        three_node_gitlab.failing_files = {"manifest.json"}

        with capture_logs() as logs:
            result = await _run(settings, three_node_gitlab, context)

        assert result.status == RunStatus.ACCEPTED
        assert result.publication.manifest_url == ""
        assert [(u["package"], u["file"]) for u in three_node_gitlab.uploads] == [
            ("runs", context.bundle_name)
        ]
        assert "manifest_upload_failed" in [e["event"] for e in logs]

    @pytest.mark.asyncio
    async def test_aborted_run_leaves_store_empty(self, settings, three_node_gitlab, context):
        three_node_gitlab.failing_files = {context.bundle_name}

        with pytest.raises(RunAbortedError):
            await _run(settings, three_node_gitlab, context)

        assert three_node_gitlab.uploads == []


@pytest.mark.asyncio
async def test_warns_when_bus_token_falls_back(settings, three_node_gitlab, context):
    settings = settings.model_copy(update={"bus_token": ""})

    with capture_logs() as logs:
        await _run(settings, three_node_gitlab, context)

    assert [e["log_level"] for e in logs if e["event"] == "bus_token_fallback"] == ["warning"]
    assert {u["headers"]["job-token"] for u in three_node_gitlab.uploads} == {"job-token"}
