"""Tests for the bundler, the manifest and bundle verification."""
import hashlib
import json
import threading
import zipfile

import pytest

from runrelay.core.run.manifest import MANIFEST_NAME
from runrelay.core.run.models import NodeOutcome
from runrelay.engine.bundler import Bundler, verify_bundle


def _fill_tree(context):
    files = {
        "builder/meta.json": b'{"exit_code": 0}',
        "builder/dist/app.tar": b"\x00\x01\x02",
        "sandbox/meta.json": b'{"exit_code": 0}',
        "sandbox/stdout.txt": b"hello\n",
    }
    for rel, content in files.items():
        path = context.tree_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return files


def _outcomes(status="success"):
    return [
        NodeOutcome(name="builder", ref="v1.2.0", slot="builder", status=status, gathered=True, job_id=1),
        NodeOutcome(name="sandbox", ref="main", slot="sandbox", status=status, gathered=True, job_id=2),
    ]


class TestBundler:
    @pytest.mark.asyncio
    async def test_manifest_contents(self, context):
        files = _fill_tree(context)

        bundle = await Bundler(context).bundle(_outcomes())
        manifest = bundle.manifest

        assert manifest.run_id == context.run_id
        assert manifest.status == "pending"
        assert manifest.gate_passed is None
        assert manifest.orchestrator.pipeline_id == "5000"
        assert manifest.nodes["builder"].ref == "v1.2.0"
        assert manifest.nodes["sandbox"].status == "success"
        assert manifest.bus.version == context.run_id
        assert manifest.bus.package == "runs"
        assert manifest.bundle.name == f"bundle-{context.run_id}.zip"
        assert manifest.hash_algorithm == "sha256"
        assert [e.file for e in manifest.files["builder"]] == ["dist/app.tar", "meta.json"]
        stdout = next(e for e in manifest.files["sandbox"] if e.file == "stdout.txt")
        assert stdout.hash == hashlib.sha256(files["sandbox/stdout.txt"]).hexdigest()

        on_disk = json.loads((context.tree_dir / MANIFEST_NAME).read_text())
        assert on_disk["run_id"] == context.run_id

    @pytest.mark.asyncio
    async def test_archive_holds_whole_tree(self, context):
        _fill_tree(context)
        bundle = await Bundler(context).bundle(_outcomes())

        with zipfile.ZipFile(bundle.path) as zf:
            names = sorted(zf.namelist())
        assert names == [
            "builder/dist/app.tar",
            "builder/meta.json",
            MANIFEST_NAME,
            "sandbox/meta.json",
            "sandbox/stdout.txt",
        ]
        assert bundle.path.endswith(context.bundle_name)

    @pytest.mark.asyncio
    async def test_round_trip_integrity(self, context):
        _fill_tree(context)
        bundle = await Bundler(context).bundle(_outcomes())
        assert verify_bundle(bundle.path) == []

    @pytest.mark.asyncio
    async def test_tampering_detected(self, context, tmp_path):
        _fill_tree(context)
        bundle = await Bundler(context).bundle(_outcomes())

        tampered = tmp_path / "tampered.zip"
        with zipfile.ZipFile(bundle.path) as src, zipfile.ZipFile(tampered, "w") as dst:
            for name in src.namelist():
                data = src.read(name)
                if name == "sandbox/stdout.txt":
                    data = b"goodbye\n"
                dst.writestr(name, data)
            dst.writestr("sandbox/extra.txt", b"smuggled")

        problems = verify_bundle(tampered)
        assert "hash mismatch: sandbox/stdout.txt" in problems
        assert "not in manifest: sandbox/extra.txt" in problems

    @pytest.mark.asyncio
    async def test_configurable_hash_algorithm(self, context):
        context = context.model_copy(update={"hash_algorithm": "sha512"})
        _fill_tree(context)
        bundle = await Bundler(context).bundle(_outcomes())
        assert bundle.manifest.hash_algorithm == "sha512"
        assert len(bundle.manifest.files["builder"][0].hash) == 128
        assert verify_bundle(bundle.path) == []

    @pytest.mark.asyncio
    async def test_diagnostic_bundle(self, context):
        _fill_tree(context)
        outcomes = _outcomes()
        outcomes.append(NodeOutcome(name="metrics", ref="main", slot="metrics", status="gather_failed", error="boom"))

        bundle = await Bundler(context).bundle(outcomes, diagnostic=True)

        assert bundle.diagnostic is True
        assert bundle.manifest.status == "failed"
        assert bundle.manifest.gate_passed is False
        assert bundle.manifest.nodes["metrics"].error == "boom"
        assert "metrics" not in bundle.manifest.files

    @pytest.mark.asyncio
    async def test_manifest_written_once(self, context):
        _fill_tree(context)
        bundler = Bundler(context)
        await bundler.bundle(_outcomes())
        with pytest.raises(FileExistsError):
            await bundler.bundle(_outcomes())

    @pytest.mark.asyncio
    async def test_empty_tree(self, context):
        bundle = await Bundler(context).bundle([], diagnostic=True)
        assert bundle.manifest.files == {}
        assert verify_bundle(bundle.path) == []


@pytest.mark.asyncio
async def test_archiving_runs_in_worker_thread(context, monkeypatch):
    _fill_tree(context)
    threads = []
    original = Bundler._archive

    def recording(tree):
        threads.append(threading.current_thread())
        return original(tree)

    monkeypatch.setattr(Bundler, "_archive", staticmethod(recording))
    await Bundler(context).bundle(_outcomes())

    assert threads and threads[0] is not threading.main_thread()
