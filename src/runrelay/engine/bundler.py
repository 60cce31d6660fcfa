"""Bundler -- hashes the canonical tree, writes the manifest, archives it.

The :class:`Bundler` runs once per run after every gatherer has finished.
It always runs to completion when its preconditions hold, before the gate
decides, so that rejected runs still leave a complete record.

Archives are deterministic: entries are sorted and carry a fixed timestamp,
so the same tree always yields byte-identical bundles.
"""

from __future__ import annotations

import asyncio
import io
import json
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import aiofiles  # type: ignore[import-untyped]
from pydantic import BaseModel

from runrelay.core.run.manifest import (
    MANIFEST_NAME,
    BundleIdentity,
    BusCoordinates,
    FileEntry,
    Manifest,
    NodeEntry,
)
from runrelay.core.run.models import NodeOutcome, RunContext
from runrelay.utils.file_utils import ensure_dir, hash_bytes, hash_file, iter_files
from runrelay.utils.logging import get_logger

logger = get_logger("engine.bundler")

_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class Bundle(BaseModel):
    """Descriptor of the archive produced for a run.

    Attributes:
        name: Archive filename, derived from the run id.
        path: Absolute path of the archive.
        size_bytes: Archive size.
        digest: Hash of the archive itself.
        diagnostic: ``True`` when built from a partial tree after a failure.
        manifest: The manifest sealed inside the archive.
    """

    name: str
    path: str
    size_bytes: int
    digest: str
    diagnostic: bool = False
    manifest: Manifest


class Bundler:
    def __init__(self, context: RunContext) -> None:
        self.context = context

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def hash_tree(self, tree_root: str | Path) -> dict[str, list[FileEntry]]:
        """Hash every file under every slot of *tree_root*."""
        tree_root = Path(tree_root)
        files: dict[str, list[FileEntry]] = {}
        if not tree_root.is_dir():
            return files
        for slot_dir in sorted(p for p in tree_root.iterdir() if p.is_dir()):
            files[slot_dir.name] = [
                FileEntry(
                    file=path.relative_to(slot_dir).as_posix(),
                    hash=hash_file(path, self.context.hash_algorithm),
                )
                for path in iter_files(slot_dir)
            ]
        return files

    async def bundle(
        self,
        outcomes: list[NodeOutcome],
        diagnostic: bool = False,
    ) -> Bundle:
        """Write the manifest into the tree and archive the whole tree.

        With *diagnostic* set the tree may be partial; the manifest is then
        marked ``failed`` and the bundle is meant for quarantine only.
        """
        ctx = self.context
        tree = ensure_dir(ctx.tree_dir)
        manifest_path = tree / MANIFEST_NAME
        if manifest_path.exists():
            raise FileExistsError(f"Manifest already written for run {ctx.run_id}")
        files = await asyncio.to_thread(self.hash_tree, tree)

        manifest = Manifest(
            run_id=ctx.run_id,
            status="failed" if diagnostic else "pending",
            gate_passed=False if diagnostic else None,
            orchestrator=ctx.orchestrator,
            nodes={
                o.name: NodeEntry(
                    ref=o.ref,
                    status=o.status,
                    slot=o.slot,
                    downstream_project_id=o.downstream_project_id,
                    downstream_pipeline_id=o.downstream_pipeline_id,
                    job_id=o.job_id,
                    error=o.error,
                )
                for o in outcomes
            },
            files=files,
            hash_algorithm=ctx.hash_algorithm,
            bus=BusCoordinates(
                project_id=ctx.bus.project_id,
                package=ctx.bus.package,
                quarantine_package=ctx.bus.quarantine_package,
                version=ctx.run_id,
            ),
            bundle=BundleIdentity(name=ctx.bundle_name, path=str(ctx.bundle_path.resolve())),
            created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )

        async with aiofiles.open(manifest_path, "w", encoding="utf-8") as fh:
            await fh.write(manifest.to_json())

        data = await asyncio.to_thread(self._archive, tree)
        ensure_dir(ctx.bundle_path.parent)
        async with aiofiles.open(ctx.bundle_path, "wb") as fh:
            await fh.write(data)

        bundle = Bundle(
            name=ctx.bundle_name,
            path=str(ctx.bundle_path.resolve()),
            size_bytes=len(data),
            digest=hash_bytes(data, ctx.hash_algorithm),
            diagnostic=diagnostic,
            manifest=manifest,
        )
        logger.info(
            "bundle_created",
            bundle=bundle.name,
            size_bytes=bundle.size_bytes,
            slots=len(manifest.files),
            files=sum(len(v) for v in manifest.files.values()),
            diagnostic=diagnostic,
        )
        return bundle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _archive(tree: Path) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in iter_files(tree):
                info = zipfile.ZipInfo(path.relative_to(tree).as_posix(), date_time=_ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                zf.writestr(info, path.read_bytes())
        return buffer.getvalue()


def verify_bundle(path: str | Path) -> list[str]:
    """Recompute every file hash inside a bundle and compare with its manifest.

    Returns a list of problems; an empty list means the bundle is intact.
    """
    problems: list[str] = []
    with zipfile.ZipFile(path) as zf:
        try:
            manifest = Manifest.model_validate(json.loads(zf.read(MANIFEST_NAME)))
        except KeyError:
            return [f"{MANIFEST_NAME} missing from bundle"]

        recorded: set[str] = set()
        for slot, entries in manifest.files.items():
            for entry in entries:
                member = f"{slot}/{entry.file}"
                recorded.add(member)
                try:
                    actual = hash_bytes(zf.read(member), manifest.hash_algorithm)
                except KeyError:
                    problems.append(f"missing from bundle: {member}")
                    continue
                if actual != entry.hash:
                    problems.append(f"hash mismatch: {member}")

        for member in zf.namelist():
            if member != MANIFEST_NAME and not member.endswith("/") and member not in recorded:
                problems.append(f"not in manifest: {member}")

    return problems
