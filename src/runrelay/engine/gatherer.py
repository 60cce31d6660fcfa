"""Gatherer -- downloads one node's artifact set into a namespaced slot.

For exactly one upstream node the :class:`Gatherer`:

1. Locates the job whose artifacts should be harvested.
2. Downloads the artifact archive through the resilient client.
3. Expands it into a private scratch directory.
4. Checks the output contract: the metadata file exists and is a JSON
   object, every declared output exists.  Nothing deeper.
5. Claims the slot with an atomic ``mkdir`` and moves the validated files in.

A slot that already exists is never merged into or overwritten; the
gatherer fails with :class:`CollisionError` and leaves it untouched.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath

import aiofiles  # type: ignore[import-untyped]
from pydantic import BaseModel

from runrelay.core.host.gitlab import PipelineHost
from runrelay.core.run.models import NodeSpec, RunContext
from runrelay.engine.locator import ArtifactLocator
from runrelay.utils.exceptions import ArtifactValidationError, CollisionError
from runrelay.utils.file_utils import ensure_dir, is_within, iter_files
from runrelay.utils.logging import get_logger

logger = get_logger("engine.gatherer")


class Slot(BaseModel):
    """A namespaced slot written by a gatherer.

    Attributes:
        name: Slot directory name inside the canonical tree.
        node: Node the artifacts came from.
        path: Absolute path of the slot directory.
        file_count: Number of files moved into the slot.
        job_id: Job whose artifacts were gathered, if any.
    """

    name: str
    node: str
    path: str
    file_count: int
    job_id: int | None = None


class Gatherer:
    """Gather artifact sets into the canonical tree of one run.

    Parameters
    ----------
    host:
        Pipeline host adapter used to download artifacts.
    context:
        The run's :class:`RunContext`; decides where the tree and the
        scratch area live.
    locator:
        Optional :class:`ArtifactLocator`; built from *host* when omitted.
    """

    def __init__(
        self,
        host: PipelineHost,
        context: RunContext,
        locator: ArtifactLocator | None = None,
    ) -> None:
        self.host = host
        self.context = context
        self.locator = locator or ArtifactLocator(host)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def gather(self, node: NodeSpec, unit_id: str, run_id: str) -> Slot:
        """Locate, download and re-home the artifacts of *node*."""
        self._check_free(node.slot)
        job_id = await self.locator.locate(unit_id, run_id, node.job_pattern)
        data = await self.host.download_artifacts(unit_id, job_id)
        return await self.gather_archive(node, data, job_id=job_id)

    async def gather_archive(
        self,
        node: NodeSpec,
        data: bytes,
        job_id: int | None = None,
    ) -> Slot:
        """Validate an already downloaded archive and move it into the slot."""
        self._check_free(node.slot)
        scratch = Path(
            tempfile.mkdtemp(prefix=f"{node.slot}-", dir=ensure_dir(self.context.scratch_dir))
        )
        try:
            archive_path = scratch / "artifacts.zip"
            async with aiofiles.open(archive_path, "wb") as fh:
                await fh.write(data)

            # Blocking filesystem work runs in a worker thread.
            slot_dir, file_count = await asyncio.to_thread(
                self._rehome, node, archive_path, scratch / "extracted"
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        slot = Slot(
            name=node.slot,
            node=node.name,
            path=str(slot_dir.resolve()),
            file_count=file_count,
            job_id=job_id,
        )
        logger.info(
            "slot_written",
            node=node.name,
            slot=slot.name,
            files=slot.file_count,
            job_id=job_id,
        )
        return slot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rehome(self, node: NodeSpec, archive_path: Path, extracted: Path) -> tuple[Path, int]:
        self._extract(node, archive_path, extracted)

        root = extracted / node.artifact_root
        self._validate(node, extracted, root)

        slot_dir = self._claim(node.slot)
        for child in sorted(root.iterdir()):
            shutil.move(str(child), str(slot_dir / child.name))
        return slot_dir, len(iter_files(slot_dir))

    def _check_free(self, slot: str) -> None:
        if (self.context.tree_dir / slot).exists():
            logger.error("slot_collision", slot=slot)
            raise CollisionError(slot)

    def _claim(self, slot: str) -> Path:
        tree = ensure_dir(self.context.tree_dir)
        slot_dir = tree / slot
        try:
            slot_dir.mkdir()
        except FileExistsError as exc:
            logger.error("slot_collision", slot=slot)
            raise CollisionError(slot) from exc
        return slot_dir

    @staticmethod
    def _extract(node: NodeSpec, archive_path: Path, target: Path) -> None:
        target.mkdir(parents=True, exist_ok=True)
        try:
            with zipfile.ZipFile(archive_path) as zf:
                for member in zf.namelist():
                    member_path = PurePosixPath(member)
                    if member_path.is_absolute() or ".." in member_path.parts:
                        raise ArtifactValidationError(
                            node.name, [f"archive member escapes its root: {member}"]
                        )
                zf.extractall(target)
        except zipfile.BadZipFile as exc:
            raise ArtifactValidationError(node.name, [f"not a zip archive: {exc}"]) from exc

    @staticmethod
    def _validate(node: NodeSpec, extracted: Path, root: Path) -> None:
        if not is_within(extracted, root) or not root.is_dir():
            raise ArtifactValidationError(
                node.name, [f"artifact root '{node.artifact_root}' not found"]
            )

        problems: list[str] = []
        meta_path = root / node.metadata_file
        if not meta_path.is_file():
            problems.append(f"missing metadata file '{node.metadata_file}'")
        else:
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                problems.append(f"metadata file is not valid JSON: {exc}")
            else:
                if not isinstance(meta, dict):
                    problems.append("metadata file must hold a JSON object")

        for declared in node.required_files:
            candidate = root / declared
            if not is_within(root, candidate) or not candidate.exists():
                problems.append(f"missing declared output '{declared}'")

        if problems:
            logger.error("artifact_validation_failed", node=node.name, problems=problems)
            raise ArtifactValidationError(node.name, problems)
