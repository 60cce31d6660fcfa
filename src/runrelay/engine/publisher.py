"""Publisher -- the single writer to the durable store.

Exactly one of two destinations receives the run, chosen only by the gate verdict:

* accepted -> the primary package, version ``run_id``
* rejected -> the quarantine package, version ``run_id``

The bundle upload is the commit point: once it succeeded the run counts as
published.  The finalized ``manifest.json`` follows next to it; failing to
upload it only logs a warning, since the sealed copy inside the bundle
remains the permanent index.
"""

from __future__ import annotations

from pathlib import Path

import aiofiles  # type: ignore[import-untyped]
from pydantic import BaseModel

from runrelay.core.host.bus import BusWriter
from runrelay.core.run.manifest import MANIFEST_NAME, Manifest
from runrelay.core.run.models import GateVerdict, RunContext, RunStatus
from runrelay.engine.bundler import Bundle
from runrelay.utils.exceptions import PublishError, TransportError
from runrelay.utils.logging import get_logger

logger = get_logger("engine.publisher")


class Publication(BaseModel):
    """Where a run's bundle ended up."""

    status: RunStatus
    package: str
    version: str
    bundle_url: str
    manifest_url: str = ""
    manifest: Manifest


class Publisher:
    def __init__(self, writer: BusWriter, context: RunContext) -> None:
        self._writer = writer
        self.context = context
        self._published = False

    async def publish(self, bundle: Bundle, verdict: GateVerdict) -> Publication:
        """Upload *bundle* to the destination selected by *verdict*.

        Raises :class:`PublishError` when the upload fails after retries;
        a run is never reported complete without its bundle in the store.
        """
        if self._published:
            raise PublishError(self.context.bus.package, self.context.run_id, "run already published")
        self._published = True

        bus = self.context.bus
        if verdict.passed and not bundle.diagnostic:
            status, package = RunStatus.ACCEPTED, bus.package
        else:
            status, package = RunStatus.QUARANTINED, bus.quarantine_package
        version = self.context.run_id

        async with aiofiles.open(Path(bundle.path), "rb") as fh:
            data = await fh.read()
        manifest = bundle.manifest.finalize(verdict, status)

        logger.info("publish_start", status=status.value, package=package, version=version)
        try:
            bundle_url = await self._writer.upload_to_store(
                bus.project_id, package, version, bundle.name, data
            )
        except TransportError as exc:
            logger.error("publish_failed", package=package, version=version, error=str(exc))
            raise PublishError(package, version, str(exc)) from exc

        # The bundle is now in the store; the sidecar cannot undo that.
        manifest_url = ""
        try:
            manifest_url = await self._writer.upload_to_store(
                bus.project_id, package, version, MANIFEST_NAME, manifest.to_json().encode("utf-8")
            )
        except TransportError as exc:
            logger.warning("manifest_upload_failed", package=package, version=version, error=str(exc))

        logger.info("publish_complete", status=status.value, package=package, version=version)
        return Publication(
            status=status,
            package=package,
            version=version,
            bundle_url=bundle_url,
            manifest_url=manifest_url,
            manifest=manifest,
        )
