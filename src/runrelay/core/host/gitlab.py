"""GitLab API v4 adapter for the pipeline host and artifact transport.

Only read operations plus pipeline triggering live here; the adapter never
talks to the package registry (see :mod:`runrelay.core.host.bus`).
"""

from __future__ import annotations

import asyncio
import time
from urllib.parse import quote

from runrelay.core.host.client import ResilientClient
from runrelay.core.host.models import JobInfo, TriggerRelationship, UnitHandle
from runrelay.core.run.models import TERMINAL_HOST_STATUSES
from runrelay.utils.exceptions import NodeTimeoutError, TransportError
from runrelay.utils.logging import get_logger

logger = get_logger("host.gitlab")

PER_PAGE = 100


def _id_or_none(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


class PipelineHost:
    """Pipeline host operations needed by the engine.

    Parameters
    ----------
    client:
        The :class:`ResilientClient` carrying the job token.
    api_url:
        Base API URL, e.g. ``https://gitlab.example.com/api/v4``.
    trigger_token:
        Token sent in the form body when starting downstream pipelines.
    """

    def __init__(
        self,
        client: ResilientClient,
        api_url: str,
        trigger_token: str = "",
    ) -> None:
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.trigger_token = trigger_token

    def _project_url(self, project_id: str | int) -> str:
        return f"{self.api_url}/projects/{quote(str(project_id), safe='')}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_trigger_relationships(
        self,
        project_id: str | int,
        pipeline_id: str | int,
    ) -> list[TriggerRelationship]:
        """List the trigger bridges of a pipeline, in the order the host returns them."""
        url = f"{self._project_url(project_id)}/pipelines/{pipeline_id}/bridges?per_page={PER_PAGE}"
        payload = await self.client.get_json(url)

        relationships: list[TriggerRelationship] = []
        for bridge in payload or []:
            downstream = bridge.get("downstream_pipeline") or {}
            relationships.append(
                TriggerRelationship(
                    name=bridge.get("name", ""),
                    downstream_unit_id=_id_or_none(downstream.get("project_id")),
                    downstream_run_id=_id_or_none(downstream.get("id")),
                )
            )
        return relationships

    async def list_jobs(self, project_id: str | int, pipeline_id: str | int) -> list[JobInfo]:
        url = f"{self._project_url(project_id)}/pipelines/{pipeline_id}/jobs?per_page={PER_PAGE}"
        payload = await self.client.get_json(url)
        return [
            JobInfo(
                job_id=job["id"],
                name=job.get("name", ""),
                status=job.get("status", ""),
                has_artifacts=job.get("artifacts_file") is not None,
            )
            for job in payload or []
        ]

    async def get_unit_status(self, project_id: str | int, pipeline_id: str | int) -> str:
        url = f"{self._project_url(project_id)}/pipelines/{pipeline_id}"
        payload = await self.client.get_json(url)
        return str(payload.get("status", ""))

    async def wait_for_completion(
        self,
        project_id: str | int,
        pipeline_id: str | int,
        poll_interval: float,
        timeout: float,
        node: str = "",
    ) -> str:
        """Block until the pipeline reaches a terminal status and return it.

        Raises :class:`NodeTimeoutError` when *timeout* seconds pass first.
        """
        deadline = time.monotonic() + timeout
        while True:
            status = await self.get_unit_status(project_id, pipeline_id)
            if status in TERMINAL_HOST_STATUSES:
                logger.info(
                    "unit_completed",
                    node=node,
                    project_id=str(project_id),
                    pipeline_id=str(pipeline_id),
                    status=status,
                )
                return status
            if time.monotonic() >= deadline:
                raise NodeTimeoutError(node or str(pipeline_id), timeout)
            logger.debug("unit_pending", node=node, pipeline_id=str(pipeline_id), status=status)
            await asyncio.sleep(poll_interval)

    async def download_artifacts(self, project_id: str | int, job_id: int) -> bytes:
        url = f"{self._project_url(project_id)}/jobs/{job_id}/artifacts"
        data = await self.client.get(url)
        logger.info(
            "artifacts_downloaded",
            project_id=str(project_id),
            job_id=job_id,
            size_bytes=len(data),
        )
        return data

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def start_unit(
        self,
        project_id: str | int,
        ref: str,
        variables: dict[str, str] | None = None,
    ) -> UnitHandle:
        """Start a pipeline of *project_id* at *ref* through the trigger API."""
        url = f"{self._project_url(project_id)}/trigger/pipeline"
        form = {"token": self.trigger_token, "ref": ref}
        for key, value in (variables or {}).items():
            form[f"variables[{key}]"] = value

        payload = await self.client.post(url, data=form)
        if not payload or payload.get("id") is None:
            raise TransportError("POST", url, 1, "trigger response carried no pipeline id")

        handle = UnitHandle(
            unit_id=str(payload.get("project_id") or project_id),
            run_id=str(payload["id"]),
            status=str(payload.get("status", "")),
            web_url=str(payload.get("web_url", "")),
        )
        logger.info("unit_started", project_id=handle.unit_id, pipeline_id=handle.run_id, ref=ref)
        return handle
