"""Artifact locator -- picks the job of a downstream pipeline to harvest."""

from __future__ import annotations

import re

from runrelay.core.host.gitlab import PipelineHost
from runrelay.core.host.models import JobInfo
from runrelay.utils.exceptions import NotFoundError
from runrelay.utils.logging import get_logger

logger = get_logger("engine.locator")


def select_job(jobs: list[JobInfo], job_name_pattern: str) -> int | None:
    """Return the highest job id among jobs with artifacts whose name matches.

    Job ids grow monotonically, so the maximum is the latest attempt.
    """
    regex = re.compile(job_name_pattern)
    candidates = [
        job.job_id
        for job in jobs
        if job.has_artifacts and regex.search(job.name)
    ]
    return max(candidates) if candidates else None


class ArtifactLocator:
    def __init__(self, host: PipelineHost) -> None:
        self.host = host

    async def locate(
        self,
        unit_id: str,
        run_id: str,
        job_name_pattern: str,
    ) -> int:
        """Return the id of the job whose artifacts should be gathered.

        Raises :class:`NotFoundError` if no job survives filtering.
        """
        jobs = await self.host.list_jobs(unit_id, run_id)
        job_id = select_job(jobs, job_name_pattern)
        if job_id is None:
            raise NotFoundError(unit_id, run_id, job_name_pattern)

        logger.info(
            "artifacts_job_located",
            project_id=unit_id,
            pipeline_id=run_id,
            pattern=job_name_pattern,
            job_id=job_id,
            candidates=len(jobs),
        )
        return job_id
