"""Dependency resolver -- maps a trigger bridge name to the pipeline it spawned."""

from __future__ import annotations

from runrelay.core.host.gitlab import PipelineHost
from runrelay.core.run.models import RunContext
from runrelay.utils.exceptions import ResolutionError
from runrelay.utils.logging import get_logger

logger = get_logger("engine.resolver")


class DependencyResolver:
    """Resolve trigger relationships of the orchestrator's own pipeline.

    When several bridges share a name the first one returned by the host
    wins; a warning is logged because the host does not guarantee that
    bridge names are unique per pipeline.
    """

    def __init__(self, host: PipelineHost, context: RunContext) -> None:
        self.host = host
        self.context = context

    async def resolve(self, trigger_name: str) -> tuple[str, str]:
        """Return ``(downstream_unit_id, downstream_run_id)`` for *trigger_name*.

        Raises :class:`ResolutionError` when no bridge matches or the
        matching bridge has no downstream ids.
        """
        orchestrator = self.context.orchestrator
        if not orchestrator.project_id or not orchestrator.pipeline_id:
            raise ResolutionError(trigger_name, "orchestrator project/pipeline ids are not set")

        relationships = await self.host.get_trigger_relationships(
            orchestrator.project_id,
            orchestrator.pipeline_id,
        )
        matches = [r for r in relationships if r.name == trigger_name]
        if not matches:
            raise ResolutionError(trigger_name, "no trigger relationship with that name")
        if len(matches) > 1:
            logger.warning(
                "duplicate_trigger_name",
                trigger=trigger_name,
                count=len(matches),
                chosen_run_id=matches[0].downstream_run_id,
            )

        bridge = matches[0]
        if bridge.downstream_unit_id is None:
            raise ResolutionError(trigger_name, "downstream project id not found")
        if bridge.downstream_run_id is None:
            raise ResolutionError(trigger_name, "downstream pipeline id not found")

        logger.info(
            "trigger_resolved",
            trigger=trigger_name,
            downstream_project_id=bridge.downstream_unit_id,
            downstream_pipeline_id=bridge.downstream_run_id,
        )
        return bridge.downstream_unit_id, bridge.downstream_run_id
