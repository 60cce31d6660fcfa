"""Run controller -- drives one run from kickoff to publication.

The :class:`RunOrchestrator` consumes a :class:`RunContext` and:

1. Schedules the node DAG into waves.
2. Within each wave, concurrently for every node: obtains its downstream
   pipeline (starts it, or resolves the trigger bridge), waits for it to
   complete and gathers its artifacts into a slot.  Siblings always run to
   their own completion, even after one of them failed.
3. Joins, then bundles the canonical tree (a diagnostic bundle if any
   gather failed).
4. Evaluates the gate and publishes to exactly one destination.

A run ends accepted, quarantined or aborted.  Aborted runs published
nothing and surface as :class:`RunAbortedError`.
"""

from __future__ import annotations

import asyncio
import shutil

from pydantic import BaseModel

from runrelay.core.host.bus import BusWriter
from runrelay.core.host.gitlab import PipelineHost
from runrelay.core.run.models import (
    GateVerdict,
    NodeOutcome,
    NodeSpec,
    NodeStatus,
    RunContext,
    RunStatus,
)
from runrelay.core.run.scheduler import DagScheduler
from runrelay.engine.bundler import Bundle, Bundler
from runrelay.engine.gate import Gate
from runrelay.engine.gatherer import Gatherer
from runrelay.engine.publisher import Publication, Publisher
from runrelay.engine.resolver import DependencyResolver
from runrelay.utils.exceptions import NodeTimeoutError, RunAbortedError, RunRelayError
from runrelay.utils.logging import bind_run, clear_run, get_logger


class RunResult(BaseModel):
    """Outcome of a whole run.

    Attributes:
        run_id: The run's id.
        status: Terminal status.
        nodes: Per-node outcomes keyed by node name.
        verdict: Gate verdict, when the gate ran.
        bundle: Bundle descriptor, when one was built.
        publication: Where the bundle was published, when it was.
        error: Why the run was aborted, empty otherwise.
    """

    run_id: str
    status: RunStatus = RunStatus.PENDING
    nodes: dict[str, NodeOutcome] = {}
    verdict: GateVerdict | None = None
    bundle: Bundle | None = None
    publication: Publication | None = None
    error: str = ""


class RunOrchestrator:
    """Top-level controller for one run.

    Parameters
    ----------
    host:
        Pipeline host adapter (read access and triggering).
    writer:
        Bus writer; handed to the :class:`Publisher` and used by nothing else.
    """

    def __init__(self, host: PipelineHost, writer: BusWriter) -> None:
        self.host = host
        self._writer = writer
        self.logger = get_logger("engine.pipeline")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, context: RunContext) -> RunResult:
        bind_run(context.run_id)
        try:
            return await self._run(context)
        finally:
            shutil.rmtree(context.scratch_dir, ignore_errors=True)
            clear_run()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, ctx: RunContext) -> RunResult:
        outcomes = {
            n.name: NodeOutcome(name=n.name, ref=n.ref, slot=n.slot) for n in ctx.nodes
        }
        result = RunResult(run_id=ctx.run_id, nodes=outcomes)

        self.logger.info(
            "run_start",
            nodes=len(ctx.nodes),
            bus_project=ctx.bus.project_id,
            package=ctx.bus.package,
        )

        try:
            waves = DagScheduler().schedule(ctx.nodes)
        except RunRelayError as exc:
            self._abort(result, str(exc), exc)

        resolver = DependencyResolver(self.host, ctx)
        gatherer = Gatherer(self.host, ctx)

        for wave_idx, names in enumerate(waves):
            ready: list[NodeSpec] = []
            for name in names:
                node = ctx.get_node(name)
                blocked = [d for d in node.depends_on if not _succeeded(outcomes[d])]
                if blocked and node.project_id:
                    # Directly started nodes are only started once their
                    # dependencies succeeded.
                    outcome = outcomes[name]
                    outcome.status = NodeStatus.NOT_STARTED.value
                    outcome.error = f"dependencies did not succeed: {', '.join(blocked)}"
                    self.logger.warning("dependency_not_met", node=name, blocked=blocked)
                    continue
                ready.append(node)

            self.logger.info("wave_start", wave=wave_idx, nodes=[n.name for n in ready])
            raised = await asyncio.gather(
                *(self._process_node(ctx, n, outcomes[n.name], resolver, gatherer) for n in ready),
                return_exceptions=True,
            )
            for node, exc in zip(ready, raised):
                if isinstance(exc, BaseException):
                    outcome = outcomes[node.name]
                    outcome.status = NodeStatus.GATHER_FAILED.value
                    outcome.error = f"unexpected error: {exc!r}"
                    self.logger.error(
                        "node_unexpected_error",
                        node=node.name,
                        error=repr(exc),
                        exc_info=exc,
                    )

            self.logger.info(
                "wave_complete",
                wave=wave_idx,
                gathered=sum(1 for n in ready if outcomes[n.name].gathered),
                failed=sum(1 for n in ready if not outcomes[n.name].gathered),
            )

        missing = [o.name for o in outcomes.values() if not o.gathered]
        diagnostic = bool(missing)

        try:
            result.bundle = await Bundler(ctx).bundle(list(outcomes.values()), diagnostic=diagnostic)
        except (RunRelayError, OSError) as exc:
            self._abort(result, f"bundling failed: {exc}", exc)

        if diagnostic:
            result.verdict = GateVerdict(
                passed=False,
                justification=f"artifacts not gathered for: {', '.join(missing)}",
            )
            self.logger.warning("gate_skipped", missing=missing)
        else:
            result.verdict = Gate(ctx.gate).evaluate(ctx.tree_dir, result.bundle.manifest)

        publisher = Publisher(self._writer, ctx)
        try:
            result.publication = await publisher.publish(result.bundle, result.verdict)
        except RunRelayError as exc:
            self._abort(result, str(exc), exc)

        result.status = result.publication.status
        self.logger.info(
            "run_complete",
            status=result.status.value,
            gate_passed=result.verdict.passed,
            package=result.publication.package,
        )
        return result

    async def _process_node(
        self,
        ctx: RunContext,
        node: NodeSpec,
        outcome: NodeOutcome,
        resolver: DependencyResolver,
        gatherer: Gatherer,
    ) -> None:
        try:
            if node.project_id:
                handle = await self.host.start_unit(node.project_id, node.ref, node.variables)
                unit_id, run_id = handle.unit_id, handle.run_id
            else:
                unit_id, run_id = await resolver.resolve(node.trigger)
            outcome.downstream_project_id = unit_id
            outcome.downstream_pipeline_id = run_id

            outcome.status = await self.host.wait_for_completion(
                unit_id,
                run_id,
                poll_interval=ctx.poll_interval,
                timeout=ctx.node_timeout,
                node=node.name,
            )

            # Failed nodes are gathered too, for diagnostics.
            slot = await gatherer.gather(node, unit_id, run_id)
            outcome.job_id = slot.job_id
            outcome.gathered = True
        except NodeTimeoutError as exc:
            outcome.status = NodeStatus.TIMED_OUT.value
            outcome.error = str(exc)
            self.logger.error("node_timed_out", node=node.name, error=str(exc))
        except RunRelayError as exc:
            host_status = outcome.status
            outcome.status = NodeStatus.GATHER_FAILED.value
            outcome.error = f"{exc} (host status: {host_status})"
            self.logger.error(
                "node_gather_failed",
                node=node.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _abort(self, result: RunResult, detail: str, cause: Exception | None = None) -> None:
        result.status = RunStatus.ABORTED
        result.error = detail
        self.logger.error("run_aborted", error=detail)
        raise RunAbortedError(result.run_id, detail, result=result, cause=cause)


def _succeeded(outcome: NodeOutcome) -> bool:
    return outcome.gathered and outcome.status == NodeStatus.SUCCESS.value
