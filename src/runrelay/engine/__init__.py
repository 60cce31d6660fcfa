"""Run engine -- resolves, gathers, bundles, gates and publishes a run.

Public API::

    from runrelay.engine import (
        ArtifactLocator,
        Bundle,
        Bundler,
        DependencyResolver,
        Gate,
        Gatherer,
        Publication,
        Publisher,
        RunOrchestrator,
        RunResult,
        Slot,
        verify_bundle,
    )
"""

from runrelay.engine.bundler import Bundle, Bundler, verify_bundle
from runrelay.engine.gate import Gate
from runrelay.engine.gatherer import Gatherer, Slot
from runrelay.engine.locator import ArtifactLocator
from runrelay.engine.pipeline import RunOrchestrator, RunResult
from runrelay.engine.publisher import Publication, Publisher
from runrelay.engine.resolver import DependencyResolver

__all__ = [
    "ArtifactLocator",
    "Bundle",
    "Bundler",
    "DependencyResolver",
    "Gate",
    "Gatherer",
    "Publication",
    "Publisher",
    "RunOrchestrator",
    "RunResult",
    "Slot",
    "verify_bundle",
]
