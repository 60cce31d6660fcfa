"""Composition root: builds clients and the orchestrator from settings.

This is the only module (together with the CLI) that reads
:class:`~runrelay.config.Settings`.  Two separate HTTP clients are built:
the pipeline host client carries the job token, the bus client carries the
bus credential and is handed to the :class:`BusWriter` alone.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import Request

from runrelay.config import Settings, settings as default_settings
from runrelay.core.host.bus import BusWriter
from runrelay.core.host.client import ResilientClient
from runrelay.core.host.gitlab import PipelineHost
from runrelay.engine.pipeline import RunOrchestrator
from runrelay.utils.logging import get_logger

logger = get_logger(__name__)


def _client(
    settings: Settings,
    token: str,
    token_header: str,
    transport: httpx.AsyncBaseTransport | None,
) -> ResilientClient:
    return ResilientClient(
        token=token,
        token_header=token_header,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        timeout=settings.http_timeout,
        transport=transport,
    )


@asynccontextmanager
async def open_orchestrator(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[RunOrchestrator]:
    """Yield a :class:`RunOrchestrator` and close its clients afterwards."""
    if not settings.bus_token:
        logger.warning(
            "bus_token_fallback",
            detail="BUS_TOKEN is empty; the job token is used for store uploads",
        )
    host_client = _client(settings, settings.job_token, settings.token_header, transport)
    bus_client = _client(
        settings,
        settings.effective_bus_token(),
        settings.effective_bus_token_header(),
        transport,
    )
    try:
        host = PipelineHost(host_client, settings.api_url, trigger_token=settings.job_token)
        writer = BusWriter(bus_client, settings.api_url)
        yield RunOrchestrator(host, writer)
    finally:
        await host_client.aclose()
        await bus_client.aclose()


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_settings(request: Request) -> Settings:
    """Settings stored on ``app.state`` (tests override them), else the global ones."""
    return getattr(request.app.state, "settings", None) or default_settings


async def get_orchestrator(request: Request) -> AsyncIterator[RunOrchestrator]:
    transport = getattr(request.app.state, "http_transport", None)
    async with open_orchestrator(get_settings(request), transport=transport) as orchestrator:
        yield orchestrator
