"""Global error-handling middleware.

Catches engine exceptions and translates them into structured JSON error
responses with appropriate HTTP status codes.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from runrelay.utils.exceptions import (
    ArtifactValidationError,
    CollisionError,
    ConfigurationError,
    CyclicDependencyError,
    NotFoundError,
    PublishError,
    ResolutionError,
    RunAbortedError,
    RunRelayError,
    TransportError,
)
from runrelay.utils.logging import get_logger

logger = get_logger(__name__)

# Map exception types to HTTP status codes.
_STATUS_MAP: dict[type, int] = {
    ConfigurationError: 400,
    CyclicDependencyError: 400,
    ResolutionError: 422,
    NotFoundError: 404,
    CollisionError: 409,
    ArtifactValidationError: 422,
    TransportError: 502,
    PublishError: 502,
    RunAbortedError: 502,
}


def _status_for(exc: RunRelayError) -> int:
    # Aborts caused by an invalid definition are client errors.
    if isinstance(exc, RunAbortedError) and isinstance(exc.cause, (ConfigurationError, CyclicDependencyError)):
        return _STATUS_MAP[type(exc.cause)]
    return _STATUS_MAP.get(type(exc), 500)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware that wraps every request in a try/except and converts
    known exceptions to JSON error responses.

    Unknown exceptions are logged and returned as HTTP 500.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)

        except RunRelayError as exc:
            status_code = _status_for(exc)
            logger.warning(
                "handled_error",
                error_type=type(exc).__name__,
                status_code=status_code,
                detail=str(exc),
                path=request.url.path,
            )
            return JSONResponse(
                status_code=status_code,
                content={"error": type(exc).__name__, "detail": str(exc)},
            )

        except Exception as exc:
            logger.error(
                "unhandled_error",
                error_type=type(exc).__name__,
                detail=str(exc),
                path=request.url.path,
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "detail": "An unexpected error occurred.  Please try again later.",
                },
            )
