from contextlib import asynccontextmanager

from fastapi import FastAPI

from runrelay import __version__
from runrelay.api.v1.middleware.error_handler import ErrorHandlerMiddleware
from runrelay.api.v1.middleware.logging_middleware import LoggingMiddleware
from runrelay.api.v1.router import v1_router
from runrelay.config import settings
from runrelay.utils.file_utils import ensure_dir
from runrelay.utils.logging import get_logger, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(debug=settings.debug, json_logs=settings.json_logs)
    logger = get_logger("startup")
    logger.info("Starting run orchestration service", version=__version__)

    ensure_dir(settings.work_dir)
    logger.info("Work directory ready", work_dir=settings.work_dir)

    yield

    logger.info("Shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="runrelay",
        description="Gather, bundle, gate and publish DAG runs",
        version=__version__,
        lifespan=lifespan,
    )

    # Middleware is applied in reverse order -- outermost first.
    # 1. Error handler (catches exceptions from inner layers)
    app.add_middleware(ErrorHandlerMiddleware)
    # 2. Request/response logger (innermost -- logs timing around handler)
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    return app


app = create_app()
