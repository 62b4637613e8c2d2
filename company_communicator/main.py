"""Company Communicator: Main FastAPI Application.

Queues authored notifications for delivery and reports their progress.
The preparation pipeline runs in-process alongside the API.
"""

import asyncio
import contextlib
import logging
import os
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api import api_router
from .core import async_session_factory, close_db, get_settings, init_db
from .integrations.azure import BlobStorageService, ServiceBusService
from .integrations.graph import GraphDirectoryService
from .jobs import run_schedule_loop
from .orchestration import LocalOrchestrationClient, PipelineServices, prepare_to_send
from .schemas import ErrorResponse

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup - skip init_db in production (tables already exist)
    if os.getenv("ENVIRONMENT") != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    directory = GraphDirectoryService(settings)
    payload_store = BlobStorageService(settings)
    send_queue = ServiceBusService(settings)
    app.state.orchestration_client = LocalOrchestrationClient(
        PipelineServices(
            session_factory=async_session_factory,
            directory=directory,
            payload_store=payload_store,
            send_queue=send_queue,
            settings=settings,
        )
    )
    client = app.state.orchestration_client
    schedule_task = asyncio.create_task(
        run_schedule_loop(
            async_session_factory,
            lambda notification_id: client.start_new(prepare_to_send, notification_id),
        )
    )
    yield
    # Shutdown
    schedule_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await schedule_task
    await app.state.orchestration_client.wait_all()
    await directory.aclose()
    await payload_store.aclose()
    await send_queue.aclose()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Company Communicator API

    Sends one authored message to a large audience through the Teams bot.

    ### Endpoints

    - **Send**: queue a draft notification and start the preparation pipeline.
    - **Cancel**: stop a notification at its next pipeline phase.
    - **Status**: current status and aggregate delivery counters.

    ### Authentication

    When `API_KEY` is configured, every request needs an `X-API-Key` header.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    error_detail = str(exc)
    # In development/debug mode, include full traceback
    if settings.debug or settings.environment != "production":
        error_detail = f"{str(exc)}\n{traceback.format_exc()}"

    logger.error(f"Unhandled exception: {error_detail}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message=f"An unexpected error occurred: {str(exc)[:200]}",
            details=[],
        ).model_dump(),
    )


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "company_communicator.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
