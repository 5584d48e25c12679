"""
FastAPI application for the web shell session orchestrator.
"""

import contextlib
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from webshell.api.admin import router as admin_router
from webshell.api.environments import router as environments_router
from webshell.api.images import router as images_router
from webshell.api.resources import router as resources_router
from webshell.api.terminal import router as terminal_router
from webshell.common import settings
from webshell.common.config_checks import log_configuration
from webshell.common.errors import (
    ProfileNotFound,
    RuntimeAdapterError,
    RuntimeUnavailable,
    SessionNotFound,
    ValidationError,
)
from webshell.orchestrator.services import get_services

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log_configuration()
    services = get_services()
    await services.start()
    try:
        yield
    finally:
        await services.stop()


app = FastAPI(title="Web Shell API", lifespan=lifespan)
# allow_credentials=True requires specific origins, not wildcards.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(terminal_router)
app.include_router(admin_router)
app.include_router(resources_router)
app.include_router(images_router)
app.include_router(environments_router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RuntimeAdapterError)
async def runtime_error_handler(request: Request, exc: RuntimeAdapterError):
    if isinstance(exc, ProfileNotFound):
        status_code = 404
    elif isinstance(exc, RuntimeUnavailable):
        status_code = 503
    else:
        status_code = 502
    logger.error(f"Runtime error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/health")
async def health():
    services = get_services()
    runtime_ok = await services.runtime.ping()
    body = {
        "status": "ok" if runtime_ok else "degraded",
        "runtime": runtime_ok,
        "sessions": len(services.registry),
        "sessionsByUser": services.registry.count_by_user(),
        "connections": services.connections.stats()["total"],
    }
    return JSONResponse(status_code=200 if runtime_ok else 503, content=body)


def main(reload: bool = False):
    """Run the API server."""
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    uvicorn.run(
        "webshell.api.app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=reload,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main(os.getenv("RELOAD", "false") == "true")
