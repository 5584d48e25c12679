"""Profile image listing, checks and builds."""

import asyncio
import json
import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from webshell.api.auth import require_admin
from webshell.common.errors import RuntimeAdapterError
from webshell.orchestrator.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/images", tags=["images"])


def sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def check_environment(environment: str) -> None:
    catalog = get_services().catalog
    if environment not in catalog:
        raise HTTPException(
            status_code=400,
            detail=f"Environment must be one of: {', '.join(catalog.names)}",
        )


@router.get("")
async def list_images():
    return {"images": await get_services().runtime.list_images()}


@router.get("/check/{environment}")
async def check_image(environment: str):
    check_environment(environment)
    status = await get_services().runtime.image_status(environment)
    return {"environment": environment} | status


async def build_events(environment: str) -> AsyncGenerator[str, None]:
    """Run a build and yield its progress as server-sent events."""
    runtime = get_services().runtime
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def on_progress(chunk: dict[str, Any]) -> None:
        # Called from the build thread
        loop.call_soon_threadsafe(queue.put_nowait, chunk)

    async def build() -> None:
        try:
            await runtime.build_image(environment, on_progress)
        finally:
            # Queued behind any progress callbacks still pending
            loop.call_soon(queue.put_nowait, None)

    yield sse({"status": "starting", "environment": environment})
    task = asyncio.create_task(build())
    try:
        while (chunk := await queue.get()) is not None:
            yield sse({"status": "building"} | chunk)
        await task
    except RuntimeAdapterError as e:
        logger.error(f"Error building image for {environment}: {e}")
        yield sse({"status": "error", "environment": environment, "error": str(e)})
        return
    finally:
        if not task.done():
            task.cancel()
    yield sse({"status": "completed", "environment": environment})


@router.post("/build/{environment}", dependencies=[Depends(require_admin)])
async def build_image(environment: str):
    check_environment(environment)
    logger.info(f"Image build requested for {environment}")
    return StreamingResponse(
        build_events(environment),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
