"""Administrative session and orphan management."""

import asyncio
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Query

from webshell.api.auth import require_admin
from webshell.common import settings
from webshell.orchestrator.protocol import CLOSE_NORMAL
from webshell.orchestrator.reconciler import MIN_RUNTIME_ID_LENGTH
from webshell.orchestrator.registry import REASON_ADMIN
from webshell.orchestrator.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/resources", tags=["admin"], dependencies=[Depends(require_admin)])

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


async def terminate_gracefully(
    services: Services,
    session_id: str,
    reason: str = REASON_ADMIN,
    grace: float = settings.TERMINATION_GRACE_SECONDS,
) -> bool:
    """Warn the attached client, give it a moment, then close and destroy."""
    if services.connections.get(session_id) is not None:
        await services.connections.notify_termination(session_id, reason)
        await asyncio.sleep(grace)
        await services.connections.close(session_id, CLOSE_NORMAL, reason)
    return await services.registry.terminate(session_id, reason)


@router.get("/sessions")
async def list_sessions():
    services = get_services()
    sessions = []
    for session in services.registry.list_all():
        connection = services.connections.get(session.session_id)
        sessions.append(
            session.serialize()
            | {
                "clientIp": connection.client_ip if connection else None,
                "connected": services.connections.is_connected(session.session_id),
                "connectedAt": connection.connected_at.isoformat() if connection else None,
            }
        )
    return {
        "sessions": sessions,
        "total": len(sessions),
        "connected": len(services.connections),
    }


@router.delete("/sessions/{session_id}")
async def terminate_session(session_id: str):
    if not UUID_PATTERN.match(session_id):
        raise HTTPException(status_code=400, detail="Session ID must be a valid UUID")

    services = get_services()
    session = services.registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session found with ID: {session_id}")

    connection = services.connections.get(session_id)
    metadata = {
        "sessionId": session_id,
        "userId": session.user_id,
        "clientIp": connection.client_ip if connection else "unknown",
        "environment": session.environment,
        "containerName": session.container_name,
    }
    logger.info(f"Terminating session {session_id} via API request (user {session.user_id})")

    if not await terminate_gracefully(services, session_id):
        # The connection teardown may already have removed it
        logger.debug(f"Session {session_id} was already terminating")

    return {
        "success": True,
        "message": "Session terminated successfully",
        "sessionId": session_id,
        "metadata": metadata,
    }


@router.get("/orphaned")
async def list_orphans():
    orphans = await get_services().reconciler.find_orphans()
    return {"orphans": [o.serialize() for o in orphans], "total": len(orphans)}


@router.delete("/orphaned/{runtime_id}")
async def terminate_orphan(runtime_id: str):
    if len(runtime_id) < MIN_RUNTIME_ID_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Container ID must be at least {MIN_RUNTIME_ID_LENGTH} characters",
        )

    logger.info(f"Terminating orphaned container {runtime_id} via API request")
    try:
        removed = await get_services().reconciler.destroy_orphan(runtime_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not removed:
        raise HTTPException(
            status_code=404, detail="Container may not exist or already stopped"
        )
    return {
        "success": True,
        "message": "Orphaned container terminated successfully",
        "containerId": runtime_id,
    }


@router.post("/reconcile")
async def reconcile(destroy: bool = Query(False)):
    report = await get_services().reconciler.reconcile(destroy=destroy)
    return report.serialize()
