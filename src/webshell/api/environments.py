from fastapi import APIRouter, HTTPException

from webshell.orchestrator.services import get_services

router = APIRouter(prefix="/api/environments", tags=["environments"])


@router.get("")
def list_environments():
    catalog = get_services().catalog
    return {"success": True, "environments": [p.serialize() for p in catalog]}


@router.get("/compare/{first}/{second}")
def compare_environments(first: str, second: str):
    comparison = get_services().catalog.compare(first, second)
    if comparison is None:
        raise HTTPException(status_code=404, detail="One or both environments not found")
    return {"success": True, "comparison": comparison}


@router.get("/{name}")
def get_environment(name: str):
    profile = get_services().catalog.find(name)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Environment '{name}' not found")
    return {"success": True, "environment": profile.serialize()}
