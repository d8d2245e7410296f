"""API routes of the status service."""

from fastapi import APIRouter, HTTPException, Query, Request

from phonepool.models import (
    DeviceNotFoundError,
    ForceReleaseBody,
    OccupyBody,
    ReleaseBody,
    RequestBody,
)
from phonepool.service.store import PhoneStore

router = APIRouter(tags=["phones"])


def _get_store(request: Request) -> PhoneStore:
    """Get the PhoneStore from app state."""
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=503, detail="Phone store not initialized")
    return store


def _not_found(e: DeviceNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.get("/phones")
async def list_phones(request: Request):
    """List every phone with its holder, waiting list and access history."""
    store = _get_store(request)
    return {"phones": [d.to_wire() for d in store.list_phones()]}


@router.post("/occupy")
async def occupy_phone(request: Request, body: OccupyBody):
    """Claim a phone. ``success`` is false when someone else holds it."""
    store = _get_store(request)
    try:
        ok = await store.occupy(body.phone_id, body.user_name, body.user_dept)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return {"success": ok}


@router.post("/release")
async def release_phone(request: Request, body: ReleaseBody):
    """Return a phone and record the finished session in its history."""
    store = _get_store(request)
    try:
        ok = await store.release(body.phone_id, body.user_name)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return {"success": ok}


@router.post("/request")
async def request_return(request: Request, body: RequestBody):
    """Join a phone's waiting list. ``success`` is false if already waiting."""
    store = _get_store(request)
    try:
        ok = await store.request(body.phone_id, body.user_name)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return {"success": ok}


@router.post("/cancel-request")
async def cancel_request(request: Request, body: RequestBody):
    """Leave a phone's waiting list."""
    store = _get_store(request)
    try:
        ok = await store.cancel(body.phone_id, body.user_name)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return {"success": ok}


@router.post("/force-release")
async def force_release(request: Request, body: ForceReleaseBody):
    """Admin-only release of a phone regardless of its holder."""
    store = _get_store(request)
    try:
        ok, error = await store.force_release(body.phone_id, body.admin_hostname)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    result: dict = {"success": ok}
    if error:
        result["error"] = error
    return result


@router.get("/check-admin")
async def check_admin(request: Request, hostname: str = Query(default="")):
    """Whether ``hostname`` may force-release phones."""
    store = _get_store(request)
    return {"isAdmin": store.is_admin(hostname)}
