"""Session inspection and control."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from parenta_shared import Admin, Child

from ..ticker import RevokeReason, revoke_session
from .deps import Services, get_services, require_admin
from .schemas import ExtendRequest, child_out, session_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.get("")
def list_sessions(
    include_inactive: bool = Query(False, alias="all"),
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    now = services.clock()
    return [session_out(s, now) for s in services.store.list_sessions(active_only=not include_inactive)]


@router.post("/cleanup")
def cleanup(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    removed = services.store.clear_inactive_sessions()
    logger.info("Removed %d inactive sessions", removed)
    return {"removed": removed}


@router.get("/{session_id}")
def get_session(session_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    session = services.store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session_out(session, services.clock())


@router.post("/{session_id}/kick")
@router.delete("/{session_id}")
def kick(session_id: str, admin: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    session = services.store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    if session.is_active:
        logger.info("Admin %s kicked session %s", admin.username, session_id)
        revoke_session(services.store, services.controller, session, RevokeReason.KICKED)
    return {"success": True}


@router.post("/{session_id}/extend")
def extend(
    session_id: str,
    body: ExtendRequest,
    admin: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    session = services.store.get_session(session_id)
    if session is None or not session.is_active:
        raise HTTPException(status_code=404, detail="no active session")
    now = services.clock()

    def grant(c: Child) -> None:
        c.daily_quota_minutes += body.minutes
        c.updated_at = now

    child = services.store.update_child(session.child_id, grant)
    if child is None:
        raise HTTPException(status_code=404, detail="child not found")

    today = now.date().isoformat()
    remaining = child.remaining_minutes(today)
    if session.mac and remaining > 0:
        services.portal.reauthorize(session.mac, remaining)
    logger.info("Admin %s extended %s by %d min (%d remaining)", admin.username, child.username, body.minutes, remaining)
    return {"session": session_out(session, now), "child": child_out(child, today)}
