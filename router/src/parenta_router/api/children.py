"""Child account management."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from parenta_shared import Admin, Child, normalize_mac

from ..auth import generate_id, hash_password
from ..ticker import RevokeReason, revoke_session
from .deps import Services, get_services, require_admin
from .schemas import AdjustQuotaRequest, ChildCreate, ChildUpdate, DeviceCreate, child_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/children", tags=["Children"])

# Negative adjustments can push usage at most this far past the quota
MAX_OVERDRAFT_MINUTES = 480


def _existing(services: Services, child_id: str) -> Child:
    child = services.store.get_child(child_id)
    if child is None:
        raise HTTPException(status_code=404, detail="child not found")
    return child


def _updated(child: Child | None) -> Child:
    if child is None:
        raise HTTPException(status_code=404, detail="child not found")
    return child


@router.get("")
def list_children(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    today = services.today()
    return [child_out(c, today) for c in services.store.list_children()]


@router.post("", status_code=201)
def create_child(body: ChildCreate, admin: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    if services.store.get_child_by_username(body.username) is not None:
        raise HTTPException(status_code=409, detail="username already exists")
    if body.schedule_id and services.store.get_schedule(body.schedule_id) is None:
        raise HTTPException(status_code=400, detail="schedule not found")
    now = services.clock()
    quota = body.daily_quota_minutes
    if not quota:
        quota = services.config.defaults.daily_quota_minutes
    child = Child(
        id=generate_id(),
        username=body.username,
        password_hash=hash_password(body.password),
        name=body.name,
        daily_quota_minutes=quota,
        filter_mode=body.filter_mode,
        schedule_id=body.schedule_id or None,
        last_reset_date=now.date().isoformat(),
        created_at=now,
        updated_at=now,
    )
    services.store.save_child(child)
    logger.info("Admin %s created child %s", admin.username, child.username)
    return child_out(child, services.today())


@router.get("/{child_id}")
def get_child(child_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    return child_out(_existing(services, child_id), services.today())


@router.put("/{child_id}")
def update_child(
    child_id: str,
    body: ChildUpdate,
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    _existing(services, child_id)
    if body.username:
        other = services.store.get_child_by_username(body.username)
        if other is not None and other.id != child_id:
            raise HTTPException(status_code=409, detail="username already exists")
    if body.schedule_id and services.store.get_schedule(body.schedule_id) is None:
        raise HTTPException(status_code=400, detail="schedule not found")
    new_hash = hash_password(body.password) if body.password else None
    fields = body.model_fields_set
    now = services.clock()

    def apply(c: Child) -> None:
        if body.username:
            c.username = body.username
        if body.name:
            c.name = body.name
        if new_hash:
            c.password_hash = new_hash
        if body.daily_quota_minutes is not None:
            c.daily_quota_minutes = body.daily_quota_minutes
        if body.filter_mode is not None:
            c.filter_mode = body.filter_mode
        if "schedule_id" in fields:
            c.schedule_id = body.schedule_id or None
        if body.is_active is not None:
            c.is_active = body.is_active
        c.updated_at = now

    child = _updated(services.store.update_child(child_id, apply))
    return child_out(child, services.today())


@router.delete("/{child_id}")
def delete_child(child_id: str, admin: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    child = _existing(services, child_id)
    services.store.delete_child(child_id)
    for session in services.store.list_sessions(active_only=True):
        if session.child_id == child_id:
            revoke_session(services.store, services.controller, session, RevokeReason.CHILD_DELETED)
    logger.info("Admin %s deleted child %s", admin.username, child.username)
    return {"success": True}


@router.post("/{child_id}/reset-quota")
def reset_quota(child_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    now = services.clock()

    def apply(c: Child) -> None:
        c.used_today_minutes = 0
        c.last_reset_date = now.date().isoformat()
        c.updated_at = now

    child = _updated(services.store.update_child(child_id, apply))
    return child_out(child, services.today())


@router.post("/{child_id}/adjust-quota")
def adjust_quota(
    child_id: str,
    body: AdjustQuotaRequest,
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    now = services.clock()
    today = now.date().isoformat()

    def apply(c: Child) -> None:
        used = c.effective_used_minutes(today) - body.minutes
        c.used_today_minutes = min(max(used, 0), c.daily_quota_minutes + MAX_OVERDRAFT_MINUTES)
        c.last_reset_date = today
        c.updated_at = now

    child = _updated(services.store.update_child(child_id, apply))
    return child_out(child, today)


@router.post("/{child_id}/devices")
def add_device(
    child_id: str,
    body: DeviceCreate,
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    mac = normalize_mac(body.mac)
    if mac is None:
        raise HTTPException(status_code=400, detail="invalid mac address")
    owner = services.store.get_child_by_mac(mac)
    if owner is not None and owner.id != child_id:
        raise HTTPException(status_code=409, detail=f"device already belongs to {owner.name}")
    now = services.clock()

    def apply(c: Child) -> None:
        if c.add_device(mac, body.name or "Device", now):
            c.updated_at = now

    child = _updated(services.store.update_child(child_id, apply))
    return child_out(child, services.today())


@router.delete("/{child_id}/devices")
def remove_device(
    child_id: str,
    mac: str = Query(""),
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if not mac:
        raise HTTPException(status_code=400, detail="mac query parameter is required")
    now = services.clock()

    def apply(c: Child) -> None:
        if c.remove_device(mac):
            c.updated_at = now

    child = _updated(services.store.update_child(child_id, apply))
    return child_out(child, services.today())
