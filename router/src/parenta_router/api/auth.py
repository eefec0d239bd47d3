"""Admin login, token lifecycle and admin account management."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from parenta_shared import Admin

from ..auth import AuthError, generate_id, hash_password
from .deps import Services, bearer_token, get_services, require_admin, require_super
from .schemas import (
    AdminCreate,
    AdminUpdate,
    ChangePasswordRequest,
    LoginRequest,
    ResetPasswordRequest,
    admin_out,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])
admins_router = APIRouter(prefix="/api/admins", tags=["Admins"])


@router.post("/login")
def login(body: LoginRequest, services: Services = Depends(get_services)):
    try:
        admin = services.auth.authenticate_admin(body.username, body.password)
    except AuthError:
        logger.info("Admin login failed for %r", body.username)
        raise HTTPException(status_code=401, detail="invalid credentials")
    token = services.auth.tokens.issue(admin.id, admin.username, is_admin=True, now=services.clock())
    return {
        "token": token,
        "expires_in": services.auth.tokens.expires_in_seconds,
        "force_password_change": admin.force_password_change,
    }


@router.post("/logout")
def logout(request: Request, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    token = bearer_token(request)
    if token:
        services.auth.tokens.revoke(token)
    return {"success": True}


@router.get("/me")
def me(admin: Admin = Depends(require_admin)):
    return admin_out(admin)


@router.post("/password")
def change_password(
    body: ChangePasswordRequest,
    admin: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    try:
        services.auth.change_admin_password(admin.id, body.old_password, body.new_password)
    except AuthError:
        raise HTTPException(status_code=401, detail="current password is incorrect")
    logger.info("Admin %s changed their password", admin.username)
    return {"success": True}


@admins_router.get("")
def list_admins(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    return [admin_out(a) for a in services.store.list_admins()]


@admins_router.post("", status_code=201)
def create_admin(body: AdminCreate, actor: Admin = Depends(require_super), services: Services = Depends(get_services)):
    if services.store.get_admin_by_username(body.username) is not None:
        raise HTTPException(status_code=409, detail="username already exists")
    now = services.clock()
    admin = Admin(
        id=generate_id(),
        username=body.username,
        password_hash=hash_password(body.password),
        display_name=body.display_name,
        role=body.role,
        force_password_change=True,
        created_at=now,
        updated_at=now,
    )
    services.store.save_admin(admin)
    logger.info("Admin %s created admin %s (%s)", actor.username, admin.username, admin.role)
    return admin_out(admin)


@admins_router.get("/{admin_id}")
def get_admin(admin_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    admin = services.store.get_admin(admin_id)
    if admin is None:
        raise HTTPException(status_code=404, detail="admin not found")
    return admin_out(admin)


@admins_router.put("/{admin_id}")
def update_admin(
    admin_id: str,
    body: AdminUpdate,
    actor: Admin = Depends(require_super),
    services: Services = Depends(get_services),
):
    if admin_id == actor.id and body.role is not None and body.role != actor.role:
        raise HTTPException(status_code=400, detail="cannot change your own role")
    now = services.clock()

    def apply(a: Admin) -> None:
        if body.display_name is not None:
            a.display_name = body.display_name
        if body.role is not None:
            a.role = body.role
        a.updated_at = now

    updated = services.store.update_admin(admin_id, apply)
    if updated is None:
        raise HTTPException(status_code=404, detail="admin not found")
    return admin_out(updated)


@admins_router.delete("/{admin_id}")
def delete_admin(admin_id: str, actor: Admin = Depends(require_super), services: Services = Depends(get_services)):
    if admin_id == actor.id:
        raise HTTPException(status_code=400, detail="cannot delete your own account")
    if services.store.get_admin(admin_id) is None:
        raise HTTPException(status_code=404, detail="admin not found")
    if not services.store.delete_admin(admin_id):
        raise HTTPException(status_code=400, detail="cannot delete the last admin")
    logger.info("Admin %s deleted admin %s", actor.username, admin_id)
    return {"success": True}


@admins_router.post("/{admin_id}/reset-password")
def reset_password(
    admin_id: str,
    body: ResetPasswordRequest,
    actor: Admin = Depends(require_super),
    services: Services = Depends(get_services),
):
    try:
        services.auth.reset_admin_password(admin_id, body.new_password)
    except AuthError:
        raise HTTPException(status_code=404, detail="admin not found")
    logger.info("Admin %s reset the password of %s", actor.username, admin_id)
    return {"success": True}
