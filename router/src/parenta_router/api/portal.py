"""Captive portal endpoints: the FAS entry point, login page and login."""

import asyncio
import logging
from pathlib import Path
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError

from ..portal import (
    MSG_INVALID_CREDENTIALS,
    AdminLoginResult,
    PortalDecodeError,
    PortalDenied,
    PortalLogin,
    sanitize,
)
from .deps import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Portal"])
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


def _portal_url(query: dict[str, str]) -> str:
    return f"/portal?{urlencode(query)}" if query else "/portal"


@router.get("/fas/")
@router.get("/fas")
def fas_entry(request: Request, fas: str = "", services: Services = Depends(get_services)):
    # Both failure paths still land on the login page
    if not fas:
        return RedirectResponse("/portal", status_code=302)
    try:
        params = services.portal.handshake(fas, requester_ip=_client_host(request))
    except PortalDecodeError as e:
        logger.warning("Undecodable fas payload from %s: %s", _client_host(request), e)
        return RedirectResponse("/portal", status_code=302)
    return RedirectResponse(_portal_url(params.portal_query()), status_code=302)


@router.get("/portal", response_class=HTMLResponse)
def portal_page(
    request: Request,
    hid: str = "",
    mac: str = "",
    ip: str = "",
    gatewayname: str = "",
    authdir: str = "",
    originurl: str = "",
    error: str = "",
    auth_type: str = "",
    token: str = "",
    force_password_change: bool = False,
):
    # Jinja2 autoescapes; sanitize still keeps control characters out of the form
    context = {
        "hid": sanitize(hid) or "",
        "mac": sanitize(mac) or "",
        "ip": sanitize(ip) or "",
        "gateway_name": sanitize(gatewayname) or "Parenta",
        "authdir": sanitize(authdir) or "",
        "originurl": sanitize(originurl) or "",
        "error": sanitize(error) or "",
        "admin_token": (sanitize(token) or "") if auth_type == "admin" else "",
        "force_password_change": force_password_change,
    }
    return templates.TemplateResponse(request, "portal.html", context)


async def _read_login(request: Request) -> tuple[PortalLogin, bool]:
    """Parse a login from a JSON body or a form post. Returns (login, is_json)."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return PortalLogin.model_validate(await request.json()), True
        except (ValueError, ValidationError):
            raise HTTPException(status_code=400, detail="invalid request")
    form = await request.form()
    fields = {key: str(form.get(key, "")) for key in PortalLogin.model_fields}
    return PortalLogin(**fields), False


@router.post("/fas/auth")
async def fas_auth(request: Request, services: Services = Depends(get_services)):
    login, is_json = await _read_login(request)
    try:
        # Password hashing and ndsctl calls block
        result = await asyncio.to_thread(services.portal.login, login, requester_ip=_client_host(request))
    except PortalDenied as e:
        if is_json:
            status = 401 if e.message == MSG_INVALID_CREDENTIALS else 403
            raise HTTPException(status_code=status, detail=e.message)
        query = login.carried_query()
        query["error"] = e.message
        return RedirectResponse(_portal_url(query), status_code=302)

    if isinstance(result, AdminLoginResult):
        if is_json:
            return {
                "type": "admin",
                "token": result.token,
                "expires_in": services.auth.tokens.expires_in_seconds,
                "force_password_change": result.force_password_change,
            }
        query = {
            "auth_type": "admin",
            "token": result.token,
            "force_password_change": "true" if result.force_password_change else "false",
        }
        return RedirectResponse(_portal_url(query), status_code=302)

    if is_json:
        return {
            "type": "child",
            "child_name": result.child.name,
            "remaining_minutes": result.remaining_minutes,
            "session_id": result.session.id,
            "redirect_url": result.redirect_url or "",
        }
    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=302)
    return templates.TemplateResponse(
        request,
        "success.html",
        {"name": result.child.name, "remaining": result.remaining_minutes},
    )


@router.get("/fas/status")
def fas_status(mac: str = Query(""), services: Services = Depends(get_services)):
    if not mac:
        raise HTTPException(status_code=400, detail="missing mac parameter")
    status = services.portal.status(mac)
    if status is None:
        raise HTTPException(status_code=404, detail="no active session")
    return status
