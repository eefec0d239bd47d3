"""Shared request dependencies for the HTTP API."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, HTTPException, Request

from parenta_shared import Admin

from ..auth import AuthService
from ..config import Config
from ..dnsmasq import DnsmasqConfigurator
from ..ndsctl import AccessController
from ..portal import PortalService
from ..store import RecordStore
from ..ticker import SessionTicker


@dataclass
class Services:
    """Everything a request handler may need, built once per app."""

    config: Config
    store: RecordStore
    controller: AccessController
    auth: AuthService
    portal: PortalService
    dnsmasq: DnsmasqConfigurator
    ticker: SessionTicker
    clock: Callable[[], datetime]
    started_at: datetime

    def today(self) -> str:
        return self.clock().date().isoformat()


def get_services(request: Request) -> Services:
    return request.app.state.services


def bearer_token(request: Request) -> str | None:
    authz = request.headers.get("authorization", "")
    if authz.lower().startswith("bearer "):
        token = authz[7:].strip()
        return token or None
    return None


def require_admin(request: Request, services: Services = Depends(get_services)) -> Admin:
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    claims = services.auth.tokens.validate(token, now=services.clock())
    if claims is None or not claims.is_admin:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    admin = services.store.get_admin(claims.user_id)
    if admin is None:
        raise HTTPException(status_code=401, detail="Account no longer exists")
    return admin


def require_super(admin: Admin = Depends(require_admin)) -> Admin:
    if not admin.is_super:
        raise HTTPException(status_code=403, detail="Super admin required")
    return admin
