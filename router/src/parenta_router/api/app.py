"""FastAPI application assembly."""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .. import __version__
from ..auth import AuthService, TokenIssuer
from ..config import Config
from ..dnsmasq import DnsmasqConfigurator
from ..ndsctl import AccessController
from ..network import lookup_mac
from ..portal import PortalService
from ..store import RecordStore, StoreError
from ..ticker import SessionTicker
from . import auth, children, filters, portal, schedules, sessions, system
from .deps import Services

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    store: RecordStore,
    controller: AccessController,
    *,
    clock: Callable[[], datetime] = datetime.now,
    sleep: Callable[[float], None] = time.sleep,
    neighbor_lookup: Callable[[str], str | None] = lookup_mac,
    start_ticker: bool = True,
) -> FastAPI:
    """Build the app around an already-loaded store and a gateway controller.

    The reconciliation loop runs for the lifetime of the app when
    ``start_ticker`` is set.
    """
    tokens = TokenIssuer(config.session.jwt_secret, config.session.jwt_expiry_hours)
    auth_service = AuthService(store, tokens)
    services = Services(
        config=config,
        store=store,
        controller=controller,
        auth=auth_service,
        portal=PortalService(
            store,
            controller,
            auth_service,
            settle_seconds=config.opennds.reauth_settle_seconds,
            clock=clock,
            sleep=sleep,
            neighbor_lookup=neighbor_lookup,
        ),
        dnsmasq=DnsmasqConfigurator(
            store,
            config.dnsmasq.conf_dir,
            config.dnsmasq.restart_cmd,
            upstream_dns=config.dnsmasq.upstream_dns,
        ),
        ticker=SessionTicker(store, controller, interval_seconds=config.session.tick_interval_seconds, clock=clock),
        clock=clock,
        started_at=clock(),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if start_ticker:
            services.ticker.start()
        yield
        await asyncio.to_thread(services.ticker.stop)

    app = FastAPI(title="Parenta", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "storage error"})

    @app.exception_handler(RequestValidationError)
    async def validation_error(_: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "invalid request body", "errors": jsonable_errors(exc)})

    app.include_router(portal.router)
    app.include_router(auth.router)
    app.include_router(auth.admins_router)
    app.include_router(children.router)
    app.include_router(sessions.router)
    app.include_router(schedules.router)
    app.include_router(filters.router)
    app.include_router(system.router)
    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
