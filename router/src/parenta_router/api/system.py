"""Router status, health and the admin dashboard summary."""

import logging

import psutil
from fastapi import APIRouter, Depends

from parenta_shared import Admin

from .. import __version__
from ..ndsctl import ControllerError
from .deps import Services, get_services, require_admin
from .schemas import session_out

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["System"])

LOW_QUOTA_MINUTES = 15


def format_uptime(seconds: int) -> str:
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _opennds_running(services: Services) -> bool:
    try:
        services.controller.status()
    except ControllerError:
        return False
    return True


@router.get("/status")
def status(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    uptime = int((services.clock() - services.started_at).total_seconds())
    process = psutil.Process()
    return {
        "version": __version__,
        "uptime": format_uptime(max(uptime, 0)),
        "uptime_seconds": max(uptime, 0),
        "opennds_running": _opennds_running(services),
        "ticker_running": services.ticker.running,
        "active_sessions": len(services.store.list_sessions(active_only=True)),
        "total_children": len(services.store.list_children()),
        "memory_usage_mb": round(process.memory_info().rss / 1024 / 1024, 1),
        "threads": process.num_threads(),
    }


@router.get("/health")
def health(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    errors: list[str] = []
    running = _opennds_running(services)
    if not running:
        errors.append("OpenNDS is not running")

    clients = 0
    if running:
        try:
            clients = len(services.controller.list_clients())
        except ControllerError as e:
            errors.append(f"Could not list OpenNDS clients: {e}")

    if not services.ticker.running:
        errors.append("Session ticker is not running")

    return {
        "status": "degraded" if errors else "healthy",
        "opennds_running": running,
        "opennds_clients": clients,
        "gateway_address": services.config.opennds.gateway_ip,
        "errors": errors,
    }


@router.get("/dashboard")
def dashboard(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    now = services.clock()
    today = now.date().isoformat()
    children = services.store.list_children()
    sessions = services.store.list_sessions(active_only=True)

    alerts = []
    for child in children:
        if not child.is_active:
            continue
        remaining = child.remaining_minutes(today)
        if remaining < LOW_QUOTA_MINUTES:
            alerts.append({"child_id": child.id, "child_name": child.name, "remaining_minutes": remaining})

    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(str(services.store.data_dir))
    return {
        "children": len(children),
        "active_children": sum(1 for c in children if c.is_active),
        "active_sessions": [session_out(s, now) for s in sessions],
        "low_quota_alerts": alerts,
        "system": {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": memory.percent,
            "memory_used_mb": round(memory.used / 1024 / 1024, 1),
            "memory_total_mb": round(memory.total / 1024 / 1024, 1),
            "disk_percent": disk.percent,
        },
    }
