"""DNS filter rules and their dnsmasq rendering."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from parenta_shared import Admin, FilterRule, RuleType

from ..auth import generate_id
from ..dnsmasq import DnsmasqError
from .deps import Services, get_services, require_admin
from .schemas import FilterCreate, StudyModeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/filters", tags=["Filters"])


def _apply(services: Services) -> None:
    try:
        services.dnsmasq.apply()
    except DnsmasqError as e:
        logger.error("Failed to apply filters: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("")
def list_filters(
    rule_type: RuleType | None = Query(None, alias="type"),
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return [r.model_dump(mode="json") for r in services.store.list_filters(rule_type)]


@router.post("", status_code=201)
def create_filter(body: FilterCreate, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    domain = body.domain.strip().lower()
    for existing in services.store.list_filters(body.rule_type):
        if existing.domain == domain:
            raise HTTPException(status_code=409, detail="rule already exists")
    rule = FilterRule(
        id=generate_id(),
        domain=domain,
        rule_type=body.rule_type,
        category=body.category,
        created_at=services.clock(),
    )
    services.store.save_filter(rule)
    _apply(services)
    return rule.model_dump(mode="json")


@router.post("/reload")
def reload_filters(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    _apply(services)
    return {"success": True}


@router.get("/study-mode")
def get_study_mode(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    return {"enabled": services.dnsmasq.study_mode_enabled}


@router.post("/study-mode")
def set_study_mode(body: StudyModeRequest, admin: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    try:
        if body.enabled:
            services.dnsmasq.enable_study_mode()
        else:
            services.dnsmasq.disable_study_mode()
    except DnsmasqError as e:
        logger.error("Failed to switch study mode: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    logger.info("Admin %s turned study mode %s", admin.username, "on" if body.enabled else "off")
    return {"enabled": body.enabled}


@router.delete("/{filter_id}")
def delete_filter(filter_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    if not services.store.delete_filter(filter_id):
        raise HTTPException(status_code=404, detail="filter not found")
    _apply(services)
    return {"success": True}
