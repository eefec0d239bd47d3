"""Weekly schedule management."""

from fastapi import APIRouter, Depends, HTTPException

from parenta_shared import Admin, Schedule

from ..auth import generate_id
from ..schedule import validate_blocks
from .deps import Services, get_services, require_admin
from .schemas import ScheduleBody

router = APIRouter(prefix="/api/schedules", tags=["Schedules"])


def _check_blocks(body: ScheduleBody) -> None:
    errors = validate_blocks(body.time_blocks)
    if errors:
        raise HTTPException(status_code=400, detail="; ".join(errors))


@router.get("")
def list_schedules(_: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    return [s.model_dump(mode="json") for s in services.store.list_schedules()]


@router.post("", status_code=201)
def create_schedule(body: ScheduleBody, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    _check_blocks(body)
    now = services.clock()
    schedule = Schedule(
        id=generate_id(),
        name=body.name,
        time_blocks=body.time_blocks,
        is_default=body.is_default,
        created_at=now,
        updated_at=now,
    )
    services.store.save_schedule(schedule)
    return schedule.model_dump(mode="json")


@router.get("/{schedule_id}")
def get_schedule(schedule_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    schedule = services.store.get_schedule(schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="schedule not found")
    return schedule.model_dump(mode="json")


@router.put("/{schedule_id}")
def update_schedule(
    schedule_id: str,
    body: ScheduleBody,
    _: Admin = Depends(require_admin),
    services: Services = Depends(get_services),
):
    existing = services.store.get_schedule(schedule_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="schedule not found")
    _check_blocks(body)
    existing.name = body.name
    existing.time_blocks = body.time_blocks
    existing.is_default = body.is_default
    existing.updated_at = services.clock()
    services.store.save_schedule(existing)
    return existing.model_dump(mode="json")


@router.delete("/{schedule_id}")
def delete_schedule(schedule_id: str, _: Admin = Depends(require_admin), services: Services = Depends(get_services)):
    if not services.store.delete_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="schedule not found")
    return {"success": True}
