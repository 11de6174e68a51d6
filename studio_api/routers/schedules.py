import logging
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from studio_api.dependencies import (
    Actor,
    get_audit_service,
    get_housekeeping_service,
    get_schedule_service,
    require_admin,
)
from studio_api.services.audit_service import AuditService
from studio_api.services.housekeeping_service import HousekeepingService
from studio_api.services.schedule_service import (
    ScheduleService,
    serialize_course,
    serialize_schedule,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ScheduleIn(BaseModel):
    class_id: int
    trainer_id: Optional[int] = None
    repetition_type: str
    day_of_week: Optional[int] = None
    schedule_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_time: time
    end_time: time
    max_participants: Optional[int] = None
    is_active: bool = True


class ScheduleUpdate(BaseModel):
    class_id: Optional[int] = None
    trainer_id: Optional[int] = None
    repetition_type: Optional[str] = None
    day_of_week: Optional[int] = None
    schedule_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    max_participants: Optional[int] = None
    is_active: Optional[bool] = None


class CourseUpdate(BaseModel):
    course_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    trainer_id: Optional[int] = None
    max_participants: Optional[int] = None
    is_active: Optional[bool] = None
    status: Optional[str] = None


def _rid(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", "-")


# --- Schedules ---


@router.post("/api/admin/schedules")
async def api_schedule_create(
    request: Request,
    payload: ScheduleIn,
    actor: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    rid = _rid(request)
    logger.info(
        f"/api/admin/schedules: create class={payload.class_id} "
        f"type={payload.repetition_type} rid={rid}"
    )
    result = svc.create_schedule(payload.model_dump(), actor_id=actor.actor_id)
    return JSONResponse({"ok": True, **result}, status_code=201)


@router.get("/api/admin/schedules/{schedule_id}")
async def api_schedule_get(
    schedule_id: int,
    _: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    schedule = svc.get_schedule(schedule_id)
    courses = svc.list_schedule_courses(schedule_id)
    return JSONResponse(
        {
            "ok": True,
            "schedule": serialize_schedule(schedule),
            "courses": [serialize_course(c) for c in courses],
        }
    )


@router.put("/api/admin/schedules/{schedule_id}")
async def api_schedule_update(
    schedule_id: int,
    request: Request,
    payload: ScheduleUpdate,
    actor: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    rid = _rid(request)
    changes = payload.model_dump(exclude_unset=True)
    logger.info(f"/api/admin/schedules/{schedule_id}: update fields={sorted(changes)} rid={rid}")
    result = svc.update_schedule(schedule_id, changes, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, **result})


@router.post("/api/admin/schedules/{schedule_id}/regenerate")
async def api_schedule_regenerate(
    schedule_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    logger.info(f"/api/admin/schedules/{schedule_id}/regenerate rid={_rid(request)}")
    result = svc.regenerate_schedule_instances(schedule_id, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, **result})


@router.delete("/api/admin/schedules/{schedule_id}")
async def api_schedule_delete(
    schedule_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    logger.info(f"/api/admin/schedules/{schedule_id}: delete rid={_rid(request)}")
    result = svc.delete_schedule(schedule_id, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, **result})


# --- Courses ---


@router.get("/api/courses")
async def api_courses_list(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    class_id: Optional[int] = None,
    svc: ScheduleService = Depends(get_schedule_service),
):
    courses = svc.list_courses(date_from=date_from, date_to=date_to, class_id=class_id)
    return JSONResponse({"ok": True, "courses": [serialize_course(c) for c in courses]})


@router.put("/api/admin/courses/{course_id}")
async def api_course_update(
    course_id: int,
    request: Request,
    payload: CourseUpdate,
    actor: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    changes = payload.model_dump(exclude_unset=True)
    logger.info(f"/api/admin/courses/{course_id}: update fields={sorted(changes)} rid={_rid(request)}")
    course = svc.update_course(course_id, changes, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, "course": serialize_course(course)})


@router.delete("/api/admin/courses/{course_id}")
async def api_course_delete(
    course_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    svc: ScheduleService = Depends(get_schedule_service),
):
    logger.info(f"/api/admin/courses/{course_id}: delete rid={_rid(request)}")
    svc.delete_course(course_id, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, "course_id": course_id})


@router.post("/api/admin/housekeeping/sweep")
async def api_housekeeping_sweep(
    request: Request,
    _: Actor = Depends(require_admin),
    svc: HousekeepingService = Depends(get_housekeeping_service),
):
    logger.info(f"/api/admin/housekeeping/sweep rid={_rid(request)}")
    return JSONResponse({"ok": True, **svc.run()})


@router.get("/api/admin/audit")
async def api_audit_list(
    table_name: Optional[str] = None,
    record_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100,
    _: Actor = Depends(require_admin),
    svc: AuditService = Depends(get_audit_service),
):
    limit = max(1, min(int(limit), 500))
    entries = svc.list_entries(table_name=table_name, record_id=record_id, action=action, limit=limit)
    return JSONResponse({"ok": True, "entries": entries})
