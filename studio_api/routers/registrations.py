import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from studio_api.dependencies import (
    Actor,
    get_entitlements_service,
    get_overlap_service,
    get_registration_service,
    require_admin,
    require_member,
)
from studio_api.services.entitlements_service import EntitlementsService
from studio_api.services.overlap_service import OverlapService
from studio_api.services.registration_service import (
    RegistrationService,
    serialize_registration,
)
from studio_api.utils import iso

router = APIRouter()
logger = logging.getLogger(__name__)


class RegistrationIn(BaseModel):
    course_id: int


class AdminCancelIn(BaseModel):
    force_refund: bool = False


class BulkRegistrationIn(BaseModel):
    course_id: int
    member_ids: List[int]
    force: bool = False
    allow_guest: bool = False


class AdminRegistrationIn(BaseModel):
    course_id: int
    member_id: int
    force: bool = False
    allow_guest: bool = False


class SessionCheckIn(BaseModel):
    member_id: int
    course_id: int


def _rid(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", "-")


# --- Member ---


@router.post("/api/registrations")
async def api_register(
    request: Request,
    payload: RegistrationIn,
    actor: Actor = Depends(require_member),
    svc: RegistrationService = Depends(get_registration_service),
):
    logger.info(
        f"/api/registrations: member={actor.member_id} course={payload.course_id} rid={_rid(request)}"
    )
    result = svc.register(actor.member_id, payload.course_id)
    return JSONResponse({"ok": True, "registration": result.to_dict()}, status_code=201)


@router.post("/api/registrations/force")
async def api_register_force(
    request: Request,
    payload: RegistrationIn,
    actor: Actor = Depends(require_member),
    svc: RegistrationService = Depends(get_registration_service),
):
    """Books despite schedule overlaps the member has already been warned about."""
    logger.info(
        f"/api/registrations/force: member={actor.member_id} course={payload.course_id} rid={_rid(request)}"
    )
    result = svc.force_register(actor.member_id, payload.course_id)
    return JSONResponse({"ok": True, "registration": result.to_dict()}, status_code=201)


@router.post("/api/registrations/{registration_id}/cancel")
async def api_cancel(
    registration_id: int,
    request: Request,
    actor: Actor = Depends(require_member),
    svc: RegistrationService = Depends(get_registration_service),
):
    logger.info(
        f"/api/registrations/{registration_id}/cancel: member={actor.member_id} rid={_rid(request)}"
    )
    result = svc.cancel(registration_id, actor_member_id=actor.member_id, actor_is_admin=False)
    return JSONResponse({"ok": True, **result.to_dict()})


@router.get("/api/registrations/overlaps")
async def api_overlaps(
    course_id: int,
    actor: Actor = Depends(require_member),
    svc: OverlapService = Depends(get_overlap_service),
):
    conflicts = svc.find_overlaps_for_course_id(actor.member_id, course_id)
    return JSONResponse(
        {
            "ok": True,
            "has_overlap": bool(conflicts),
            "conflicts": [c.to_dict() for c in conflicts],
        }
    )


@router.get("/api/member/registrations")
async def api_member_registrations(
    status: Optional[str] = None,
    upcoming: bool = False,
    actor: Actor = Depends(require_member),
    svc: RegistrationService = Depends(get_registration_service),
):
    rows = svc.list_member_registrations(actor.member_id, status=status, upcoming_only=upcoming)
    return JSONResponse({"ok": True, "registrations": [serialize_registration(r) for r in rows]})


@router.get("/api/member/entitlements")
async def api_member_entitlements(
    actor: Actor = Depends(require_member),
    svc: EntitlementsService = Depends(get_entitlements_service),
):
    balances = svc.balances(actor.member_id)
    return JSONResponse(
        {
            "ok": True,
            "allocations": [
                {
                    "allocation_id": b.allocation_id,
                    "subscription_id": b.subscription_id,
                    "group_id": b.group_id,
                    "group_name": b.group_name,
                    "sessions_remaining": b.sessions_remaining,
                    "total_sessions": b.total_sessions,
                    "subscription_end": iso(b.subscription_end),
                }
                for b in balances
            ],
        }
    )


# --- Admin ---


@router.post("/api/admin/registrations")
async def api_admin_register(
    request: Request,
    payload: AdminRegistrationIn,
    actor: Actor = Depends(require_admin),
    svc: RegistrationService = Depends(get_registration_service),
):
    logger.info(
        f"/api/admin/registrations: member={payload.member_id} course={payload.course_id} "
        f"force={payload.force} guest={payload.allow_guest} rid={_rid(request)}"
    )
    result = svc.register(
        payload.member_id,
        payload.course_id,
        force=payload.force,
        allow_guest=payload.allow_guest,
        admin_override=True,
        actor_id=actor.actor_id,
    )
    return JSONResponse({"ok": True, "registration": result.to_dict()}, status_code=201)


@router.post("/api/admin/registrations/check-member-sessions")
async def api_admin_check_member_sessions(
    request: Request,
    payload: SessionCheckIn,
    _: Actor = Depends(require_admin),
    svc: RegistrationService = Depends(get_registration_service),
):
    logger.info(
        f"/api/admin/registrations/check-member-sessions: member={payload.member_id} "
        f"course={payload.course_id} rid={_rid(request)}"
    )
    result = svc.check_member_sessions(payload.member_id, payload.course_id)
    return JSONResponse({"ok": True, **result})


@router.post("/api/admin/registrations/bulk")
async def api_admin_bulk_register(
    request: Request,
    payload: BulkRegistrationIn,
    actor: Actor = Depends(require_admin),
    svc: RegistrationService = Depends(get_registration_service),
):
    logger.info(
        f"/api/admin/registrations/bulk: course={payload.course_id} "
        f"members={len(payload.member_ids)} rid={_rid(request)}"
    )
    result = svc.bulk_register(
        payload.course_id,
        payload.member_ids,
        force=payload.force,
        allow_guest=payload.allow_guest,
        actor_id=actor.actor_id,
    )
    return JSONResponse({"ok": not result["failed"], **result})


@router.post("/api/admin/registrations/{registration_id}/cancel")
async def api_admin_cancel(
    registration_id: int,
    request: Request,
    payload: Optional[AdminCancelIn] = None,
    actor: Actor = Depends(require_admin),
    svc: RegistrationService = Depends(get_registration_service),
):
    force_refund = bool(payload and payload.force_refund)
    logger.info(
        f"/api/admin/registrations/{registration_id}/cancel: force_refund={force_refund} rid={_rid(request)}"
    )
    result = svc.cancel(
        registration_id,
        actor_member_id=actor.actor_id,
        actor_is_admin=True,
        force_refund=force_refund,
    )
    return JSONResponse({"ok": True, **result.to_dict()})


@router.post("/api/admin/registrations/{registration_id}/mark-absent")
async def api_admin_mark_absent(
    registration_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    svc: RegistrationService = Depends(get_registration_service),
):
    logger.info(f"/api/admin/registrations/{registration_id}/mark-absent rid={_rid(request)}")
    reg = svc.mark_absent(registration_id, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, "registration": serialize_registration(reg)})


@router.get("/api/admin/courses/{course_id}/registrations")
async def api_admin_course_registrations(
    course_id: int,
    _: Actor = Depends(require_admin),
    svc: RegistrationService = Depends(get_registration_service),
):
    rows = svc.list_course_registrations(course_id)
    return JSONResponse({"ok": True, "registrations": [serialize_registration(r) for r in rows]})
