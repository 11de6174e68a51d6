import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from studio_api.dependencies import Actor, get_checkin_service, require_admin, require_staff
from studio_api.services.checkin_service import CheckinService
from studio_api.services.registration_service import serialize_registration

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckinIn(BaseModel):
    token: str


def _rid(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", "-")


@router.post("/api/checkins")
async def api_checkin(
    request: Request,
    payload: CheckinIn,
    _: Actor = Depends(require_staff),
    svc: CheckinService = Depends(get_checkin_service),
):
    """Check-in by scanned QR token."""
    token = payload.token.strip()
    logger.info(f"/api/checkins: token=***{token[-4:] if token else ''} rid={_rid(request)}")
    result = svc.checkin(token)
    return JSONResponse(
        {"ok": True, "checkin": result.to_dict()},
        status_code=201 if result.created else 200,
    )


@router.post("/api/admin/checkins/{registration_id}/validate")
async def api_checkin_validate(
    registration_id: int,
    request: Request,
    actor: Actor = Depends(require_staff),
    svc: CheckinService = Depends(get_checkin_service),
):
    logger.info(f"/api/admin/checkins/{registration_id}/validate rid={_rid(request)}")
    result = svc.validate_registration(registration_id, actor_id=actor.actor_id)
    return JSONResponse(
        {"ok": True, "checkin": result.to_dict()},
        status_code=201 if result.created else 200,
    )


@router.post("/api/admin/checkins/{registration_id}/unvalidate")
async def api_checkin_unvalidate(
    registration_id: int,
    request: Request,
    actor: Actor = Depends(require_staff),
    svc: CheckinService = Depends(get_checkin_service),
):
    logger.info(f"/api/admin/checkins/{registration_id}/unvalidate rid={_rid(request)}")
    reg = svc.unvalidate(registration_id, actor_id=actor.actor_id)
    return JSONResponse({"ok": True, "registration": serialize_registration(reg)})


@router.get("/api/admin/checkins/qr/{token}")
async def api_checkin_lookup(
    token: str,
    request: Request,
    _: Actor = Depends(require_admin),
    svc: CheckinService = Depends(get_checkin_service),
):
    """Show who a QR token belongs to before checking in."""
    logger.info(f"/api/admin/checkins/qr: token=***{token[-4:]} rid={_rid(request)}")
    return JSONResponse({"ok": True, **svc.lookup(token)})
