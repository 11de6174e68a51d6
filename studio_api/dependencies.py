"""
Studio API Dependencies
FastAPI dependency injection: database session, clock, caller identity and services.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generator, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from studio_api.database.connection import SessionLocal
from studio_api.security.session_claims import get_claims
from studio_api.services.audit_service import AuditService
from studio_api.services.checkin_service import CheckinService
from studio_api.services.entitlements_service import EntitlementsService
from studio_api.services.housekeeping_service import HousekeepingService
from studio_api.services.overlap_service import OverlapService
from studio_api.services.registration_service import RegistrationService
from studio_api.services.schedule_service import ScheduleService
from studio_api.utils import now_local_naive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    role: str
    member_id: Optional[int]
    user_id: Optional[int]
    is_admin: bool
    is_staff: bool

    @property
    def actor_id(self) -> Optional[int]:
        return self.user_id or self.member_id


def get_db_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        SessionLocal.remove()


def get_clock() -> Callable[[], datetime]:
    return now_local_naive


def get_actor(request: Request) -> Actor:
    claims = get_claims(request)
    return Actor(
        role=claims["role"],
        member_id=claims["member_id"],
        user_id=claims["user_id"],
        is_admin=claims["is_admin"],
        is_staff=claims["is_staff"],
    )


async def require_member(request: Request, actor: Actor = Depends(get_actor)) -> Actor:
    """Require a logged-in member."""
    if not actor.member_id:
        logger.warning(f"AUTH FAILED: no member in session path={request.url.path}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return actor


async def require_staff(request: Request, actor: Actor = Depends(get_actor)) -> Actor:
    """Require front desk staff or higher."""
    if not actor.role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not actor.is_staff:
        logger.warning(f"AUTH FAILED: role {actor.role} is not staff path={request.url.path}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return actor


async def require_admin(request: Request, actor: Actor = Depends(get_actor)) -> Actor:
    """Require owner/admin access."""
    if not actor.role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not actor.is_admin:
        logger.warning(f"AUTH FAILED: invalid role {actor.role} path={request.url.path}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return actor


# --- Services ---


def get_audit_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AuditService:
    return AuditService(session, clock)


def get_schedule_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleService:
    return ScheduleService(session, clock)


def get_registration_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RegistrationService:
    return RegistrationService(session, clock)


def get_overlap_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> OverlapService:
    return OverlapService(session, clock)


def get_checkin_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CheckinService:
    return CheckinService(session, clock)


def get_entitlements_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> EntitlementsService:
    return EntitlementsService(session, clock)


def get_housekeeping_service(
    session: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> HousekeepingService:
    return HousekeepingService(session, clock)
