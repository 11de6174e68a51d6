"""
Checkin Service - QR check-in and staff corrections.

A second scan of the same token is a no-op that returns the existing check-in
(``created=False``). Set CHECKIN_STRICT=true to reject repeats with
AlreadyCheckedIn instead; the same rule applies to manual validation.
"""

import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studio_api.services.base import BaseService, retry_on_concurrency
from studio_api.services.audit_service import AuditService
from studio_api.services.errors import (
    AlreadyCheckedIn,
    ConcurrencyError,
    InvalidToken,
    NotFoundError,
    NotRegistered,
    StateError,
    StudioError,
)
from studio_api.models.orm_models import Checkin, Registration, RegistrationStatus
from studio_api.services.registration_service import serialize_registration
from studio_api.services.schedule_service import serialize_course
from studio_api.utils import env_bool, iso

logger = logging.getLogger(__name__)


@dataclass
class CheckinResult:
    checkin: Checkin
    registration: Registration
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        course = self.registration.course
        return {
            "checkin_id": self.checkin.id,
            "registration_id": self.registration.id,
            "member_id": self.registration.member_id,
            "course_id": self.registration.course_id,
            "course_name": course.studio_class.name if course and course.studio_class else None,
            "checkin_time": iso(self.checkin.checkin_time),
            "status": self.registration.status,
            "created": self.created,
        }


def normalize_token(raw: Optional[str]) -> str:
    return urllib.parse.unquote(str(raw or "")).strip()


class CheckinService(BaseService):
    def __init__(self, db: Session, clock=None, strict: Optional[bool] = None):
        super().__init__(db, clock)
        self.strict = env_bool("CHECKIN_STRICT", False) if strict is None else bool(strict)
        self.audit = AuditService(db, clock)

    def _existing_checkin(self, registration_id: int) -> Optional[Checkin]:
        return self.db.scalars(
            select(Checkin).where(Checkin.registration_id == registration_id)
        ).first()

    def _lock_registration(self, **criteria) -> Optional[Registration]:
        stmt = select(Registration).with_for_update().execution_options(populate_existing=True)
        for column, value in criteria.items():
            stmt = stmt.where(getattr(Registration, column) == value)
        return self.db.scalars(stmt).first()

    def _attend(self, reg: Registration, notes: Optional[str]) -> CheckinResult:
        existing = self._existing_checkin(reg.id)
        if existing is not None:
            if self.strict:
                raise AlreadyCheckedIn(
                    "Member is already checked in",
                    {"registration_id": reg.id, "checkin_id": existing.id},
                )
            self.db.rollback()
            logger.info(f"Repeated check-in ignored registration={reg.id}")
            return CheckinResult(checkin=existing, registration=reg, created=False)

        if reg.status != RegistrationStatus.REGISTERED:
            raise NotRegistered(
                f"Registration is not active (status '{reg.status}')",
                {"registration_id": reg.id, "status": reg.status},
            )

        changed = self.db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status == RegistrationStatus.REGISTERED,
            )
            .values(status=RegistrationStatus.ATTENDED)
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            raise ConcurrencyError(
                "Registration changed state concurrently", {"registration_id": reg.id}
            )
        self.db.expire(reg)

        checkin = Checkin(
            registration_id=reg.id,
            member_id=reg.member_id,
            course_id=reg.course_id,
            checkin_time=self._now(),
            session_consumed=True,
            notes=notes,
        )
        self.db.add(checkin)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ConcurrencyError(
                "Check-in recorded concurrently", {"registration_id": reg.id}
            ) from e
        self.db.commit()
        self.db.refresh(checkin)
        self.db.refresh(reg)
        logger.info(
            f"Check-in registration={reg.id} member={reg.member_id} course={reg.course_id}"
        )
        return CheckinResult(checkin=checkin, registration=reg, created=True)

    def lookup(self, qr_token: str) -> Dict[str, Any]:
        """Resolve a QR token for the scanner screen without checking in."""
        token = normalize_token(qr_token)
        reg = None
        if token:
            reg = self.db.scalars(select(Registration).where(Registration.qr_code == token)).first()
        if reg is None:
            raise InvalidToken("QR code not found or invalid")

        existing = self._existing_checkin(reg.id)
        registered_count = self.db.scalar(
            select(func.count(Registration.id)).where(
                Registration.course_id == reg.course_id,
                Registration.status != RegistrationStatus.CANCELLED,
            )
        )
        checked_in_count = self.db.scalar(
            select(func.count(Checkin.id)).where(Checkin.course_id == reg.course_id)
        )
        member = reg.member
        return {
            "registration": serialize_registration(reg),
            "member": {"id": member.id, "name": member.name, "email": member.email},
            "course": serialize_course(reg.course),
            "registered_count": int(registered_count or 0),
            "checked_in_count": int(checked_in_count or 0),
            "already_checked_in": existing is not None,
            "checkin_time": iso(existing.checkin_time) if existing is not None else None,
        }

    @retry_on_concurrency
    def checkin(self, qr_token: str) -> CheckinResult:
        """Scan path: resolve the token and mark the registration attended."""
        token = normalize_token(qr_token)
        try:
            if not token:
                raise InvalidToken("QR code not found or invalid")
            reg = self._lock_registration(qr_code=token)
            if reg is None:
                raise InvalidToken("QR code not found or invalid")
            return self._attend(reg, notes=None)
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error processing check-in: {e}")
            self.db.rollback()
            raise

    @retry_on_concurrency
    def validate_registration(self, registration_id: int, actor_id: Optional[int] = None) -> CheckinResult:
        """Staff path: mark attended by registration id when the QR cannot be scanned."""
        try:
            logger.info(f"Manual validation registration={registration_id} actor={actor_id}")
            reg = self._lock_registration(id=registration_id)
            if reg is None:
                raise NotFoundError(
                    "Registration not found", {"registration_id": registration_id}
                )
            return self._attend(reg, notes="Validated by admin")
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error validating registration={registration_id}: {e}")
            self.db.rollback()
            raise

    @retry_on_concurrency
    def unvalidate(self, registration_id: int, actor_id: Optional[int] = None) -> Registration:
        """Undo a check-in. Sessions and seats are left as they are."""
        try:
            reg = self._lock_registration(id=registration_id)
            if reg is None:
                raise NotFoundError(
                    "Registration not found", {"registration_id": registration_id}
                )
            existing = self._existing_checkin(reg.id)
            if existing is None:
                raise NotFoundError(
                    "No check-in found to unvalidate", {"registration_id": reg.id}
                )
            if reg.status != RegistrationStatus.ATTENDED:
                raise StateError(
                    f"Cannot unvalidate a registration in status '{reg.status}'",
                    {"registration_id": reg.id, "status": reg.status},
                )

            old_values = {
                "registration_id": reg.id,
                "checkin_time": iso(existing.checkin_time),
            }
            checkin_id = existing.id
            self.db.execute(delete(Checkin).where(Checkin.id == checkin_id))
            changed = self.db.execute(
                update(Registration)
                .where(
                    Registration.id == reg.id,
                    Registration.status == RegistrationStatus.ATTENDED,
                )
                .values(status=RegistrationStatus.REGISTERED)
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed != 1:
                raise ConcurrencyError(
                    "Registration changed state concurrently", {"registration_id": reg.id}
                )
            self.audit.record(
                AuditService.ACTION_CHECKIN_UNVALIDATE,
                "checkins",
                record_id=checkin_id,
                actor_id=actor_id,
                old_values=old_values,
            )
            self.db.commit()
            self.db.refresh(reg)
            logger.info(f"Check-in removed registration={reg.id} actor={actor_id}")
            return reg
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error unvalidating registration={registration_id}: {e}")
            self.db.rollback()
            raise
