"""
Registration Service - booking state machine.

registered -> attended | cancelled | absent, all terminal. Every write runs in
one transaction that row-locks the course (and the funding allocation) before
touching the counters through the LedgerService.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from studio_api.services.base import BaseService, retry_on_concurrency
from studio_api.services.audit_service import AuditService
from studio_api.services.entitlements_service import EntitlementsService
from studio_api.services.ledger_service import (
    GUEST,
    LedgerService,
    Reservation,
    is_within_cutoff,
)
from studio_api.services.overlap_service import OverlapService
from studio_api.services.errors import (
    AlreadyRegistered,
    ConcurrencyError,
    CourseAlreadyStarted,
    CourseNotBookable,
    InvalidTransition,
    NoActiveSubscription,
    NoSessionsRemaining,
    NotFoundError,
    OverlapConflict,
    StateError,
    StudioError,
    ValidationError,
)
from studio_api.models.orm_models import (
    Course,
    CourseStatus,
    Group,
    Member,
    Registration,
    RegistrationStatus,
)
from studio_api.utils import iso

logger = logging.getLogger(__name__)

GUEST_NOTE = "guest registration"
OVERRIDE_NOTE = "admin override: capacity exceeded"

MSG_REFUNDED = "Session refunded to your account."
MSG_FORFEITED = "Session forfeited due to late cancellation."
MSG_GUEST_CANCELLED = "Guest registration cancelled."

_BASE36 = string.digits + string.ascii_lowercase


def generate_qr_token(member_id: int, course_id: int) -> str:
    """Opaque registration token handed to the QR renderer."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"REG_{int(time.time() * 1000)}_{member_id}_{course_id}_{suffix}"


def serialize_registration(reg: Registration) -> Dict[str, Any]:
    course = reg.course
    return {
        "id": reg.id,
        "member_id": reg.member_id,
        "course_id": reg.course_id,
        "status": reg.status,
        "qr_code": reg.qr_code,
        "notes": reg.notes,
        "is_guest": bool(reg.is_guest),
        "allocation_id": reg.allocation_id,
        "registration_time": iso(reg.registration_time),
        "cancelled_at": iso(reg.cancelled_at),
        "session_refunded": bool(reg.session_refunded),
        "course": {
            "id": course.id,
            "name": course.studio_class.name if course.studio_class else None,
            "date": iso(course.course_date),
            "start_time": iso(course.start_time),
            "end_time": iso(course.end_time),
            "trainer": course.trainer.name if course.trainer else None,
        }
        if course is not None
        else None,
    }


@dataclass
class RegistrationResult:
    registration: Registration
    reservation: Reservation

    @property
    def admin_override(self) -> bool:
        return self.reservation.over_capacity

    def to_dict(self) -> Dict[str, Any]:
        data = serialize_registration(self.registration)
        data["admin_override"] = self.admin_override
        return data


@dataclass
class CancellationResult:
    registration: Registration
    refunded: bool
    within_cutoff: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registration": serialize_registration(self.registration),
            "refunded": self.refunded,
            "within_cutoff": self.within_cutoff,
            "message": self.message,
        }


class RegistrationService(BaseService):
    def __init__(self, db: Session, clock=None):
        super().__init__(db, clock)
        self.audit = AuditService(db, clock)
        self.ledger = LedgerService(db, clock, audit=self.audit)
        self.entitlements = EntitlementsService(db, clock)
        self.overlaps = OverlapService(db, clock)

    # =========================================================================
    # Locking helpers
    # =========================================================================

    def _lock_course(self, course_id: int) -> Course:
        course = self.db.scalars(
            select(Course)
            .where(Course.id == course_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if course is None:
            raise NotFoundError("Course not found", {"course_id": course_id})
        return course

    def _lock_registration(self, registration_id: int) -> Optional[Registration]:
        return self.db.scalars(
            select(Registration)
            .where(Registration.id == registration_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def _active_registration(self, member_id: int, course_id: int) -> Optional[Registration]:
        return self.db.scalars(
            select(Registration).where(
                Registration.member_id == member_id,
                Registration.course_id == course_id,
                Registration.status == RegistrationStatus.REGISTERED,
            )
        ).first()

    def _transition(self, reg: Registration, new_status: str, **values) -> None:
        """Compare-and-update on the status column; the row must still be registered."""
        changed = self.db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status == RegistrationStatus.REGISTERED,
            )
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            raise ConcurrencyError(
                "Registration changed state concurrently", {"registration_id": reg.id}
            )
        self.db.expire(reg)

    # =========================================================================
    # Register
    # =========================================================================

    def _ensure_bookable(self, course: Course) -> None:
        if not course.is_active or course.status != CourseStatus.SCHEDULED:
            raise CourseNotBookable(
                "Course is not available for registration",
                {"course_id": course.id, "status": course.status, "is_active": course.is_active},
            )
        if course.starts_at <= self._now():
            raise CourseAlreadyStarted(
                "Cannot register for a course that has already started",
                {"course_id": course.id, "starts_at": iso(course.starts_at)},
            )

    def _resolve_funding(self, member_id: int, course: Course, allow_guest: bool):
        category_id = course.studio_class.category_id
        allocation = self.entitlements.lock_funding_allocation(member_id, category_id)
        if allocation is not None:
            return allocation
        if allow_guest:
            return GUEST
        if not self.entitlements.has_active_subscription(member_id):
            raise NoActiveSubscription(
                "No active subscription found", {"member_id": member_id}
            )
        raise NoSessionsRemaining(
            "No sessions remaining for this class group",
            {
                "member_id": member_id,
                "category_id": category_id,
                "group_ids": sorted(self.entitlements.index.groups_for(category_id)),
            },
        )

    @retry_on_concurrency
    def register(
        self,
        member_id: int,
        course_id: int,
        force: bool = False,
        allow_guest: bool = False,
        admin_override: bool = False,
        actor_id: Optional[int] = None,
    ) -> RegistrationResult:
        """Book one member into one course.

        ``force`` confirms past an overlap warning. ``allow_guest`` funds the
        booking without a session when no allocation covers the class.
        ``admin_override`` lets an admin exceed the course capacity.
        """
        try:
            course = self._lock_course(course_id)
            self._ensure_bookable(course)

            if self.db.get(Member, member_id) is None:
                raise NotFoundError("Member not found", {"member_id": member_id})

            if self._active_registration(member_id, course.id) is not None:
                raise AlreadyRegistered(
                    "Already registered for this course",
                    {"member_id": member_id, "course_id": course.id},
                )

            funding = self._resolve_funding(member_id, course, allow_guest)

            if not force:
                conflicts = self.overlaps.find_overlaps(member_id, course)
                if conflicts:
                    raise OverlapConflict(
                        "Schedule conflict with an existing registration",
                        {
                            "course_id": course.id,
                            "conflicts": [c.to_dict() for c in conflicts],
                        },
                    )

            reservation = self.ledger.reserve(
                course,
                member_id,
                funding,
                admin_override=admin_override,
                actor_id=actor_id,
            )

            notes = []
            if reservation.is_guest:
                notes.append(GUEST_NOTE)
            if reservation.over_capacity:
                notes.append(OVERRIDE_NOTE)

            registration = Registration(
                member_id=member_id,
                course_id=course.id,
                allocation_id=reservation.allocation_id,
                status=RegistrationStatus.REGISTERED,
                qr_code=generate_qr_token(member_id, course.id),
                notes="; ".join(notes) or None,
                is_guest=reservation.is_guest,
                registration_time=self._now(),
            )
            self.db.add(registration)
            try:
                self.db.flush()
            except IntegrityError as e:
                self.db.rollback()
                if self._active_registration(member_id, course_id) is not None:
                    raise AlreadyRegistered(
                        "Already registered for this course",
                        {"member_id": member_id, "course_id": course_id},
                    ) from e
                raise ConcurrencyError(
                    "Registration insert collided", {"course_id": course_id}
                ) from e

            self.db.commit()
            self.db.refresh(registration)
            logger.info(
                f"Registered member={member_id} course={course_id} "
                f"registration={registration.id} guest={reservation.is_guest} "
                f"override={reservation.over_capacity}"
            )
            return RegistrationResult(registration=registration, reservation=reservation)
        except StudioError as e:
            self.db.rollback()
            logger.info(
                f"Registration rejected member={member_id} course={course_id}: {e.code} {e.message}"
            )
            raise
        except Exception as e:
            logger.error(f"Error registering member={member_id} course={course_id}: {e}")
            self.db.rollback()
            raise

    def force_register(self, member_id: int, course_id: int, **options) -> RegistrationResult:
        return self.register(member_id, course_id, force=True, **options)

    def bulk_register(
        self,
        course_id: int,
        member_ids: Iterable[int],
        force: bool = False,
        allow_guest: bool = False,
        actor_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Admin registration of several members; per-member failures are collected."""
        registered: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        seen = set()
        for member_id in member_ids:
            if member_id in seen:
                continue
            seen.add(member_id)
            try:
                result = self.register(
                    member_id,
                    course_id,
                    force=force,
                    allow_guest=allow_guest,
                    admin_override=True,
                    actor_id=actor_id,
                )
                registered.append(result.to_dict())
            except StudioError as e:
                failed.append(
                    {
                        "member_id": member_id,
                        "error": e.message,
                        "type": e.code,
                        "details": e.details,
                    }
                )

        overlaps = [f for f in failed if f["type"] == OverlapConflict.code]
        subscription_issues = [
            f
            for f in failed
            if f["type"] in (NoActiveSubscription.code, NoSessionsRemaining.code)
        ]
        logger.info(
            f"Bulk registration course={course_id}: {len(registered)} ok, {len(failed)} failed"
        )
        return {
            "course_id": course_id,
            "registered": registered,
            "failed": failed,
            "overlaps": overlaps,
            "subscription_issues": subscription_issues,
        }

    # =========================================================================
    # Cancel / absent
    # =========================================================================

    @retry_on_concurrency
    def cancel(
        self,
        registration_id: int,
        actor_member_id: Optional[int] = None,
        actor_is_admin: bool = False,
        force_refund: bool = False,
    ) -> CancellationResult:
        try:
            if force_refund and not actor_is_admin:
                raise ValidationError("Only admins can force a refund")

            reg = self._lock_registration(registration_id)
            if reg is None or (not actor_is_admin and reg.member_id != actor_member_id):
                raise NotFoundError(
                    "Registration not found", {"registration_id": registration_id}
                )
            if reg.status != RegistrationStatus.REGISTERED:
                raise InvalidTransition(
                    f"Cannot cancel a registration in status '{reg.status}'",
                    {"registration_id": reg.id, "status": reg.status},
                )

            course = self._lock_course(reg.course_id)
            now = self._now()
            if not actor_is_admin and course.starts_at <= now:
                raise CourseAlreadyStarted(
                    "Cannot cancel registration for a course that has already started",
                    {"registration_id": reg.id, "starts_at": iso(course.starts_at)},
                )

            self._transition(reg, RegistrationStatus.CANCELLED, cancelled_at=now)
            release = self.ledger.release(reg, course, force_refund=force_refund)
            if release.refunded:
                reg.session_refunded = True

            if actor_is_admin:
                self.audit.record(
                    AuditService.ACTION_FORCED_REFUND if force_refund else AuditService.ACTION_ADMIN_CANCEL,
                    "registrations",
                    record_id=reg.id,
                    actor_id=actor_member_id,
                    old_values={"status": RegistrationStatus.REGISTERED},
                    new_values={
                        "status": RegistrationStatus.CANCELLED,
                        "refunded": release.refunded,
                        "within_cutoff": release.within_cutoff,
                    },
                )

            self.db.commit()
            self.db.refresh(reg)

            if reg.is_guest:
                message = MSG_GUEST_CANCELLED
            elif release.refunded:
                message = MSG_REFUNDED
            else:
                message = MSG_FORFEITED
            logger.info(
                f"Cancelled registration={reg.id} member={reg.member_id} "
                f"refunded={release.refunded} admin={actor_is_admin}"
            )
            return CancellationResult(
                registration=reg,
                refunded=release.refunded,
                within_cutoff=release.within_cutoff,
                message=message,
            )
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error cancelling registration={registration_id}: {e}")
            self.db.rollback()
            raise

    def is_late_cancellation(self, registration_id: int) -> bool:
        reg = self.db.get(Registration, registration_id)
        if reg is None:
            raise NotFoundError("Registration not found", {"registration_id": registration_id})
        return is_within_cutoff(reg.course, self._now())

    @retry_on_concurrency
    def mark_absent(self, registration_id: int, actor_id: Optional[int] = None) -> Registration:
        try:
            reg = self._lock_registration(registration_id)
            if reg is None:
                raise NotFoundError(
                    "Registration not found", {"registration_id": registration_id}
                )
            if reg.status != RegistrationStatus.REGISTERED:
                raise InvalidTransition(
                    f"Cannot mark absent a registration in status '{reg.status}'",
                    {"registration_id": reg.id, "status": reg.status},
                )
            if reg.checkin is not None:
                raise StateError(
                    "Cannot mark absent a registration with a check-in",
                    {"registration_id": reg.id},
                )
            course = reg.course
            if course.starts_at > self._now():
                raise StateError(
                    "Cannot mark absent before the course starts",
                    {"registration_id": reg.id, "starts_at": iso(course.starts_at)},
                )
            self._transition(reg, RegistrationStatus.ABSENT)
            self.audit.record(
                AuditService.ACTION_MARK_ABSENT,
                "registrations",
                record_id=reg.id,
                actor_id=actor_id,
                new_values={"status": RegistrationStatus.ABSENT},
            )
            self.db.commit()
            self.db.refresh(reg)
            logger.info(f"Marked absent registration={reg.id} actor={actor_id}")
            return reg
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error marking absent registration={registration_id}: {e}")
            self.db.rollback()
            raise

    # =========================================================================
    # Reads
    # =========================================================================

    def get_registration(self, registration_id: int) -> Registration:
        reg = self.db.get(Registration, registration_id)
        if reg is None:
            raise NotFoundError("Registration not found", {"registration_id": registration_id})
        return reg

    def check_member_sessions(self, member_id: int, course_id: int) -> Dict[str, Any]:
        """Admin pre-check: could this member be booked into the course on sessions?

        Read only. Unknown course raises NotFoundError; every other outcome is
        reported in the returned dict with ``can_register`` and an ``error`` text.
        """
        course = self.db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course not found", {"course_id": course_id})
        category_id = course.studio_class.category_id
        result: Dict[str, Any] = {
            "member_id": member_id,
            "course_id": course_id,
            "can_register": False,
            "remaining_sessions": 0,
            "total_sessions": 0,
            "group_name": None,
            "error": None,
        }

        member = self.db.get(Member, member_id)
        if member is None or not self.entitlements.has_active_subscription(member_id):
            result["error"] = "Member not found or no active subscription"
            return result

        allocations = self.entitlements.eligible_allocations(member_id, category_id)
        if not allocations:
            group_ids = self.entitlements.index.groups_for(category_id)
            if group_ids:
                result["group_name"] = self.db.scalars(
                    select(Group.name).where(Group.id.in_(group_ids)).order_by(Group.name)
                ).first()
            result["error"] = "No group sessions allocated for this course type"
            return result

        funding = next((a for a in allocations if a.sessions_remaining > 0), allocations[0])
        remaining = sum(a.sessions_remaining for a in allocations)
        result.update(
            can_register=remaining > 0,
            remaining_sessions=remaining,
            total_sessions=sum(a.total_sessions for a in allocations),
            group_name=funding.group.name if funding.group else None,
            error=None if remaining > 0 else "No remaining sessions for this group",
        )
        return result

    def list_member_registrations(
        self, member_id: int, status: Optional[str] = None, upcoming_only: bool = False
    ) -> List[Registration]:
        stmt = (
            select(Registration)
            .join(Course, Course.id == Registration.course_id)
            .options(joinedload(Registration.course))
            .where(Registration.member_id == member_id)
            .order_by(Course.course_date.asc(), Course.start_time.asc())
        )
        if status:
            if status not in RegistrationStatus.ALL:
                raise ValidationError(f"Unknown registration status '{status}'")
            stmt = stmt.where(Registration.status == status)
        if upcoming_only:
            stmt = stmt.where(Course.course_date >= self._now().date())
        return list(self.db.scalars(stmt).unique().all())

    def list_course_registrations(self, course_id: int) -> List[Registration]:
        if self.db.get(Course, course_id) is None:
            raise NotFoundError("Course not found", {"course_id": course_id})
        stmt = (
            select(Registration)
            .where(Registration.course_id == course_id)
            .order_by(Registration.registration_time.asc(), Registration.id.asc())
        )
        return list(self.db.scalars(stmt).all())
