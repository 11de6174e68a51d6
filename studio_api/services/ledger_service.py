"""
Ledger Service - the only writer of the booking counters.

Owns ``courses.current_participants`` and
``group_session_allocations.sessions_remaining``. Every change is a single
conditional UPDATE (compare-and-update) executed inside the caller's
transaction, so a reservation either moves both counters or neither.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from studio_api.services.base import BaseService
from studio_api.services.audit_service import AuditService
from studio_api.services.errors import ConcurrencyError, CourseFull
from studio_api.models.orm_models import (
    Course,
    GroupSessionAllocation,
    Member,
    Registration,
)
from studio_api.utils import env_int

logger = logging.getLogger(__name__)


class _GuestFunding:
    def __repr__(self) -> str:
        return "GUEST"


GUEST = _GuestFunding()

FundingSource = Union[GroupSessionAllocation, _GuestFunding]


@dataclass(frozen=True)
class Reservation:
    course_id: int
    member_id: int
    allocation_id: Optional[int]
    is_guest: bool

    @property
    def over_capacity(self) -> bool:
        return False


@dataclass(frozen=True)
class AdminOverrideRegistration(Reservation):
    """A reservation an admin pushed past ``max_participants``."""

    max_participants: int = 0
    participants_after: int = 0

    @property
    def over_capacity(self) -> bool:
        return True


@dataclass(frozen=True)
class Release:
    registration_id: int
    refunded: bool
    within_cutoff: bool


def cancellation_cutoff_hours() -> int:
    return env_int("CANCELLATION_CUTOFF_HOURS", 24)


def is_within_cutoff(course: Course, now: datetime, hours: Optional[int] = None) -> bool:
    """True once ``now`` has reached the late-cancellation window of the course."""
    cutoff = course.starts_at - timedelta(hours=cancellation_cutoff_hours() if hours is None else hours)
    return now >= cutoff


class LedgerService(BaseService):
    def __init__(self, db: Session, clock=None, audit: Optional[AuditService] = None):
        super().__init__(db, clock)
        self.audit = audit or AuditService(db, clock)

    def _increment_participants(self, course_id: int, guarded: bool) -> int:
        stmt = update(Course).where(Course.id == course_id)
        if guarded:
            stmt = stmt.where(Course.current_participants < Course.max_participants)
        stmt = stmt.values(current_participants=Course.current_participants + 1)
        return self.db.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def reserve(
        self,
        course: Course,
        member_id: int,
        funding: FundingSource,
        admin_override: bool = False,
        actor_id: Optional[int] = None,
    ) -> Reservation:
        """Take one seat and, unless guest funded, one session.

        Raises:
            CourseFull: the seat guard failed and no admin override was given
            ConcurrencyError: the allocation was drained by another transaction
        """
        override_used = False
        if self._increment_participants(course.id, guarded=True) != 1:
            if not admin_override:
                raise CourseFull(
                    "Course is full",
                    {
                        "course_id": course.id,
                        "max_participants": course.max_participants,
                    },
                )
            self._increment_participants(course.id, guarded=False)
            override_used = True

        is_guest = funding is GUEST
        allocation_id: Optional[int] = None
        if is_guest:
            self.db.execute(
                update(Member)
                .where(Member.id == member_id)
                .values(guest_count=Member.guest_count + 1)
                .execution_options(synchronize_session=False)
            )
        else:
            allocation_id = funding.id
            taken = self.db.execute(
                update(GroupSessionAllocation)
                .where(
                    GroupSessionAllocation.id == allocation_id,
                    GroupSessionAllocation.sessions_remaining > 0,
                )
                .values(sessions_remaining=GroupSessionAllocation.sessions_remaining - 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if taken != 1:
                raise ConcurrencyError(
                    "Session allocation was consumed concurrently",
                    {"allocation_id": allocation_id},
                )
            self.db.expire(funding)

        self.db.expire(course)

        if not override_used:
            return Reservation(
                course_id=course.id,
                member_id=member_id,
                allocation_id=allocation_id,
                is_guest=is_guest,
            )

        participants_after = course.current_participants
        logger.warning(
            f"Capacity override: course={course.id} member={member_id} "
            f"participants={participants_after}/{course.max_participants} actor={actor_id}"
        )
        self.audit.record(
            AuditService.ACTION_CAPACITY_OVERRIDE,
            "courses",
            record_id=course.id,
            actor_id=actor_id,
            new_values={
                "member_id": member_id,
                "current_participants": participants_after,
                "max_participants": course.max_participants,
            },
        )
        return AdminOverrideRegistration(
            course_id=course.id,
            member_id=member_id,
            allocation_id=allocation_id,
            is_guest=is_guest,
            max_participants=course.max_participants,
            participants_after=participants_after,
        )

    def release(
        self,
        registration: Registration,
        course: Course,
        force_refund: bool = False,
    ) -> Release:
        """Free the seat and settle the session under the late-cancellation rule."""
        now = self._now()
        freed = self.db.execute(
            update(Course)
            .where(Course.id == course.id, Course.current_participants > 0)
            .values(current_participants=Course.current_participants - 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if freed != 1:
            logger.warning(
                f"Release on course={course.id} found current_participants already at 0"
            )
        self.db.expire(course)

        within_cutoff = is_within_cutoff(course, now)
        refunded = False
        if registration.allocation_id is not None and not registration.is_guest:
            if force_refund or not within_cutoff:
                refunded = (
                    self.db.execute(
                        update(GroupSessionAllocation)
                        .where(
                            GroupSessionAllocation.id == registration.allocation_id,
                            GroupSessionAllocation.sessions_remaining
                            < GroupSessionAllocation.total_sessions,
                        )
                        .values(
                            sessions_remaining=GroupSessionAllocation.sessions_remaining + 1
                        )
                        .execution_options(synchronize_session=False)
                    ).rowcount
                    == 1
                )
                if not refunded:
                    logger.warning(
                        f"Refund skipped for registration={registration.id}: "
                        f"allocation={registration.allocation_id} already full"
                    )
                else:
                    allocation = self.db.get(GroupSessionAllocation, registration.allocation_id)
                    if allocation is not None:
                        self.db.expire(allocation)

        return Release(
            registration_id=registration.id,
            refunded=refunded,
            within_cutoff=within_cutoff,
        )
