"""
Housekeeping Service - periodic wall-clock sweep.

Moves courses through scheduled -> in_progress -> completed and marks
registrations of finished courses that never checked in as absent. Booking
rules never depend on this sweep having run.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update, exists
from sqlalchemy.orm import Session

from studio_api.services.base import BaseService
from studio_api.services.errors import StudioError
from studio_api.models.orm_models import (
    Checkin,
    Course,
    CourseStatus,
    Registration,
    RegistrationStatus,
)

logger = logging.getLogger(__name__)


class HousekeepingService(BaseService):
    def __init__(self, db: Session, clock=None):
        super().__init__(db, clock)

    def _set_course_status(self, course_id: int, from_status: str, to_status: str, now: datetime) -> bool:
        return (
            self.db.execute(
                update(Course)
                .where(Course.id == course_id, Course.status == from_status)
                .values(status=to_status, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            == 1
        )

    def advance_course_statuses(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._now()
        started = 0
        completed = 0
        rows = self.db.scalars(
            select(Course).where(
                Course.status.in_([CourseStatus.SCHEDULED, CourseStatus.IN_PROGRESS]),
                Course.course_date <= now.date(),
            )
        ).all()
        for course in rows:
            if course.ends_at <= now:
                if self._set_course_status(course.id, course.status, CourseStatus.COMPLETED, now):
                    completed += 1
            elif course.starts_at <= now and course.status == CourseStatus.SCHEDULED:
                if self._set_course_status(course.id, CourseStatus.SCHEDULED, CourseStatus.IN_PROGRESS, now):
                    started += 1
        return {"started": started, "completed": completed}

    def mark_absent_sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self._now()
        has_checkin = exists().where(Checkin.registration_id == Registration.id)
        rows = self.db.execute(
            select(Registration.id, Course.course_date, Course.end_time)
            .join(Course, Course.id == Registration.course_id)
            .where(
                Registration.status == RegistrationStatus.REGISTERED,
                Course.course_date <= now.date(),
                ~has_checkin,
            )
        ).all()
        ended = [
            reg_id
            for reg_id, course_date, end_time in rows
            if datetime.combine(course_date, end_time) <= now
        ]
        if not ended:
            return 0
        return self.db.execute(
            update(Registration)
            .where(
                Registration.id.in_(ended),
                Registration.status == RegistrationStatus.REGISTERED,
            )
            .values(status=RegistrationStatus.ABSENT)
            .execution_options(synchronize_session=False)
        ).rowcount

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._now()
        try:
            statuses = self.advance_course_statuses(now)
            absent = self.mark_absent_sweep(now)
            self.db.commit()
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error running housekeeping sweep: {e}")
            self.db.rollback()
            raise
        result = {
            "ran_at": now.isoformat(),
            "courses_started": statuses["started"],
            "courses_completed": statuses["completed"],
            "registrations_marked_absent": absent,
        }
        logger.info(
            f"Housekeeping: started={statuses['started']} completed={statuses['completed']} "
            f"absent={absent}"
        )
        return result
