"""
Schedule Service - recurring schedules and the courses expanded from them.

A schedule is a recurrence rule (once, daily or weekly) for one class and
trainer. Saving it expands the rule into dated Course rows. Edits regenerate
the rows with delete-then-recreate inside a single transaction, and are refused
outright once any course of the schedule has registrations or check-ins.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from studio_api.services.base import BaseService
from studio_api.services.audit_service import AuditService
from studio_api.services.errors import (
    CourseHasBookings,
    NotFoundError,
    ScheduleLocked,
    StudioError,
    ValidationError,
)
from studio_api.models.orm_models import (
    Checkin,
    Course,
    CourseStatus,
    Registration,
    RepetitionType,
    Schedule,
    StudioClass,
    Trainer,
)
from studio_api.utils import env_int, iso

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = (
    "class_id",
    "trainer_id",
    "repetition_type",
    "day_of_week",
    "schedule_date",
    "start_date",
    "end_date",
    "start_time",
    "end_time",
    "max_participants",
    "is_active",
)

REQUIRED_SCHEDULE_FIELDS = frozenset(
    ("class_id", "repetition_type", "start_time", "end_time", "is_active")
)

COURSE_EDIT_FIELDS = (
    "course_date",
    "start_time",
    "end_time",
    "trainer_id",
    "max_participants",
    "is_active",
    "status",
)


def default_capacity() -> int:
    return env_int("DEFAULT_COURSE_CAPACITY", 10)


def js_weekday(d: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def _parse_date(value: Any, field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except Exception:
        raise ValidationError(f"Invalid date for {field}", {"field": field, "value": str(value)})


def _parse_time(value: Any, field: str) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    try:
        return time.fromisoformat(str(value).strip())
    except Exception:
        raise ValidationError(f"Invalid time for {field}", {"field": field, "value": str(value)})


def effective_capacity(schedule: Schedule, studio_class: Optional[StudioClass]) -> int:
    if schedule.max_participants is not None:
        return int(schedule.max_participants)
    if studio_class is not None and studio_class.max_capacity is not None:
        return int(studio_class.max_capacity)
    return default_capacity()


def validate_schedule(schedule: Schedule) -> None:
    """Raises ValidationError when the rule cannot be expanded as a whole."""
    kind = schedule.repetition_type
    if kind not in RepetitionType.ALL:
        raise ValidationError(
            f"Unknown repetition type '{kind}'", {"repetition_type": kind}
        )
    if schedule.start_time is None or schedule.end_time is None:
        raise ValidationError("Missing start_time or end_time")
    if schedule.end_time <= schedule.start_time:
        raise ValidationError(
            "end_time must be after start_time",
            {"start_time": iso(schedule.start_time), "end_time": iso(schedule.end_time)},
        )
    if schedule.max_participants is not None and schedule.max_participants < 0:
        raise ValidationError("max_participants cannot be negative")

    if kind == RepetitionType.ONCE:
        if schedule.schedule_date is None:
            raise ValidationError("No schedule_date for one-time event")
        return

    if schedule.start_date is None or schedule.end_date is None:
        raise ValidationError("Missing start_date or end_date for recurring event")
    if schedule.end_date < schedule.start_date:
        raise ValidationError(
            "end_date must not be before start_date",
            {"start_date": iso(schedule.start_date), "end_date": iso(schedule.end_date)},
        )
    max_span = env_int("MAX_SCHEDULE_SPAN_DAYS", 730)
    if (schedule.end_date - schedule.start_date).days > max_span:
        raise ValidationError(
            f"Recurring window cannot exceed {max_span} days",
            {"start_date": iso(schedule.start_date), "end_date": iso(schedule.end_date)},
        )
    if kind == RepetitionType.WEEKLY:
        if schedule.day_of_week is None or not 0 <= int(schedule.day_of_week) <= 6:
            raise ValidationError(
                "day_of_week (0=Sunday..6=Saturday) is required for weekly events",
                {"day_of_week": schedule.day_of_week},
            )


def expansion_dates(schedule: Schedule) -> List[date]:
    validate_schedule(schedule)
    if schedule.repetition_type == RepetitionType.ONCE:
        return [schedule.schedule_date]

    days = []
    current = schedule.start_date
    while current <= schedule.end_date:
        if schedule.repetition_type == RepetitionType.DAILY:
            days.append(current)
        elif js_weekday(current) == int(schedule.day_of_week):
            days.append(current)
        current += timedelta(days=1)
    return days


def expand_schedule(schedule: Schedule, studio_class: Optional[StudioClass] = None) -> List[Course]:
    """Pure expansion of a schedule into unsaved Course rows, ordered by date."""
    studio_class = studio_class if studio_class is not None else schedule.studio_class
    capacity = effective_capacity(schedule, studio_class)
    return [
        Course(
            schedule_id=schedule.id,
            class_id=schedule.class_id,
            trainer_id=schedule.trainer_id,
            course_date=day,
            start_time=schedule.start_time,
            end_time=schedule.end_time,
            max_participants=capacity,
            current_participants=0,
            status=CourseStatus.SCHEDULED,
            is_active=True,
        )
        for day in expansion_dates(schedule)
    ]


def serialize_schedule(schedule: Schedule) -> Dict[str, Any]:
    return {
        "id": schedule.id,
        "class_id": schedule.class_id,
        "trainer_id": schedule.trainer_id,
        "repetition_type": schedule.repetition_type,
        "day_of_week": schedule.day_of_week,
        "schedule_date": iso(schedule.schedule_date),
        "start_date": iso(schedule.start_date),
        "end_date": iso(schedule.end_date),
        "start_time": iso(schedule.start_time),
        "end_time": iso(schedule.end_time),
        "max_participants": schedule.max_participants,
        "is_active": bool(schedule.is_active),
    }


def serialize_course(course: Course) -> Dict[str, Any]:
    return {
        "id": course.id,
        "schedule_id": course.schedule_id,
        "class_id": course.class_id,
        "class_name": course.studio_class.name if course.studio_class else None,
        "trainer_id": course.trainer_id,
        "trainer": course.trainer.name if course.trainer else None,
        "course_date": iso(course.course_date),
        "start_time": iso(course.start_time),
        "end_time": iso(course.end_time),
        "max_participants": course.max_participants,
        "current_participants": course.current_participants,
        "spots_left": max(0, course.max_participants - course.current_participants),
        "status": course.status,
        "is_active": bool(course.is_active),
    }


class ScheduleService(BaseService):
    def __init__(self, db: Session, clock=None):
        super().__init__(db, clock)
        self.audit = AuditService(db, clock)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _apply_fields(self, schedule: Schedule, data: Dict[str, Any]) -> None:
        for field in SCHEDULE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if value is None and field in REQUIRED_SCHEDULE_FIELDS:
                raise ValidationError(f"{field} cannot be empty", {"field": field})
            if field in ("schedule_date", "start_date", "end_date"):
                value = _parse_date(value, field)
            elif field in ("start_time", "end_time"):
                value = _parse_time(value, field)
            elif field == "repetition_type":
                value = str(value or "").strip().lower()
            elif field == "is_active":
                value = bool(value)
            setattr(schedule, field, value)

    def _load_refs(self, schedule: Schedule) -> StudioClass:
        studio_class = self.db.get(StudioClass, schedule.class_id) if schedule.class_id else None
        if studio_class is None:
            raise ValidationError("Class not found", {"class_id": schedule.class_id})
        if schedule.trainer_id is not None and self.db.get(Trainer, schedule.trainer_id) is None:
            raise ValidationError("Trainer not found", {"trainer_id": schedule.trainer_id})
        return studio_class

    def _lock_schedule(self, schedule_id: int) -> Schedule:
        schedule = self.db.scalars(
            select(Schedule)
            .where(Schedule.id == schedule_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if schedule is None:
            raise NotFoundError("Schedule not found", {"schedule_id": schedule_id})
        return schedule

    def _booking_counts(self, course_ids: List[int]) -> Dict[str, int]:
        if not course_ids:
            return {"total_registrations": 0, "total_checkins": 0}
        registrations = self.db.scalar(
            select(func.count(Registration.id)).where(Registration.course_id.in_(course_ids))
        )
        checkins = self.db.scalar(
            select(func.count(Checkin.id)).where(Checkin.course_id.in_(course_ids))
        )
        return {
            "total_registrations": int(registrations or 0),
            "total_checkins": int(checkins or 0),
        }

    def _lock_unbooked_courses(self, schedule: Schedule) -> List[int]:
        """Row-locks every course of the schedule and refuses if any was booked."""
        course_ids = list(
            self.db.scalars(
                select(Course.id)
                .where(Course.schedule_id == schedule.id)
                .order_by(Course.id)
                .with_for_update()
            ).all()
        )
        counts = self._booking_counts(course_ids)
        if counts["total_registrations"] or counts["total_checkins"]:
            raise ScheduleLocked(
                "Cannot edit schedule with existing registrations or attendance",
                dict(counts, schedule_id=schedule.id),
            )
        return course_ids

    def _create_courses(self, schedule: Schedule, studio_class: StudioClass) -> List[Course]:
        courses = expand_schedule(schedule, studio_class)
        self.db.add_all(courses)
        self.db.flush()
        return courses

    # =========================================================================
    # Schedules
    # =========================================================================

    def create_schedule(self, data: Dict[str, Any], actor_id: Optional[int] = None) -> Dict[str, Any]:
        """Create a schedule and expand its courses in one transaction."""
        try:
            schedule = Schedule(is_active=True)
            self._apply_fields(schedule, data)
            studio_class = self._load_refs(schedule)
            validate_schedule(schedule)
            schedule.created_at = self._now()
            self.db.add(schedule)
            self.db.flush()

            courses = self._create_courses(schedule, studio_class) if schedule.is_active else []
            self.audit.record(
                AuditService.ACTION_SCHEDULE_CREATE,
                "schedules",
                record_id=schedule.id,
                actor_id=actor_id,
                new_values=dict(serialize_schedule(schedule), courses_created=len(courses)),
            )
            self.db.commit()
            logger.info(
                f"Schedule {schedule.id} created ({schedule.repetition_type}): "
                f"{len(courses)} course(s)"
            )
            return {
                "schedule": serialize_schedule(schedule),
                "courses_created": len(courses),
                "course_ids": [c.id for c in courses],
            }
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error creating schedule: {e}")
            self.db.rollback()
            raise

    def update_schedule(
        self, schedule_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Apply changes and regenerate, or deactivate, the schedule's courses."""
        try:
            schedule = self._lock_schedule(schedule_id)
            course_ids = self._lock_unbooked_courses(schedule)
            old_values = serialize_schedule(schedule)

            self._apply_fields(schedule, changes or {})
            studio_class = self._load_refs(schedule)
            validate_schedule(schedule)
            schedule.updated_at = self._now()
            self.db.flush()

            if not schedule.is_active:
                deactivated = 0
                if course_ids:
                    deactivated = self.db.execute(
                        update(Course)
                        .where(Course.id.in_(course_ids))
                        .values(is_active=False, updated_at=self._now())
                        .execution_options(synchronize_session=False)
                    ).rowcount
                self.audit.record(
                    AuditService.ACTION_SCHEDULE_DEACTIVATE,
                    "schedules",
                    record_id=schedule.id,
                    actor_id=actor_id,
                    old_values=old_values,
                    new_values={"courses_deactivated": deactivated},
                )
                self.db.commit()
                self.db.expire_all()
                logger.info(f"Schedule {schedule.id} deactivated: {deactivated} course(s)")
                return {
                    "schedule": serialize_schedule(schedule),
                    "courses_deleted": 0,
                    "courses_created": 0,
                    "courses_deactivated": deactivated,
                }

            deleted = 0
            if course_ids:
                deleted = self.db.execute(
                    delete(Course)
                    .where(Course.id.in_(course_ids))
                    .execution_options(synchronize_session=False)
                ).rowcount
            self.db.expire_all()
            schedule = self.db.get(Schedule, schedule_id)
            courses = self._create_courses(schedule, studio_class)
            self.audit.record(
                AuditService.ACTION_SCHEDULE_REGENERATE,
                "schedules",
                record_id=schedule.id,
                actor_id=actor_id,
                old_values=old_values,
                new_values=dict(
                    serialize_schedule(schedule),
                    courses_deleted=deleted,
                    courses_created=len(courses),
                ),
            )
            self.db.commit()
            logger.info(
                f"Schedule {schedule.id} regenerated: {deleted} deleted, {len(courses)} created"
            )
            return {
                "schedule": serialize_schedule(schedule),
                "courses_deleted": deleted,
                "courses_created": len(courses),
                "courses_deactivated": 0,
                "course_ids": [c.id for c in courses],
            }
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error updating schedule {schedule_id}: {e}")
            self.db.rollback()
            raise

    def regenerate_schedule_instances(self, schedule_id: int, actor_id: Optional[int] = None) -> Dict[str, Any]:
        return self.update_schedule(schedule_id, {}, actor_id=actor_id)

    def delete_schedule(self, schedule_id: int, actor_id: Optional[int] = None) -> Dict[str, Any]:
        try:
            schedule = self._lock_schedule(schedule_id)
            course_ids = self._lock_unbooked_courses(schedule)
            old_values = serialize_schedule(schedule)
            deleted = 0
            if course_ids:
                deleted = self.db.execute(
                    delete(Course)
                    .where(Course.id.in_(course_ids))
                    .execution_options(synchronize_session=False)
                ).rowcount
            self.db.delete(schedule)
            self.audit.record(
                AuditService.ACTION_SCHEDULE_DELETE,
                "schedules",
                record_id=schedule_id,
                actor_id=actor_id,
                old_values=dict(old_values, courses_deleted=deleted),
            )
            self.db.commit()
            logger.info(f"Schedule {schedule_id} deleted with {deleted} course(s)")
            return {"schedule_id": schedule_id, "courses_deleted": deleted}
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error deleting schedule {schedule_id}: {e}")
            self.db.rollback()
            raise

    def get_schedule(self, schedule_id: int) -> Schedule:
        schedule = self.db.get(Schedule, schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found", {"schedule_id": schedule_id})
        return schedule

    def list_schedule_courses(self, schedule_id: int) -> List[Course]:
        self.get_schedule(schedule_id)
        return list(
            self.db.scalars(
                select(Course)
                .where(Course.schedule_id == schedule_id)
                .order_by(Course.course_date, Course.start_time)
            ).all()
        )

    # =========================================================================
    # Courses
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

    def get_course(self, course_id: int) -> Course:
        course = self.db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course not found", {"course_id": course_id})
        return course

    def list_courses(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        class_id: Optional[int] = None,
        active_only: bool = True,
    ) -> List[Course]:
        stmt = select(Course).order_by(Course.course_date, Course.start_time, Course.id)
        if date_from is not None:
            stmt = stmt.where(Course.course_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(Course.course_date <= date_to)
        if class_id is not None:
            stmt = stmt.where(Course.class_id == class_id)
        if active_only:
            stmt = stmt.where(Course.is_active.is_(True))
        return list(self.db.scalars(stmt).all())

    def update_course(
        self, course_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None
    ) -> Course:
        """Ad-hoc edit of one course. The course stops following its schedule."""
        try:
            course = self._lock_course(course_id)
            old_values = serialize_course(course)
            for field in COURSE_EDIT_FIELDS:
                if field not in changes:
                    continue
                value = changes[field]
                if field == "course_date":
                    value = _parse_date(value, field)
                elif field in ("start_time", "end_time"):
                    value = _parse_time(value, field)
                elif field == "is_active":
                    value = bool(value)
                elif field == "status" and value not in CourseStatus.ALL:
                    raise ValidationError(f"Unknown course status '{value}'", {"status": value})
                if value is None and field != "trainer_id":
                    raise ValidationError(f"{field} cannot be empty", {"field": field})
                setattr(course, field, value)

            if course.end_time <= course.start_time:
                raise ValidationError("end_time must be after start_time")
            if course.max_participants < course.current_participants:
                raise ValidationError(
                    "max_participants cannot be lower than current participants",
                    {
                        "max_participants": course.max_participants,
                        "current_participants": course.current_participants,
                    },
                )
            if course.trainer_id is not None and self.db.get(Trainer, course.trainer_id) is None:
                raise ValidationError("Trainer not found", {"trainer_id": course.trainer_id})

            course.schedule_id = None
            course.updated_at = self._now()
            self.audit.record(
                AuditService.ACTION_COURSE_UPDATE,
                "courses",
                record_id=course.id,
                actor_id=actor_id,
                old_values=old_values,
                new_values={k: changes[k] for k in COURSE_EDIT_FIELDS if k in changes},
            )
            self.db.commit()
            self.db.refresh(course)
            logger.info(f"Course {course.id} edited by actor={actor_id}")
            return course
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error updating course {course_id}: {e}")
            self.db.rollback()
            raise

    def delete_course(self, course_id: int, actor_id: Optional[int] = None) -> None:
        try:
            course = self._lock_course(course_id)
            counts = self._booking_counts([course.id])
            if counts["total_registrations"] or counts["total_checkins"]:
                raise CourseHasBookings(
                    "Cannot delete a course with registrations or check-ins",
                    dict(counts, course_id=course.id),
                )
            old_values = serialize_course(course)
            self.db.delete(course)
            self.audit.record(
                AuditService.ACTION_COURSE_DELETE,
                "courses",
                record_id=course_id,
                actor_id=actor_id,
                old_values=old_values,
            )
            self.db.commit()
            logger.info(f"Course {course_id} deleted by actor={actor_id}")
        except StudioError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error deleting course {course_id}: {e}")
            self.db.rollback()
            raise
