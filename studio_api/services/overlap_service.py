import logging
from dataclasses import dataclass, asdict
from datetime import date, time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from studio_api.services.base import BaseService
from studio_api.services.errors import NotFoundError
from studio_api.models.orm_models import Course, Registration, RegistrationStatus
from studio_api.utils import iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverlapDetail:
    registration_id: int
    course_id: int
    course_name: str
    course_date: date
    start_time: time
    end_time: time
    trainer: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["course_date"] = iso(self.course_date)
        data["start_time"] = iso(self.start_time)
        data["end_time"] = iso(self.end_time)
        return data


def intervals_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open overlap: touching edges do not overlap."""
    return start_a < end_b and start_b < end_a


class OverlapService(BaseService):
    """Finds a member's active bookings that collide with a candidate course."""

    def __init__(self, db: Session, clock=None):
        super().__init__(db, clock)

    def find_overlaps(self, member_id: int, candidate: Course) -> List[OverlapDetail]:
        stmt = (
            select(Registration)
            .join(Course, Course.id == Registration.course_id)
            .options(
                joinedload(Registration.course).joinedload(Course.studio_class),
                joinedload(Registration.course).joinedload(Course.trainer),
            )
            .where(
                Registration.member_id == member_id,
                Registration.status == RegistrationStatus.REGISTERED,
                Course.course_date == candidate.course_date,
                Course.id != candidate.id,
            )
            .order_by(Course.start_time.asc())
        )
        conflicts: List[OverlapDetail] = []
        for reg in self.db.scalars(stmt).unique().all():
            existing = reg.course
            if not intervals_overlap(
                candidate.start_time, candidate.end_time, existing.start_time, existing.end_time
            ):
                continue
            conflicts.append(
                OverlapDetail(
                    registration_id=reg.id,
                    course_id=existing.id,
                    course_name=existing.studio_class.name if existing.studio_class else "",
                    course_date=existing.course_date,
                    start_time=existing.start_time,
                    end_time=existing.end_time,
                    trainer=existing.trainer.name if existing.trainer else None,
                )
            )
        if conflicts:
            logger.info(
                f"Overlap check member={member_id} course={candidate.id}: "
                f"{len(conflicts)} conflict(s)"
            )
        return conflicts

    def find_overlaps_for_course_id(self, member_id: int, course_id: int) -> List[OverlapDetail]:
        course = self.db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course not found", {"course_id": course_id})
        return self.find_overlaps(member_id, course)
