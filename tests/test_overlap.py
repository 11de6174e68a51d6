from datetime import date, time

import pytest

from studio_api.services.errors import NotFoundError
from studio_api.services.overlap_service import OverlapService, intervals_overlap
from studio_api.services.registration_service import RegistrationService


@pytest.mark.unit
@pytest.mark.parametrize(
    "a, b, expected",
    [
        ((time(10, 0), time(11, 0)), (time(10, 30), time(11, 30)), True),
        ((time(10, 0), time(11, 0)), (time(11, 0), time(12, 0)), False),
        ((time(10, 0), time(11, 0)), (time(9, 0), time(10, 0)), False),
        ((time(10, 0), time(11, 0)), (time(10, 15), time(10, 45)), True),
        ((time(10, 0), time(11, 0)), (time(9, 0), time(12, 0)), True),
    ],
)
def test_intervals_overlap_is_half_open(a, b, expected):
    assert intervals_overlap(*a, *b) is expected
    assert intervals_overlap(*b, *a) is expected


@pytest.mark.integration
class TestFindOverlaps:
    @pytest.fixture
    def booked(self, db, clock, factory, studio):
        member = factory.member()
        factory.subscription(member, {studio["group"]: 5})
        course = factory.course(studio["class"], start=time(10, 0), end=time(11, 0), trainer=studio["trainer"])
        reg = RegistrationService(db, clock).register(member.id, course.id).registration
        return member, course, reg

    def test_overlapping_course_is_reported(self, db, clock, factory, studio, booked):
        member, course, reg = booked
        candidate = factory.course(studio["class"], start=time(10, 30), end=time(11, 30))

        conflicts = OverlapService(db, clock).find_overlaps(member.id, candidate)

        assert len(conflicts) == 1
        detail = conflicts[0].to_dict()
        assert detail["registration_id"] == reg.id
        assert detail["course_id"] == course.id
        assert detail["course_name"] == "Pole Basics"
        assert detail["start_time"] == "10:00"
        assert detail["trainer"] == "Ana"

    def test_back_to_back_course_is_not_an_overlap(self, db, clock, factory, studio, booked):
        member, _, _ = booked
        candidate = factory.course(studio["class"], start=time(11, 0), end=time(12, 0))
        assert OverlapService(db, clock).find_overlaps(member.id, candidate) == []

    def test_same_time_other_day_is_not_an_overlap(self, db, clock, factory, studio, booked):
        member, _, _ = booked
        candidate = factory.course(studio["class"], day=date(2024, 1, 3))
        assert OverlapService(db, clock).find_overlaps(member.id, candidate) == []

    def test_cancelled_bookings_are_ignored(self, db, clock, factory, studio, booked):
        member, _, reg = booked
        RegistrationService(db, clock).cancel(reg.id, actor_member_id=member.id)
        candidate = factory.course(studio["class"], start=time(10, 30), end=time(11, 30))
        assert OverlapService(db, clock).find_overlaps(member.id, candidate) == []

    def test_other_members_are_ignored(self, db, clock, factory, studio, booked):
        other = factory.member("Other")
        candidate = factory.course(studio["class"], start=time(10, 30), end=time(11, 30))
        assert OverlapService(db, clock).find_overlaps(other.id, candidate) == []

    def test_unknown_course(self, db, clock, booked):
        member, _, _ = booked
        with pytest.raises(NotFoundError):
            OverlapService(db, clock).find_overlaps_for_course_id(member.id, 4040)
