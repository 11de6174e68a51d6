from datetime import date, time

import pytest
from sqlalchemy import select

from studio_api.models.orm_models import Course, RepetitionType, Schedule
from studio_api.services.errors import (
    CourseHasBookings,
    NotFoundError,
    ScheduleLocked,
    ValidationError,
)
from studio_api.services.registration_service import RegistrationService
from studio_api.services.schedule_service import (
    ScheduleService,
    expand_schedule,
    js_weekday,
)


def _weekly(day_of_week, start, end, **extra):
    return Schedule(
        repetition_type=RepetitionType.WEEKLY,
        day_of_week=day_of_week,
        start_date=start,
        end_date=end,
        start_time=time(9, 0),
        end_time=time(10, 0),
        **extra,
    )


def _tuples(courses):
    return [
        (c.course_date, c.start_time, c.end_time, c.max_participants)
        for c in sorted(courses, key=lambda c: c.course_date)
    ]


@pytest.mark.unit
class TestExpandSchedule:
    def test_weekly_mondays_in_january(self):
        schedule = _weekly(1, date(2024, 1, 1), date(2024, 1, 31))

        courses = expand_schedule(schedule)

        assert [c.course_date for c in courses] == [
            date(2024, 1, 1),
            date(2024, 1, 8),
            date(2024, 1, 15),
            date(2024, 1, 22),
            date(2024, 1, 29),
        ]
        assert all(c.start_time == time(9, 0) and c.end_time == time(10, 0) for c in courses)
        assert all(c.status == "scheduled" and c.is_active for c in courses)

    @pytest.mark.parametrize("day_of_week", range(7))
    def test_weekly_dates_fall_on_weekday_and_inside_window(self, day_of_week):
        start, end = date(2024, 2, 3), date(2024, 4, 17)
        courses = expand_schedule(_weekly(day_of_week, start, end))

        assert courses
        for course in courses:
            assert js_weekday(course.course_date) == day_of_week
            assert start <= course.course_date <= end

    def test_daily_covers_every_day_inclusive(self):
        schedule = Schedule(
            repetition_type=RepetitionType.DAILY,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
            start_time=time(18, 0),
            end_time=time(19, 0),
        )
        courses = expand_schedule(schedule)
        assert len(courses) == 31
        assert courses[0].course_date == date(2024, 1, 1)
        assert courses[-1].course_date == date(2024, 1, 31)

    def test_once_creates_single_course(self):
        schedule = Schedule(
            repetition_type=RepetitionType.ONCE,
            schedule_date=date(2024, 3, 8),
            start_time=time(12, 0),
            end_time=time(13, 30),
        )
        courses = expand_schedule(schedule)
        assert [c.course_date for c in courses] == [date(2024, 3, 8)]

    def test_once_without_date_is_rejected(self):
        schedule = Schedule(
            repetition_type=RepetitionType.ONCE,
            start_time=time(12, 0),
            end_time=time(13, 0),
        )
        with pytest.raises(ValidationError, match="No schedule_date"):
            expand_schedule(schedule)

    def test_recurring_without_window_is_rejected(self):
        schedule = _weekly(1, date(2024, 1, 1), None)
        with pytest.raises(ValidationError, match="Missing start_date or end_date"):
            expand_schedule(schedule)

    def test_end_before_start_time_is_rejected(self):
        schedule = _weekly(1, date(2024, 1, 1), date(2024, 1, 31))
        schedule.end_time = time(8, 0)
        with pytest.raises(ValidationError):
            expand_schedule(schedule)

    def test_capacity_falls_back_from_schedule_to_class_to_default(self, studio):
        studio_class = studio["class"]

        explicit = _weekly(1, date(2024, 1, 1), date(2024, 1, 7), max_participants=6)
        assert expand_schedule(explicit, studio_class)[0].max_participants == 6

        from_class = _weekly(1, date(2024, 1, 1), date(2024, 1, 7))
        assert expand_schedule(from_class, studio_class)[0].max_participants == 12

        studio_class.max_capacity = None
        assert expand_schedule(from_class, studio_class)[0].max_participants == 10

    def test_expanding_twice_yields_identical_sets(self):
        schedule = _weekly(3, date(2024, 1, 1), date(2024, 3, 31), max_participants=8)
        assert _tuples(expand_schedule(schedule)) == _tuples(expand_schedule(schedule))


@pytest.mark.integration
class TestScheduleService:
    def _create(self, db, clock, studio, **overrides):
        data = {
            "class_id": studio["class"].id,
            "trainer_id": studio["trainer"].id,
            "repetition_type": "weekly",
            "day_of_week": 1,
            "start_date": "2024-01-01",
            "end_date": "2024-01-31",
            "start_time": "09:00",
            "end_time": "10:00",
        }
        data.update(overrides)
        return ScheduleService(db, clock).create_schedule(data, actor_id=1)

    def _courses(self, db, schedule_id):
        db.expire_all()
        return list(
            db.scalars(
                select(Course).where(Course.schedule_id == schedule_id).order_by(Course.course_date)
            ).all()
        )

    def test_create_persists_expanded_courses(self, db, clock, studio):
        result = self._create(db, clock, studio)

        assert result["courses_created"] == 5
        courses = self._courses(db, result["schedule"]["id"])
        assert [c.course_date.day for c in courses] == [1, 8, 15, 22, 29]
        assert all(c.max_participants == 12 for c in courses)
        assert all(c.trainer_id == studio["trainer"].id for c in courses)

    def test_create_with_unknown_class_fails_without_writing(self, db, clock, studio):
        with pytest.raises(ValidationError):
            self._create(db, clock, studio, class_id=9999)
        assert db.scalars(select(Schedule)).first() is None

    def test_regenerate_unbooked_schedule_is_idempotent(self, db, clock, studio):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]
        svc = ScheduleService(db, clock)

        svc.regenerate_schedule_instances(schedule_id)
        first = _tuples(self._courses(db, schedule_id))
        svc.regenerate_schedule_instances(schedule_id)
        second = _tuples(self._courses(db, schedule_id))

        assert first == second
        assert len(second) == 5

    def test_update_regenerates_with_new_fields(self, db, clock, studio):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]
        svc = ScheduleService(db, clock)

        result = svc.update_schedule(
            schedule_id, {"day_of_week": 3, "start_time": "18:00", "end_time": "19:00"}
        )

        assert result["courses_deleted"] == 5
        courses = self._courses(db, schedule_id)
        assert [c.course_date.day for c in courses] == [3, 10, 17, 24, 31]
        assert all(c.start_time == time(18, 0) for c in courses)

    def test_update_is_refused_once_a_course_has_registrations(self, db, clock, studio, factory):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]
        member = factory.member("Lu")
        factory.subscription(member, {studio["group"]: 4})
        course = self._courses(db, schedule_id)[1]
        RegistrationService(db, clock).register(member.id, course.id)
        before = _tuples(self._courses(db, schedule_id))

        with pytest.raises(ScheduleLocked) as exc:
            ScheduleService(db, clock).update_schedule(schedule_id, {"start_time": "07:00"})

        assert exc.value.details["total_registrations"] == 1
        assert _tuples(self._courses(db, schedule_id)) == before

    def test_cancelled_registrations_still_lock_the_schedule(self, db, clock, studio, factory):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]
        member = factory.member("Lu")
        factory.subscription(member, {studio["group"]: 4})
        course = self._courses(db, schedule_id)[2]
        reg_svc = RegistrationService(db, clock)
        reg = reg_svc.register(member.id, course.id).registration
        reg_svc.cancel(reg.id, actor_member_id=member.id)

        with pytest.raises(ScheduleLocked):
            ScheduleService(db, clock).regenerate_schedule_instances(schedule_id)

    def test_deactivate_marks_courses_inactive_without_deleting(self, db, clock, studio):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]

        result = ScheduleService(db, clock).update_schedule(schedule_id, {"is_active": False})

        assert result["courses_deactivated"] == 5
        courses = self._courses(db, schedule_id)
        assert len(courses) == 5
        assert not any(c.is_active for c in courses)

    @pytest.mark.parametrize("field", ["is_active", "repetition_type", "start_time", "class_id"])
    def test_update_with_null_required_field_is_rejected(self, db, clock, studio, field):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]
        before = _tuples(self._courses(db, schedule_id))

        with pytest.raises(ValidationError) as exc:
            ScheduleService(db, clock).update_schedule(schedule_id, {field: None})

        assert exc.value.details == {"field": field}
        db.expire_all()
        assert db.get(Schedule, schedule_id).is_active is True
        courses = self._courses(db, schedule_id)
        assert _tuples(courses) == before
        assert all(c.is_active for c in courses)

    def test_update_clears_nullable_fields(self, db, clock, studio):
        schedule_id = self._create(db, clock, studio, max_participants=6)["schedule"]["id"]

        ScheduleService(db, clock).update_schedule(
            schedule_id, {"trainer_id": None, "max_participants": None}
        )

        courses = self._courses(db, schedule_id)
        assert len(courses) == 5
        assert all(c.trainer_id is None for c in courses)
        assert all(c.max_participants == 12 for c in courses)

    def test_delete_schedule_removes_courses(self, db, clock, studio):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]

        ScheduleService(db, clock).delete_schedule(schedule_id)

        assert self._courses(db, schedule_id) == []
        with pytest.raises(NotFoundError):
            ScheduleService(db, clock).get_schedule(schedule_id)

    def test_delete_course_with_registration_is_refused(self, db, clock, studio, factory):
        course = factory.course(studio["class"])
        member = factory.member()
        factory.subscription(member, {studio["group"]: 2})
        RegistrationService(db, clock).register(member.id, course.id)

        with pytest.raises(CourseHasBookings):
            ScheduleService(db, clock).delete_course(course.id)

    def test_delete_unbooked_course(self, db, clock, studio, factory):
        course = factory.course(studio["class"])
        ScheduleService(db, clock).delete_course(course.id)
        db.expire_all()
        assert db.get(Course, course.id) is None

    def test_course_edit_detaches_it_from_schedule(self, db, clock, studio):
        schedule_id = self._create(db, clock, studio)["schedule"]["id"]
        course = self._courses(db, schedule_id)[0]

        edited = ScheduleService(db, clock).update_course(
            course.id, {"start_time": "09:30", "end_time": "10:30", "max_participants": 4}
        )

        assert edited.schedule_id is None
        assert edited.start_time == time(9, 30)
        assert edited.max_participants == 4
        assert len(self._courses(db, schedule_id)) == 4

    def test_course_capacity_cannot_drop_below_participants(self, db, clock, studio, factory):
        course = factory.course(studio["class"], capacity=3)
        for name in ("a", "b"):
            member = factory.member(name)
            factory.subscription(member, {studio["group"]: 1})
            RegistrationService(db, clock).register(member.id, course.id)

        with pytest.raises(ValidationError):
            ScheduleService(db, clock).update_course(course.id, {"max_participants": 1})
