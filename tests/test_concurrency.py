"""Parallel bookings against a file-backed SQLite database.

Each worker owns its session, as concurrent requests do. BEGIN IMMEDIATE
serializes the writers, so the counters must come out exact.
"""

import threading
from datetime import date, time

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from conftest import TEST_NOW, FixedClock, StudioFactory
from studio_api.database.connection import build_engine
from studio_api.models.orm_models import (
    Base,
    Course,
    GroupSessionAllocation,
    Registration,
    RegistrationStatus,
)
from studio_api.services.errors import AlreadyRegistered, ConflictError, CourseFull
from studio_api.services.registration_service import RegistrationService

WORKERS = 6


@pytest.fixture
def file_engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'studio.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_sessions(file_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=file_engine)


def _run_parallel(session_maker, calls):
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(i, member_id, course_id):
        session = session_maker()
        try:
            barrier.wait()
            svc = RegistrationService(session, FixedClock(TEST_NOW))
            outcomes[i] = svc.register(member_id, course_id).registration.id
        except ConflictError as e:
            outcomes[i] = e
        finally:
            session.close()

    threads = [
        threading.Thread(target=worker, args=(i, member_id, course_id))
        for i, (member_id, course_id) in enumerate(calls)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


@pytest.mark.slow
@pytest.mark.integration
def test_same_member_same_course_books_once(file_sessions):
    setup = file_sessions()
    factory = StudioFactory(setup)
    category = factory.category("Pole")
    group = factory.group("Pole Pack", category)
    studio_class = factory.studio_class(category)
    member = factory.member()
    factory.subscription(member, {group: 20})
    course = factory.course(studio_class, day=date(2024, 1, 2), start=time(10, 0), end=time(11, 0))
    member_id, course_id = member.id, course.id
    setup.close()

    outcomes = _run_parallel(file_sessions, [(member_id, course_id)] * WORKERS)

    successes = [o for o in outcomes if isinstance(o, int)]
    failures = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(successes) == 1
    assert len(failures) == WORKERS - 1
    assert all(isinstance(f, AlreadyRegistered) or f.code == "CONCURRENT_UPDATE" for f in failures)

    check = file_sessions()
    try:
        active = check.scalar(
            select(func.count(Registration.id)).where(
                Registration.course_id == course_id,
                Registration.status == RegistrationStatus.REGISTERED,
            )
        )
        remaining = check.scalar(select(GroupSessionAllocation.sessions_remaining))
        participants = check.get(Course, course_id).current_participants
    finally:
        check.close()
    assert active == 1
    assert remaining == 19
    assert participants == 1


@pytest.mark.slow
@pytest.mark.integration
def test_last_seat_goes_to_exactly_one_member(file_sessions):
    setup = file_sessions()
    factory = StudioFactory(setup)
    category = factory.category("Pole")
    group = factory.group("Pole Pack", category)
    studio_class = factory.studio_class(category)
    course = factory.course(studio_class, capacity=1)
    member_ids = []
    for i in range(WORKERS):
        member = factory.member(f"m{i}")
        factory.subscription(member, {group: 1})
        member_ids.append(member.id)
    course_id = course.id
    setup.close()

    outcomes = _run_parallel(file_sessions, [(m, course_id) for m in member_ids])

    successes = [o for o in outcomes if isinstance(o, int)]
    failures = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(successes) == 1
    assert len(failures) == WORKERS - 1
    assert all(isinstance(f, CourseFull) or f.code == "CONCURRENT_UPDATE" for f in failures)

    check = file_sessions()
    try:
        participants = check.get(Course, course_id).current_participants
        spent = check.scalar(
            select(func.count(GroupSessionAllocation.id)).where(
                GroupSessionAllocation.sessions_remaining == 0
            )
        )
    finally:
        check.close()
    assert participants == 1
    assert spent == 1
