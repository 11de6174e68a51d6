"""
Pytest Configuration
Shared fixtures: in-memory database, fixed studio clock and data factories.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SESSION_SECRET", "test-secret")
os.environ.setdefault("DEVELOPMENT_MODE", "true")

from datetime import date, datetime, time
from typing import Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from studio_api.models.orm_models import (
    Base,
    Category,
    Course,
    CourseStatus,
    Group,
    GroupCategory,
    GroupSessionAllocation,
    Member,
    StudioClass,
    Subscription,
    SubscriptionStatus,
    Trainer,
)


# Test markers
def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


# Test collection
collect_ignore_glob = [
    "alembic/*",
    "*/venv/*",
    "*/__pycache__/*",
]

# Monday
TEST_NOW = datetime(2024, 1, 1, 8, 0)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StudioFactory:
    """Builds committed catalog, member and course rows."""

    def __init__(self, session):
        self.db = session

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def category(self, name: str = "Pole") -> Category:
        return self._save(Category(name=name))

    def group(self, name: str, *categories: Category) -> Group:
        group = self._save(Group(name=name))
        for category in categories:
            self.db.add(GroupCategory(group_id=group.id, category_id=category.id))
        self.db.commit()
        return group

    def trainer(self, name: str = "Ana") -> Trainer:
        return self._save(Trainer(name=name))

    def studio_class(
        self, category: Category, name: str = "Pole Basics", max_capacity: Optional[int] = None
    ) -> StudioClass:
        return self._save(
            StudioClass(
                name=name,
                category_id=category.id,
                duration_minutes=60,
                max_capacity=max_capacity,
            )
        )

    def member(self, name: str = "Member") -> Member:
        return self._save(Member(name=name))

    def subscription(
        self,
        member: Member,
        sessions: Dict[Group, int],
        status: str = SubscriptionStatus.ACTIVE,
        start: date = date(2023, 12, 1),
        end: date = date(2024, 12, 31),
    ) -> Subscription:
        sub = self._save(
            Subscription(member_id=member.id, status=status, start_date=start, end_date=end)
        )
        for group, count in sessions.items():
            self.db.add(
                GroupSessionAllocation(
                    subscription_id=sub.id,
                    group_id=group.id,
                    total_sessions=count,
                    sessions_remaining=count,
                )
            )
        self.db.commit()
        self.db.refresh(sub)
        return sub

    def course(
        self,
        studio_class: StudioClass,
        day: date = date(2024, 1, 2),
        start: time = time(10, 0),
        end: time = time(11, 0),
        capacity: int = 10,
        trainer: Optional[Trainer] = None,
    ) -> Course:
        return self._save(
            Course(
                class_id=studio_class.id,
                trainer_id=trainer.id if trainer else None,
                course_date=day,
                start_time=start,
                end_time=end,
                max_participants=capacity,
                current_participants=0,
                status=CourseStatus.SCHEDULED,
                is_active=True,
            )
        )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(TEST_NOW)


@pytest.fixture
def factory(db):
    return StudioFactory(db)


@pytest.fixture
def studio(factory):
    """One category in one group, a class of that category and a trainer."""
    category = factory.category("Pole")
    group = factory.group("Pole Pack", category)
    trainer = factory.trainer("Ana")
    studio_class = factory.studio_class(category, "Pole Basics", max_capacity=12)
    return {
        "category": category,
        "group": group,
        "trainer": trainer,
        "class": studio_class,
    }
