from typing import List, Optional
from datetime import datetime, date, time
from decimal import Decimal
from sqlalchemy import (
    Integer,
    SmallInteger,
    String,
    Text,
    Boolean,
    Date,
    Time,
    DateTime,
    ForeignKey,
    Numeric,
    Index,
    CheckConstraint,
    func,
    text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class RepetitionType:
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    ALL = (ONCE, DAILY, WEEKLY)


class CourseStatus:
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ALL = (SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED)


class RegistrationStatus:
    REGISTERED = "registered"
    ATTENDED = "attended"
    CANCELLED = "cancelled"
    ABSENT = "absent"
    ALL = (REGISTERED, ATTENDED, CANCELLED, ABSENT)
    TERMINAL = (ATTENDED, CANCELLED, ABSENT)


class SubscriptionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    ALL = (PENDING, ACTIVE, CANCELLED, EXPIRED)


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# --- Catalog ---


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)

    classes: Mapped[List["StudioClass"]] = relationship(
        "StudioClass", back_populates="category"
    )
    group_links: Mapped[List["GroupCategory"]] = relationship(
        "GroupCategory", back_populates="category", cascade="all, delete-orphan"
    )


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)

    category_links: Mapped[List["GroupCategory"]] = relationship(
        "GroupCategory", back_populates="group", cascade="all, delete-orphan"
    )


class GroupCategory(Base):
    __tablename__ = "group_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )

    group: Mapped["Group"] = relationship("Group", back_populates="category_links")
    category: Mapped["Category"] = relationship(
        "Category", back_populates="group_links"
    )

    __table_args__ = (
        UniqueConstraint("group_id", "category_id", name="uq_group_categories_pair"),
        Index("idx_group_categories_category_id", "category_id"),
    )


class Trainer(Base):
    __tablename__ = "trainers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )


class StudioClass(Base):
    __tablename__ = "classes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )
    difficulty: Mapped[Optional[str]] = mapped_column(String(50))
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    max_capacity: Mapped[Optional[int]] = mapped_column(Integer)
    equipment: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    category: Mapped["Category"] = relationship("Category", back_populates="classes")

    __table_args__ = (Index("idx_classes_category_id", "category_id"),)


# --- Members and subscriptions ---


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active", server_default="active"
    )
    guest_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    credit: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"), server_default=text("0")
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now()
    )

    subscriptions: Mapped[List["Subscription"]] = relationship(
        "Subscription", back_populates="member"
    )


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    duration_days: Mapped[Optional[int]] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("plans.id", ondelete="SET NULL")
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.PENDING,
        server_default=SubscriptionStatus.PENDING,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now()
    )

    member: Mapped["Member"] = relationship("Member", back_populates="subscriptions")
    plan: Mapped[Optional["Plan"]] = relationship("Plan")
    allocations: Mapped[List["GroupSessionAllocation"]] = relationship(
        "GroupSessionAllocation",
        back_populates="subscription",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            _in_list("status", SubscriptionStatus.ALL), name="ck_subscriptions_status"
        ),
        CheckConstraint("end_date >= start_date", name="ck_subscriptions_dates"),
        Index("idx_subscriptions_member_status", "member_id", "status"),
    )


class GroupSessionAllocation(Base):
    __tablename__ = "group_session_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"), nullable=False
    )
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    sessions_remaining: Mapped[int] = mapped_column(Integer, nullable=False)

    subscription: Mapped["Subscription"] = relationship(
        "Subscription", back_populates="allocations"
    )
    group: Mapped["Group"] = relationship("Group")

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "group_id", name="uq_allocations_subscription_group"
        ),
        CheckConstraint("total_sessions >= 0", name="ck_allocations_total"),
        CheckConstraint(
            "sessions_remaining >= 0 AND sessions_remaining <= total_sessions",
            name="ck_allocations_remaining",
        ),
    )


# --- Schedules and courses ---


class Schedule(Base):
    __tablename__ = "schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    class_id: Mapped[int] = mapped_column(
        ForeignKey("classes.id", ondelete="RESTRICT"), nullable=False
    )
    trainer_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("trainers.id", ondelete="SET NULL")
    )
    repetition_type: Mapped[str] = mapped_column(String(10), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(SmallInteger)
    schedule_date: Mapped[Optional[date]] = mapped_column(Date)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    max_participants: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    studio_class: Mapped["StudioClass"] = relationship("StudioClass")
    trainer: Mapped[Optional["Trainer"]] = relationship("Trainer")
    courses: Mapped[List["Course"]] = relationship(
        "Course", back_populates="schedule", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint(
            _in_list("repetition_type", RepetitionType.ALL),
            name="ck_schedules_repetition_type",
        ),
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="ck_schedules_day_of_week",
        ),
        Index("idx_schedules_class_id", "class_id"),
    )


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("schedules.id", ondelete="SET NULL")
    )
    class_id: Mapped[int] = mapped_column(
        ForeignKey("classes.id", ondelete="RESTRICT"), nullable=False
    )
    trainer_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("trainers.id", ondelete="SET NULL")
    )
    course_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    current_participants: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CourseStatus.SCHEDULED,
        server_default=CourseStatus.SCHEDULED,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    schedule: Mapped[Optional["Schedule"]] = relationship(
        "Schedule", back_populates="courses"
    )
    studio_class: Mapped["StudioClass"] = relationship("StudioClass")
    trainer: Mapped[Optional["Trainer"]] = relationship("Trainer")
    registrations: Mapped[List["Registration"]] = relationship(
        "Registration", back_populates="course"
    )

    __table_args__ = (
        CheckConstraint(_in_list("status", CourseStatus.ALL), name="ck_courses_status"),
        CheckConstraint("max_participants >= 0", name="ck_courses_max_participants"),
        CheckConstraint(
            "current_participants >= 0", name="ck_courses_current_participants"
        ),
        CheckConstraint("end_time > start_time", name="ck_courses_time_range"),
        Index("idx_courses_schedule_id", "schedule_id"),
        Index("idx_courses_date_status", "course_date", "status"),
    )

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.course_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.course_date, self.end_time)


# --- Registrations and attendance ---


class Registration(Base):
    __tablename__ = "registrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[int] = mapped_column(
        ForeignKey("courses.id", ondelete="RESTRICT"), nullable=False
    )
    allocation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("group_session_allocations.id", ondelete="SET NULL")
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RegistrationStatus.REGISTERED,
        server_default=RegistrationStatus.REGISTERED,
    )
    qr_code: Mapped[str] = mapped_column(String(96), nullable=False, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_guest: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    registration_time: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    session_refunded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    member: Mapped["Member"] = relationship("Member")
    course: Mapped["Course"] = relationship("Course", back_populates="registrations")
    allocation: Mapped[Optional["GroupSessionAllocation"]] = relationship(
        "GroupSessionAllocation"
    )
    checkin: Mapped[Optional["Checkin"]] = relationship(
        "Checkin", back_populates="registration", uselist=False
    )

    __table_args__ = (
        CheckConstraint(
            _in_list("status", RegistrationStatus.ALL), name="ck_registrations_status"
        ),
        Index(
            "uq_registrations_active_member_course",
            "member_id",
            "course_id",
            unique=True,
            postgresql_where=text("status = 'registered'"),
            sqlite_where=text("status = 'registered'"),
        ),
        Index("idx_registrations_course_status", "course_id", "status"),
        Index("idx_registrations_member_status", "member_id", "status"),
    )


class Checkin(Base):
    __tablename__ = "checkins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    registration_id: Mapped[int] = mapped_column(
        ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[int] = mapped_column(
        ForeignKey("courses.id", ondelete="RESTRICT"), nullable=False
    )
    checkin_time: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    session_consumed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    registration: Mapped["Registration"] = relationship(
        "Registration", back_populates="checkin"
    )

    __table_args__ = (Index("idx_checkins_course_id", "course_id"),)


# --- Audit ---


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[Optional[int]] = mapped_column(Integer)
    old_values: Mapped[Optional[str]] = mapped_column(Text)
    new_values: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_audit_logs_table_record", "table_name", "record_id"),
        Index("idx_audit_logs_created_at", "created_at"),
    )
