from .orm_models import (
    Base,
    Category,
    Group,
    GroupCategory,
    Trainer,
    StudioClass,
    Member,
    Plan,
    Subscription,
    GroupSessionAllocation,
    Schedule,
    Course,
    Registration,
    Checkin,
    AuditLog,
    RepetitionType,
    CourseStatus,
    RegistrationStatus,
    SubscriptionStatus,
)

__all__ = [
    "Base",
    "Category",
    "Group",
    "GroupCategory",
    "Trainer",
    "StudioClass",
    "Member",
    "Plan",
    "Subscription",
    "GroupSessionAllocation",
    "Schedule",
    "Course",
    "Registration",
    "Checkin",
    "AuditLog",
    "RepetitionType",
    "CourseStatus",
    "RegistrationStatus",
    "SubscriptionStatus",
]
