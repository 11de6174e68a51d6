import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from studio_api.services.base import BaseService
from studio_api.models.orm_models import (
    GroupCategory,
    GroupSessionAllocation,
    Group,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


class CategoryGroupIndex:
    """category_id -> set of group ids whose bundle contains that category."""

    def __init__(self, mapping: Dict[int, Set[int]]):
        self._mapping = mapping

    @classmethod
    def load(cls, db: Session) -> "CategoryGroupIndex":
        mapping: Dict[int, Set[int]] = {}
        rows = db.execute(select(GroupCategory.category_id, GroupCategory.group_id)).all()
        for category_id, group_id in rows:
            mapping.setdefault(int(category_id), set()).add(int(group_id))
        return cls(mapping)

    def groups_for(self, category_id: int) -> Set[int]:
        return set(self._mapping.get(int(category_id), set()))

    def __len__(self) -> int:
        return len(self._mapping)


@dataclass(frozen=True)
class AllocationBalance:
    allocation_id: int
    subscription_id: int
    group_id: int
    group_name: str
    sessions_remaining: int
    total_sessions: int
    subscription_end: date


class EntitlementsService(BaseService):
    """Read side of a member's subscriptions: which allocations can fund a class."""

    def __init__(self, db: Session, clock=None):
        super().__init__(db, clock)
        self._index: Optional[CategoryGroupIndex] = None

    @property
    def index(self) -> CategoryGroupIndex:
        # Built once per service instance, i.e. once per request.
        if self._index is None:
            self._index = CategoryGroupIndex.load(self.db)
        return self._index

    def _active_subscriptions_stmt(self, member_id: int):
        today = self._now().date()
        return (
            select(Subscription)
            .where(
                Subscription.member_id == member_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.start_date <= today,
                Subscription.end_date >= today,
            )
            .order_by(Subscription.end_date.desc(), Subscription.id.asc())
        )

    def active_subscriptions(self, member_id: int) -> List[Subscription]:
        return list(self.db.scalars(self._active_subscriptions_stmt(member_id)).all())

    def has_active_subscription(self, member_id: int) -> bool:
        return bool(self.active_subscriptions(member_id))

    def eligible_allocations(self, member_id: int, category_id: int) -> List[GroupSessionAllocation]:
        """Allocations of active subscriptions whose group covers the category.

        Ordered the way funding picks them: latest-ending subscription first.
        Includes allocations with no sessions left so callers can tell
        "no subscription" apart from "no sessions".
        """
        group_ids = self.index.groups_for(category_id)
        if not group_ids:
            return []
        today = self._now().date()
        stmt = (
            select(GroupSessionAllocation)
            .join(Subscription, Subscription.id == GroupSessionAllocation.subscription_id)
            .where(
                Subscription.member_id == member_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.start_date <= today,
                Subscription.end_date >= today,
                GroupSessionAllocation.group_id.in_(group_ids),
            )
            .order_by(
                Subscription.end_date.desc(),
                Subscription.id.asc(),
                GroupSessionAllocation.id.asc(),
            )
        )
        return list(self.db.scalars(stmt).all())

    def lock_funding_allocation(self, member_id: int, category_id: int) -> Optional[GroupSessionAllocation]:
        """Row-locks and returns the first eligible allocation with sessions left."""
        candidates = [a.id for a in self.eligible_allocations(member_id, category_id)]
        for allocation_id in candidates:
            allocation = self.db.scalars(
                select(GroupSessionAllocation)
                .where(GroupSessionAllocation.id == allocation_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).first()
            if allocation is not None and allocation.sessions_remaining > 0:
                return allocation
        return None

    def balances(self, member_id: int) -> List[AllocationBalance]:
        today = self._now().date()
        stmt = (
            select(GroupSessionAllocation, Subscription, Group)
            .join(Subscription, Subscription.id == GroupSessionAllocation.subscription_id)
            .join(Group, Group.id == GroupSessionAllocation.group_id)
            .where(
                Subscription.member_id == member_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.start_date <= today,
                Subscription.end_date >= today,
            )
            .order_by(Subscription.end_date.desc(), GroupSessionAllocation.id.asc())
        )
        out: List[AllocationBalance] = []
        for allocation, subscription, group in self.db.execute(stmt).all():
            out.append(
                AllocationBalance(
                    allocation_id=allocation.id,
                    subscription_id=subscription.id,
                    group_id=group.id,
                    group_name=group.name,
                    sessions_remaining=allocation.sessions_remaining,
                    total_sessions=allocation.total_sessions,
                    subscription_end=subscription.end_date,
                )
            )
        return out

    def sessions_available_for_category(self, member_id: int, category_id: int) -> int:
        return sum(
            a.sessions_remaining for a in self.eligible_allocations(member_id, category_id)
        )
