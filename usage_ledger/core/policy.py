"""
Access policy enforcement.

Decides whether a user may send another request and whether they may see
usage statistics, based on their role and how much they have spent.

Evaluation Order:
1. Role lookup - admins are checked before members
2. Admins - always allowed, no budget applies
3. Members and guests - denied if the id cannot be stored, otherwise
   allowed while spend over the period is below budget
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from .periods import BudgetPeriod

logger = logging.getLogger(__name__)


class Role(Enum):
    """Access tier derived from the configured identifier sets."""
    ADMIN = "ADMIN"
    USER = "USER"
    GUEST = "GUEST"


class CorruptLedgerAction(Enum):
    """How to treat a user whose stored ledger could not be read or parsed."""
    ALLOW = "allow"  # Evaluate as zero usage
    DENY = "deny"    # Refuse non-admins until the ledger is intact again


@dataclass(frozen=True)
class BudgetPolicy:
    """Budgets and role sets used for one evaluation."""
    guest_budget: float
    member_budget: float
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    admin_ids: FrozenSet[str] = frozenset()
    member_ids: FrozenSet[str] = frozenset()
    stats_min_role: Role = Role.ADMIN
    corrupt_ledger_action: CorruptLedgerAction = CorruptLedgerAction.ALLOW

    def __post_init__(self):
        """Validate the stats role is one a user can actually hold."""
        if self.stats_min_role not in (Role.ADMIN, Role.USER):
            raise ValueError("stats_min_role must be ADMIN or USER")

    def budget_for(self, role: Role) -> Optional[float]:
        """Budget applying to ``role``, None for admins."""
        if role is Role.ADMIN:
            return None
        if role is Role.USER:
            return self.member_budget
        return self.guest_budget


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of an access check, returned to the transport layer."""
    allowed: bool
    role: Role
    current_cost: float = 0.0
    budget: Optional[float] = None
    reason: Optional[str] = None


class AccessDenied(Exception):
    """Raised when a request is refused by the access policy."""
    def __init__(self, decision: AccessDecision):
        super().__init__(decision.reason or f"Access denied for role {decision.role.value}")
        self.decision = decision


class AccessPolicy:
    """Evaluates a budget policy against the usage store.

    Admins are always allowed. Everyone else is allowed only while their
    spend is strictly below their budget, so a budget of zero or less
    always denies.
    """

    def __init__(self, policy: BudgetPolicy, store):
        """Initialize the evaluator.

        Args:
            policy: Budgets, role sets and aggregation period
            store: UsageStore providing aggregates
        """
        self.policy = policy
        self.store = store

    def role(self, user_id: str) -> Role:
        if user_id in self.policy.admin_ids:
            return Role.ADMIN
        if user_id in self.policy.member_ids:
            return Role.USER
        return Role.GUEST

    def check(self, user_id: str) -> AccessDecision:
        """Decide whether ``user_id`` may make another request.

        Returns:
            AccessDecision with the resolved role, current spend and budget
        """
        role = self.role(user_id)
        if role is Role.ADMIN:
            return AccessDecision(allowed=True, role=role)

        budget = self.policy.budget_for(role)
        try:
            current_cost = self.store.get_aggregate(user_id, self.policy.period)
        except ValueError as e:
            logger.warning("Denying user %s: %s", user_id, e)
            return AccessDecision(
                allowed=False, role=role, budget=budget, reason="invalid user id"
            )

        if (self.policy.corrupt_ledger_action is CorruptLedgerAction.DENY
                and not self.store.is_ledger_intact(user_id)):
            logger.warning("Denying user %s: stored usage is unavailable", user_id)
            return AccessDecision(
                allowed=False,
                role=role,
                current_cost=current_cost,
                budget=budget,
                reason="usage history unavailable",
            )

        if current_cost < budget:
            return AccessDecision(
                allowed=True, role=role, current_cost=current_cost, budget=budget
            )

        logger.info(
            "Denying user %s: role=%s budget=%.6f current_cost=%.6f period=%s",
            user_id, role.value, budget, current_cost, self.policy.period.value,
        )
        return AccessDecision(
            allowed=False,
            role=role,
            current_cost=current_cost,
            budget=budget,
            reason=(
                f"{self.policy.period.value} budget of ${budget:.2f} reached "
                f"(spent ${current_cost:.2f})"
            ),
        )

    def has_access(self, user_id: str) -> bool:
        return self.check(user_id).allowed

    def can_view_stats(self, user_id: str) -> bool:
        role = self.role(user_id)
        return role is Role.ADMIN or (
            self.policy.stats_min_role is Role.USER and role is not Role.GUEST
        )
