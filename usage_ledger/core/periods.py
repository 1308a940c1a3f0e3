"""
Aggregation periods for budget accounting.

Sums a cost ledger over the window a budget applies to.
"""

from enum import Enum

from usage_ledger.storage.models import CostLedger


class BudgetPeriod(Enum):
    """Time window a budget is measured over."""
    DAILY = "daily"
    MONTHLY = "monthly"
    TOTAL = "total"

    @classmethod
    def parse(cls, value: str) -> "BudgetPeriod":
        """Parse a period name, case-insensitively.

        Raises:
            ValueError: If the name is empty or not a known period
        """
        if not isinstance(value, str) or not value.strip():
            raise ValueError("budget period must be set")
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = [period.value for period in cls]
            raise ValueError(f"budget period must be one of: {valid}, got {value!r}")


def aggregate(ledger: CostLedger, period: BudgetPeriod, today: str) -> float:
    """Sum the ledger over ``period`` relative to the day key ``today``."""
    if period is BudgetPeriod.DAILY:
        return ledger.cost_for_day(today)
    if period is BudgetPeriod.MONTHLY:
        return ledger.cost_for_month(today)
    return ledger.total_cost()
