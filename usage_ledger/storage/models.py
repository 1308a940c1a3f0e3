"""
Data models for storage layer.

Defines the per-user cost ledger and the usage record that owns it.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional


DAY_FORMAT = "%Y-%m-%d"


def day_key(day: date) -> str:
    """Format a calendar day as a ledger key (YYYY-MM-DD)."""
    return day.strftime(DAY_FORMAT)


def validate_day_key(key: str) -> str:
    """Check that a ledger key is a well-formed ISO calendar day.

    Raises:
        ValueError: If the key is not a YYYY-MM-DD date
    """
    if not isinstance(key, str) or len(key) != 10:
        raise ValueError(f"Invalid ledger day: {key!r}")
    try:
        datetime.strptime(key, DAY_FORMAT)
    except ValueError:
        raise ValueError(f"Invalid ledger day: {key!r}")
    return key


def validate_amount(amount: Any) -> float:
    """Check that a cost is a finite, non-negative number.

    Raises:
        ValueError: If the amount is negative, not finite or not a number
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValueError(f"Cost must be a number, got {amount!r}")
    value = float(amount)
    if not math.isfinite(value):
        raise ValueError(f"Cost must be finite, got {amount!r}")
    if value < 0:
        raise ValueError(f"Cost cannot be negative, got {amount!r}")
    return value


class CostLedger:
    """Accumulate-only mapping from calendar day to monetary cost.

    Entries are only ever increased. There is intentionally no way to
    lower or remove an entry once it has been recorded.
    """

    def __init__(self, entries: Optional[Mapping[str, float]] = None):
        self._entries: Dict[str, float] = {}
        for day, amount in (entries or {}).items():
            self._entries[validate_day_key(day)] = validate_amount(amount)

    def add(self, day: str, amount: float) -> float:
        """Add a cost to a day's entry and return the new daily value."""
        value = validate_amount(amount)
        key = validate_day_key(day)
        self._entries[key] = self._entries.get(key, 0.0) + value
        return self._entries[key]

    def cost_for_day(self, day: str) -> float:
        return self._entries.get(day, 0.0)

    def cost_for_month(self, day: str) -> float:
        """Sum of all entries sharing the YYYY-MM prefix of ``day``."""
        month = day[:7]
        return sum(cost for key, cost in self._entries.items() if key.startswith(month))

    def total_cost(self) -> float:
        return sum(self._entries.values())

    def snapshot(self) -> Dict[str, float]:
        """Return an independent copy of the entries."""
        return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CostLedger):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"CostLedger({self._entries!r})"


@dataclass
class UserUsageRecord:
    """Usage history of a single user.

    Owned by the usage store. The persistence layer only ever sees
    transient copies produced by ``copy()``.
    """
    user_id: str
    user_name: str = ""
    ledger: CostLedger = field(default_factory=CostLedger)

    def copy(self) -> "UserUsageRecord":
        return UserUsageRecord(
            user_id=self.user_id,
            user_name=self.user_name,
            ledger=CostLedger(self.ledger.snapshot()),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted file layout."""
        return {
            "user_name": self.user_name,
            "usage_history": {
                "chat_cost": self.ledger.snapshot(),
            },
        }

    @classmethod
    def from_dict(cls, user_id: str, data: Any) -> "UserUsageRecord":
        """Build a record from the persisted file layout.

        Unknown keys are ignored so files written by newer versions
        remain readable.

        Raises:
            ValueError: If the structure or any ledger entry is invalid
        """
        if not isinstance(data, dict):
            raise ValueError("Usage file must contain a JSON object")

        user_name = data.get("user_name", "")
        if user_name is None:
            user_name = ""
        if not isinstance(user_name, str):
            raise ValueError("'user_name' must be a string")

        history = data.get("usage_history") or {}
        if not isinstance(history, dict):
            raise ValueError("'usage_history' must be an object")

        chat_cost = history.get("chat_cost") or {}
        if not isinstance(chat_cost, dict):
            raise ValueError("'chat_cost' must be an object")

        return cls(user_id=user_id, user_name=user_name, ledger=CostLedger(chat_cost))


@dataclass(frozen=True)
class UsageSummary:
    """Consistent view of a user's aggregates at one point in time."""
    user_id: str
    user_name: str
    daily: float
    monthly: float
    total: float
