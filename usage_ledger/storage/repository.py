"""
Usage store.

Owns the in-memory usage records of all users and keeps them in sync
with file storage.
"""

import logging
import threading
from datetime import date
from typing import Callable, Dict, List, Union

from usage_ledger.core.periods import BudgetPeriod, aggregate
from .files import LedgerError, LedgerFileStorage, LedgerReadError
from .models import UsageSummary, UserUsageRecord, day_key, validate_amount

logger = logging.getLogger(__name__)


class _UserEntry:
    """A user's record together with the lock guarding it."""

    def __init__(self, record: UserUsageRecord):
        self.record = record
        self.lock = threading.Lock()
        self.revision = 0


class UsageStore:
    """Thread-safe owner of every user's usage record.

    Records are loaded lazily on first access. Updates for the same user
    are serialized by that user's lock; different users never wait on
    each other except for the short registry lookup.

    The ledger lock only ever covers in-memory work. Saving happens after
    it is released, under the storage's own per-user file lock.
    """

    def __init__(
        self,
        storage: LedgerFileStorage,
        clock: Callable[[], date] = date.today,
    ):
        """Initialize the store.

        Args:
            storage: File storage backing the records
            clock: Returns the current day. Defaults to process-local time.
        """
        self.storage = storage
        self.clock = clock
        self._registry_lock = threading.Lock()
        self._entries: Dict[str, _UserEntry] = {}
        self._loading: Dict[str, threading.Lock] = {}

    def _today(self) -> str:
        return day_key(self.clock())

    def _entry(self, user_id: str, user_name: str = "") -> _UserEntry:
        with self._registry_lock:
            entry = self._entries.get(user_id)
            if entry is not None:
                return entry
            loading = self._loading.setdefault(user_id, threading.Lock())

        # Only one thread loads a given user; others wait here and then
        # pick up the entry it registered.
        try:
            with loading:
                with self._registry_lock:
                    entry = self._entries.get(user_id)
                    if entry is not None:
                        return entry

                try:
                    record = self.storage.load(user_id, user_name)
                except LedgerReadError as e:
                    # Not registered, so the next access reads the file again.
                    logger.warning(
                        "Could not read usage for user %s, serving an empty record: %s",
                        user_id, e,
                    )
                    return _UserEntry(self._fallback(e, user_id, user_name))
                except LedgerError as e:
                    logger.warning(
                        "Using empty usage record for user %s: %s", user_id, e
                    )
                    record = self._fallback(e, user_id, user_name)

                with self._registry_lock:
                    entry = self._entries.setdefault(user_id, _UserEntry(record))
        finally:
            with self._registry_lock:
                if self._loading.get(user_id) is loading:
                    del self._loading[user_id]
        return entry

    @staticmethod
    def _fallback(error: LedgerError, user_id: str, user_name: str) -> UserUsageRecord:
        return error.record or UserUsageRecord(user_id=user_id, user_name=user_name)

    def get_or_create(self, user_id: str, user_name: str = "") -> UserUsageRecord:
        """Return a copy of the user's record, loading or creating it if needed.

        Never fails on missing or corrupt data: such problems are logged
        and an empty record is used instead.
        """
        entry = self._entry(user_id, user_name)
        with entry.lock:
            if user_name and not entry.record.user_name:
                entry.record.user_name = user_name
            return entry.record.copy()

    def add_cost(self, user_id: str, amount: float, user_name: str = "") -> bool:
        """Add a cost to today's entry of the user's ledger and save it.

        Args:
            user_id: Opaque user identifier
            amount: Cost to add, must be finite and >= 0
            user_name: Display name used if the user is new

        Returns:
            True if the record was saved, False if the save failed. The
            in-memory ledger is updated either way.

        Raises:
            ValueError: If the amount is negative or not a finite number
        """
        value = validate_amount(amount)
        entry = self._entry(user_id, user_name)

        with entry.lock:
            entry.record.ledger.add(self._today(), value)
            entry.revision += 1
            snapshot = entry.record.copy()
            revision = entry.revision

        return self._persist(snapshot, revision)

    def _persist(self, snapshot: UserUsageRecord, revision: int) -> bool:
        try:
            self.storage.save(snapshot, revision=revision)
        except LedgerError as e:
            logger.error(
                "Failed to save usage for user %s: %s", snapshot.user_id, e
            )
            return False
        return True

    def get_aggregate(self, user_id: str, period: Union[BudgetPeriod, str]) -> float:
        """Sum the user's costs over ``period`` without changing anything.

        An unknown period yields 0.0 and a logged warning.
        """
        if not isinstance(period, BudgetPeriod):
            try:
                period = BudgetPeriod.parse(period)
            except ValueError:
                logger.warning(
                    "Invalid period: %r. Valid periods are 'daily', 'monthly', 'total'.",
                    period,
                )
                return 0.0

        entry = self._entry(user_id)
        today = self._today()
        with entry.lock:
            return aggregate(entry.record.ledger, period, today)

    def usage_summary(self, user_id: str) -> UsageSummary:
        """Return daily, monthly and total cost from a single snapshot."""
        entry = self._entry(user_id)
        today = self._today()
        with entry.lock:
            ledger = entry.record.ledger
            return UsageSummary(
                user_id=user_id,
                user_name=entry.record.user_name,
                daily=aggregate(ledger, BudgetPeriod.DAILY, today),
                monthly=aggregate(ledger, BudgetPeriod.MONTHLY, today),
                total=aggregate(ledger, BudgetPeriod.TOTAL, today),
            )

    def is_ledger_intact(self, user_id: str) -> bool:
        """False while the user's stored file is corrupt or could not be read."""
        return self.storage.is_intact(user_id)

    def known_users(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._entries)
