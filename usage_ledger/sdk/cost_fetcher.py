"""
Remote generation cost lookup.

Asks the metering API what a single completed generation cost and records
it for the user who triggered it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config.loader import MeteringConfig
from ..storage.models import validate_amount
from ..storage.repository import UsageStore

logger = logging.getLogger(__name__)


class CostFetchError(Exception):
    """Raised when the cost of a generation cannot be determined."""
    def __init__(self, message: str, generation_id: str):
        super().__init__(message)
        self.generation_id = generation_id


@dataclass(frozen=True)
class RecordedCost:
    """Outcome of a successful lookup.

    ``saved`` is False when the cost was added in memory but the usage
    file could not be written.
    """
    generation_id: str
    user_id: str
    cost: float
    saved: bool


class GenerationCostFetcher:
    """Resolves generation ids to costs with one GET per lookup.

    There is no retry loop. A failed lookup records nothing and raises,
    leaving the retry decision to the caller.
    """

    def __init__(
        self,
        store: UsageStore,
        config: MeteringConfig,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the fetcher.

        Args:
            store: Usage store receiving the fetched costs
            config: API key, base URL and default timeout
            client: Optional pre-built httpx client (used by tests)
        """
        self.store = store
        self.config = config
        self.client = client or httpx.Client()

    def fetch_cost(self, generation_id: str, timeout: Optional[float] = None) -> float:
        """Return the total cost of one generation.

        Raises:
            CostFetchError: On network errors, timeouts, non-2xx responses
                or a body without a valid ``data.total_cost``
        """
        if not generation_id or not generation_id.strip():
            raise ValueError("generation_id is required and cannot be empty")

        try:
            response = self.client.get(
                f"{self.config.base_url}/generation",
                params={"id": generation_id},
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=timeout if timeout is not None else self.config.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise CostFetchError(f"Timed out fetching generation {generation_id}: {e}", generation_id) from e
        except httpx.HTTPStatusError as e:
            raise CostFetchError(
                f"Metering API returned {e.response.status_code} for generation {generation_id}",
                generation_id,
            ) from e
        except httpx.HTTPError as e:
            raise CostFetchError(f"Error fetching generation {generation_id}: {e}", generation_id) from e
        except ValueError as e:
            raise CostFetchError(f"Invalid JSON for generation {generation_id}: {e}", generation_id) from e

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or "total_cost" not in data:
            raise CostFetchError(f"Response for generation {generation_id} has no total_cost", generation_id)

        try:
            return validate_amount(data["total_cost"])
        except ValueError as e:
            raise CostFetchError(f"Invalid total_cost for generation {generation_id}: {e}", generation_id) from e

    def fetch_and_record(
        self,
        generation_id: str,
        user_id: str,
        timeout: Optional[float] = None,
    ) -> RecordedCost:
        """Fetch a generation's cost and add it to the user's ledger.

        All-or-nothing: if the fetch fails, nothing is recorded.

        Returns:
            RecordedCost with the cost and whether it reached storage

        Raises:
            CostFetchError: If the cost could not be fetched
        """
        try:
            cost = self.fetch_cost(generation_id, timeout=timeout)
        except CostFetchError as e:
            logger.error("Cost lookup failed for user %s: %s", user_id, e)
            raise

        logger.info("Generation %s cost %.6f for user %s", generation_id, cost, user_id)
        saved = self.store.add_cost(user_id, cost)
        return RecordedCost(generation_id=generation_id, user_id=user_id, cost=cost, saved=saved)

    def close(self) -> None:
        self.client.close()
