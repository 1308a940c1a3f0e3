"""
Metered OpenAI-compatible client wrapper.

Checks the caller's budget before a chat completion and records the
generation's cost afterwards.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config.loader import MeteringConfig
from ..core.policy import AccessDenied, AccessPolicy
from .cost_fetcher import CostFetchError, GenerationCostFetcher

logger = logging.getLogger(__name__)


class MeteredChatClient:
    """Chat client that enforces budgets and records usage.

    Requests from users over budget are refused before any API call is
    made. The completion's cost is looked up by its generation id and
    added to the user's ledger.
    """

    def __init__(
        self,
        policy: AccessPolicy,
        fetcher: GenerationCostFetcher,
        config: MeteringConfig,
        model: Optional[str] = None,
    ):
        """Initialize metered client.

        Args:
            policy: Access policy deciding who may send requests
            fetcher: Cost fetcher recording each generation's cost
            config: API key and base URL of the metered API
            model: Model name, defaults to ``config.model``

        Raises:
            ValueError: If no model is configured
        """
        model = model or config.model
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.policy = policy
        self.fetcher = fetcher
        self.model = model
        self.client = OpenAI(api_key=config.api_key, base_url=config.base_url)

    def chat(
        self,
        user_id: str,
        user_name: str,
        messages: List[Dict[str, str]],
        **kwargs: Any
    ) -> Any:
        """Create a chat completion on behalf of a user.

        Args:
            user_id: Opaque user identifier
            user_name: Display name, stored for new users
            messages: List of message dictionaries (required)
            **kwargs: Additional completion parameters

        Returns:
            The completion response, unchanged

        Raises:
            ValueError: If messages is empty or user_id cannot be stored
            AccessDenied: If the user is over budget
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        self.policy.store.get_or_create(user_id, user_name)
        decision = self.policy.check(user_id)
        if not decision.allowed:
            raise AccessDenied(decision)

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        # The completion already happened, so a failed lookup is logged, not raised.
        try:
            self.fetcher.fetch_and_record(response.id, user_id)
        except CostFetchError as e:
            logger.error("Usage for generation %s was not recorded: %s", response.id, e)

        return response
