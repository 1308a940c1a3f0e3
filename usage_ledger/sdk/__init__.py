"""
SDK for Usage Ledger.

Provides metered access to the model API and generation cost lookup.
"""

from .cost_fetcher import CostFetchError, GenerationCostFetcher, RecordedCost
from .openai_client import MeteredChatClient

__all__ = ["CostFetchError", "GenerationCostFetcher", "MeteredChatClient", "RecordedCost"]
