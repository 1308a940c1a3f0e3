"""
Unit tests for remote generation cost lookup.

The metering API is replaced by an httpx mock transport.
"""

import shutil
import tempfile
from datetime import date
from unittest.mock import patch

import httpx
import pytest

from usage_ledger.config.loader import MeteringConfig
from usage_ledger.sdk.cost_fetcher import CostFetchError, GenerationCostFetcher, RecordedCost
from usage_ledger.storage.files import LedgerFileStorage, LedgerWriteError
from usage_ledger.storage.repository import UsageStore


class TestGenerationCostFetcher:
    """Test fetching and recording generation costs."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = UsageStore(LedgerFileStorage(self.temp_dir), clock=lambda: date(2024, 1, 31))
        self.config = MeteringConfig(api_key="sk-test", base_url="https://meter.test/api/v1")
        self.requests = []

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def create_fetcher(self, handler):
        """Create a fetcher whose HTTP calls go to ``handler``."""
        def record(request):
            self.requests.append(request)
            return handler(request)

        client = httpx.Client(transport=httpx.MockTransport(record))
        return GenerationCostFetcher(self.store, self.config, client=client)

    def test_fetch_and_record_success(self):
        fetcher = self.create_fetcher(
            lambda request: httpx.Response(200, json={"data": {"id": "gen-1", "total_cost": 0.0042}})
        )

        result = fetcher.fetch_and_record("gen-1", "42")

        assert result == RecordedCost(generation_id="gen-1", user_id="42", cost=0.0042, saved=True)
        assert self.store.get_aggregate("42", "daily") == 0.0042

        request = self.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/api/v1/generation"
        assert request.url.params["id"] == "gen-1"
        assert request.headers["Authorization"] == "Bearer sk-test"

    def test_write_failure_reported_to_caller(self):
        """The cost stays in memory and the result says it was not saved."""
        fetcher = self.create_fetcher(
            lambda request: httpx.Response(200, json={"data": {"total_cost": 0.25}})
        )
        self.store.get_or_create("42")

        with patch.object(self.store.storage, "save", side_effect=LedgerWriteError("disk full", "42")):
            result = fetcher.fetch_and_record("gen-1", "42")

        assert result.cost == 0.25
        assert result.saved is False
        assert self.store.get_aggregate("42", "total") == 0.25

    def test_one_request_per_fetch(self):
        fetcher = self.create_fetcher(lambda request: httpx.Response(500))

        with pytest.raises(CostFetchError):
            fetcher.fetch_and_record("gen-1", "42")

        assert len(self.requests) == 1

    @pytest.mark.parametrize("response", [
        httpx.Response(404, json={"error": "not found"}),
        httpx.Response(200, content=b"<html>"),
        httpx.Response(200, json={"data": {}}),
        httpx.Response(200, json={"data": {"total_cost": "free"}}),
        httpx.Response(200, json={"data": {"total_cost": -1.0}}),
        httpx.Response(200, json=[1, 2, 3]),
    ])
    def test_bad_responses_record_nothing(self, response):
        """Any failure leaves the ledger untouched."""
        fetcher = self.create_fetcher(lambda request: response)

        with pytest.raises(CostFetchError) as excinfo:
            fetcher.fetch_and_record("gen-1", "42")

        assert excinfo.value.generation_id == "gen-1"
        assert self.store.get_aggregate("42", "total") == 0.0

    def test_network_error_records_nothing(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = self.create_fetcher(handler)
        with pytest.raises(CostFetchError, match="connection refused"):
            fetcher.fetch_and_record("gen-1", "42")

        assert self.store.get_aggregate("42", "total") == 0.0

    def test_timeout_records_nothing(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        fetcher = self.create_fetcher(handler)
        with pytest.raises(CostFetchError, match="Timed out"):
            fetcher.fetch_and_record("gen-1", "42", timeout=0.5)

        assert self.store.get_aggregate("42", "total") == 0.0

    def test_caller_timeout_is_used(self):
        fetcher = self.create_fetcher(
            lambda request: httpx.Response(200, json={"data": {"total_cost": 1}})
        )
        fetcher.fetch_cost("gen-1", timeout=2.5)

        assert self.requests[0].extensions["timeout"]["read"] == 2.5

    def test_empty_generation_id_rejected(self):
        fetcher = self.create_fetcher(lambda request: httpx.Response(200))
        with pytest.raises(ValueError, match="generation_id"):
            fetcher.fetch_cost("")
        assert self.requests == []
