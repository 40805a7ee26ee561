"""
Unit tests for pricing resolution and cost calculations.

Tests fallback multipliers, name normalization, lookup order, staleness
and the cache/network loading policy.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from usage_tracker.core.pricing import (
    ModelPricing,
    PricingFormatError,
    PricingResolver,
    PricingTable,
    PricingUnavailableError,
    normalize_model_name,
    parse_pricing_document,
)
from usage_tracker.core.token_counter import TokenCounts
from usage_tracker.storage.models import TokenUsageRecord, UsageEntry

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

PRICE_SHEET = {
    "claude-opus-4-20250514": {
        "input_cost_per_token": 0.000015,
        "output_cost_per_token": 0.000075,
        "cache_read_input_token_cost": 0.0000015,
        "cache_creation_input_token_cost": 0.00001875,
        "max_input_tokens": 200000,
        "max_output_tokens": 32000,
    },
    "anthropic/claude-3-haiku-20240307": {
        "input_cost_per_token": 0.00000025,
        "output_cost_per_token": 0.00000125,
    },
    "claude-missing-output": {
        "input_cost_per_token": 0.000001,
    },
    "gpt-4": {
        "input_cost_per_token": 0.00003,
        "output_cost_per_token": 0.00006,
    },
    "sample_spec": "not a record",
}


def _entry(model="claude-opus-4-20250514", usage=None, cost_usd=None):
    return UsageEntry(
        timestamp=NOW,
        model=model,
        usage=usage,
        cost_usd=cost_usd,
    )


def _transport(payload=None, status_code=200, error=None):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if error is not None:
            raise error
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler), calls


class TestTokenCounts:
    """Test TokenCounts accumulation."""

    def test_total_calculation(self):
        """Verify total sums all four categories."""
        counts = TokenCounts(input_tokens=100, output_tokens=50, cache_creation_tokens=20, cache_read_tokens=5)
        assert counts.total == 175

    def test_zero_tokens(self):
        """Verify zero token handling."""
        assert TokenCounts().total == 0

    def test_add_counts(self):
        """Verify counts are added field by field."""
        counts = TokenCounts(input_tokens=1, output_tokens=2)
        counts.add(TokenCounts(input_tokens=10, output_tokens=20, cache_read_tokens=3))
        assert counts == TokenCounts(input_tokens=11, output_tokens=22, cache_read_tokens=3)

    def test_add_entry_without_usage_is_noop(self):
        """Verify entries without usage add nothing."""
        counts = TokenCounts(output_tokens=5)
        counts.add_entry(_entry(usage=None))
        assert counts.total == 5


class TestModelNameNormalization:
    """Test stripping of trailing date segments."""

    def test_strips_date_suffix(self):
        """Verify the 8-digit date suffix is stripped."""
        assert normalize_model_name("claude-opus-4-20250514") == "claude-opus-4"

    def test_name_without_date_unchanged(self):
        """Verify names without a date suffix are unchanged."""
        assert normalize_model_name("claude-opus-4") == "claude-opus-4"

    def test_non_numeric_suffix_unchanged(self):
        """Verify non-numeric suffixes are kept."""
        assert normalize_model_name("claude-3-opus-latest") == "claude-3-opus-latest"

    def test_seven_digit_suffix_unchanged(self):
        """Verify suffixes of other lengths are kept."""
        assert normalize_model_name("claude-x-2025051") == "claude-x-2025051"


class TestModelPricing:
    """Test cost calculation with explicit and fallback cache rates."""

    def test_fallback_cache_multipliers(self):
        """Cache creation is 1.25x and cache read 0.1x the input rate."""
        pricing = ModelPricing(input_cost_per_token=0.00001, output_cost_per_token=0.00005)
        creation = pricing.calculate_cost(TokenCounts(cache_creation_tokens=1000))
        read = pricing.calculate_cost(TokenCounts(cache_read_tokens=1000))
        assert creation == pytest.approx(0.00001 * 1.25 * 1000)
        assert read == pytest.approx(0.00001 * 0.1 * 1000)

    def test_explicit_cache_rates_take_precedence(self):
        """Verify explicit cache rates override the fallbacks."""
        pricing = ModelPricing(
            input_cost_per_token=0.00001,
            output_cost_per_token=0.00005,
            cache_read_input_token_cost=0.000002,
            cache_creation_input_token_cost=0.00003,
        )
        cost = pricing.calculate_cost(TokenCounts(cache_creation_tokens=100, cache_read_tokens=100))
        assert cost == pytest.approx(100 * 0.00003 + 100 * 0.000002)

    def test_input_and_output_cost(self):
        """Verify input and output cost calculation."""
        pricing = ModelPricing(input_cost_per_token=0.000003, output_cost_per_token=0.000015)
        cost = pricing.calculate_cost(TokenCounts(input_tokens=1000, output_tokens=500))
        # 1000 * $0.000003 + 500 * $0.000015 = $0.003 + $0.0075
        assert cost == pytest.approx(0.0105)

    def test_from_dict_requires_both_rates(self):
        """Verify both base rates are required."""
        assert ModelPricing.from_dict({"input_cost_per_token": 0.1}) is None
        assert ModelPricing.from_dict({"output_cost_per_token": 0.1}) is None

    def test_from_dict_rejects_non_numeric_rates(self):
        """Verify non-numeric rates are rejected."""
        assert ModelPricing.from_dict({"input_cost_per_token": "0.1", "output_cost_per_token": 0.2}) is None


class TestPricingTable:
    """Test staleness and lookup order."""

    def _table(self, keys, fetched_at=NOW):
        models = {
            key: ModelPricing(input_cost_per_token=float(i + 1), output_cost_per_token=1.0)
            for i, key in enumerate(keys)
        }
        return PricingTable(models=models, fetched_at=fetched_at)

    def test_25_hours_old_is_stale(self):
        """Verify a 25 hour old table is stale."""
        table = self._table([], fetched_at=NOW - timedelta(hours=25))
        assert table.is_stale(NOW) is True

    def test_23_hours_old_is_fresh(self):
        """Verify a 23 hour old table is fresh."""
        table = self._table([], fetched_at=NOW - timedelta(hours=23))
        assert table.is_stale(NOW) is False

    def test_exact_match(self):
        """Verify exact model name lookup."""
        table = self._table(["claude-opus-4-20250514", "claude-opus-4"])
        assert table.get_pricing("claude-opus-4-20250514") is table.models["claude-opus-4-20250514"]

    def test_match_after_stripping_date(self):
        """Verify lookup after dropping the date suffix."""
        table = self._table(["claude-opus-4"])
        assert table.get_pricing("claude-opus-4-20250514") is table.models["claude-opus-4"]

    def test_substring_match_key_in_query(self):
        """Verify substring lookup when the key is inside the query."""
        table = self._table(["claude-sonnet-4"])
        assert table.get_pricing("us.claude-sonnet-4-v1") is table.models["claude-sonnet-4"]

    def test_substring_match_query_in_key(self):
        """Verify substring lookup when the query is inside the key."""
        table = self._table(["claude-3-haiku-20240307-v1:0"])
        assert table.get_pricing("claude-3-haiku") is table.models["claude-3-haiku-20240307-v1:0"]

    def test_substring_tie_break_prefers_shortest_key(self):
        """Verify the shortest key wins substring ties."""
        table = self._table(["claude-3-5-sonnet-v2", "claude-3-5-sonnet-v2:0", "claude-3-5-sonnet-v2-x"])
        assert table.get_pricing("claude-3-5-sonnet") is table.models["claude-3-5-sonnet-v2"]

    def test_substring_tie_break_alphabetical_on_equal_length(self):
        """Verify equal-length ties are broken alphabetically."""
        table = self._table(["claude-x-b", "claude-x-a"])
        assert table.get_pricing("claude-x") is table.models["claude-x-a"]

    def test_no_match_returns_none(self):
        """Verify unknown models resolve to None."""
        table = self._table(["claude-opus-4"])
        assert table.get_pricing("gpt-4o") is None

    def test_document_round_trip_preserves_fetch_time(self):
        """Verify the cache document keeps the fetch time."""
        table = self._table(["claude-opus-4"], fetched_at=NOW)
        restored = PricingTable.from_document(json.loads(json.dumps(table.to_document())))
        assert restored.fetched_at == NOW
        assert restored.models == table.models


class TestParsePricingDocument:
    """Test filtering and key normalization of the remote price sheet."""

    def test_keeps_only_claude_models_with_required_rates(self):
        """Verify only priced Claude models are kept."""
        models = parse_pricing_document(PRICE_SHEET)
        assert set(models) == {"claude-opus-4-20250514", "claude-3-haiku-20240307"}

    def test_strips_vendor_prefix(self):
        """Verify vendor prefixes are removed from keys."""
        models = parse_pricing_document(PRICE_SHEET)
        assert models["claude-3-haiku-20240307"].input_cost_per_token == 0.00000025

    def test_optional_fields_parsed(self):
        """Verify optional rate fields are parsed."""
        pricing = parse_pricing_document(PRICE_SHEET)["claude-opus-4-20250514"]
        assert pricing.cache_read_input_token_cost == 0.0000015
        assert pricing.max_input_tokens == 200000
        assert pricing.max_output_tokens == 32000

    def test_unprefixed_key_wins_over_vendor_key(self):
        """Verify unprefixed keys win over vendor-prefixed duplicates."""
        document = {
            "vertex_ai/claude-x": {"input_cost_per_token": 2.0, "output_cost_per_token": 2.0},
            "claude-x": {"input_cost_per_token": 1.0, "output_cost_per_token": 1.0},
            "bedrock/claude-x": {"input_cost_per_token": 3.0, "output_cost_per_token": 3.0},
        }
        assert parse_pricing_document(document)["claude-x"].input_cost_per_token == 1.0

    def test_non_mapping_document_raises(self):
        """Verify a non-mapping document raises a format error."""
        with pytest.raises(PricingFormatError):
            parse_pricing_document(["claude"])


class TestCalculateEntryCost:
    """Test per-entry cost with pricing fallbacks."""

    def _resolver(self, tmp_path):
        resolver = PricingResolver(cache_path=tmp_path / "pricing.json", clock=lambda: NOW)
        resolver._table = PricingTable(
            models={"claude-opus-4": ModelPricing(input_cost_per_token=0.00001, output_cost_per_token=0.00005)},
            fetched_at=NOW,
        )
        return resolver

    def test_cost_from_resolved_pricing(self, tmp_path):
        """Verify entry cost from resolved pricing."""
        resolver = self._resolver(tmp_path)
        usage = TokenUsageRecord(input_tokens=100, output_tokens=10, cache_creation_input_tokens=40, cache_read_input_tokens=1000)
        cost = resolver.calculate_cost(_entry(usage=usage, cost_usd=99.0))
        expected = 100 * 0.00001 + 10 * 0.00005 + 40 * 0.00001 * 1.25 + 1000 * 0.00001 * 0.1
        assert cost == pytest.approx(expected)

    def test_unknown_model_uses_entry_cost(self, tmp_path):
        """Verify unknown models fall back to the logged cost."""
        resolver = self._resolver(tmp_path)
        usage = TokenUsageRecord(input_tokens=100, output_tokens=10)
        assert resolver.calculate_cost(_entry(model="claude-unknown", usage=usage, cost_usd=0.42)) == 0.42

    def test_missing_usage_uses_entry_cost_or_zero(self, tmp_path):
        """Verify entries without usage use the logged cost or zero."""
        resolver = self._resolver(tmp_path)
        assert resolver.calculate_cost(_entry(usage=None, cost_usd=0.5)) == 0.5
        assert resolver.calculate_cost(_entry(model=None, usage=None)) == 0.0

    def test_no_table_loaded_uses_entry_cost(self, tmp_path):
        """Verify the logged cost is used before pricing loads."""
        resolver = PricingResolver(cache_path=tmp_path / "pricing.json")
        usage = TokenUsageRecord(input_tokens=100, output_tokens=10)
        assert resolver.calculate_cost(_entry(usage=usage, cost_usd=1.5)) == 1.5

    def test_tokens_cost_for_unknown_model_is_zero(self, tmp_path):
        """Verify unknown models cost nothing for raw token counts."""
        resolver = self._resolver(tmp_path)
        assert resolver.calculate_tokens_cost(TokenCounts(output_tokens=10), "gpt-4") == 0.0


class TestLoadPricing:
    """Test cache-first loading with network and stale-cache fallback."""

    def _write_cache(self, path, fetched_at):
        table = PricingTable(
            models={"claude-cached": ModelPricing(input_cost_per_token=1.0, output_cost_per_token=2.0)},
            fetched_at=fetched_at,
        )
        path.write_text(json.dumps(table.to_document()), encoding="utf-8")

    @pytest.mark.asyncio
    async def test_fresh_cache_skips_network(self, tmp_path):
        """Verify a fresh cache avoids the network."""
        cache_path = tmp_path / "pricing.json"
        self._write_cache(cache_path, NOW - timedelta(hours=1))
        transport, calls = _transport(PRICE_SHEET)
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver(cache_path=cache_path, client=client, clock=lambda: NOW)
            await resolver.load_pricing()

        assert calls == []
        assert resolver.get_pricing("claude-cached") is not None

    @pytest.mark.asyncio
    async def test_stale_cache_refetches_and_overwrites(self, tmp_path):
        """Verify a stale cache is refetched and replaced."""
        cache_path = tmp_path / "pricing.json"
        self._write_cache(cache_path, NOW - timedelta(hours=30))
        transport, calls = _transport(PRICE_SHEET)
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver(cache_path=cache_path, client=client, clock=lambda: NOW)
            await resolver.load_pricing()

        assert len(calls) == 1
        assert resolver.get_pricing("claude-cached") is None
        assert resolver.get_pricing("claude-opus-4-20250514") is not None

        saved = json.loads(cache_path.read_text(encoding="utf-8"))
        assert "claude-cached" not in saved["models"]
        assert "claude-opus-4-20250514" in saved["models"]
        assert PricingTable.from_document(saved).fetched_at == NOW

    @pytest.mark.asyncio
    async def test_missing_cache_fetches_and_creates_cache(self, tmp_path):
        """Verify a missing cache is fetched and written."""
        cache_path = tmp_path / "nested" / "pricing.json"
        transport, _ = _transport(PRICE_SHEET)
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver(cache_path=cache_path, client=client, clock=lambda: NOW)
            await resolver.load_pricing()

        assert cache_path.exists()
        assert resolver.table.fetched_at == NOW

    @pytest.mark.asyncio
    async def test_fetch_failure_falls_back_to_stale_cache(self, tmp_path):
        """Verify fetch failures fall back to the stale cache."""
        cache_path = tmp_path / "pricing.json"
        self._write_cache(cache_path, NOW - timedelta(days=3))
        transport, _ = _transport(status_code=503)
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver(cache_path=cache_path, client=client, clock=lambda: NOW)
            await resolver.load_pricing()

        assert resolver.get_pricing("claude-cached") is not None

    @pytest.mark.asyncio
    async def test_network_error_without_cache_raises(self, tmp_path):
        """Verify network errors without a cache raise."""
        transport, _ = _transport(error=httpx.ConnectError("offline"))
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver(cache_path=tmp_path / "pricing.json", client=client, clock=lambda: NOW)
            with pytest.raises(PricingUnavailableError):
                await resolver.load_pricing()

    @pytest.mark.asyncio
    async def test_malformed_document_without_cache_raises(self, tmp_path):
        """Verify malformed documents without a cache raise."""
        transport, _ = _transport(["not", "a", "mapping"])
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = PricingResolver(cache_path=tmp_path / "pricing.json", client=client, clock=lambda: NOW)
            with pytest.raises(PricingUnavailableError):
                await resolver.load_pricing()
