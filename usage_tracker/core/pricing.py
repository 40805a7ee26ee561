"""
Pricing resolution and cost calculations.

Loads per-token Claude pricing from the public LiteLLM price sheet, caches it
on disk, and computes the cost of individual usage entries.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from .token_counter import TokenCounts
from usage_tracker.storage.cache import (
    default_cache_path,
    read_cache_document,
    write_cache_document,
)
from usage_tracker.storage.models import PRODUCT_FILTER, UsageEntry

logger = logging.getLogger(__name__)

LITELLM_PRICING_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/"
    "model_prices_and_context_window.json"
)
STALE_AFTER = timedelta(hours=24)
FETCH_TIMEOUT_SECONDS = 10.0

# Applied when the price sheet omits explicit cache coefficients
CACHE_CREATION_MULTIPLIER = 1.25
CACHE_READ_MULTIPLIER = 0.1

_DATE_SEGMENT = re.compile(r"[0-9]{8}")


class PricingError(Exception):
    """Base class for pricing failures."""


class PricingFetchError(PricingError):
    """Raised when the remote price sheet cannot be downloaded."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PricingFormatError(PricingError):
    """Raised when the remote price sheet has an unexpected shape."""


class PricingUnavailableError(PricingError):
    """Raised when the fetch failed and no cached table exists."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def normalize_model_name(name: str) -> str:
    """Strip a trailing ``-YYYYMMDD`` date segment from a model name.

    ``claude-opus-4-20250514`` becomes ``claude-opus-4``; names without an
    8-digit final segment are returned unchanged.
    """
    parts = name.split("-")
    if len(parts) > 1 and _DATE_SEGMENT.fullmatch(parts[-1]):
        return "-".join(parts[:-1])
    return name


def strip_vendor_prefix(key: str) -> str:
    """Drop a ``<vendor>/`` routing prefix from a price sheet key."""
    return key.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in USD."""
    input_cost_per_token: float
    output_cost_per_token: float
    cache_read_input_token_cost: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    max_input_tokens: Optional[int] = None
    max_output_tokens: Optional[int] = None

    @property
    def cache_creation_rate(self) -> float:
        if self.cache_creation_input_token_cost is not None:
            return self.cache_creation_input_token_cost
        return self.input_cost_per_token * CACHE_CREATION_MULTIPLIER

    @property
    def cache_read_rate(self) -> float:
        if self.cache_read_input_token_cost is not None:
            return self.cache_read_input_token_cost
        return self.input_cost_per_token * CACHE_READ_MULTIPLIER

    def calculate_cost(self, tokens: TokenCounts) -> float:
        """Calculate the cost of a set of token counts.

        Args:
            tokens: Token counts to price

        Returns:
            Cost in USD, unrounded
        """
        cost = tokens.input_tokens * self.input_cost_per_token
        cost += tokens.output_tokens * self.output_cost_per_token
        cost += tokens.cache_creation_tokens * self.cache_creation_rate
        cost += tokens.cache_read_tokens * self.cache_read_rate
        return cost

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ModelPricing"]:
        """Build pricing from a LiteLLM-style record.

        Returns:
            ModelPricing, or None if either required coefficient is missing
        """
        input_cost = _as_float(data.get("input_cost_per_token"))
        output_cost = _as_float(data.get("output_cost_per_token"))
        if input_cost is None or output_cost is None:
            return None
        return cls(
            input_cost_per_token=input_cost,
            output_cost_per_token=output_cost,
            cache_read_input_token_cost=_as_float(data.get("cache_read_input_token_cost")),
            cache_creation_input_token_cost=_as_float(data.get("cache_creation_input_token_cost")),
            max_input_tokens=_as_int(data.get("max_input_tokens")),
            max_output_tokens=_as_int(data.get("max_output_tokens")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "input_cost_per_token": self.input_cost_per_token,
            "output_cost_per_token": self.output_cost_per_token,
        }
        optional = {
            "cache_read_input_token_cost": self.cache_read_input_token_cost,
            "cache_creation_input_token_cost": self.cache_creation_input_token_cost,
            "max_input_tokens": self.max_input_tokens,
            "max_output_tokens": self.max_output_tokens,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass(frozen=True)
class PricingTable:
    """Snapshot of model pricing together with the time it was fetched."""
    models: Dict[str, ModelPricing]
    fetched_at: datetime

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """True once the table is more than 24 hours old."""
        now = now or _utcnow()
        return now - self.fetched_at > STALE_AFTER

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Resolve pricing for a model name.

        Resolution order:
        1. Exact key match
        2. Key match after dropping a trailing date segment
        3. Substring match in either direction; the shortest key wins and
           ties are broken alphabetically

        Args:
            model: Model identifier as it appears in the logs

        Returns:
            ModelPricing, or None when nothing matches
        """
        if model in self.models:
            return self.models[model]

        normalized = normalize_model_name(model)
        if normalized in self.models:
            return self.models[normalized]

        candidates: List[str] = [
            key for key in self.models
            if key in model or normalized in key
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda key: (len(key), key))
        return self.models[best]

    def to_document(self) -> Dict[str, Any]:
        return {
            "models": {key: pricing.to_dict() for key, pricing in self.models.items()},
            "fetchedAt": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> Optional["PricingTable"]:
        """Rebuild a table from the on-disk cache document.

        Returns:
            PricingTable, or None if the document is unusable
        """
        raw_models = document.get("models")
        raw_fetched_at = document.get("fetchedAt")
        if not isinstance(raw_models, dict) or not isinstance(raw_fetched_at, str):
            return None

        if raw_fetched_at.endswith("Z"):
            raw_fetched_at = raw_fetched_at[:-1] + "+00:00"
        try:
            fetched_at = datetime.fromisoformat(raw_fetched_at)
        except ValueError:
            return None
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)

        models = {}
        for key, value in raw_models.items():
            if not isinstance(value, dict):
                continue
            pricing = ModelPricing.from_dict(value)
            if pricing is not None:
                models[key] = pricing
        return cls(models=models, fetched_at=fetched_at)


def parse_pricing_document(document: Any) -> Dict[str, ModelPricing]:
    """Extract Claude model pricing from the LiteLLM price sheet.

    Only keys containing the product name are kept, records missing either
    required coefficient are skipped, and vendor prefixes are stripped from
    keys. When several keys normalize to the same name, an unprefixed key
    takes precedence, otherwise the first one in document order wins.

    Args:
        document: Decoded JSON price sheet

    Returns:
        Mapping of normalized model name to pricing

    Raises:
        PricingFormatError: If the document is not a JSON object
    """
    if not isinstance(document, dict):
        raise PricingFormatError("Pricing document must be a JSON object")

    models: Dict[str, ModelPricing] = {}
    from_bare_key = set()
    for key, value in document.items():
        if not isinstance(key, str) or PRODUCT_FILTER not in key.lower():
            continue
        if not isinstance(value, dict):
            continue
        pricing = ModelPricing.from_dict(value)
        if pricing is None:
            continue

        normalized_key = strip_vendor_prefix(key)
        is_bare = normalized_key == key
        if normalized_key in models and (normalized_key in from_bare_key or not is_bare):
            continue
        models[normalized_key] = pricing
        if is_bare:
            from_bare_key.add(normalized_key)
    return models


class PricingResolver:
    """Owns the resident pricing table and resolves per-entry costs.

    Replacement of the table happens under an asyncio lock; lookups read a
    single immutable ``PricingTable`` reference and never suspend.
    """

    def __init__(
        self,
        cache_path: Optional[Path] = None,
        url: str = LITELLM_PRICING_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the resolver.

        Args:
            cache_path: Pricing cache file (defaults to the per-user cache dir)
            url: Remote price sheet URL
            client: Optional shared HTTP client; one is created per fetch otherwise
            timeout: Fetch timeout in seconds
            clock: Source of the current time, injectable for tests
        """
        self.cache_path = cache_path or default_cache_path()
        self.url = url
        self.timeout = timeout
        self._client = client
        self._clock = clock
        self._table: Optional[PricingTable] = None
        self._lock = asyncio.Lock()

    @property
    def table(self) -> Optional[PricingTable]:
        return self._table

    async def load_pricing(self) -> None:
        """Populate the pricing table from cache or network.

        Order: fresh cache, then remote fetch, then stale cache.

        Raises:
            PricingUnavailableError: If the fetch fails and no cache exists
        """
        async with self._lock:
            cached = await self._load_from_cache()
            if cached is not None and not cached.is_stale(self._clock()):
                logger.debug("Using cached pricing from %s", cached.fetched_at.isoformat())
                self._table = cached
                return

            try:
                await self._fetch_from_network()
            except PricingError as e:
                if cached is None:
                    raise PricingUnavailableError(
                        f"Pricing fetch failed and no cache exists: {e}"
                    ) from e
                logger.warning("Pricing fetch failed, using stale cache: %s", e)
                self._table = cached

    async def _load_from_cache(self) -> Optional[PricingTable]:
        document = await asyncio.to_thread(read_cache_document, self.cache_path)
        if document is None:
            return None
        table = PricingTable.from_document(document)
        if table is None:
            logger.warning("Ignoring malformed pricing cache %s", self.cache_path)
        return table

    async def _fetch_from_network(self) -> None:
        document = await self._download()
        models = parse_pricing_document(document)
        table = PricingTable(models=models, fetched_at=self._clock())
        self._table = table
        logger.info("Fetched pricing for %d models", len(models))

        try:
            await asyncio.to_thread(write_cache_document, self.cache_path, table.to_document())
        except OSError as e:
            logger.warning("Failed to save pricing cache %s: %s", self.cache_path, e)

    async def _download(self) -> Any:
        try:
            if self._client is not None:
                response = await self._client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
        except httpx.HTTPError as e:
            raise PricingFetchError(f"Request to {self.url} failed: {e}") from e

        if response.status_code >= 400:
            raise PricingFetchError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise PricingFormatError(f"Pricing document is not valid JSON: {e}") from e

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Resolve pricing for a model against the resident table."""
        table = self._table
        if table is None:
            return None
        return table.get_pricing(model)

    def calculate_cost(self, entry: UsageEntry) -> float:
        """Calculate the cost of a single usage entry.

        Falls back to the entry's own ``costUSD`` (or 0) when the entry has
        no model or usage record, or when no pricing resolves for its model.
        """
        if not entry.model or entry.usage is None:
            return entry.cost_usd or 0.0

        pricing = self.get_pricing(entry.model)
        if pricing is None:
            return entry.cost_usd or 0.0

        return pricing.calculate_cost(TokenCounts.from_entry(entry))

    def calculate_tokens_cost(self, tokens: TokenCounts, model: str) -> float:
        """Calculate the cost of aggregated token counts for a model."""
        pricing = self.get_pricing(model)
        if pricing is None:
            return 0.0
        return pricing.calculate_cost(tokens)
