"""Price oracle - reference prices with a fresh/stale cache fallback.

Manifesto:
    The execution engine needs one number per execution: the current price
    of the target asset in the deposit asset. Upstream price APIs rate-limit
    and go down, so every successful fetch is cached twice: a short-lived
    *fresh* entry that short-circuits repeat calls within a tick, and a
    long-lived *stale* entry that keeps executions flowing through a brief
    outage. Only when both the live fetch and the stale entry are missing
    does the oracle give up with ``PriceUnavailableError``.

Lookup order::

    get_current_price("BTC/USDC")
        │
        ├── cache["price:btc:usdc"]        fresh hit → PriceQuote
        ├── source.fetch_price(...)        ok → write fresh + stale → PriceQuote
        ├── cache["price:btc:usdc:stale"]  fetch failed → PriceQuote (logged)
        └── PriceUnavailableError          nothing usable

Tags:
    dcaspine, pricing, oracle, cache, httpx, coingecko

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from dcaspine.core.cache import CacheBackend
from dcaspine.core.errors import PriceUnavailableError
from dcaspine.core.logging import get_logger

logger = get_logger(__name__)

STALE_TTL_MULTIPLIER = 60


@dataclass(frozen=True)
class PriceQuote:
    """Price of one unit of ``base`` denominated in ``quote``."""

    pair: str
    price: Decimal
    timestamp: datetime
    source: str

    def to_cache(self) -> dict[str, Any]:
        return {
            "pair": self.pair,
            "price": str(self.price),
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any], *, source: str | None = None) -> PriceQuote:
        return cls(
            pair=data["pair"],
            price=Decimal(data["price"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            source=source or data["source"],
        )


def split_pair(pair: str) -> tuple[str, str]:
    """``"BTC/USDC"`` → ``("BTC", "USDC")``."""
    base, sep, quote = pair.partition("/")
    if not sep or not base or not quote:
        raise ValueError(f"Asset pair must look like 'BASE/QUOTE', got {pair!r}")
    return base, quote


class PriceSource(Protocol):
    """Upstream price provider. Raises on any failure."""

    name: str

    def fetch_price(self, base: str, quote: str) -> Decimal:
        ...


class CoinGeckoPriceSource:
    """CoinGecko ``/simple/price`` over httpx.

    Asset ids are mapped to CoinGecko coin ids through ``coin_ids``
    (case-insensitive); unknown assets fall back to ``default_coin_id``.
    The quote side is always priced in ``vs_currency``.
    """

    name = "coingecko"

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        *,
        api_key: str = "",
        timeout: float = 10.0,
        coin_ids: dict[str, str] | None = None,
        default_coin_id: str = "bitcoin",
        vs_currency: str = "usd",
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.coin_ids = {k.upper(): v for k, v in (coin_ids or {}).items()}
        self.default_coin_id = default_coin_id
        self.vs_currency = vs_currency
        self._client = client

    def _coin_id(self, asset: str) -> str:
        return self.coin_ids.get(asset.upper(), self.default_coin_id)

    def fetch_price(self, base: str, quote: str) -> Decimal:
        coin_id = self._coin_id(base)
        headers = {"x-cg-pro-api-key": self.api_key} if self.api_key else {}
        params = {"ids": coin_id, "vs_currencies": self.vs_currency}
        url = f"{self.base_url}/simple/price"

        if self._client is not None:
            response = self._client.get(url, params=params, headers=headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url, params=params, headers=headers)
        response.raise_for_status()

        try:
            raw = response.json()[coin_id][self.vs_currency]
            # str() first so the JSON float never reaches Decimal directly
            price = Decimal(str(raw))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ValueError(f"Unexpected price payload for {coin_id}: {response.text[:200]}") from e
        if price <= 0:
            raise ValueError(f"Non-positive price for {coin_id}: {price}")
        return price


class CachedPriceOracle:
    """Price oracle backed by a ``PriceSource`` and a ``CacheBackend``.

    Example:
        >>> oracle = CachedPriceOracle(CoinGeckoPriceSource(), InMemoryCache())
        >>> quote = oracle.get_current_price("BTC/USDC")
        >>> quote.price
        Decimal('65000')
    """

    def __init__(
        self,
        source: PriceSource,
        cache: CacheBackend,
        *,
        ttl_seconds: int = 60,
        stale_ttl_seconds: int | None = None,
    ) -> None:
        self.source = source
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.stale_ttl_seconds = stale_ttl_seconds or ttl_seconds * STALE_TTL_MULTIPLIER

    @staticmethod
    def cache_key(pair: str) -> str:
        base, quote = split_pair(pair)
        return f"price:{base.lower()}:{quote.lower()}"

    def _cache_get(self, key: str) -> Any | None:
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning("price_cache_unavailable", key=key, op="get", error=str(e))
            return None

    def _cache_set(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        try:
            self.cache.set(key, payload, ttl_seconds=ttl_seconds)
        except Exception as e:
            logger.warning("price_cache_unavailable", key=key, op="set", error=str(e))

    def get_current_price(self, pair: str) -> PriceQuote:
        """Return the current price for ``pair``.

        Cache errors count as a miss; the live source is still consulted.

        Raises:
            PriceUnavailableError: live fetch failed and no stale entry exists
        """
        key = self.cache_key(pair)
        cached = self._cache_get(key)
        if cached is not None:
            return PriceQuote.from_cache(cached, source="cache")

        base, quote = split_pair(pair)
        try:
            price = self.source.fetch_price(base, quote)
        except Exception as e:
            stale = self._cache_get(f"{key}:stale")
            if stale is not None:
                logger.warning("price_stale_fallback", pair=pair, error=str(e))
                return PriceQuote.from_cache(stale, source="stale-cache")
            logger.error("price_unavailable", pair=pair, error=str(e))
            raise PriceUnavailableError(
                f"Failed to fetch {pair} price: {e}", cause=e
            ).with_context(resource=pair) from e

        result = PriceQuote(
            pair=pair, price=price, timestamp=datetime.now(UTC), source=self.source.name
        )
        payload = result.to_cache()
        self._cache_set(key, payload, self.ttl_seconds)
        self._cache_set(f"{key}:stale", payload, self.stale_ttl_seconds)
        logger.debug("price_fetched", pair=pair, price=str(price), source=result.source)
        return result

    def invalidate(self, pair: str) -> None:
        """Drop the fresh entry so the next call hits the source."""
        self.cache.delete(self.cache_key(pair))
