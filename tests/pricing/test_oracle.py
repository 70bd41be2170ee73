"""Tests for the price oracle and the CoinGecko source."""

from decimal import Decimal

import httpx
import pytest

from dcaspine.core.cache import InMemoryCache
from dcaspine.core.errors import PriceUnavailableError
from dcaspine.pricing import CachedPriceOracle, CoinGeckoPriceSource, PriceQuote, split_pair


class BrokenCache(InMemoryCache):
    """Cache whose reads and/or writes fail like an unreachable Redis."""

    def __init__(self, *, fail_get=True, fail_set=True):
        super().__init__()
        self.fail_get = fail_get
        self.fail_set = fail_set

    def get(self, key):
        if self.fail_get:
            raise ConnectionError("redis down")
        return super().get(key)

    def set(self, key, value, *, ttl_seconds=None):
        if self.fail_set:
            raise ConnectionError("redis down")
        super().set(key, value, ttl_seconds=ttl_seconds)


def _source(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CoinGeckoPriceSource("https://prices.test/api/v3", client=client, **kwargs)


class TestSplitPair:
    def test_split(self):
        assert split_pair("BTC/USDC") == ("BTC", "USDC")

    @pytest.mark.parametrize("pair", ["BTCUSDC", "/USDC", "BTC/"])
    def test_invalid(self, pair):
        with pytest.raises(ValueError):
            split_pair(pair)


class TestCoinGeckoPriceSource:
    def test_fetch_price(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"bitcoin": {"usd": 65000.12}})

        price = _source(handler).fetch_price("BTC", "USDC")

        assert price == Decimal("65000.12")
        assert seen[0].url.path == "/api/v3/simple/price"
        assert seen[0].url.params["ids"] == "bitcoin"
        assert seen[0].url.params["vs_currencies"] == "usd"
        assert "x-cg-pro-api-key" not in seen[0].headers

    def test_coin_id_mapping_and_api_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ethereum": {"usd": 3000}})

        source = _source(handler, api_key="k", coin_ids={"eth": "ethereum"})

        assert source.fetch_price("ETH", "USDC") == Decimal("3000")
        assert seen[0].headers["x-cg-pro-api-key"] == "k"

    def test_http_error(self):
        source = _source(lambda request: httpx.Response(429, json={"error": "rate limited"}))
        with pytest.raises(httpx.HTTPStatusError):
            source.fetch_price("BTC", "USDC")

    @pytest.mark.parametrize("body", [{}, {"bitcoin": {}}, {"bitcoin": {"usd": 0}}])
    def test_bad_payload(self, body):
        source = _source(lambda request: httpx.Response(200, json=body))
        with pytest.raises(ValueError):
            source.fetch_price("BTC", "USDC")


class TestCachedPriceOracle:
    def test_fetches_and_caches(self, price_source):
        cache = InMemoryCache()
        oracle = CachedPriceOracle(price_source, cache, ttl_seconds=60)

        first = oracle.get_current_price("BTC/USDC")
        second = oracle.get_current_price("BTC/USDC")

        assert first.price == Decimal("65000")
        assert first.source == "stub"
        assert second.source == "cache"
        assert second.price == first.price
        assert price_source.calls == [("BTC", "USDC")]
        assert cache.get("price:btc:usdc")["price"] == "65000"

    def test_stale_fallback(self, price_source):
        cache = InMemoryCache()
        oracle = CachedPriceOracle(price_source, cache)
        oracle.get_current_price("BTC/USDC")
        oracle.invalidate("BTC/USDC")
        price_source.fail = True

        quote = oracle.get_current_price("BTC/USDC")

        assert quote.source == "stale-cache"
        assert quote.price == Decimal("65000")

    def test_unavailable(self, price_source):
        price_source.fail = True
        oracle = CachedPriceOracle(price_source, InMemoryCache())

        with pytest.raises(PriceUnavailableError) as exc_info:
            oracle.get_current_price("BTC/USDC")

        assert str(exc_info.value).startswith("Failed to fetch BTC/USDC price:")
        assert exc_info.value.retryable is True

    def test_cache_read_error_falls_through_to_source(self, price_source):
        oracle = CachedPriceOracle(price_source, BrokenCache(fail_get=True, fail_set=False))

        quote = oracle.get_current_price("BTC/USDC")

        assert quote.price == Decimal("65000")
        assert quote.source == "stub"
        assert price_source.calls == [("BTC", "USDC")]

    def test_cache_write_error_still_returns_quote(self, price_source):
        cache = BrokenCache(fail_get=False, fail_set=True)
        oracle = CachedPriceOracle(price_source, cache)

        quote = oracle.get_current_price("BTC/USDC")

        assert quote.price == Decimal("65000")
        assert cache.get("price:btc:usdc") is None

    def test_cache_down_and_source_down(self, price_source):
        price_source.fail = True
        oracle = CachedPriceOracle(price_source, BrokenCache())

        with pytest.raises(PriceUnavailableError):
            oracle.get_current_price("BTC/USDC")

    def test_stale_ttl_defaults_to_multiple_of_ttl(self, price_source):
        oracle = CachedPriceOracle(price_source, InMemoryCache(), ttl_seconds=60)
        assert oracle.stale_ttl_seconds == 3600

    def test_quote_cache_round_trip(self):
        from datetime import UTC, datetime

        quote = PriceQuote("BTC/USDC", Decimal("1.5"), datetime(2024, 1, 1, tzinfo=UTC), "coingecko")
        assert PriceQuote.from_cache(quote.to_cache()) == quote
