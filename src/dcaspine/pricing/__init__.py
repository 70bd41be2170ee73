"""Reference price lookup for plan executions."""

from dcaspine.pricing.oracle import (
    CachedPriceOracle,
    CoinGeckoPriceSource,
    PriceQuote,
    PriceSource,
    split_pair,
)

__all__ = [
    "CachedPriceOracle",
    "CoinGeckoPriceSource",
    "PriceQuote",
    "PriceSource",
    "split_pair",
]
