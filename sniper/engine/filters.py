"""Candidate filters evaluated inside the readiness wait."""

from __future__ import annotations

from typing import Protocol

from sniper.shell.contract import FilterVerdict, TokenCandidate


class QuoteService(Protocol):
    async def get_price(self, asset_id: str) -> float: ...

    async def get_prices_batch(self, asset_ids: list[str]) -> dict[str, float]: ...


class QuoteAvailableFilter:
    """Rejects assets nobody will quote: without a price there is no exit either."""

    name = "quote_available"

    def __init__(self, quotes: QuoteService) -> None:
        self._quotes = quotes

    async def check(self, candidate: TokenCandidate) -> FilterVerdict:
        price = await self._quotes.get_price(candidate.asset_id)
        if price <= 0:
            return FilterVerdict(False, "no quote")
        return FilterVerdict(True)
