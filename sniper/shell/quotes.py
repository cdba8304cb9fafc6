"""Quote service: unit prices from the Jupiter quote API.

Price = settlement units received per asset unit for a fixed-size quote.
Every failure is reported as 0.0 ("no price"), never raised to the engine.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx
import structlog

from sniper.shell.config import QuoteConfig

log = structlog.get_logger()


class JupiterQuoteService:
    """HTTP quote client with a short TTL cache shared by all monitor tasks."""

    def __init__(
        self,
        config: QuoteConfig,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._clock = clock
        self._cache: dict[str, tuple[float, float]] = {}   # asset -> (price, fetched_at)

    async def close(self) -> None:
        await self._client.aclose()

    def clear_cache(self) -> None:
        self._cache.clear()

    def cached(self, asset_id: str) -> float | None:
        entry = self._cache.get(asset_id)
        if entry and self._clock() - entry[1] < self._config.cache_ttl_seconds:
            return entry[0]
        return None

    async def get_price(self, asset_id: str) -> float:
        prices = await self.get_prices_batch([asset_id])
        return prices.get(asset_id, 0.0)

    async def get_prices_batch(self, asset_ids: list[str]) -> dict[str, float]:
        result: dict[str, float] = {}
        to_fetch = []
        for asset in dict.fromkeys(asset_ids):
            hit = self.cached(asset)
            if hit is not None:
                result[asset] = hit
            else:
                to_fetch.append(asset)

        if to_fetch:
            fetched = await asyncio.gather(*(self._fetch_quote(a) for a in to_fetch))
            now = self._clock()
            for asset, price in zip(to_fetch, fetched):
                result[asset] = price
                if price > 0:
                    self._cache[asset] = (price, now)
        return result

    async def _fetch_quote(self, asset_id: str) -> float:
        params = {
            "inputMint": asset_id,
            "outputMint": self._config.settlement_mint,
            "amount": str(self._config.quote_amount),
            "slippageBps": str(self._config.slippage_bps),
        }
        try:
            resp = await self._client.get(f"{self._config.base_url}/quote", params=params)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("quotes.fetch_failed", asset=asset_id, error=str(e))
            return 0.0

        try:
            in_amount = float(data.get("inAmount") or 0)
            out_amount = float(data.get("outAmount") or 0)
        except (TypeError, ValueError, AttributeError):
            log.warning("quotes.unparseable", asset=asset_id)
            return 0.0
        if in_amount <= 0 or out_amount <= 0:
            return 0.0
        return out_amount / in_amount
