"""Solana JSON-RPC client (read-only) plus the probe, filter and balance source built on it."""

from __future__ import annotations

import itertools
from typing import Any

import httpx
import structlog

from sniper.shell.config import RpcConfig
from sniper.shell.contract import FilterVerdict, TokenCandidate

log = structlog.get_logger()

LAMPORTS_PER_SOL = 1_000_000_000


class RpcError(RuntimeError):
    pass


class SolanaRPC:
    def __init__(self, config: RpcConfig, client: httpx.AsyncClient | None = None) -> None:
        self._url = config.url
        self._commitment = config.commitment
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await self._client.post(self._url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            raise RpcError(f"{method}: {data['error']}")
        return data.get("result")

    async def get_account_info(self, address: str, encoding: str = "base64") -> dict | None:
        result = await self.call(
            "getAccountInfo", [address, {"encoding": encoding, "commitment": self._commitment}],
        )
        return result.get("value") if result else None

    async def get_balance(self, address: str) -> float:
        result = await self.call("getBalance", [address, {"commitment": self._commitment}])
        return int(result["value"]) / LAMPORTS_PER_SOL


class RpcReadinessProbe:
    """An asset is tradable once its mint account exists on-chain with data."""

    def __init__(self, rpc: SolanaRPC) -> None:
        self._rpc = rpc

    async def is_ready(self, asset_id: str) -> bool:
        try:
            info = await self._rpc.get_account_info(asset_id)
        except (httpx.HTTPError, RpcError, ValueError) as e:
            log.debug("rpc.probe_failed", asset=asset_id, error=str(e))
            return False
        if not info:
            return False
        data = info.get("data")
        return bool(data and data[0])


class MintAuthorityFilter:
    """Rejects mints whose supply or transfers can still be controlled by a single key."""

    name = "mint_authority"

    def __init__(self, rpc: SolanaRPC) -> None:
        self._rpc = rpc

    async def check(self, candidate: TokenCandidate) -> FilterVerdict:
        info = await self._rpc.get_account_info(candidate.asset_id, encoding="jsonParsed")
        if not info:
            return FilterVerdict(False, "mint account missing")
        try:
            parsed = info["data"]["parsed"]["info"]
        except (KeyError, TypeError):
            return FilterVerdict(False, "mint account not parseable")
        if parsed.get("mintAuthority"):
            return FilterVerdict(False, "mint authority present")
        if parsed.get("freezeAuthority"):
            return FilterVerdict(False, "freeze authority present")
        return FilterVerdict(True)


class WalletBalanceSource:
    def __init__(self, rpc: SolanaRPC, address: str) -> None:
        self._rpc = rpc
        self._address = address

    async def get_balance(self) -> float:
        return await self._rpc.get_balance(self._address)
