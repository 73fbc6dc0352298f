"""
USD price resolution for mints.

TTL cache in front of the Jupiter price API, fed additionally by on-chain
Pyth / Switchboard accounts. When a fresh price cannot be obtained the last
known price is used, then the caller's default; only when neither exists is
OraclePriceUnavailable raised.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

import aiohttp

from sentinel.errors import DecodeError, OraclePriceUnavailable
from sentinel.models.reserve_models import OraclePrice
from sentinel.oracle.oracle_accounts import parse_oracle_account

logger = logging.getLogger(__name__)

JUPITER_PRICE_API = "https://price.jup.ag/v4/price"

TOKENS = {
    "SOL": "So11111111111111111111111111111111111111112",
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    "JitoSOL": "J1toso1uCk3RLmjorhTtrVwY9HJ7X8V9yYac6Y7kGCPn",
    "mSOL": "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So",
    "stSOL": "7dHbWXmci3dT8UFYWYZweBLXgycu7Y3iL6trKn1Y7ARj",
    "BONK": "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
}
SYMBOL_BY_MINT = {mint: symbol for symbol, mint in TOKENS.items()}


def symbol_for(asset_id: str) -> str:
    return SYMBOL_BY_MINT.get(asset_id, asset_id[:4] + ".." + asset_id[-4:] if len(asset_id) > 12 else asset_id)


class PriceResolver:
    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        api_url: str = JUPITER_PRICE_API,
        ttl_sec: float = 10.0,
        timeout_sec: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.api_url = api_url
        self.ttl_sec = ttl_sec
        self.timeout_sec = timeout_sec
        self._session = session
        self._owns_session = False
        self._clock = clock
        # asset_id -> (price, stored_at); entries are replaced, never mutated
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._last_known: Dict[str, float] = {}
        self._oracles: Dict[str, OraclePrice] = {}
        self._lock = asyncio.Lock()
        self.fetch_failures = 0

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
        self._owns_session = False

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_sec))
            self._owns_session = True
        return self._session

    def _store(self, asset_id: str, price: float):
        self._cache[asset_id] = (price, self._clock())
        self._last_known[asset_id] = price

    def _fresh(self, asset_id: str) -> Optional[float]:
        hit = self._cache.get(asset_id)
        if hit is None:
            return None
        price, stored_at = hit
        if self._clock() - stored_at < self.ttl_sec:
            return price
        return None

    def set_price(self, asset_id: str, price: float):
        if price is None or price <= 0:
            raise ValueError(f"invalid price for {asset_id}: {price}")
        self._store(asset_id, float(price))

    def cached_price(self, asset_id: str, default: Optional[float] = None) -> Optional[float]:
        """Synchronous read: fresh price, else last known, else default."""
        fresh = self._fresh(asset_id)
        if fresh is not None:
            return fresh
        return self._last_known.get(asset_id, default)

    def refresh_oracle(self, address: str, data: bytes, asset_id: Optional[str] = None) -> Optional[OraclePrice]:
        """Ingest a raw Pyth / Switchboard account and cache its price under asset_id."""
        try:
            oracle = parse_oracle_account(data, address)
        except DecodeError as exc:
            logger.warning("oracle decode failed address=%s kind=%s", address, exc.kind)
            return None
        if oracle is None:
            logger.info("oracle not trading address=%s", address)
            return None
        self._oracles[address] = oracle
        if asset_id and oracle.price > 0:
            self._store(asset_id, oracle.price)
        return oracle

    def oracle_price(self, address: str) -> Optional[OraclePrice]:
        return self._oracles.get(address)

    async def _fetch(self, asset_ids: Iterable[str]) -> Dict[str, float]:
        ids = [a for a in asset_ids if a]
        if not ids:
            return {}
        session = self._get_session()
        try:
            async with session.get(self.api_url, params={"ids": ",".join(ids)}) as resp:
                if resp.status != 200:
                    self.fetch_failures += 1
                    logger.warning("price api failed status=%s ids=%s", resp.status, len(ids))
                    return {}
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.fetch_failures += 1
            logger.warning("price api error ids=%s err=%s", len(ids), exc)
            return {}

        out: Dict[str, float] = {}
        data = payload.get("data", {}) if isinstance(payload, dict) else {}
        for asset_id, row in (data or {}).items():
            try:
                price = float((row or {}).get("price"))
            except (TypeError, ValueError):
                continue
            if price > 0:
                out[asset_id] = price
        return out

    async def get_prices(
        self,
        asset_ids: Iterable[str],
        defaults: Optional[Mapping[str, float]] = None,
    ) -> Dict[str, float]:
        """
        Resolve many assets with one batched API call. Assets that cannot be
        priced by any source are omitted from the result.
        """
        wanted = list(dict.fromkeys(a for a in asset_ids if a))
        result: Dict[str, float] = {}
        missing = []
        for asset_id in wanted:
            fresh = self._fresh(asset_id)
            if fresh is not None:
                result[asset_id] = fresh
            else:
                missing.append(asset_id)

        if missing:
            async with self._lock:
                fetched = await self._fetch(missing)
            for asset_id, price in fetched.items():
                self._store(asset_id, price)

            defaults = defaults or {}
            for asset_id in missing:
                if asset_id in fetched:
                    result[asset_id] = fetched[asset_id]
                elif asset_id in self._last_known:
                    logger.debug("price fallback last_known asset=%s", asset_id)
                    result[asset_id] = self._last_known[asset_id]
                elif asset_id in defaults:
                    result[asset_id] = defaults[asset_id]
        return result

    async def get_price(self, asset_id: str, default: Optional[float] = None) -> float:
        prices = await self.get_prices([asset_id], {asset_id: default} if default is not None else None)
        if asset_id not in prices:
            raise OraclePriceUnavailable(asset_id)
        return prices[asset_id]

    def stats(self) -> Dict[str, int]:
        return {
            "cached": len(self._cache),
            "last_known": len(self._last_known),
            "oracles": len(self._oracles),
            "fetch_failures": int(self.fetch_failures),
        }
