"""
Process-wide cache of decoded reserve records.

One instance is created at startup and passed by reference to the monitor
and risk engine. Readers get immutable pydantic snapshots; refresh routines
swap whole entries so a reader never sees a half-updated record.
"""
import logging
from typing import Dict, Iterable, List, Optional

import base58

from sentinel.errors import DecodeError
from sentinel.models.reserve_models import DriftPerpMarket, DriftSpotMarket, KaminoReserve, MarginfiBank
from sentinel.oracle.price_resolver import PriceResolver
from sentinel.protocols import drift, kamino, marginfi
from sentinel.protocols.layout import anchor_discriminator
from sentinel.services.rpc_client import SolanaRpcClient

logger = logging.getLogger(__name__)


def _disc_filter(account_name: str) -> Dict:
    return {"memcmp": {"offset": 0, "bytes": base58.b58encode(anchor_discriminator(account_name)).decode("ascii")}}


class ReserveCache:
    def __init__(self, rpc: Optional[SolanaRpcClient] = None, prices: Optional[PriceResolver] = None):
        self.rpc = rpc
        self.prices = prices
        self._banks: Dict[str, MarginfiBank] = {}
        self._kamino: Dict[str, KaminoReserve] = {}
        self._perp_by_index: Dict[int, DriftPerpMarket] = {}
        self._spot_by_index: Dict[int, DriftSpotMarket] = {}
        self.decode_failures = 0

    # Synchronous reads

    def get_bank(self, address: str) -> Optional[MarginfiBank]:
        return self._banks.get(address)

    def get_kamino_reserve(self, address: str) -> Optional[KaminoReserve]:
        return self._kamino.get(address)

    def get_perp_market(self, market_index: int) -> Optional[DriftPerpMarket]:
        return self._perp_by_index.get(market_index)

    def get_spot_market(self, market_index: int) -> Optional[DriftSpotMarket]:
        return self._spot_by_index.get(market_index)

    def has(self, address: str) -> bool:
        return address in self._banks or address in self._kamino

    # Writers

    def put_bank(self, bank: MarginfiBank):
        self._banks[bank.address] = bank

    def put_kamino_reserve(self, reserve: KaminoReserve):
        self._kamino[reserve.address] = reserve

    def put_perp_market(self, market: DriftPerpMarket):
        self._perp_by_index[market.market_index] = market

    def put_spot_market(self, market: DriftSpotMarket):
        self._spot_by_index[market.market_index] = market

    def ingest(self, address: str, data: bytes) -> bool:
        """Decode any supported reserve-type account and store it. Returns False when unrecognized."""
        head = data[:8]
        try:
            if head == marginfi.BANK_DISCRIMINATOR:
                self.put_bank(marginfi.decode_bank(data, address))
            elif head == kamino.RESERVE_DISCRIMINATOR:
                self.put_kamino_reserve(kamino.decode_reserve(data, address))
            elif head == drift.PERP_MARKET_DISCRIMINATOR:
                self.put_perp_market(drift.decode_perp_market(data, address))
            elif head == drift.SPOT_MARKET_DISCRIMINATOR:
                self.put_spot_market(drift.decode_spot_market(data, address))
            else:
                return False
        except DecodeError as exc:
            self.decode_failures += 1
            logger.warning("reserve decode failed address=%s kind=%s", address, exc.kind)
            return False
        return True

    async def refresh(self, addresses: Iterable[str]) -> int:
        """Fetch and replace the given bank / reserve accounts, plus Marginfi bank oracles."""
        wanted = list(dict.fromkeys(a for a in addresses if a))
        if not wanted or self.rpc is None:
            return 0
        accounts = await self.rpc.get_multiple_accounts(wanted)
        stored = 0
        for address, data in accounts.items():
            if data is None:
                logger.warning("reserve account missing address=%s", address)
                continue
            if self.ingest(address, data):
                stored += 1
        await self._refresh_bank_oracles([self._banks[a] for a in wanted if a in self._banks])
        logger.info("reserve cache refreshed requested=%s stored=%s", len(wanted), stored)
        return stored

    async def _refresh_bank_oracles(self, banks: List[MarginfiBank]):
        if self.prices is None or not banks:
            return
        oracle_to_mint = {bank.oracle: bank.mint for bank in banks}
        accounts = await self.rpc.get_multiple_accounts(list(oracle_to_mint))
        for oracle_address, data in accounts.items():
            if data is not None:
                self.prices.refresh_oracle(oracle_address, data, asset_id=oracle_to_mint[oracle_address])

    async def load_kamino_reserves(self, lending_market: str = kamino.KAMINO_LENDING_MARKET) -> int:
        if self.rpc is None:
            return 0
        rows = await self.rpc.get_program_accounts(
            kamino.KAMINO_PROGRAM_ID,
            [
                {"dataSize": kamino.RESERVE_ACCOUNT_SIZE},
                {"memcmp": {"offset": 8, "bytes": lending_market}},
            ],
        )
        loaded = sum(1 for address, data in rows if self.ingest(address, data))
        logger.info("kamino reserves loaded count=%s market=%s", loaded, lending_market)
        return loaded

    async def load_drift_markets(self) -> int:
        if self.rpc is None:
            return 0
        loaded = 0
        for account_name in ("PerpMarket", "SpotMarket"):
            rows = await self.rpc.get_program_accounts(drift.DRIFT_PROGRAM_ID, [_disc_filter(account_name)])
            loaded += sum(1 for address, data in rows if self.ingest(address, data))
        logger.info("drift markets loaded count=%s", loaded)
        return loaded

    def stats(self) -> Dict[str, int]:
        return {
            "marginfi_banks": len(self._banks),
            "kamino_reserves": len(self._kamino),
            "drift_perp_markets": len(self._perp_by_index),
            "drift_spot_markets": len(self._spot_by_index),
            "decode_failures": int(self.decode_failures),
        }
