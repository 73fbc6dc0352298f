"""Protocol adapter interface shared by the Marginfi, Kamino and Drift decoders."""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

import base58

from sentinel.models.position_models import CollateralEntry, DebtEntry, Protocol


def weighted_health(weighted_collateral: float, weighted_debt: float) -> float:
    """Risk-weighted collateral over risk-weighted debt; +inf when there is no debt."""
    if weighted_debt <= 0:
        return float("inf")
    return max(weighted_collateral, 0.0) / weighted_debt


def merge_collateral(entries: Iterable[CollateralEntry]) -> List[CollateralEntry]:
    merged: Dict[str, CollateralEntry] = {}
    for entry in entries:
        prev = merged.get(entry.asset_id)
        if prev is None:
            merged[entry.asset_id] = entry
            continue
        merged[entry.asset_id] = CollateralEntry(
            asset_id=entry.asset_id,
            amount=prev.amount + entry.amount,
            value_usd=prev.value_usd + entry.value_usd,
            price=entry.price if entry.price is not None else prev.price,
        )
    return list(merged.values())


def merge_debt(entries: Iterable[DebtEntry]) -> List[DebtEntry]:
    merged: Dict[str, DebtEntry] = {}
    for entry in entries:
        prev = merged.get(entry.asset_id)
        if prev is None:
            merged[entry.asset_id] = entry
            continue
        merged[entry.asset_id] = DebtEntry(
            asset_id=entry.asset_id,
            amount=prev.amount + entry.amount,
            value_usd=prev.value_usd + entry.value_usd,
        )
    return list(merged.values())


class ProtocolAdapter(ABC):
    """
    Decode + derive for one protocol. Decoding is pure; the adapter never
    performs I/O, callers hand it bytes, the reserve cache and a price map.
    """

    protocol: Protocol
    program_id: str
    account_name: str
    owner_offset: int
    account_size: Optional[int] = None

    @property
    @abstractmethod
    def discriminator(self) -> bytes:
        pass

    def account_filters(self, owner: str) -> List[Dict[str, Any]]:
        """getProgramAccounts filters selecting the position accounts of one owner."""
        filters: List[Dict[str, Any]] = [
            {"memcmp": {"offset": 0, "bytes": base58.b58encode(self.discriminator).decode("ascii")}},
            {"memcmp": {"offset": self.owner_offset, "bytes": owner}},
        ]
        if self.account_size:
            filters.insert(0, {"dataSize": self.account_size})
        return filters

    @abstractmethod
    def decode_account(self, data: bytes, address: str):
        pass

    @abstractmethod
    def owner_of(self, account) -> str:
        pass

    @abstractmethod
    def dependencies(self, account) -> List[str]:
        """Reserve / bank / market addresses the account refers to."""

    def price_ids(self, account, cache) -> List[str]:
        """Asset ids that need an external USD price before build_position."""
        return []

    @abstractmethod
    def build_position(self, account, cache, prices: Mapping[str, float], now: float):
        """Return a Position, or None when the account holds nothing."""
