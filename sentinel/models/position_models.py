from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Protocol(str, Enum):
    MARGINFI = "marginfi"
    KAMINO = "kamino"
    DRIFT = "drift"


class CollateralEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    amount: float = Field(ge=0)
    value_usd: float = Field(ge=0)
    price: Optional[float] = None


class DebtEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    amount: float = Field(ge=0)
    value_usd: float = Field(ge=0)


class PerpExposure(BaseModel):
    """
    One open perpetual position inside a margin account.
    base_amount is signed: positive for long, negative for short.
    """
    model_config = ConfigDict(frozen=True)

    market_index: int
    base_amount: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float
    unsettled_funding: float = 0.0


def _check_unique(entries, label: str):
    seen = set()
    for entry in entries:
        if entry.asset_id in seen:
            raise ValueError(f"duplicate {label} asset_id={entry.asset_id}")
        seen.add(entry.asset_id)


class Position(BaseModel):
    """
    Immutable snapshot of one borrowing / margin account at one protocol.
    A fresh snapshot replaces the previous one on every decode.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    protocol: Protocol
    owner: str
    account_address: str
    collateral: List[CollateralEntry] = Field(default_factory=list)
    debt: List[DebtEntry] = Field(default_factory=list)
    health_factor: float = float("inf")
    liquidation_threshold: Optional[float] = None
    liquidation_bonus: Optional[float] = None
    perps: List[PerpExposure] = Field(default_factory=list)
    timestamp: float = 0.0

    @model_validator(mode="after")
    def _no_duplicate_assets(self):
        _check_unique(self.collateral, "collateral")
        _check_unique(self.debt, "debt")
        return self

    @property
    def collateral_value(self) -> float:
        return sum(entry.value_usd for entry in self.collateral)

    @property
    def debt_value(self) -> float:
        return sum(entry.value_usd for entry in self.debt)

    @property
    def is_empty(self) -> bool:
        return not self.collateral and not self.debt and not self.perps

    def dominant_collateral(self) -> Optional[CollateralEntry]:
        if not self.collateral:
            return None
        return max(self.collateral, key=lambda entry: entry.value_usd)


def position_id(protocol: Protocol, account_address: str) -> str:
    return f"{protocol.value}:{account_address}"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class PositionChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    position: Position
    previous: Optional[Position] = None
