"""
Decoded reserve / market records. These are shared read-only by every
position referencing them and only replaced through a cache refresh.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict


class MarginfiBank(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    mint: str
    mint_decimals: int
    group: str
    asset_share_value: float
    liability_share_value: float
    total_liability_shares: float
    total_asset_shares: float
    last_update: int
    asset_weight_init: float
    asset_weight_maint: float
    liability_weight_init: float
    liability_weight_maint: float
    deposit_limit: float
    operational_state: int
    oracle_setup: int
    oracle: str
    borrow_limit: float
    risk_tier: int
    oracle_max_age: int


class KaminoReserve(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    lending_market: str
    mint: str
    liquidity_supply: int
    borrowed_liquidity: int
    fee_receiver: str
    deposit_limit: int
    borrow_limit: int
    loan_to_value: float
    liquidation_threshold: float
    liquidation_bonus: float
    liquidity_mint: str
    mint_decimals: int
    supply_vault: str
    pyth_oracle: str
    switchboard_oracle: str
    available_amount: int
    borrowed_amount: float
    cumulative_borrow_rate: float
    market_price: float

    @property
    def utilization(self) -> float:
        total = self.available_amount + self.borrowed_amount
        return self.borrowed_amount / total if total > 0 else 0.0


class DriftPerpMarket(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    oracle: str
    market_index: int
    status: int
    contract_tier: int
    margin_ratio_initial: float
    margin_ratio_maintenance: float
    liquidator_fee: float
    cumulative_funding_rate_long: float
    cumulative_funding_rate_short: float
    last_mark_price_twap: float
    last_oracle_price: float
    base_asset_amount_long: float
    base_asset_amount_short: float
    name: str


class DriftSpotMarket(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    oracle: str
    mint: str
    market_index: int
    decimals: int
    status: int
    asset_tier: int
    initial_asset_weight: float
    maintenance_asset_weight: float
    initial_liability_weight: float
    maintenance_liability_weight: float
    liquidator_fee: float
    cumulative_deposit_interest: int
    cumulative_borrow_interest: int
    last_oracle_price: float
    name: str


class OraclePrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    price: float
    confidence: float
    source: str
    slot: Optional[int] = None
    timestamp: Optional[int] = None
