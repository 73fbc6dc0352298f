"""
Drift v2 decoder.

A User account holds 8 spot slots and 8 perp slots. Spot balances are scaled
by the market's cumulative interest; perp exposure contributes unrealized PnL
and unsettled funding to collateral and |base| * oracle * maintenance ratio to
the margin requirement.
"""
import logging
from typing import List, Mapping

from pydantic import BaseModel, ConfigDict, Field

from sentinel.errors import ReserveUnavailable
from sentinel.models.position_models import (
    CollateralEntry,
    DebtEntry,
    PerpExposure,
    Position,
    Protocol,
    position_id,
)
from sentinel.models.reserve_models import DriftPerpMarket, DriftSpotMarket
from sentinel.protocols.base import ProtocolAdapter, merge_collateral, merge_debt, weighted_health
from sentinel.protocols.layout import AccountReader, anchor_discriminator

logger = logging.getLogger(__name__)

DRIFT_PROGRAM_ID = "dRiftyHA39MWEi3m9aunc5MzRF1JYuBsbn6VPcn33UH"

USER_DISCRIMINATOR = anchor_discriminator("User")
PERP_MARKET_DISCRIMINATOR = anchor_discriminator("PerpMarket")
SPOT_MARKET_DISCRIMINATOR = anchor_discriminator("SpotMarket")

BASE_PRECISION = 10 ** 9
QUOTE_PRECISION = 10 ** 6
PRICE_PRECISION = 10 ** 6
FUNDING_RATE_PRECISION = 10 ** 9
MARGIN_PRECISION = 10 ** 4
LIQUIDATOR_FEE_PRECISION = 10 ** 6
SPOT_BALANCE_SCALE = 10 ** 19

MAX_SPOT = 8
MAX_PERP = 8
SPOT_OFFSET = 104
SPOT_SIZE = 40
PERP_OFFSET = 424
PERP_SIZE = 96
USER_MIN_SIZE = 1197
PERP_MARKET_MIN_SIZE = 200
SPOT_MARKET_MIN_SIZE = 204

BALANCE_DEPOSIT = 0
BALANCE_BORROW = 1


class SpotSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    market_index: int
    scaled_balance: int
    balance_type: int
    open_bids: int
    open_asks: int
    cumulative_deposits: int
    open_orders: int

    @property
    def is_borrow(self) -> bool:
        return self.balance_type == BALANCE_BORROW


class PerpSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    market_index: int
    last_cumulative_funding_rate: int
    base_asset_amount: int
    quote_asset_amount: int
    quote_break_even_amount: int
    quote_entry_amount: int
    open_bids: int
    open_asks: int
    settled_pnl: int
    lp_shares: int
    open_orders: int


class DriftUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    authority: str
    delegate: str
    name: str
    sub_account_id: int
    status: int
    spot_positions: List[SpotSlot] = Field(default_factory=list)
    perp_positions: List[PerpSlot] = Field(default_factory=list)


def decode_user(data: bytes, address: str) -> DriftUser:
    reader = AccountReader(data, address)
    reader.expect_discriminator(USER_DISCRIMINATOR, "User")
    reader.require(USER_MIN_SIZE)

    spot = []
    for slot in range(MAX_SPOT):
        base = SPOT_OFFSET + slot * SPOT_SIZE
        scaled_balance = reader.u64(base)
        open_orders = reader.u8(base + 35)
        if scaled_balance == 0 and open_orders == 0:
            continue
        spot.append(
            SpotSlot(
                market_index=reader.u16(base + 32),
                scaled_balance=scaled_balance,
                balance_type=reader.u8(base + 34),
                open_bids=reader.i64(base + 8),
                open_asks=reader.i64(base + 16),
                cumulative_deposits=reader.i64(base + 24),
                open_orders=open_orders,
            )
        )

    perps = []
    for slot in range(MAX_PERP):
        base = PERP_OFFSET + slot * PERP_SIZE
        base_amount = reader.i64(base + 8)
        lp_shares = reader.u64(base + 64)
        open_orders = reader.u8(base + 74)
        if base_amount == 0 and lp_shares == 0 and open_orders == 0:
            continue
        perps.append(
            PerpSlot(
                market_index=reader.u16(base + 72),
                last_cumulative_funding_rate=reader.i64(base),
                base_asset_amount=base_amount,
                quote_asset_amount=reader.i64(base + 16),
                quote_break_even_amount=reader.i64(base + 24),
                quote_entry_amount=reader.i64(base + 32),
                open_bids=reader.i64(base + 40),
                open_asks=reader.i64(base + 48),
                settled_pnl=reader.i64(base + 56),
                lp_shares=lp_shares,
                open_orders=open_orders,
            )
        )

    return DriftUser(
        address=address,
        authority=reader.pubkey(8),
        delegate=reader.pubkey(40),
        name=reader.fixed_str(72, 32),
        sub_account_id=reader.u16(1192),
        status=reader.u8(1194),
        spot_positions=spot,
        perp_positions=perps,
    )


def decode_perp_market(data: bytes, address: str) -> DriftPerpMarket:
    reader = AccountReader(data, address)
    reader.expect_discriminator(PERP_MARKET_DISCRIMINATOR, "PerpMarket")
    reader.require(PERP_MARKET_MIN_SIZE)
    return DriftPerpMarket(
        address=reader.pubkey(8),
        oracle=reader.pubkey(40),
        market_index=reader.u16(72),
        status=reader.u8(74),
        contract_tier=reader.u8(75),
        margin_ratio_initial=reader.u32(76) / MARGIN_PRECISION,
        margin_ratio_maintenance=reader.u32(80) / MARGIN_PRECISION,
        liquidator_fee=reader.u32(84) / LIQUIDATOR_FEE_PRECISION,
        cumulative_funding_rate_long=reader.i128(88) / FUNDING_RATE_PRECISION,
        cumulative_funding_rate_short=reader.i128(104) / FUNDING_RATE_PRECISION,
        last_mark_price_twap=reader.u64(120) / PRICE_PRECISION,
        last_oracle_price=reader.i64(128) / PRICE_PRECISION,
        base_asset_amount_long=reader.i128(136) / BASE_PRECISION,
        base_asset_amount_short=reader.i128(152) / BASE_PRECISION,
        name=reader.fixed_str(168, 32),
    )


def decode_spot_market(data: bytes, address: str) -> DriftSpotMarket:
    reader = AccountReader(data, address)
    reader.expect_discriminator(SPOT_MARKET_DISCRIMINATOR, "SpotMarket")
    reader.require(SPOT_MARKET_MIN_SIZE)
    return DriftSpotMarket(
        address=reader.pubkey(8),
        oracle=reader.pubkey(40),
        mint=reader.pubkey(72),
        market_index=reader.u16(104),
        decimals=reader.u32(106),
        status=reader.u8(110),
        asset_tier=reader.u8(111),
        initial_asset_weight=reader.u32(112) / MARGIN_PRECISION,
        maintenance_asset_weight=reader.u32(116) / MARGIN_PRECISION,
        initial_liability_weight=reader.u32(120) / MARGIN_PRECISION,
        maintenance_liability_weight=reader.u32(124) / MARGIN_PRECISION,
        liquidator_fee=reader.u32(128) / LIQUIDATOR_FEE_PRECISION,
        cumulative_deposit_interest=reader.u128(132),
        cumulative_borrow_interest=reader.u128(148),
        last_oracle_price=reader.i64(164) / PRICE_PRECISION,
        name=reader.fixed_str(172, 32),
    )


def spot_token_amount(slot: SpotSlot, market: DriftSpotMarket) -> float:
    interest = market.cumulative_borrow_interest if slot.is_borrow else market.cumulative_deposit_interest
    return slot.scaled_balance * interest / SPOT_BALANCE_SCALE


def perp_entry_price(slot: PerpSlot) -> float:
    if slot.base_asset_amount == 0:
        return 0.0
    quote = abs(slot.quote_entry_amount) / QUOTE_PRECISION
    base = abs(slot.base_asset_amount) / BASE_PRECISION
    return quote / base


def perp_unrealized_pnl(slot: PerpSlot, mark_price: float) -> float:
    base = slot.base_asset_amount / BASE_PRECISION
    return base * (mark_price - perp_entry_price(slot))


def perp_unsettled_funding(slot: PerpSlot, market: DriftPerpMarket) -> float:
    base = slot.base_asset_amount / BASE_PRECISION
    current = market.cumulative_funding_rate_long if base > 0 else market.cumulative_funding_rate_short
    last = slot.last_cumulative_funding_rate / FUNDING_RATE_PRECISION
    return -base * (current - last)


class DriftAdapter(ProtocolAdapter):
    protocol = Protocol.DRIFT
    program_id = DRIFT_PROGRAM_ID
    account_name = "User"
    owner_offset = 8

    @property
    def discriminator(self) -> bytes:
        return USER_DISCRIMINATOR

    def decode_account(self, data: bytes, address: str) -> DriftUser:
        return decode_user(data, address)

    def owner_of(self, account: DriftUser) -> str:
        return account.authority

    def dependencies(self, account: DriftUser) -> List[str]:
        # Drift markets are bulk-loaded by index through the reserve cache.
        return []

    def _spot_market(self, cache, index: int) -> DriftSpotMarket:
        market = cache.get_spot_market(index)
        if market is None:
            raise ReserveUnavailable(f"drift-spot:{index}")
        return market

    def _perp_market(self, cache, index: int) -> DriftPerpMarket:
        market = cache.get_perp_market(index)
        if market is None:
            raise ReserveUnavailable(f"drift-perp:{index}")
        return market

    def build_position(self, account: DriftUser, cache, prices: Mapping[str, float], now: float):
        collateral = []
        debt = []
        perps = []
        weighted_deposits = 0.0
        pnl_total = 0.0
        requirement = 0.0
        collateral_value = 0.0

        for slot in account.spot_positions:
            if slot.scaled_balance == 0:
                continue
            market = self._spot_market(cache, slot.market_index)
            amount = spot_token_amount(slot, market)
            price = prices.get(market.mint, market.last_oracle_price)
            value = amount * price
            if slot.is_borrow:
                debt.append(DebtEntry(asset_id=market.mint, amount=amount, value_usd=value))
                requirement += value * market.maintenance_liability_weight
            else:
                collateral.append(CollateralEntry(asset_id=market.mint, amount=amount, value_usd=value, price=price))
                weighted_deposits += value * market.maintenance_asset_weight
                collateral_value += value

        for slot in account.perp_positions:
            if slot.base_asset_amount == 0:
                continue
            market = self._perp_market(cache, slot.market_index)
            mark = market.last_oracle_price
            pnl = perp_unrealized_pnl(slot, mark)
            funding = perp_unsettled_funding(slot, market)
            base = slot.base_asset_amount / BASE_PRECISION
            perps.append(
                PerpExposure(
                    market_index=slot.market_index,
                    base_amount=base,
                    entry_price=perp_entry_price(slot),
                    mark_price=mark,
                    unrealized_pnl=pnl,
                    unsettled_funding=funding,
                )
            )
            pnl_total += pnl + funding
            requirement += abs(base) * mark * market.margin_ratio_maintenance

        if not collateral and not debt and not perps:
            return None

        threshold = weighted_deposits / collateral_value if collateral_value > 0 else None

        return Position(
            id=position_id(Protocol.DRIFT, account.address),
            protocol=Protocol.DRIFT,
            owner=account.authority,
            account_address=account.address,
            collateral=merge_collateral(collateral),
            debt=merge_debt(debt),
            health_factor=weighted_health(weighted_deposits + pnl_total, requirement),
            liquidation_threshold=threshold,
            perps=perps,
            timestamp=now,
        )

