"""
Kamino Lend decoder.

Obligations carry protocol-computed USD totals (18 implied decimals), so the
health factor comes straight from unhealthy_borrow_value / borrowed_value.
Per-asset entries are priced with the reserve's stored market price.
"""
import logging
from typing import List, Mapping

from pydantic import BaseModel, ConfigDict, Field

from sentinel.models.position_models import (
    CollateralEntry,
    DebtEntry,
    Position,
    Protocol,
    position_id,
)
from sentinel.models.reserve_models import KaminoReserve
from sentinel.protocols.base import ProtocolAdapter, merge_collateral, merge_debt
from sentinel.protocols.layout import AccountReader, anchor_discriminator

logger = logging.getLogger(__name__)

KAMINO_PROGRAM_ID = "KLend2g3cP87ber41aPn9Q5kkdCZNxMWTKZLGvBKgvV"
KAMINO_LENDING_MARKET = "7u3HeHxYDLhnCoErrtycNokbQYbWGzLs6JSDqGAv5PfF"
RESERVE_ACCOUNT_SIZE = 619
OBLIGATION_ACCOUNT_SIZE = 1300

RESERVE_DISCRIMINATOR = anchor_discriminator("Reserve")
OBLIGATION_DISCRIMINATOR = anchor_discriminator("Obligation")

WAD = 10 ** 18
MARKET_VALUE_SCALE = 10 ** 6
MAX_SLOTS = 8
DEPOSITS_OFFSET = 200
DEPOSIT_SIZE = 48
BORROWS_OFFSET = 584
BORROW_SIZE = 56
RESERVE_MIN_SIZE = 481
OBLIGATION_MIN_SIZE = BORROWS_OFFSET + MAX_SLOTS * BORROW_SIZE


class ObligationDeposit(BaseModel):
    model_config = ConfigDict(frozen=True)

    reserve: str
    deposited_amount: int
    market_value: float


class ObligationBorrow(BaseModel):
    model_config = ConfigDict(frozen=True)

    reserve: str
    borrowed_amount: float
    cumulative_borrow_rate: int


class KaminoObligation(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    lending_market: str
    owner: str
    deposited_value: float
    borrowed_value: float
    allowed_borrow_value: float
    unhealthy_borrow_value: float
    deposits: List[ObligationDeposit] = Field(default_factory=list)
    borrows: List[ObligationBorrow] = Field(default_factory=list)
    last_update_slot: int = 0
    stale: bool = False

    @property
    def health_factor(self) -> float:
        if self.borrowed_value == 0:
            return float("inf")
        return self.unhealthy_borrow_value / self.borrowed_value

    @property
    def ltv(self) -> float:
        if self.deposited_value == 0:
            return 0.0
        return self.borrowed_value / self.deposited_value


def decode_reserve(data: bytes, address: str) -> KaminoReserve:
    reader = AccountReader(data, address)
    reader.expect_discriminator(RESERVE_DISCRIMINATOR, "Reserve")
    reader.require(RESERVE_MIN_SIZE)
    return KaminoReserve(
        address=address,
        lending_market=reader.pubkey(8),
        mint=reader.pubkey(40),
        liquidity_supply=reader.u64(72),
        borrowed_liquidity=reader.u64(80),
        fee_receiver=reader.pubkey(88),
        deposit_limit=reader.u64(153),
        borrow_limit=reader.u64(161),
        loan_to_value=reader.u8(264) / 100,
        liquidation_threshold=reader.u8(265) / 100,
        liquidation_bonus=reader.u8(266) / 100,
        liquidity_mint=reader.pubkey(296),
        mint_decimals=reader.u8(328),
        supply_vault=reader.pubkey(329),
        pyth_oracle=reader.pubkey(361),
        switchboard_oracle=reader.pubkey(393),
        available_amount=reader.u64(425),
        borrowed_amount=reader.u128(433) / WAD,
        cumulative_borrow_rate=reader.u128(449) / WAD,
        market_price=reader.u128(465) / WAD,
    )


def decode_obligation(data: bytes, address: str) -> KaminoObligation:
    reader = AccountReader(data, address)
    reader.expect_discriminator(OBLIGATION_DISCRIMINATOR, "Obligation")
    reader.require(OBLIGATION_MIN_SIZE)

    deposits_len = min(reader.u8(136), MAX_SLOTS)
    borrows_len = min(reader.u8(137), MAX_SLOTS)

    deposits = []
    for slot in range(deposits_len):
        base = DEPOSITS_OFFSET + slot * DEPOSIT_SIZE
        if reader.is_zero_pubkey(base):
            continue
        deposits.append(
            ObligationDeposit(
                reserve=reader.pubkey(base),
                deposited_amount=reader.u64(base + 32),
                market_value=reader.u64(base + 40) / MARKET_VALUE_SCALE,
            )
        )

    borrows = []
    for slot in range(borrows_len):
        base = BORROWS_OFFSET + slot * BORROW_SIZE
        if reader.is_zero_pubkey(base):
            continue
        borrows.append(
            ObligationBorrow(
                reserve=reader.pubkey(base),
                borrowed_amount=reader.u128(base + 32) / WAD,
                cumulative_borrow_rate=reader.u64(base + 48),
            )
        )

    return KaminoObligation(
        address=address,
        lending_market=reader.pubkey(8),
        owner=reader.pubkey(40),
        deposited_value=reader.u128(72) / WAD,
        borrowed_value=reader.u128(88) / WAD,
        allowed_borrow_value=reader.u128(104) / WAD,
        unhealthy_borrow_value=reader.u128(120) / WAD,
        deposits=deposits,
        borrows=borrows,
        last_update_slot=reader.u64(138),
        stale=reader.u8(146) == 1,
    )


class KaminoAdapter(ProtocolAdapter):
    protocol = Protocol.KAMINO
    program_id = KAMINO_PROGRAM_ID
    account_name = "Obligation"
    owner_offset = 40
    account_size = OBLIGATION_ACCOUNT_SIZE

    @property
    def discriminator(self) -> bytes:
        return OBLIGATION_DISCRIMINATOR

    def decode_account(self, data: bytes, address: str) -> KaminoObligation:
        return decode_obligation(data, address)

    def owner_of(self, account: KaminoObligation) -> str:
        return account.owner

    def dependencies(self, account: KaminoObligation) -> List[str]:
        reserves = [d.reserve for d in account.deposits] + [b.reserve for b in account.borrows]
        return list(dict.fromkeys(reserves))

    def build_position(self, account: KaminoObligation, cache, prices: Mapping[str, float], now: float):
        if not account.deposits and not account.borrows:
            return None

        collateral = []
        bonus = None
        best_value = -1.0
        for deposit in account.deposits:
            reserve = cache.get_kamino_reserve(deposit.reserve)
            if reserve is None:
                # Unknown reserve: keep the USD value, amount stays in native units.
                logger.warning("kamino reserve not cached reserve=%s obligation=%s", deposit.reserve, account.address)
                collateral.append(
                    CollateralEntry(asset_id=deposit.reserve, amount=float(deposit.deposited_amount), value_usd=deposit.market_value)
                )
                continue
            amount = deposit.deposited_amount / (10 ** reserve.mint_decimals)
            collateral.append(
                CollateralEntry(
                    asset_id=reserve.liquidity_mint,
                    amount=amount,
                    value_usd=deposit.market_value,
                    price=reserve.market_price or None,
                )
            )
            if deposit.market_value > best_value:
                best_value = deposit.market_value
                bonus = reserve.liquidation_bonus

        debt = []
        for borrow in account.borrows:
            reserve = cache.get_kamino_reserve(borrow.reserve)
            if reserve is None:
                logger.warning("kamino reserve not cached reserve=%s obligation=%s", borrow.reserve, account.address)
                debt.append(DebtEntry(asset_id=borrow.reserve, amount=borrow.borrowed_amount, value_usd=0.0))
                continue
            amount = borrow.borrowed_amount / (10 ** reserve.mint_decimals)
            debt.append(DebtEntry(asset_id=reserve.liquidity_mint, amount=amount, value_usd=amount * reserve.market_price))

        threshold = None
        if account.deposited_value > 0:
            threshold = account.unhealthy_borrow_value / account.deposited_value

        return Position(
            id=position_id(Protocol.KAMINO, account.address),
            protocol=Protocol.KAMINO,
            owner=account.owner,
            account_address=account.address,
            collateral=merge_collateral(collateral),
            debt=merge_debt(debt),
            health_factor=account.health_factor,
            liquidation_threshold=threshold,
            liquidation_bonus=bonus,
            timestamp=now,
        )
