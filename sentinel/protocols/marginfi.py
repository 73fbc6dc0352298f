"""
Marginfi v2 decoder.

Margin accounts hold up to 16 balance slots, each pointing at a Bank. Share
counts are converted to token amounts with the bank's share values and the
mint decimals, then valued with the mint's USD price. Health uses the banks'
maintenance weights.
"""
import logging
from typing import List, Mapping

from pydantic import BaseModel, ConfigDict, Field

from sentinel.errors import OraclePriceUnavailable, ReserveUnavailable
from sentinel.models.position_models import (
    CollateralEntry,
    DebtEntry,
    Position,
    Protocol,
    position_id,
)
from sentinel.models.reserve_models import MarginfiBank
from sentinel.protocols.base import ProtocolAdapter, merge_collateral, merge_debt, weighted_health
from sentinel.protocols.layout import AccountReader, anchor_discriminator

logger = logging.getLogger(__name__)

MARGINFI_PROGRAM_ID = "MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA"
MARGINFI_ACCOUNT_SIZE = 2272

ACCOUNT_DISCRIMINATOR = anchor_discriminator("MarginfiAccount")
BANK_DISCRIMINATOR = anchor_discriminator("Bank")

MAX_BALANCES = 16
BALANCES_OFFSET = 72
BALANCE_SIZE = 73
ACCOUNT_TYPE_OFFSET = BALANCES_OFFSET + MAX_BALANCES * BALANCE_SIZE
ACCOUNT_MIN_SIZE = ACCOUNT_TYPE_OFFSET + 1
BANK_MIN_SIZE = 437


class MarginfiBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    bank: str
    asset_shares: int
    liability_shares: int
    emissions_outstanding: int
    last_update: int


class MarginfiAccount(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    authority: str
    group: str
    balances: List[MarginfiBalance] = Field(default_factory=list)
    account_type: int = 0


def decode_marginfi_account(data: bytes, address: str) -> MarginfiAccount:
    reader = AccountReader(data, address)
    reader.expect_discriminator(ACCOUNT_DISCRIMINATOR, "MarginfiAccount")
    reader.require(ACCOUNT_MIN_SIZE)

    balances = []
    for slot in range(MAX_BALANCES):
        base = BALANCES_OFFSET + slot * BALANCE_SIZE
        if reader.u8(base) == 0:
            continue
        asset_shares = reader.u64(base + 33)
        liability_shares = reader.u64(base + 41)
        if asset_shares == 0 and liability_shares == 0:
            continue
        balances.append(
            MarginfiBalance(
                bank=reader.pubkey(base + 1),
                asset_shares=asset_shares,
                liability_shares=liability_shares,
                emissions_outstanding=reader.u64(base + 49),
                last_update=reader.u64(base + 57),
            )
        )

    return MarginfiAccount(
        address=address,
        authority=reader.pubkey(8),
        group=reader.pubkey(40),
        balances=balances,
        account_type=reader.u8(ACCOUNT_TYPE_OFFSET),
    )


def decode_bank(data: bytes, address: str) -> MarginfiBank:
    reader = AccountReader(data, address)
    reader.expect_discriminator(BANK_DISCRIMINATOR, "Bank")
    reader.require(BANK_MIN_SIZE)
    return MarginfiBank(
        address=address,
        mint=reader.pubkey(8),
        mint_decimals=reader.u8(40),
        group=reader.pubkey(41),
        asset_share_value=reader.f64(73),
        liability_share_value=reader.f64(81),
        total_liability_shares=reader.f64(207),
        total_asset_shares=reader.f64(215),
        last_update=reader.u64(223),
        asset_weight_init=reader.f64(231),
        asset_weight_maint=reader.f64(239),
        liability_weight_init=reader.f64(247),
        liability_weight_maint=reader.f64(255),
        deposit_limit=reader.f64(263),
        operational_state=reader.u8(327),
        oracle_setup=reader.u8(328),
        oracle=reader.pubkey(329),
        borrow_limit=reader.f64(361),
        risk_tier=reader.u8(369),
        oracle_max_age=reader.u16(378),
    )


def token_amount(shares: int, share_value: float, decimals: int) -> float:
    return shares * share_value / (10 ** decimals)


class MarginfiAdapter(ProtocolAdapter):
    protocol = Protocol.MARGINFI
    program_id = MARGINFI_PROGRAM_ID
    account_name = "MarginfiAccount"
    owner_offset = 8
    account_size = MARGINFI_ACCOUNT_SIZE

    @property
    def discriminator(self) -> bytes:
        return ACCOUNT_DISCRIMINATOR

    def decode_account(self, data: bytes, address: str) -> MarginfiAccount:
        return decode_marginfi_account(data, address)

    def owner_of(self, account: MarginfiAccount) -> str:
        return account.authority

    def dependencies(self, account: MarginfiAccount) -> List[str]:
        return list(dict.fromkeys(balance.bank for balance in account.balances))

    def price_ids(self, account: MarginfiAccount, cache) -> List[str]:
        mints = []
        for balance in account.balances:
            bank = cache.get_bank(balance.bank)
            if bank is not None:
                mints.append(bank.mint)
        return list(dict.fromkeys(mints))

    def build_position(self, account: MarginfiAccount, cache, prices: Mapping[str, float], now: float):
        collateral = []
        debt = []
        weighted_assets = 0.0
        weighted_liabilities = 0.0
        asset_value_total = 0.0

        for balance in account.balances:
            bank = cache.get_bank(balance.bank)
            if bank is None:
                raise ReserveUnavailable(balance.bank)
            price = prices.get(bank.mint)
            if price is None or price <= 0:
                raise OraclePriceUnavailable(bank.mint)

            asset_amount = token_amount(balance.asset_shares, bank.asset_share_value, bank.mint_decimals)
            liability_amount = token_amount(balance.liability_shares, bank.liability_share_value, bank.mint_decimals)

            if asset_amount > 0:
                value = asset_amount * price
                collateral.append(CollateralEntry(asset_id=bank.mint, amount=asset_amount, value_usd=value, price=price))
                weighted_assets += value * bank.asset_weight_maint
                asset_value_total += value
            if liability_amount > 0:
                value = liability_amount * price
                debt.append(DebtEntry(asset_id=bank.mint, amount=liability_amount, value_usd=value))
                weighted_liabilities += value * bank.liability_weight_maint

        if not collateral and not debt:
            return None

        return Position(
            id=position_id(Protocol.MARGINFI, account.address),
            protocol=Protocol.MARGINFI,
            owner=account.authority,
            account_address=account.address,
            collateral=merge_collateral(collateral),
            debt=merge_debt(debt),
            health_factor=weighted_health(weighted_assets, weighted_liabilities),
            liquidation_threshold=(weighted_assets / asset_value_total) if asset_value_total > 0 else None,
            timestamp=now,
        )
