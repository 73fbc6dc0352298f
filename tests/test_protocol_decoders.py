import hashlib
import math

import pytest

from account_builders import (
    addr,
    drift_perp_market,
    drift_spot_market,
    drift_user,
    kamino_obligation,
    kamino_reserve,
    marginfi_account,
    marginfi_bank,
)
from sentinel.errors import DecodeError, OraclePriceUnavailable, ReserveUnavailable
from sentinel.models.position_models import Protocol
from sentinel.protocols import drift, kamino, marginfi
from sentinel.protocols.drift import DriftAdapter
from sentinel.protocols.kamino import KaminoAdapter
from sentinel.protocols.layout import AccountReader, anchor_discriminator, i128_from_words
from sentinel.protocols.marginfi import MarginfiAdapter
from sentinel.protocols.registry import adapter_for_program, build_adapters
from sentinel.services.reserve_cache import ReserveCache

SOL_BANK, USDC_BANK = 11, 12
SOL_MINT, USDC_MINT = 1, 2


def _marginfi_cache():
    cache = ReserveCache()
    assert cache.ingest(addr(SOL_BANK), marginfi_bank(SOL_MINT, 9, asset_weight_maint=0.9))
    assert cache.ingest(addr(USDC_BANK), marginfi_bank(USDC_MINT, 6, liability_weight_maint=1.0))
    return cache


def test_anchor_discriminator_is_sha256_prefix():
    expected = hashlib.sha256(b"account:MarginfiAccount").digest()[:8]
    assert anchor_discriminator("MarginfiAccount") == expected
    assert len(anchor_discriminator("Obligation")) == 8


def test_reader_rejects_reads_past_end():
    reader = AccountReader(b"\x01\x02\x03", "acct")
    assert reader.u16(0) == 0x0201
    with pytest.raises(DecodeError) as exc:
        reader.u32(0)
    assert exc.value.kind == DecodeError.TOO_SHORT
    assert exc.value.address == "acct"


def test_i128_words_recombine_sign():
    assert i128_from_words(5, 0) == 5
    assert i128_from_words((1 << 64) - 1, -1) == -1
    assert i128_from_words(0, 1) == 1 << 64


def test_marginfi_decode_and_health():
    data = marginfi_account(3, balances=[(SOL_BANK, 10 * 10 ** 9, 0), (USDC_BANK, 0, 600 * 10 ** 6)])
    adapter = MarginfiAdapter()
    account = adapter.decode_account(data, addr(30))

    assert account.authority == addr(3)
    assert adapter.owner_of(account) == addr(3)
    assert adapter.dependencies(account) == [addr(SOL_BANK), addr(USDC_BANK)]

    cache = _marginfi_cache()
    assert adapter.price_ids(account, cache) == [addr(SOL_MINT), addr(USDC_MINT)]

    position = adapter.build_position(account, cache, {addr(SOL_MINT): 100.0, addr(USDC_MINT): 1.0}, now=1.0)
    assert position.id == f"marginfi:{addr(30)}"
    assert position.protocol == Protocol.MARGINFI
    assert position.collateral[0].amount == pytest.approx(10.0)
    assert position.collateral_value == pytest.approx(1000.0)
    assert position.debt_value == pytest.approx(600.0)
    assert position.health_factor == pytest.approx(900.0 / 600.0)
    assert position.liquidation_threshold == pytest.approx(0.9)


def test_marginfi_skips_inactive_and_empty_slots():
    data = marginfi_account(3, balances=[(SOL_BANK, 0, 0)])
    account = MarginfiAdapter().decode_account(data, addr(30))
    assert account.balances == []
    assert MarginfiAdapter().build_position(account, _marginfi_cache(), {}, now=1.0) is None


def test_marginfi_no_debt_is_infinite_health():
    data = marginfi_account(3, balances=[(SOL_BANK, 10 ** 9, 0)])
    adapter = MarginfiAdapter()
    account = adapter.decode_account(data, addr(30))
    position = adapter.build_position(account, _marginfi_cache(), {addr(SOL_MINT): 50.0}, now=1.0)
    assert math.isinf(position.health_factor)


def test_marginfi_missing_bank_or_price_raises():
    adapter = MarginfiAdapter()
    account = adapter.decode_account(marginfi_account(3, balances=[(SOL_BANK, 10 ** 9, 0)]), addr(30))
    with pytest.raises(ReserveUnavailable):
        adapter.build_position(account, ReserveCache(), {}, now=1.0)
    with pytest.raises(OraclePriceUnavailable):
        adapter.build_position(account, _marginfi_cache(), {}, now=1.0)


def test_truncated_and_foreign_accounts_fail_with_kind():
    data = marginfi_account(3)
    with pytest.raises(DecodeError) as exc:
        marginfi.decode_marginfi_account(data[:100], addr(30))
    assert exc.value.kind == DecodeError.TOO_SHORT

    with pytest.raises(DecodeError) as exc:
        kamino.decode_obligation(data, addr(30))
    assert exc.value.kind == DecodeError.BAD_DISCRIMINATOR

    with pytest.raises(DecodeError) as exc:
        drift.decode_user(b"", addr(30))
    assert exc.value.kind == DecodeError.TOO_SHORT


def test_kamino_obligation_uses_protocol_totals():
    cache = ReserveCache()
    cache.ingest(addr(21), kamino_reserve(SOL_MINT, 9, 100.0, bonus_pct=5))
    cache.ingest(addr(22), kamino_reserve(USDC_MINT, 6, 1.0))

    data = kamino_obligation(
        4,
        deposited_value=1000.0,
        borrowed_value=600.0,
        unhealthy_borrow_value=720.0,
        deposits=[(21, 10 * 10 ** 9, 1000.0)],
        borrows=[(22, 600 * 10 ** 6)],
    )
    adapter = KaminoAdapter()
    account = adapter.decode_account(data, addr(40))
    assert account.owner == addr(4)
    assert account.health_factor == pytest.approx(1.2)
    assert account.ltv == pytest.approx(0.6)
    assert adapter.dependencies(account) == [addr(21), addr(22)]

    position = adapter.build_position(account, cache, {}, now=2.0)
    assert position.health_factor == pytest.approx(1.2)
    assert position.liquidation_threshold == pytest.approx(0.72)
    assert position.liquidation_bonus == pytest.approx(0.05)
    assert position.collateral[0].asset_id == addr(SOL_MINT)
    assert position.collateral[0].amount == pytest.approx(10.0)
    assert position.collateral[0].price == pytest.approx(100.0)
    assert position.debt[0].value_usd == pytest.approx(600.0)


def test_kamino_zero_borrow_is_infinite_and_empty_is_none():
    adapter = KaminoAdapter()
    no_debt = adapter.decode_account(
        kamino_obligation(4, deposited_value=10.0, borrowed_value=0.0, unhealthy_borrow_value=0.0, deposits=[(21, 1, 10.0)]),
        addr(40),
    )
    assert math.isinf(no_debt.health_factor)

    empty = adapter.decode_account(
        kamino_obligation(4, deposited_value=0.0, borrowed_value=0.0, unhealthy_borrow_value=0.0),
        addr(41),
    )
    assert adapter.build_position(empty, ReserveCache(), {}, now=1.0) is None


def test_drift_spot_and_perp_health():
    cache = ReserveCache()
    assert cache.ingest(addr(90), drift_spot_market(0, SOL_MINT, 100.0, asset_weight=0.8))
    assert cache.ingest(addr(91), drift_spot_market(1, USDC_MINT, 1.0, name="USDC"))
    assert cache.ingest(addr(92), drift_perp_market(0, 110.0, maintenance_ratio=0.05))
    assert cache.stats()["drift_spot_markets"] == 2

    data = drift_user(
        5,
        spot=[(0, 10 * 10 ** 9, False), (1, 500 * 10 ** 9, True)],
        perps=[(0, 10 ** 9, -100 * 10 ** 6, 0)],
    )
    adapter = DriftAdapter()
    account = adapter.decode_account(data, addr(50))
    assert account.name == "Main Account"
    assert len(account.spot_positions) == 2
    assert account.spot_positions[1].is_borrow

    position = adapter.build_position(account, cache, {}, now=3.0)
    assert position.collateral_value == pytest.approx(1000.0)
    assert position.debt_value == pytest.approx(500.0)
    perp = position.perps[0]
    assert perp.base_amount == pytest.approx(1.0)
    assert perp.entry_price == pytest.approx(100.0)
    assert perp.unrealized_pnl == pytest.approx(10.0)
    assert position.health_factor == pytest.approx(810.0 / 505.5)


def test_drift_unknown_market_raises():
    data = drift_user(5, spot=[(7, 10 ** 9, False)])
    adapter = DriftAdapter()
    account = adapter.decode_account(data, addr(50))
    with pytest.raises(ReserveUnavailable):
        adapter.build_position(account, ReserveCache(), {}, now=1.0)


def test_account_filters_and_registry():
    adapters = build_adapters()
    assert set(adapters) == {Protocol.MARGINFI, Protocol.KAMINO, Protocol.DRIFT}
    assert adapter_for_program(adapters, kamino.KAMINO_PROGRAM_ID).protocol == Protocol.KAMINO
    assert adapter_for_program(adapters, "unknown") is None

    filters = adapters[Protocol.MARGINFI].account_filters(addr(3))
    assert filters[0] == {"dataSize": marginfi.MARGINFI_ACCOUNT_SIZE}
    assert filters[2] == {"memcmp": {"offset": 8, "bytes": addr(3)}}

    drift_filters = adapters[Protocol.DRIFT].account_filters(addr(3))
    assert len(drift_filters) == 2
