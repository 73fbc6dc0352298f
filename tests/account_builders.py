"""Raw account byte builders for decoder tests (little-endian, fixed offsets)."""
import struct

from sentinel.oracle import oracle_accounts
from sentinel.protocols import drift, kamino, marginfi
from sentinel.protocols.layout import encode_pubkey

WAD = 10 ** 18


def key(n: int) -> bytes:
    return bytes([n]) * 32


def addr(n: int) -> str:
    return encode_pubkey(key(n))


def _put(buf: bytearray, fmt: str, offset: int, value):
    struct.pack_into(fmt, buf, offset, value)


def _put_u128(buf: bytearray, offset: int, value: int):
    struct.pack_into("<QQ", buf, offset, value & ((1 << 64) - 1), value >> 64)


def _put_i128(buf: bytearray, offset: int, value: int):
    struct.pack_into("<Qq", buf, offset, value & ((1 << 64) - 1), value >> 64)


def marginfi_account(authority: int, group: int = 9, balances=()):
    """balances: iterable of (bank_key_n, asset_shares, liability_shares)."""
    buf = bytearray(marginfi.MARGINFI_ACCOUNT_SIZE)
    buf[0:8] = marginfi.ACCOUNT_DISCRIMINATOR
    buf[8:40] = key(authority)
    buf[40:72] = key(group)
    for slot, (bank, asset_shares, liability_shares) in enumerate(balances):
        base = marginfi.BALANCES_OFFSET + slot * marginfi.BALANCE_SIZE
        buf[base] = 1
        buf[base + 1 : base + 33] = key(bank)
        _put(buf, "<Q", base + 33, asset_shares)
        _put(buf, "<Q", base + 41, liability_shares)
    return bytes(buf)


def marginfi_bank(
    mint: int,
    decimals: int,
    *,
    asset_share_value: float = 1.0,
    liability_share_value: float = 1.0,
    asset_weight_maint: float = 0.9,
    liability_weight_maint: float = 1.0,
    oracle: int = 77,
):
    buf = bytearray(marginfi.BANK_MIN_SIZE)
    buf[0:8] = marginfi.BANK_DISCRIMINATOR
    buf[8:40] = key(mint)
    buf[40] = decimals
    buf[41:73] = key(9)
    _put(buf, "<d", 73, asset_share_value)
    _put(buf, "<d", 81, liability_share_value)
    _put(buf, "<d", 231, asset_weight_maint)
    _put(buf, "<d", 239, asset_weight_maint)
    _put(buf, "<d", 247, liability_weight_maint)
    _put(buf, "<d", 255, liability_weight_maint)
    buf[329:361] = key(oracle)
    return bytes(buf)


def kamino_reserve(mint: int, decimals: int, market_price: float, *, threshold_pct: int = 80, bonus_pct: int = 5):
    buf = bytearray(kamino.RESERVE_ACCOUNT_SIZE)
    buf[0:8] = kamino.RESERVE_DISCRIMINATOR
    buf[8:40] = key(50)
    buf[40:72] = key(mint)
    buf[264] = 75
    buf[265] = threshold_pct
    buf[266] = bonus_pct
    buf[296:328] = key(mint)
    buf[328] = decimals
    _put(buf, "<Q", 425, 1_000_000)
    _put_u128(buf, 465, int(market_price * WAD))
    return bytes(buf)


def kamino_obligation(
    owner: int,
    *,
    deposited_value: float,
    borrowed_value: float,
    unhealthy_borrow_value: float,
    deposits=(),
    borrows=(),
):
    """deposits: (reserve_n, native_amount, market_value_usd); borrows: (reserve_n, native_amount)."""
    buf = bytearray(kamino.OBLIGATION_ACCOUNT_SIZE)
    buf[0:8] = kamino.OBLIGATION_DISCRIMINATOR
    buf[8:40] = key(50)
    buf[40:72] = key(owner)
    _put_u128(buf, 72, int(deposited_value * WAD))
    _put_u128(buf, 88, int(borrowed_value * WAD))
    _put_u128(buf, 104, int(deposited_value * 0.75 * WAD))
    _put_u128(buf, 120, int(unhealthy_borrow_value * WAD))
    buf[136] = len(deposits)
    buf[137] = len(borrows)
    for slot, (reserve, amount, value) in enumerate(deposits):
        base = kamino.DEPOSITS_OFFSET + slot * kamino.DEPOSIT_SIZE
        buf[base : base + 32] = key(reserve)
        _put(buf, "<Q", base + 32, amount)
        _put(buf, "<Q", base + 40, int(value * kamino.MARKET_VALUE_SCALE))
    for slot, (reserve, amount) in enumerate(borrows):
        base = kamino.BORROWS_OFFSET + slot * kamino.BORROW_SIZE
        buf[base : base + 32] = key(reserve)
        _put_u128(buf, base + 32, int(amount) * WAD)
    return bytes(buf)


def drift_user(authority: int, *, spot=(), perps=(), name: str = "Main Account"):
    """spot: (market_index, scaled_balance, is_borrow); perps: (market_index, base, quote_entry, last_funding)."""
    buf = bytearray(drift.USER_MIN_SIZE)
    buf[0:8] = drift.USER_DISCRIMINATOR
    buf[8:40] = key(authority)
    encoded = name.encode("utf-8")[:32]
    buf[72 : 72 + len(encoded)] = encoded
    for slot, (market_index, scaled, is_borrow) in enumerate(spot):
        base = drift.SPOT_OFFSET + slot * drift.SPOT_SIZE
        _put(buf, "<Q", base, scaled)
        _put(buf, "<H", base + 32, market_index)
        buf[base + 34] = drift.BALANCE_BORROW if is_borrow else drift.BALANCE_DEPOSIT
    for slot, (market_index, base_amount, quote_entry, last_funding) in enumerate(perps):
        base = drift.PERP_OFFSET + slot * drift.PERP_SIZE
        _put(buf, "<q", base, last_funding)
        _put(buf, "<q", base + 8, base_amount)
        _put(buf, "<q", base + 16, quote_entry)
        _put(buf, "<q", base + 32, quote_entry)
        _put(buf, "<H", base + 72, market_index)
    return bytes(buf)


def drift_spot_market(
    market_index: int,
    mint: int,
    oracle_price: float,
    *,
    asset_weight: float = 0.8,
    liability_weight: float = 1.0,
    interest: int = 10 ** 10,
    name: str = "SOL",
):
    buf = bytearray(drift.SPOT_MARKET_MIN_SIZE)
    buf[0:8] = drift.SPOT_MARKET_DISCRIMINATOR
    buf[8:40] = key(100 + market_index)
    buf[40:72] = key(120 + market_index)
    buf[72:104] = key(mint)
    _put(buf, "<H", 104, market_index)
    _put(buf, "<I", 106, 9)
    _put(buf, "<I", 112, int(asset_weight * drift.MARGIN_PRECISION))
    _put(buf, "<I", 116, int(asset_weight * drift.MARGIN_PRECISION))
    _put(buf, "<I", 120, int(liability_weight * drift.MARGIN_PRECISION))
    _put(buf, "<I", 124, int(liability_weight * drift.MARGIN_PRECISION))
    _put_u128(buf, 132, interest)
    _put_u128(buf, 148, interest)
    _put(buf, "<q", 164, int(oracle_price * drift.PRICE_PRECISION))
    encoded = name.encode("utf-8")
    buf[172 : 172 + len(encoded)] = encoded
    return bytes(buf)


def drift_perp_market(
    market_index: int,
    oracle_price: float,
    *,
    maintenance_ratio: float = 0.05,
    funding_long: int = 0,
    funding_short: int = 0,
    name: str = "SOL-PERP",
):
    buf = bytearray(drift.PERP_MARKET_MIN_SIZE)
    buf[0:8] = drift.PERP_MARKET_DISCRIMINATOR
    buf[8:40] = key(140 + market_index)
    buf[40:72] = key(160 + market_index)
    _put(buf, "<H", 72, market_index)
    _put(buf, "<I", 76, int(maintenance_ratio * 2 * drift.MARGIN_PRECISION))
    _put(buf, "<I", 80, int(maintenance_ratio * drift.MARGIN_PRECISION))
    _put_i128(buf, 88, funding_long)
    _put_i128(buf, 104, funding_short)
    _put(buf, "<q", 128, int(oracle_price * drift.PRICE_PRECISION))
    encoded = name.encode("utf-8")
    buf[168 : 168 + len(encoded)] = encoded
    return bytes(buf)


def pyth_price(price: int, exponent: int, *, confidence: int = 0, trading: bool = True, version: int = 2):
    buf = bytearray(oracle_accounts.PYTH_MIN_SIZE)
    _put(buf, "<I", 0, oracle_accounts.PYTH_MAGIC)
    _put(buf, "<I", 4, version)
    _put(buf, "<I", 8, oracle_accounts.PYTH_PRICE_ACCOUNT)
    _put(buf, "<i", 20, exponent)
    _put(buf, "<q", 208, price)
    _put(buf, "<Q", 216, confidence)
    _put(buf, "<I", 224, oracle_accounts.PYTH_STATUS_TRADING if trading else 0)
    _put(buf, "<Q", 232, 12345)
    return bytes(buf)


def switchboard_price(price: float, low: float, high: float, timestamp: int = 1_700_000_000):
    buf = bytearray(oracle_accounts.SWITCHBOARD_MIN_SIZE)
    buf[0:8] = oracle_accounts.SWITCHBOARD_DISCRIMINATOR
    _put(buf, "<d", 8, price)
    _put(buf, "<q", 16, timestamp)
    _put(buf, "<d", 24, low)
    _put(buf, "<d", 32, high)
    return bytes(buf)
