"""Pyth v2 and Switchboard v2 aggregator account parsing."""
from typing import Optional

from sentinel.errors import DecodeError
from sentinel.models.reserve_models import OraclePrice
from sentinel.protocols.layout import AccountReader

PYTH_MAGIC = 0xA1B2C3D4
PYTH_VERSION = 2
PYTH_PRICE_ACCOUNT = 3
PYTH_STATUS_TRADING = 1
PYTH_MIN_SIZE = 240

SWITCHBOARD_DISCRIMINATOR = bytes([41, 53, 204, 47, 119, 23, 151, 162])
SWITCHBOARD_MIN_SIZE = 40


def is_pyth_account(data: bytes) -> bool:
    return len(data) >= 4 and int.from_bytes(data[:4], "little") == PYTH_MAGIC


def is_switchboard_account(data: bytes) -> bool:
    return data[:8] == SWITCHBOARD_DISCRIMINATOR


def parse_pyth_price(data: bytes, address: str) -> Optional[OraclePrice]:
    """Return the aggregate price, or None while the feed is not trading."""
    reader = AccountReader(data, address)
    reader.require(4)
    if reader.u32(0) != PYTH_MAGIC:
        raise DecodeError.bad_discriminator("Pyth price", address)
    reader.require(PYTH_MIN_SIZE)
    version = reader.u32(4)
    if version != PYTH_VERSION:
        raise DecodeError.unsupported_version(version, address)
    if reader.u32(8) != PYTH_PRICE_ACCOUNT:
        raise DecodeError.bad_discriminator("Pyth price", address)

    if reader.u32(224) != PYTH_STATUS_TRADING:
        return None

    scale = 10.0 ** reader.i32(20)
    return OraclePrice(
        address=address,
        price=reader.i64(208) * scale,
        confidence=reader.u64(216) * scale,
        source="pyth",
        slot=reader.u64(232),
    )


def parse_switchboard_price(data: bytes, address: str) -> OraclePrice:
    reader = AccountReader(data, address)
    reader.expect_discriminator(SWITCHBOARD_DISCRIMINATOR, "Switchboard aggregator")
    reader.require(SWITCHBOARD_MIN_SIZE)
    min_response = reader.f64(24)
    max_response = reader.f64(32)
    return OraclePrice(
        address=address,
        price=reader.f64(8),
        confidence=abs(max_response - min_response) / 2,
        source="switchboard",
        timestamp=reader.i64(16),
    )


def parse_oracle_account(data: bytes, address: str) -> Optional[OraclePrice]:
    if is_pyth_account(data):
        return parse_pyth_price(data, address)
    if is_switchboard_account(data):
        return parse_switchboard_price(data, address)
    raise DecodeError.bad_discriminator("oracle", address)
