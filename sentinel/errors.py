"""
Error taxonomy for the risk monitor.

Only ConfigError is allowed to stop the process. Everything else is caught
at the account / protocol / position / sink boundary, logged and counted.
"""
from typing import Optional


class SentinelError(Exception):
    """Base class for every error raised by the monitor."""


class DecodeError(SentinelError):
    TOO_SHORT = "TooShort"
    BAD_DISCRIMINATOR = "BadDiscriminator"
    UNSUPPORTED_VERSION = "UnsupportedVersion"

    def __init__(self, kind: str, message: str, address: Optional[str] = None):
        super().__init__(f"{kind}: {message}" + (f" (account={address})" if address else ""))
        self.kind = kind
        self.address = address

    @classmethod
    def too_short(cls, needed: int, got: int, address: Optional[str] = None) -> "DecodeError":
        return cls(cls.TOO_SHORT, f"need {needed} bytes, got {got}", address)

    @classmethod
    def bad_discriminator(cls, expected: str, address: Optional[str] = None) -> "DecodeError":
        return cls(cls.BAD_DISCRIMINATOR, f"expected {expected} account", address)

    @classmethod
    def unsupported_version(cls, version: int, address: Optional[str] = None) -> "DecodeError":
        return cls(cls.UNSUPPORTED_VERSION, f"version {version}", address)


class TransportError(SentinelError):
    """RPC or subscription channel failure."""


class OraclePriceUnavailable(SentinelError):
    def __init__(self, asset_id: str, reason: str = "no price"):
        super().__init__(f"price unavailable for {asset_id}: {reason}")
        self.asset_id = asset_id


class SinkDeliveryError(SentinelError):
    def __init__(self, sink: str, message: str, status: Optional[int] = None):
        super().__init__(f"sink={sink} status={status} {message}")
        self.sink = sink
        self.status = status


class ConfigError(SentinelError):
    """Invalid configuration detected at startup."""


class ReserveUnavailable(SentinelError):
    """A position refers to a bank / reserve / market the cache does not hold."""

    def __init__(self, address: str):
        super().__init__(f"reserve not cached: {address}")
        self.address = address
