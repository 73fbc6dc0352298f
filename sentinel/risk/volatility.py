"""
Volatility estimators over a price history.

All estimators return annualized figures (sqrt of variance x periods per
year) and 0.0 when there is not enough data. Variances are population
variances.
"""
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from sentinel.models.risk_models import VolatilityBundle
from sentinel.risk.price_history import PriceSample

ROLLING_WINDOW = 20
VOL_OF_VOL_WINDOW = 10
MIN_SAMPLES = 10


def log_returns(closes: Sequence[float]) -> np.ndarray:
    prices = np.asarray(closes, dtype=float)
    if prices.size < 2:
        return np.zeros(0)
    return np.diff(np.log(prices))


def annualized_std(returns: np.ndarray, periods_per_year: float) -> float:
    if returns.size == 0:
        return 0.0
    return math.sqrt(float(np.var(returns)) * periods_per_year)


def historical_volatility(returns: np.ndarray, periods_per_year: float) -> float:
    return annualized_std(returns, periods_per_year)


def rolling_volatility(returns: np.ndarray, periods_per_year: float, window: int = ROLLING_WINDOW) -> float:
    return annualized_std(returns[-window:], periods_per_year)


def parkinson_volatility(highs: Sequence[float], lows: Sequence[float], periods_per_year: float) -> float:
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    mask = (h > 0) & (l > 0)
    if not mask.any():
        return 0.0
    ranges = np.log(h[mask] / l[mask])
    return math.sqrt(float(np.mean(ranges**2)) / (4 * math.log(2)) * periods_per_year)


def garman_klass_volatility(
    opens: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    periods_per_year: float,
) -> float:
    o = np.asarray(opens, dtype=float)
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    c = np.asarray(closes, dtype=float)
    mask = (o > 0) & (h > 0) & (l > 0) & (c > 0)
    if not mask.any():
        return 0.0
    hl = np.log(h[mask] / l[mask])
    co = np.log(c[mask] / o[mask])
    variance = float(np.mean(0.5 * hl**2 - (2 * math.log(2) - 1) * co**2))
    # the estimator can dip below zero on tiny samples
    return math.sqrt(max(variance, 0.0) * periods_per_year)


def vol_of_vol(returns: np.ndarray, periods_per_year: float, window: int = VOL_OF_VOL_WINDOW) -> float:
    """Spread of short-window volatilities, each over `window` returns."""
    if returns.size <= window:
        return 0.0
    vols = np.array([np.std(returns[i - window : i]) for i in range(window, returns.size)])
    return math.sqrt(float(np.var(vols)) * periods_per_year)


@dataclass
class GarchState:
    """
    GARCH(1,1) variance for one asset, updated once per recorded return.

    Starts at the long-run variance omega / (1 - alpha - beta). A zero return
    carries no shock, so its alpha term uses the long-run variance instead of
    r^2; a flat series therefore holds the variance at the long-run level
    instead of decaying toward omega / (1 - beta).
    """

    alpha: float = 0.1
    beta: float = 0.85
    omega: float = 1e-6
    variance: Optional[float] = None
    updates: int = 0

    def __post_init__(self):
        if self.alpha < 0 or self.beta < 0 or self.alpha + self.beta >= 1:
            raise ValueError(f"non-stationary garch params alpha={self.alpha} beta={self.beta}")
        if self.variance is None:
            self.variance = self.long_run_variance

    @property
    def long_run_variance(self) -> float:
        return self.omega / (1 - self.alpha - self.beta)

    def update(self, ret: float) -> float:
        shock = ret * ret if ret else self.long_run_variance
        self.variance = self.omega + self.alpha * shock + self.beta * self.variance
        self.updates += 1
        return self.variance

    def volatility(self, periods_per_year: float) -> float:
        return math.sqrt(self.variance * periods_per_year)


def volatility_bundle(
    samples: Sequence[PriceSample],
    periods_per_year: float,
    garch: Optional[GarchState] = None,
) -> VolatilityBundle:
    garch_vol = garch.volatility(periods_per_year) if garch is not None else 0.0
    if len(samples) < 2:
        return VolatilityBundle(garch=garch_vol)

    closes = [s.price for s in samples]
    returns = log_returns(closes)
    historical = historical_volatility(returns, periods_per_year)
    if len(samples) < MIN_SAMPLES:
        return VolatilityBundle(historical=historical, rolling=historical, garch=garch_vol)

    return VolatilityBundle(
        historical=historical,
        rolling=rolling_volatility(returns, periods_per_year),
        garch=garch_vol,
        parkinson=parkinson_volatility([s.high for s in samples], [s.low for s in samples], periods_per_year),
        garman_klass=garman_klass_volatility(
            [s.open for s in samples],
            [s.high for s in samples],
            [s.low for s in samples],
            closes,
            periods_per_year,
        ),
        vol_of_vol=vol_of_vol(returns, periods_per_year),
    )
