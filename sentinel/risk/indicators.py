"""
Moving averages and technical indicators.

Every indicator falls back to a neutral value (RSI 50, MACD 0, stochastic
50, ATR 0) when the history is shorter than its window. A neutral value is
absence of data, not a signal.
"""
from typing import List, Optional, Sequence

import numpy as np

from sentinel.models.risk_models import MacdValues, MovingAverages, StochasticValues, TechnicalIndicators
from sentinel.risk.price_history import PriceSample

RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
STOCH_K = 14
STOCH_D = 3
ATR_PERIOD = 14


def sma(values: Sequence[float], window: int) -> float:
    """Mean of the last `window` values, or of all of them when fewer exist."""
    if len(values) == 0:
        return 0.0
    return float(np.mean(np.asarray(values[-window:], dtype=float)))


def ema_series(values: Sequence[float], period: int) -> List[float]:
    if len(values) == 0:
        return []
    alpha = 2.0 / (period + 1)
    out = [float(values[0])]
    for value in values[1:]:
        out.append(float(value) * alpha + out[-1] * (1 - alpha))
    return out


def ema(values: Sequence[float], period: int) -> float:
    series = ema_series(values, period)
    return series[-1] if series else 0.0


def vwma(prices: Sequence[float], volumes: Sequence[float], period: int = 20) -> float:
    length = min(len(prices), len(volumes), period)
    if length == 0:
        return 0.0
    p = np.asarray(prices[-length:], dtype=float)
    v = np.asarray(volumes[-length:], dtype=float)
    total = float(v.sum())
    if total <= 0:
        return float(p[-1])
    return float((p * v).sum() / total)


def bollinger(prices: Sequence[float], window: int = 20, num_std: float = 2.0):
    """(upper, middle, lower) over the last `window` prices."""
    recent = np.asarray(prices[-window:], dtype=float)
    if recent.size == 0:
        return 0.0, 0.0, 0.0
    middle = float(recent.mean())
    std = float(recent.std())
    return middle + num_std * std, middle, middle - num_std * std


def moving_averages(samples: Sequence[PriceSample], fallback_price: float = 0.0) -> MovingAverages:
    if not samples:
        p = fallback_price
        return MovingAverages(
            sma5=p, sma20=p, sma50=p, ema5=p, ema20=p, ema50=p, vwma20=p,
            bollinger_upper=p, bollinger_middle=p, bollinger_lower=p,
        )
    prices = [s.price for s in samples]
    volumes = [s.volume for s in samples]
    upper, middle, lower = bollinger(prices)
    return MovingAverages(
        sma5=sma(prices, 5),
        sma20=sma(prices, 20),
        sma50=sma(prices, 50),
        ema5=ema(prices, 5),
        ema20=ema(prices, 20),
        ema50=ema(prices, 50),
        vwma20=vwma(prices, volumes, 20),
        bollinger_upper=upper,
        bollinger_middle=middle,
        bollinger_lower=lower,
    )


def rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> float:
    """Wilder's RSI."""
    if len(closes) < period + 1:
        return 50.0
    deltas = np.diff(np.asarray(closes, dtype=float))
    gains = np.clip(deltas, 0, None)
    losses = np.clip(-deltas, 0, None)
    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(
    closes: Sequence[float],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal_period: int = MACD_SIGNAL,
) -> MacdValues:
    if len(closes) < slow + signal_period:
        return MacdValues()
    fast_line = ema_series(closes, fast)
    slow_line = ema_series(closes, slow)
    macd_line = [f - s for f, s in zip(fast_line, slow_line)]
    # the MACD line is only meaningful once the slow EMA has warmed up
    signal_line = ema_series(macd_line[slow - 1 :], signal_period)
    value = macd_line[-1]
    signal = signal_line[-1]
    return MacdValues(macd=value, signal=signal, histogram=value - signal)


def stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    k_period: int = STOCH_K,
    d_period: int = STOCH_D,
) -> StochasticValues:
    n = min(len(highs), len(lows), len(closes))
    if n < k_period + d_period - 1:
        return StochasticValues()
    ks = []
    for end in range(n - d_period + 1, n + 1):
        highest = max(highs[end - k_period : end])
        lowest = min(lows[end - k_period : end])
        span = highest - lowest
        ks.append(50.0 if span <= 0 else (closes[end - 1] - lowest) / span * 100.0)
    return StochasticValues(k=ks[-1], d=float(np.mean(ks)))


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = ATR_PERIOD) -> float:
    n = min(len(highs), len(lows), len(closes))
    if n < period + 1:
        return 0.0
    ranges = [
        max(highs[i] - lows[i], abs(highs[i] - closes[i - 1]), abs(lows[i] - closes[i - 1]))
        for i in range(1, n)
    ]
    return float(np.mean(ranges[-period:]))


def technical_indicators(samples: Optional[Sequence[PriceSample]]) -> TechnicalIndicators:
    if not samples:
        return TechnicalIndicators()
    closes = [s.price for s in samples]
    highs = [s.high for s in samples]
    lows = [s.low for s in samples]
    return TechnicalIndicators(
        rsi=rsi(closes),
        macd=macd(closes),
        stochastic=stochastic(highs, lows, closes),
        atr=atr(highs, lows, closes),
    )
