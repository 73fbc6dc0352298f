"""
Liquidation-probability heuristic.

An additive, capped score: a small neural-style blend of two sub-estimators,
plus independent contributions from health factor, volatility clustering,
distance to liquidation, momentum, technical confluence, Bollinger breach,
moving-average alignment, volume/liquidity and correlation. Each contribution
also feeds a 30-minute and an hourly estimate with its own multipliers.

Every band edge, weight and multiplier lives in PredictionPolicy so callers
can tune them without touching the arithmetic.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from sentinel.models.risk_models import LiquidationPrediction, PredictionFeatures, RiskScore

COMPONENTS = ("health", "volatility", "trend", "volume", "correlation", "momentum", "technical")

# 3 hidden units over the 7 stress components; weights are non-negative so
# the network output is monotone in every input.
HIDDEN_WEIGHTS = np.array(
    [
        [2.0, 1.0, 0.5, 0.25, 0.25, 0.5, 0.5],
        [0.5, 2.0, 1.0, 0.5, 0.5, 1.0, 0.25],
        [0.5, 0.5, 1.0, 1.0, 1.0, 1.0, 1.5],
    ]
)
HIDDEN_BIAS = np.array([-1.0, -1.0, -1.0])
OUTPUT_WEIGHTS = np.array([1.5, 1.0, 0.8])
OUTPUT_BIAS = -1.5


def _default_weights() -> Dict[str, float]:
    return {
        "health": 0.25,
        "volatility": 0.20,
        "trend": 0.15,
        "volume": 0.10,
        "correlation": 0.10,
        "momentum": 0.10,
        "technical": 0.10,
    }


@dataclass
class PredictionPolicy:
    weights: Dict[str, float] = field(default_factory=_default_weights)
    model_accuracy: float = 0.75
    blend_weight: float = 0.5

    # health factor bands: (upper edge, slope, 30m multiplier, 1h multiplier)
    health_bands: Tuple[Tuple[float, float, float, float], ...] = (
        (1.3, 4.0, 1.2, 1.1),
        (1.1, 10.0, 1.5, 1.2),
        (1.05, 12.0, 1.8, 1.5),
    )
    health_stress_ceiling: float = 2.0

    # heuristic volatility thresholds are in daily units
    volatility_periods_per_year: float = 365.0
    extreme_garch: float = 0.1
    extreme_vol_of_vol: float = 0.05
    high_garch: float = 0.05
    high_vol_of_vol: float = 0.03
    volatility_stress_scale: float = 0.1

    # distance-to-liquidation bands: (below %, p, 30m, 1h)
    distance_bands: Tuple[Tuple[float, float, float, float], ...] = (
        (3.0, 0.6, 0.8, 0.7),
        (5.0, 0.4, 0.6, 0.5),
        (10.0, 0.25, 0.35, 0.3),
        (20.0, 0.1, 0.15, 0.12),
    )

    # momentum bands: (velocity below, momentum below, velocity x, momentum x, 30m, 1h)
    momentum_bands: Tuple[Tuple[float, float, float, float, float, float], ...] = (
        (-0.03, -0.5, 6.0, 0.4, 1.6, 1.3),
        (-0.02, -0.3, 4.0, 0.3, 1.4, 1.2),
        (-0.01, -0.2, 3.0, 0.2, 1.2, 1.1),
    )
    velocity_stress_scale: float = 0.05

    bollinger_breach: float = 0.98
    bollinger_add: Tuple[float, float, float] = (0.1, 0.15, 0.12)
    bearish_ma_add: Tuple[float, float, float] = (0.08, 0.12, 0.1)

    max_probability: float = 0.98
    max_probability_30m: float = 0.99
    max_probability_1h: float = 0.95

    minutes_gate: float = 0.3
    minutes_health_scale: float = 400.0
    minutes_volatility_scale: float = 150.0
    minutes_cap_very_high: Tuple[float, float] = (0.8, 20.0)
    minutes_cap_high: Tuple[float, float] = (0.6, 45.0)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def _sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def daily_volatility(annualized: float, periods_per_year: float) -> float:
    return annualized / math.sqrt(periods_per_year)


def stress_components(score: RiskScore, features: PredictionFeatures, policy: PredictionPolicy) -> Dict[str, float]:
    """Each risk dimension mapped onto [0, 1], 0 meaning no stress."""
    hf = score.health_factor
    ceiling = policy.health_stress_ceiling
    health = 0.0 if math.isinf(hf) else _clamp((ceiling - hf) / (ceiling - 1.0))
    garch = daily_volatility(score.volatility.garch, policy.volatility_periods_per_year)
    technical = (
        _clamp((50.0 - score.technical.rsi) / 30.0) + _clamp((50.0 - score.technical.stochastic.k) / 50.0)
    ) / 2
    return {
        "health": health,
        "volatility": _clamp(garch / policy.volatility_stress_scale),
        "trend": _clamp(-features.price_velocity / policy.velocity_stress_scale),
        "volume": _clamp((features.volume_profile - 1.0) / 2.0),
        "correlation": _clamp(features.correlation),
        "momentum": _clamp(-features.momentum),
        "technical": technical,
    }


def ml_risk_score(components: Dict[str, float], policy: PredictionPolicy) -> float:
    total = sum(policy.weights.get(name, 0.0) for name in COMPONENTS)
    if total <= 0:
        return 0.0
    blended = sum(policy.weights.get(name, 0.0) * components[name] for name in COMPONENTS)
    return _clamp(blended / total)


def _network_output(x: np.ndarray) -> float:
    hidden = _sigmoid(HIDDEN_WEIGHTS @ x + HIDDEN_BIAS)
    return float(_sigmoid(OUTPUT_WEIGHTS @ hidden + OUTPUT_BIAS))


def neural_estimate(components: Dict[str, float]) -> float:
    """Network output rescaled so no stress maps to 0 and full stress to 1."""
    x = np.array([components[name] for name in COMPONENTS])
    floor = _network_output(np.zeros(len(COMPONENTS)))
    ceiling = _network_output(np.ones(len(COMPONENTS)))
    return _clamp((_network_output(x) - floor) / (ceiling - floor))


class _Accumulator:
    def __init__(self):
        self.p = 0.0
        self.p30 = 0.0
        self.p1h = 0.0
        self.factors: List[Tuple[float, str]] = []

    def add(self, p: float, p30: float, p1h: float, factor: Optional[str] = None):
        self.p += p
        self.p30 += p30
        self.p1h += p1h
        if factor:
            self.factors.append((p, factor))


def _health_contribution(acc: _Accumulator, hf: float, policy: PredictionPolicy):
    # bands stack so the contribution is continuous and monotone in hf
    deepest = None
    p = p30 = p1h = 0.0
    for edge, slope, m30, m1h in policy.health_bands:
        if hf < edge:
            w = (edge - hf) * slope * policy.weights["health"]
            p += w
            p30 += w * m30
            p1h += w * m1h
            deepest = edge
    if deepest is not None:
        labels = {1.05: "Extremely critical", 1.1: "Critical", 1.3: "Low"}
        acc.add(p, p30, p1h, f"{labels.get(deepest, 'Low')} health factor (<{deepest})")


def _volatility_contribution(acc: _Accumulator, score: RiskScore, policy: PredictionPolicy):
    ppy = policy.volatility_periods_per_year
    garch = daily_volatility(score.volatility.garch, ppy)
    vv = daily_volatility(score.volatility.vol_of_vol, ppy)
    w = policy.weights["volatility"]
    label = f"(GARCH: {garch * 100:.1f}%, VolVol: {vv * 100:.1f}%)"
    if garch > policy.extreme_garch or vv > policy.extreme_vol_of_vol:
        risk = max((garch - 0.08) * 6, (vv - 0.03) * 8) * w
        acc.add(risk, risk * 1.4, risk * 1.2, f"Extreme volatility clustering detected {label}")
    elif garch > policy.high_garch or vv > policy.high_vol_of_vol:
        risk = max((garch - 0.05) * 4, (vv - 0.02) * 5) * w
        acc.add(risk, risk * 1.2, risk * 1.1, f"High market volatility {label}")


def _distance_contribution(acc: _Accumulator, distance: float, policy: PredictionPolicy):
    for below, p, p30, p1h in policy.distance_bands:
        if distance < below:
            acc.add(p, p30, p1h, f"Within {below:g}% of liquidation price")
            return


def _momentum_contribution(acc: _Accumulator, features: PredictionFeatures, policy: PredictionPolicy):
    v, m = features.price_velocity, features.momentum
    labels = ("Severe bearish momentum detected", "Strong negative price momentum", "Negative price momentum")
    for (v_edge, m_edge, v_mult, m_mult, m30, m1h), label in zip(policy.momentum_bands, labels):
        if v < v_edge or m < m_edge:
            risk = max(abs(v) * v_mult, abs(m) * m_mult) * policy.weights["trend"]
            acc.add(risk, risk * m30, risk * m1h, label)
            return


def _technical_contribution(acc: _Accumulator, score: RiskScore, policy: PredictionPolicy):
    tech = score.technical
    w = policy.weights["technical"]
    if tech.rsi < 20 and tech.macd.histogram < -0.5 and tech.stochastic.k < 20:
        acc.add(0.3 * w, 0.3 * w * 1.3, 0.3 * w * 1.1, "Extreme oversold conditions across all indicators")
    elif tech.rsi < 30 or tech.macd.histogram < -0.3 or tech.stochastic.k < 30:
        acc.add(0.15 * w, 0.15 * w * 1.2, 0.15 * w * 1.1, "Oversold technical indicators")


def _trend_contribution(acc: _Accumulator, score: RiskScore, policy: PredictionPolicy):
    ma = score.moving_averages
    if score.current_price > 0 and score.current_price < ma.bollinger_lower * policy.bollinger_breach:
        acc.add(*policy.bollinger_add, "Price below Bollinger lower band")
    if ma.sma5 < ma.sma20 < ma.sma50 and ma.ema5 < ma.ema20:
        w = policy.weights["trend"]
        p, p30, p1h = policy.bearish_ma_add
        acc.add(p * w, p30 * w, p1h * w, "Bearish moving average alignment")


def _volume_contribution(acc: _Accumulator, features: PredictionFeatures, policy: PredictionPolicy):
    vp, liq = features.volume_profile, features.liquidity
    w = policy.weights["volume"]
    if vp > 3.0 and liq < 0.3:
        risk = (vp - 2.0) * 0.15 * w
        acc.add(risk, risk * 1.2, risk * 1.1, "High volume spike with poor liquidity")
    elif vp > 2.5:
        risk = (vp - 2.0) * 0.1 * w
        acc.add(risk, risk * 1.1, risk * 1.05, "Unusual volume spike detected")


def _correlation_contribution(acc: _Accumulator, features: PredictionFeatures, policy: PredictionPolicy):
    c, sentiment = features.correlation, features.sentiment
    w = policy.weights["correlation"]
    if c > 0.85 and sentiment < -0.5:
        risk = (c - 0.7) * 0.8 * w
        acc.add(risk, risk * 1.3, risk * 1.2, "High correlation during market stress")
    elif c > 0.8:
        risk = (c - 0.8) * 0.5 * w
        acc.add(risk, risk * 1.2, risk * 1.1, "High market correlation risk")


def minutes_to_liquidation(
    probability: float,
    probability_30m: float,
    health_factor: float,
    garch_daily: float,
    liquidity: float,
    policy: PredictionPolicy,
) -> float:
    if probability <= policy.minutes_gate:
        return math.inf
    buffer = max(health_factor - 1.0, 0.01) if not math.isinf(health_factor) else 1.0
    minutes = max(
        1.0,
        (buffer * policy.minutes_health_scale * max(liquidity, 0.1))
        / (max(garch_daily, 0.01) * policy.minutes_volatility_scale),
    )
    very_high, very_high_cap = policy.minutes_cap_very_high
    high, high_cap = policy.minutes_cap_high
    if probability_30m > very_high:
        minutes = min(minutes, very_high_cap)
    elif probability_30m > high:
        minutes = min(minutes, high_cap)
    return minutes


def confidence(sample_count: int, policy: PredictionPolicy) -> float:
    base = min(0.95, 0.4 + sample_count / 150)
    return min(0.98, (base + policy.model_accuracy) / 2)


def estimate(
    score: RiskScore,
    features: PredictionFeatures,
    sample_count: int,
    policy: Optional[PredictionPolicy] = None,
    timestamp: float = 0.0,
) -> LiquidationPrediction:
    policy = policy or PredictionPolicy()
    components = stress_components(score, features, policy)
    acc = _Accumulator()

    blend = (neural_estimate(components) + ml_risk_score(components, policy)) / 2 * policy.blend_weight
    acc.add(blend, blend, blend)

    _health_contribution(acc, score.health_factor, policy)
    _volatility_contribution(acc, score, policy)
    _distance_contribution(acc, score.distance_to_liquidation, policy)
    _momentum_contribution(acc, features, policy)
    _technical_contribution(acc, score, policy)
    _trend_contribution(acc, score, policy)
    _volume_contribution(acc, features, policy)
    _correlation_contribution(acc, features, policy)

    probability = _clamp(acc.p, 0.0, policy.max_probability)
    probability_30m = _clamp(acc.p30, 0.0, policy.max_probability_30m)
    probability_1h = _clamp(acc.p1h, 0.0, policy.max_probability_1h)

    minutes = minutes_to_liquidation(
        probability,
        probability_30m,
        score.health_factor,
        daily_volatility(score.volatility.garch, policy.volatility_periods_per_year),
        features.liquidity,
        policy,
    )
    factors = [label for _, label in sorted(acc.factors, key=lambda item: item[0], reverse=True)]

    return LiquidationPrediction(
        position_id=score.position_id,
        probability=probability,
        probability_30m=probability_30m,
        probability_1h=probability_1h,
        minutes_to_liquidation=minutes,
        confidence=confidence(sample_count, policy),
        price_target=score.liquidation_price if score.liquidation_price > 0 else None,
        factors=factors,
        features=features,
        timestamp=timestamp,
    )
