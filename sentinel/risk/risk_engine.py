import logging
import math
import time
from typing import Callable, Dict, Optional

import numpy as np

from sentinel.models.position_models import Position
from sentinel.models.risk_models import LiquidationPrediction, PredictionFeatures, RiskLevel, RiskScore
from sentinel.oracle.price_resolver import PriceResolver
from sentinel.risk import indicators, prediction
from sentinel.risk.price_history import DEFAULT_PERIODS_PER_YEAR, MAX_SAMPLES, PriceHistory
from sentinel.risk.volatility import GarchState, volatility_bundle

logger = logging.getLogger(__name__)

DEFAULT_LIQUIDATION_THRESHOLD = 0.8
DEFAULT_LIQUIDATION_BONUS = 0.05
MEDIUM_HEALTH_FACTOR = 1.5
VELOCITY_LOOKBACK = 5


def liquidation_price(position: Position) -> float:
    """
    Price of the dominant collateral asset at which the position becomes
    liquidatable: debt / (quantity x (threshold - bonus)). 0.0 when there is
    no debt or no collateral quantity.
    """
    dominant = position.dominant_collateral()
    debt = position.debt_value
    if dominant is None or dominant.amount <= 0 or debt <= 0:
        return 0.0
    threshold = position.liquidation_threshold or DEFAULT_LIQUIDATION_THRESHOLD
    bonus = position.liquidation_bonus if position.liquidation_bonus is not None else DEFAULT_LIQUIDATION_BONUS
    effective = threshold - bonus
    if effective <= 0:
        return 0.0
    return debt / (dominant.amount * effective)


def _pearson(a: np.ndarray, b: np.ndarray) -> float:
    if a.size < 3 or a.std() == 0 or b.std() == 0:
        return 0.0
    value = float(np.corrcoef(a, b)[0, 1])
    return 0.0 if math.isnan(value) else value


class RiskEngine:
    """
    Owns per-asset price history and GARCH state, and turns a Position into
    a RiskScore and a LiquidationPrediction.
    """

    def __init__(
        self,
        prices: Optional[PriceResolver] = None,
        *,
        warning_threshold: float = 1.3,
        critical_threshold: float = 1.1,
        policy: Optional[prediction.PredictionPolicy] = None,
        periods_per_year: float = DEFAULT_PERIODS_PER_YEAR,
        max_samples: int = MAX_SAMPLES,
        garch_alpha: float = 0.1,
        garch_beta: float = 0.85,
        garch_omega: float = 1e-6,
        clock: Callable[[], float] = time.time,
    ):
        self.prices = prices
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.policy = policy or prediction.PredictionPolicy()
        self.history = PriceHistory(max_samples=max_samples, periods_per_year=periods_per_year)
        self._garch_params = (garch_alpha, garch_beta, garch_omega)
        self._garch: Dict[str, GarchState] = {}
        self._clock = clock

    def update_thresholds(self, warning: Optional[float] = None, critical: Optional[float] = None):
        if warning is not None:
            self.warning_threshold = warning
        if critical is not None:
            self.critical_threshold = critical

    def garch_state(self, asset_id: str) -> GarchState:
        state = self._garch.get(asset_id)
        if state is None:
            alpha, beta, omega = self._garch_params
            state = GarchState(alpha=alpha, beta=beta, omega=omega)
            self._garch[asset_id] = state
        return state

    def record_sample(
        self,
        asset_id: str,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[float] = None,
        high: Optional[float] = None,
        low: Optional[float] = None,
    ) -> bool:
        previous = self.history.last_price(asset_id)
        ts = timestamp if timestamp is not None else self._clock()
        sample = self.history.record(asset_id, price, volume=volume, timestamp=ts, high=high, low=low)
        if sample is None:
            return False
        state = self.garch_state(asset_id)
        if previous is not None:
            state.update(math.log(sample.price / previous))
        return True

    def current_price(self, position: Position) -> float:
        dominant = position.dominant_collateral()
        if dominant is None:
            return 0.0
        if dominant.price:
            return dominant.price
        if self.prices is not None:
            cached = self.prices.cached_price(dominant.asset_id)
            if cached:
                return cached
        last = self.history.last_price(dominant.asset_id)
        if last:
            return last
        if dominant.amount > 0:
            return dominant.value_usd / dominant.amount
        return 0.0

    def _risk_level(self, health_factor: float, ml_score: float) -> RiskLevel:
        if health_factor < self.critical_threshold or ml_score > 0.8:
            return RiskLevel.CRITICAL
        if health_factor < self.warning_threshold or ml_score > 0.6:
            return RiskLevel.HIGH
        if health_factor < MEDIUM_HEALTH_FACTOR or ml_score > 0.4:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score(self, position: Position) -> RiskScore:
        dominant = position.dominant_collateral()
        asset_id = dominant.asset_id if dominant is not None else None
        samples = self.history.samples(asset_id) if asset_id else []
        ppy = self.history.periods_per_year(asset_id) if asset_id else self.history.default_periods_per_year

        current = self.current_price(position)
        liq_price = liquidation_price(position)
        if position.debt_value <= 0 or liq_price <= 0:
            distance = 100.0
        elif current > 0:
            distance = (current - liq_price) / current * 100.0
        else:
            distance = 0.0

        collateral = position.collateral_value
        debt = position.debt_value
        collateral_ratio = collateral / debt if debt > 0 else math.inf
        bonus = position.liquidation_bonus if position.liquidation_bonus is not None else DEFAULT_LIQUIDATION_BONUS

        garch = self._garch.get(asset_id) if asset_id else None
        score = RiskScore(
            position_id=position.id,
            health_factor=position.health_factor,
            risk_level=RiskLevel.LOW,
            collateral_ratio=collateral_ratio,
            current_price=current,
            liquidation_price=liq_price,
            distance_to_liquidation=distance,
            estimated_loss=debt * bonus,
            volatility=volatility_bundle(samples, ppy, garch),
            moving_averages=indicators.moving_averages(samples, fallback_price=current),
            technical=indicators.technical_indicators(samples),
            timestamp=self._clock(),
        )
        components = prediction.stress_components(score, self.features(asset_id), self.policy)
        ml_score = prediction.ml_risk_score(components, self.policy)
        return score.model_copy(
            update={"ml_risk_score": ml_score, "risk_level": self._risk_level(position.health_factor, ml_score)}
        )

    def predict(self, position: Position, score: Optional[RiskScore] = None) -> LiquidationPrediction:
        score = score or self.score(position)
        dominant = position.dominant_collateral()
        asset_id = dominant.asset_id if dominant is not None else None
        features = self.features(asset_id)
        sample_count = self.history.count(asset_id) if asset_id else 0
        result = prediction.estimate(score, features, sample_count, self.policy, timestamp=self._clock())
        logger.debug(
            "prediction position=%s p=%.3f p30=%.3f minutes=%s",
            position.id,
            result.probability,
            result.probability_30m,
            result.minutes_to_liquidation,
        )
        return result

    def features(self, asset_id: Optional[str]) -> PredictionFeatures:
        if not asset_id or self.history.count(asset_id) < 2:
            return PredictionFeatures()
        closes = self.history.closes(asset_id)
        volumes = self.history.volumes(asset_id)

        start = closes[-min(VELOCITY_LOOKBACK, closes.size)]
        velocity = float(closes[-1] / start - 1.0) if start > 0 else 0.0

        samples = self.history.samples(asset_id)
        vol = volatility_bundle(samples, self.history.periods_per_year(asset_id))
        volatility_trend = vol.rolling / vol.historical - 1.0 if vol.historical > 0 else 0.0

        mean_volume = float(volumes.mean()) if volumes.size else 0.0
        if mean_volume > 0:
            volume_profile = float(volumes[-1] / mean_volume)
            liquidity = max(0.0, min(1.0, 1.0 - float(volumes.std() / mean_volume) / 2))
        else:
            volume_profile = 1.0
            liquidity = 1.0

        ema20 = indicators.ema(closes, 20)
        momentum = 0.0
        if ema20 > 0:
            momentum = max(-1.0, min(1.0, (indicators.ema(closes, 5) - ema20) / ema20 * 10))
        rsi_signal = (indicators.rsi(closes) - 50.0) / 50.0

        return PredictionFeatures(
            price_velocity=velocity,
            volatility_trend=volatility_trend,
            volume_profile=volume_profile,
            correlation=self._market_correlation(asset_id),
            momentum=momentum,
            liquidity=liquidity,
            sentiment=(rsi_signal + momentum) / 2,
        )

    def _market_correlation(self, asset_id: str) -> float:
        """Correlation of this asset's returns with the mean return of the other tracked assets."""
        own = np.diff(np.log(self.history.closes(asset_id)))
        others = []
        for other in self.history.assets():
            if other == asset_id or self.history.count(other) < 2:
                continue
            others.append(np.diff(np.log(self.history.closes(other))))
        if not others or own.size == 0:
            return 0.0
        length = min([own.size] + [o.size for o in others])
        if length < 3:
            return 0.0
        market = np.mean([o[-length:] for o in others], axis=0)
        return _pearson(own[-length:], market)

    def stats(self) -> Dict[str, int]:
        return {
            "tracked_assets": len(self.history.assets()),
            "rejected_samples": int(self.history.rejected_count),
            "garch_states": len(self._garch),
        }
