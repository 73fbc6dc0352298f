import math

import pytest

from sentinel.models.position_models import CollateralEntry, DebtEntry, Position, Protocol
from sentinel.models.risk_models import PredictionFeatures, RiskLevel
from sentinel.risk import indicators
from sentinel.risk.prediction import PredictionPolicy, estimate, stress_components
from sentinel.risk.price_history import PriceHistory
from sentinel.risk.risk_engine import RiskEngine, liquidation_price
from sentinel.risk.volatility import GarchState, log_returns, volatility_bundle

SOL = "So11111111111111111111111111111111111111112"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _position(hf=1.5, debt=100.0, amount=1.0, price=150.0, threshold=0.8, bonus=None):
    return Position(
        id="kamino:acct1",
        protocol=Protocol.KAMINO,
        owner="owner1",
        account_address="acct1",
        collateral=[CollateralEntry(asset_id=SOL, amount=amount, value_usd=amount * price, price=price)],
        debt=[DebtEntry(asset_id=USDC, amount=debt, value_usd=debt)] if debt else [],
        health_factor=hf,
        liquidation_threshold=threshold,
        liquidation_bonus=bonus,
    )


def _engine():
    return RiskEngine(clock=lambda: 1_700_000_000.0)


def test_score_reference_position():
    score = _engine().score(_position())

    assert score.health_factor == 1.5
    assert score.risk_level == RiskLevel.LOW
    assert score.liquidation_price == pytest.approx(133.3333, rel=1e-4)
    assert score.distance_to_liquidation == pytest.approx(11.1111, rel=1e-4)
    assert score.collateral_ratio == pytest.approx(1.5)
    assert score.estimated_loss == pytest.approx(5.0)
    assert score.current_price == 150.0
    assert 0.0 <= score.ml_risk_score <= 1.0
    assert score.technical.rsi == 50.0
    assert score.moving_averages.sma20 == 150.0


def test_liquidation_price_edge_cases():
    assert liquidation_price(_position(debt=0.0)) == 0.0
    assert liquidation_price(_position(threshold=0.05, bonus=0.05)) == 0.0
    assert liquidation_price(_position(bonus=0.1)) == pytest.approx(100.0 / 0.7)


def test_no_debt_is_safe():
    engine = _engine()
    position = _position(hf=math.inf, debt=0.0)
    score = engine.score(position)
    assert score.distance_to_liquidation == 100.0
    assert math.isinf(score.collateral_ratio)
    assert score.risk_level == RiskLevel.LOW

    prediction = engine.predict(position, score)
    assert prediction.price_target is None
    assert math.isinf(prediction.minutes_to_liquidation)


@pytest.mark.parametrize(
    "hf,level",
    [(1.05, RiskLevel.CRITICAL), (1.2, RiskLevel.HIGH), (1.4, RiskLevel.MEDIUM), (1.8, RiskLevel.LOW)],
)
def test_risk_level_bands(hf, level):
    assert _engine().score(_position(hf=hf)).risk_level == level


def test_update_thresholds_moves_bands():
    engine = _engine()
    engine.update_thresholds(warning=1.6, critical=1.45)
    assert engine.score(_position(hf=1.5)).risk_level == RiskLevel.HIGH


def test_probability_monotone_in_health_and_capped():
    engine = _engine()
    probabilities = []
    for hf in (2.5, 2.0, 1.5, 1.25, 1.15, 1.08, 1.02, 1.0):
        probabilities.append(engine.predict(_position(hf=hf)).probability)
    assert probabilities == sorted(probabilities)
    assert all(0.0 <= p <= 0.98 for p in probabilities)


def test_prediction_horizons_and_minutes():
    engine = _engine()
    near = engine.predict(_position(hf=1.02))
    assert near.probability > 0.3
    assert near.probability_30m <= 0.99
    assert near.probability_1h <= 0.95
    assert 1.0 <= near.minutes_to_liquidation < math.inf
    assert "health factor" in near.factors[0]
    assert near.price_target == pytest.approx(133.3333, rel=1e-4)

    far = engine.predict(_position(hf=2.5, price=1000.0))
    assert math.isinf(far.minutes_to_liquidation)
    assert 0.0 < far.confidence <= 0.98


def test_stress_components_are_bounded():
    score = _engine().score(_position(hf=0.5))
    features = PredictionFeatures(price_velocity=-1.0, volume_profile=50.0, correlation=2.0, momentum=-3.0)
    components = stress_components(score, features, PredictionPolicy())
    assert set(components) == {"health", "volatility", "trend", "volume", "correlation", "momentum", "technical"}
    assert all(0.0 <= v <= 1.0 for v in components.values())
    assert components["health"] == 1.0

    prediction = estimate(score, features, 100)
    assert prediction.probability <= 0.98


def test_garch_holds_long_run_volatility_on_flat_prices():
    engine = _engine()
    for i in range(200):
        assert engine.record_sample(SOL, 100.0, timestamp=i * 3600.0)
    state = engine.garch_state(SOL)
    assert state.updates == 199
    assert state.variance == pytest.approx(state.long_run_variance)
    assert state.volatility(8760) == pytest.approx(math.sqrt(state.long_run_variance * 8760))
    assert state.volatility(8760) == pytest.approx(0.4186, abs=1e-4)


def test_garch_reacts_to_shocks_and_reverts():
    state = GarchState()
    long_run = state.long_run_variance
    state.update(0.05)
    shocked = state.variance
    assert shocked == pytest.approx(1e-6 + 0.1 * 0.0025 + 0.85 * long_run)
    state.update(0.0)
    assert long_run < state.variance < shocked
    for _ in range(300):
        state.update(0.0)
    assert state.variance == pytest.approx(long_run, rel=1e-6)


def test_garch_rejects_non_stationary_params():
    with pytest.raises(ValueError):
        GarchState(alpha=0.5, beta=0.6)
    assert GarchState().variance == pytest.approx(1e-6 / 0.05)


def test_history_rejects_out_of_order_and_non_positive():
    engine = _engine()
    assert engine.record_sample(SOL, 100.0, timestamp=10.0)
    assert engine.record_sample(SOL, 101.0, timestamp=10.0)
    assert not engine.record_sample(SOL, 102.0, timestamp=5.0)
    assert not engine.record_sample(SOL, 0.0, timestamp=20.0)
    assert engine.history.count(SOL) == 2
    assert engine.stats()["rejected_samples"] == 2


def test_history_is_bounded_and_tracks_spacing():
    history = PriceHistory(max_samples=10)
    for i in range(25):
        history.record("A", 100.0 + i, timestamp=i * 3600.0)
    assert history.count("A") == 10
    assert history.last_price("A") == 124.0
    assert history.samples("A")[0].open == 114.0
    assert history.periods_per_year("A") == pytest.approx(8760.0)
    assert history.periods_per_year("unknown") == 8760


def test_indicators_neutral_on_short_history():
    history = PriceHistory()
    for i in range(5):
        history.record("A", 100.0 + i, timestamp=float(i))
    tech = indicators.technical_indicators(history.samples("A"))
    assert tech.rsi == 50.0
    assert tech.macd.macd == 0.0 and tech.macd.histogram == 0.0
    assert tech.stochastic.k == 50.0 and tech.stochastic.d == 50.0
    assert tech.atr == 0.0
    assert indicators.technical_indicators([]).rsi == 50.0


def test_indicators_on_trending_series():
    rising = [100.0 + i for i in range(40)]
    falling = [200.0 - i for i in range(40)]
    assert indicators.rsi(rising) == 100.0
    assert indicators.rsi(falling) == 0.0
    assert indicators.macd(rising).macd > 0
    assert indicators.macd(falling).macd < 0
    assert indicators.sma([1.0, 2.0, 3.0], 2) == 2.5
    assert indicators.ema([5.0], 10) == 5.0
    assert indicators.vwma([1.0, 3.0], [0.0, 0.0]) == 3.0
    upper, middle, lower = indicators.bollinger([10.0] * 20)
    assert upper == middle == lower == 10.0


def test_volatility_bundle_stages():
    history = PriceHistory()
    prices = [100.0, 101.0, 99.5, 102.0, 100.5, 103.0, 101.0, 104.0, 102.5, 105.0, 103.0, 106.0, 104.0]
    for i, p in enumerate(prices):
        history.record("A", p, timestamp=i * 3600.0)
    samples = history.samples("A")

    assert volatility_bundle(samples[:1], 8760).historical == 0.0
    short = volatility_bundle(samples[:5], 8760)
    assert short.historical > 0 and short.rolling == short.historical and short.parkinson == 0.0
    full = volatility_bundle(samples, 8760, GarchState())
    assert full.parkinson > 0 and full.garman_klass >= 0 and full.vol_of_vol >= 0
    assert full.garch == pytest.approx(math.sqrt(GarchState().variance * 8760))
    assert log_returns([100.0]).size == 0


def test_features_reflect_falling_market():
    engine = _engine()
    for i in range(30):
        engine.record_sample(SOL, 150.0 - i, volume=1000.0, timestamp=i * 60.0)
        engine.record_sample(USDC, 1.0 + (i % 2) * 0.001, timestamp=i * 60.0)
    features = engine.features(SOL)
    assert features.price_velocity < 0
    assert features.momentum < 0
    assert features.volume_profile == pytest.approx(1.0)
    assert -1.0 <= features.correlation <= 1.0
    assert engine.features("unknown") == PredictionFeatures()

    score = engine.score(_position(price=121.0))
    assert score.technical.rsi == 0.0
    assert score.ml_risk_score > _engine().score(_position(price=121.0)).ml_risk_score
