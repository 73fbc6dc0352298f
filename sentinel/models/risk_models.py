from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VolatilityBundle(BaseModel):
    """Annualized volatility estimates for one asset."""
    historical: float = 0.0
    rolling: float = 0.0
    garch: float = 0.0
    parkinson: float = 0.0
    garman_klass: float = 0.0
    vol_of_vol: float = 0.0


class MovingAverages(BaseModel):
    sma5: float = 0.0
    sma20: float = 0.0
    sma50: float = 0.0
    ema5: float = 0.0
    ema20: float = 0.0
    ema50: float = 0.0
    vwma20: float = 0.0
    bollinger_upper: float = 0.0
    bollinger_middle: float = 0.0
    bollinger_lower: float = 0.0


class MacdValues(BaseModel):
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


class StochasticValues(BaseModel):
    k: float = 50.0
    d: float = 50.0


class TechnicalIndicators(BaseModel):
    """
    Neutral defaults (RSI 50, MACD 0, stochastic 50, ATR 0) are reported
    when history is shorter than the indicator window; they carry no signal.
    """
    rsi: float = 50.0
    macd: MacdValues = Field(default_factory=MacdValues)
    stochastic: StochasticValues = Field(default_factory=StochasticValues)
    atr: float = 0.0


class RiskScore(BaseModel):
    position_id: str
    health_factor: float
    risk_level: RiskLevel
    collateral_ratio: float
    current_price: float
    liquidation_price: float
    distance_to_liquidation: float
    estimated_loss: float = 0.0
    volatility: VolatilityBundle = Field(default_factory=VolatilityBundle)
    moving_averages: MovingAverages = Field(default_factory=MovingAverages)
    technical: TechnicalIndicators = Field(default_factory=TechnicalIndicators)
    ml_risk_score: float = Field(default=0.0, ge=0.0, le=1.0)
    timestamp: float = 0.0


class PredictionFeatures(BaseModel):
    price_velocity: float = 0.0
    volatility_trend: float = 0.0
    volume_profile: float = 1.0
    correlation: float = 0.0
    momentum: float = 0.0
    liquidity: float = 1.0
    sentiment: float = 0.0


class LiquidationPrediction(BaseModel):
    position_id: str
    probability: float = Field(ge=0.0, le=0.98)
    probability_30m: float = Field(ge=0.0, le=0.99)
    probability_1h: float = Field(ge=0.0, le=0.95)
    minutes_to_liquidation: float = float("inf")
    confidence: float = 0.0
    price_target: Optional[float] = None
    factors: List[str] = Field(default_factory=list)
    features: PredictionFeatures = Field(default_factory=PredictionFeatures)
    timestamp: float = 0.0
