import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365 * 24 * 3600
DEFAULT_PERIODS_PER_YEAR = 365 * 24
MAX_SAMPLES = 100


@dataclass(frozen=True)
class PriceSample:
    timestamp: float
    price: float
    open: float
    high: float
    low: float
    volume: float = 0.0


class PriceHistory:
    """
    Bounded, append-only price/volume series per asset.

    Samples must arrive in timestamp order; an older sample is rejected
    because GARCH state downstream is path dependent.
    """

    def __init__(self, max_samples: int = MAX_SAMPLES, periods_per_year: float = DEFAULT_PERIODS_PER_YEAR):
        self.max_samples = max_samples
        self.default_periods_per_year = periods_per_year
        self._series: Dict[str, Deque[PriceSample]] = {}
        self.rejected_count = 0

    def record(
        self,
        asset_id: str,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[float] = None,
        high: Optional[float] = None,
        low: Optional[float] = None,
    ) -> Optional[PriceSample]:
        """Append one sample. Returns the stored sample, or None when rejected."""
        if price is None or not price > 0:
            self.rejected_count += 1
            logger.warning("price sample rejected asset=%s reason=non_positive price=%s", asset_id, price)
            return None
        ts = float(timestamp if timestamp is not None else time.time())
        series = self._series.setdefault(asset_id, deque(maxlen=self.max_samples))
        previous = series[-1] if series else None
        if previous is not None and ts < previous.timestamp:
            self.rejected_count += 1
            logger.warning(
                "price sample rejected asset=%s reason=out_of_order ts=%s last_ts=%s",
                asset_id,
                ts,
                previous.timestamp,
            )
            return None

        open_ = previous.price if previous is not None else price
        sample = PriceSample(
            timestamp=ts,
            price=float(price),
            open=float(open_),
            high=float(high if high is not None else max(open_, price)),
            low=float(low if low is not None else min(open_, price)),
            volume=float(volume or 0.0),
        )
        series.append(sample)
        return sample

    def samples(self, asset_id: str) -> List[PriceSample]:
        return list(self._series.get(asset_id, ()))

    def count(self, asset_id: str) -> int:
        return len(self._series.get(asset_id, ()))

    def assets(self) -> List[str]:
        return list(self._series.keys())

    def last_price(self, asset_id: str) -> Optional[float]:
        series = self._series.get(asset_id)
        return series[-1].price if series else None

    def closes(self, asset_id: str) -> np.ndarray:
        return np.array([s.price for s in self._series.get(asset_id, ())], dtype=float)

    def volumes(self, asset_id: str) -> np.ndarray:
        return np.array([s.volume for s in self._series.get(asset_id, ())], dtype=float)

    def periods_per_year(self, asset_id: str) -> float:
        """Annualisation factor from the median sample spacing."""
        series = self._series.get(asset_id)
        if not series or len(series) < 2:
            return self.default_periods_per_year
        spacing = np.diff([s.timestamp for s in series])
        spacing = spacing[spacing > 0]
        if spacing.size == 0:
            return self.default_periods_per_year
        return SECONDS_PER_YEAR / float(np.median(spacing))
