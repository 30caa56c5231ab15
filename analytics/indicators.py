from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import talib


Series = List[Optional[float]]

# Wilder RSI stand-in for rs when the smoothed average loss is zero. Saturates
# RSI at 100 - 100/101 (~99.0099) instead of 100. Not applied to the seed.
RSI_ZERO_LOSS_RS = 100.0


def sma(closes: Sequence[float], period: int = 10) -> Series:
    n = len(closes)
    if period <= 0 or n < period:
        return [None] * n
    values = talib.SMA(np.asarray(closes, dtype=float), timeperiod=period)
    return [None if np.isnan(v) else float(v) for v in values]


def ema(closes: Sequence[float], period: int = 10) -> Series:
    if not closes:
        return []
    k = 2.0 / (period + 1)
    prev = float(closes[0])
    out: Series = [prev]
    for price in closes[1:]:
        prev = float(price) * k + prev * (1 - k)
        out.append(prev)
    return out


def _rsi_from(avg_gain: float, avg_loss: float) -> float:
    rs = RSI_ZERO_LOSS_RS if avg_loss == 0 else avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def _rsi_seed(avg_gain: float, avg_loss: float) -> Optional[float]:
    if avg_loss == 0:
        # flat seed window has no defined RSI
        return 100.0 if avg_gain > 0 else None
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


def rsi(closes: Sequence[float], period: int = 14) -> Series:
    n = len(closes)
    out: Series = [None] * n
    if period <= 0 or n < period + 1:
        return out

    deltas = np.diff(np.asarray(closes, dtype=float))
    seed = deltas[:period]
    avg_gain = float(seed[seed > 0].sum()) / period
    avg_loss = float(-seed[seed < 0].sum()) / period
    out[period] = _rsi_seed(avg_gain, avg_loss)

    for i in range(period + 1, n):
        diff = float(deltas[i - 1])
        gain = diff if diff > 0 else 0.0
        loss = -diff if diff < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out[i] = _rsi_from(avg_gain, avg_loss)
    return out


@dataclass
class IndicatorSnapshot:
    sma: Series = field(default_factory=list)
    ema: Series = field(default_factory=list)
    rsi: Series = field(default_factory=list)

    def latest(self) -> Dict[str, Optional[float]]:
        return {
            'sma': self.sma[-1] if self.sma else None,
            'ema': self.ema[-1] if self.ema else None,
            'rsi': self.rsi[-1] if self.rsi else None,
        }

    def to_dict(self) -> Dict[str, Series]:
        return {'sma': list(self.sma), 'ema': list(self.ema), 'rsi': list(self.rsi)}


class IndicatorEngine:
    """Derive SMA/EMA/RSI series aligned index-for-index with the candle closes."""

    def __init__(self, sma_period: int = 10, ema_period: int = 10, rsi_period: int = 14):
        self.sma_period = sma_period
        self.ema_period = ema_period
        self.rsi_period = rsi_period
        self.snapshot = IndicatorSnapshot()

    def compute(self, closes: Sequence[float]) -> IndicatorSnapshot:
        # Full recompute; the window is bounded by the candle cap.
        return IndicatorSnapshot(
            sma=sma(closes, self.sma_period),
            ema=ema(closes, self.ema_period),
            rsi=rsi(closes, self.rsi_period),
        )

    def update(self, closes: Sequence[float]) -> IndicatorSnapshot:
        self.snapshot = self.compute(closes)
        return self.snapshot

    def get_rsi(self) -> Optional[float]:
        return self.snapshot.latest()['rsi']

    def to_dict(self) -> Dict[str, Optional[float]]:
        return self.snapshot.latest()
