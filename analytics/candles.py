import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional, Tuple

from ingest.normalizer import PriceTick
from strategy.errors import FeedError


logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000


@dataclass
class Candle:
    open_time: int
    close: float

    def to_dict(self):
        return {'open_time': self.open_time, 'close': self.close}


@dataclass(frozen=True)
class CandleUpdate:
    candle: Candle
    is_new: bool
    evicted: Optional[Candle] = None


def bucket_start(timestamp_ms: int, timeframe_minutes: int) -> int:
    width = timeframe_minutes * MS_PER_MINUTE
    return (timestamp_ms // width) * width


class CandleAggregator:
    """Bucket ticks into fixed-width close-only candles, keeping at most ``max_candles``."""

    def __init__(self, timeframe_minutes: int = 5, max_candles: int = 60):
        if timeframe_minutes <= 0:
            raise ValueError("timeframe_minutes must be positive")
        if max_candles <= 0:
            raise ValueError("max_candles must be positive")
        self.timeframe_minutes = int(timeframe_minutes)
        self.max_candles = int(max_candles)
        self._candles: Deque[Candle] = deque()
        self._active: Optional[Candle] = None

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles)

    @property
    def active(self) -> Optional[Candle]:
        return self._active

    def closes(self) -> List[float]:
        return [c.close for c in self._candles]

    def __len__(self) -> int:
        return len(self._candles)

    def on_tick(self, tick: PriceTick) -> CandleUpdate:
        """Raises FeedError('stale_tick') for a tick older than the newest candle."""
        key = bucket_start(tick.timestamp, self.timeframe_minutes)
        if self._candles and key < self._candles[-1].open_time:
            raise FeedError('stale_tick', tick)
        if self._active is not None and self._active.open_time == key:
            self._active.close = tick.price
            return CandleUpdate(self._active, is_new=False)

        candle = Candle(open_time=key, close=tick.price)
        self._candles.append(candle)
        self._active = candle
        evicted = None
        if len(self._candles) > self.max_candles:
            evicted = self._candles.popleft()
        return CandleUpdate(candle, is_new=True, evicted=evicted)

    def load_history(self, rows: Iterable[Tuple[int, float]]) -> None:
        """Replace the sequence with ``(open_time, close)`` rows; the next tick always opens a candle."""
        candles = [Candle(open_time=int(t), close=float(c)) for t, c in rows]
        self._candles = deque(candles[-self.max_candles:])
        self._active = None
        logger.debug("Loaded %s history candles (%sm)", len(self._candles), self.timeframe_minutes)

    def reset_bucket(self) -> None:
        self._active = None
