import logging
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from .binance_rest import BinanceRESTClient


logger = logging.getLogger(__name__)

HistoryRow = Tuple[int, float]

DEFAULT_INTERVALS = {1: "1m", 5: "5m"}


class HistoryProvider(Protocol):
    """Seeds the candle sequence. Rows are ``(open_time_ms, close)`` oldest to newest."""

    async def fetch(self, timeframe_minutes: int) -> List[HistoryRow]:
        ...


class BinanceHistoryProvider:
    """Close-price history from Binance spot klines."""

    def __init__(
        self,
        symbol: str,
        limit: int = 60,
        intervals: Optional[Mapping[int, str]] = None,
        rest: Optional[BinanceRESTClient] = None,
    ):
        self.symbol = symbol.upper()
        self.limit = limit
        self.intervals: Dict[int, str] = {int(k): str(v) for k, v in (intervals or DEFAULT_INTERVALS).items()}
        self._rest = rest or BinanceRESTClient()

    def interval_for(self, timeframe_minutes: int) -> str:
        try:
            return self.intervals[int(timeframe_minutes)]
        except KeyError:
            allowed = ", ".join(str(m) for m in sorted(self.intervals))
            raise ValueError(f"Unsupported timeframe {timeframe_minutes}m. Allowed: {allowed}") from None

    async def fetch(self, timeframe_minutes: int) -> List[HistoryRow]:
        interval = self.interval_for(timeframe_minutes)
        raw = await self._rest.get(
            "/api/v3/klines",
            params={"symbol": self.symbol, "interval": interval, "limit": self.limit},
        )
        rows = self._parse_klines(raw)
        logger.info("Fetched %s %s klines for %s", len(rows), interval, self.symbol)
        return rows

    @staticmethod
    def _parse_klines(raw) -> List[HistoryRow]:
        """
        Binance klines: [openTime, open, high, low, close, volume, closeTime, ...]
        Malformed rows are skipped.
        """
        out: List[HistoryRow] = []
        if not isinstance(raw, list):
            raise ValueError(f"Unexpected klines payload: {type(raw).__name__}")
        for row in raw:
            if not isinstance(row, (list, tuple)) or len(row) < 5:
                continue
            try:
                out.append((int(row[0]), float(row[4])))
            except (TypeError, ValueError):
                continue
        out.sort(key=lambda r: r[0])
        return out

    async def close(self) -> None:
        await self._rest.close()
