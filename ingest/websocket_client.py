import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import websockets

from api.metrics import metrics
from config import config
from strategy.errors import FeedConnectionError, FeedError
from .normalizer import normalize_tick


logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[None]]


class WebSocketClient:
    """Binance spot trade stream with serialized reconnects.

    Handlers: ``trade(PriceTick)``, ``connected()``, ``disconnected(reason)``,
    ``dropped_event(reason)``. Only one connection attempt is ever in flight;
    a successful connect resets the backoff.
    """

    def __init__(
        self,
        symbol: Optional[str] = None,
        url: Optional[str] = None,
        reconnect_backoff: Optional[Sequence[float]] = None,
        stream_timeout: Optional[float] = None,
        connect: Optional[Callable] = None,
        jitter_s: float = 0.5,
    ):
        self.symbol = (symbol or config.exchange["symbol"]).lower()
        base = (url or config.exchange.get("ws_url", "wss://stream.binance.com:9443/ws")).rstrip("/")
        self.url = f"{base}/{self.symbol}@trade"
        self.reconnect_backoff: List[float] = list(reconnect_backoff or config.websocket["reconnect_backoff"])
        self.stream_timeout = stream_timeout if stream_timeout is not None else config.websocket.get("stream_stale_s", 30)
        self.jitter_s = jitter_s
        self._connect = connect or websockets.connect

        self.handlers: Dict[str, Handler] = {}
        self.running = False
        self.connected = False
        self.reconnect_count = 0
        self.gap_start_ts: Optional[float] = None

    def register_handler(self, stream_type: str, handler: Handler):
        self.handlers[stream_type] = handler

    async def _emit(self, name: str, *args) -> None:
        handler = self.handlers.get(name)
        if handler is not None:
            await handler(*args)

    def _backoff_delay(self, backoff_index: int) -> float:
        index = min(backoff_index, len(self.reconnect_backoff) - 1)
        return self.reconnect_backoff[index] + random.uniform(0, self.jitter_s)

    async def _handle_reconnect(self, backoff_index: int) -> None:
        self.reconnect_count += 1
        metrics.record_reconnect()
        delay = self._backoff_delay(backoff_index)
        logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)

    async def _set_disconnected(self, reason: str) -> None:
        if self.gap_start_ts is None:
            self.gap_start_ts = time.time()
        if not self.connected:
            return
        self.connected = False
        metrics.update_feed_connected(False)
        await self._emit("disconnected", reason)

    async def _set_connected(self) -> None:
        self.connected = True
        metrics.update_feed_connected(True)
        if self.gap_start_ts is not None:
            logger.info("Trade stream reconnected after %.1fs gap", time.time() - self.gap_start_ts)
            self.gap_start_ts = None
        await self._emit("connected")

    async def _process_message(self, raw) -> None:
        try:
            tick = normalize_tick(raw, received_at_ms=int(time.time() * 1000))
        except FeedError as exc:
            logger.warning("Dropping trade event: %s", exc.reason)
            metrics.record_drop(exc.reason)
            await self._emit("dropped_event", exc.reason)
            return
        await self._emit("trade", tick)

    async def subscribe_trades(self):
        backoff_index = 0

        while self.running:
            try:
                async with self._connect(self.url, ping_interval=20) as ws:
                    logger.info("Trade stream connected: %s", self.url)
                    backoff_index = 0
                    await self._set_connected()
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_timeout)
                        except asyncio.TimeoutError:
                            raise FeedConnectionError("trade stream stale") from None
                        await self._process_message(raw)
                    return

            except asyncio.CancelledError:
                await self._set_disconnected("cancelled")
                raise
            except Exception as e:
                logger.error("Trade stream error: %s", e)
                await self._set_disconnected(str(e) or type(e).__name__)
                if not self.running:
                    break
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)

    async def start(self):
        self.running = True
        try:
            await self.subscribe_trades()
        finally:
            self.running = False
            await self._set_disconnected("stopped")

    async def stop(self):
        self.running = False
