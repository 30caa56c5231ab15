import asyncio
import logging
from typing import Dict, List, Optional, Union

from analytics.candles import CandleAggregator, CandleUpdate
from analytics.indicators import IndicatorEngine, IndicatorSnapshot
from analytics.trade_stats import TradeStats, compute_stats
from api.metrics import metrics, start_metrics_server
from config import config
from ingest.history import BinanceHistoryProvider, HistoryProvider
from ingest.market_data_manager import MarketDataManager
from ingest.normalizer import PriceTick
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import cancel_task, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.persistence import JsonSnapshotStore, PersistenceCoordinator, Snapshot, SnapshotStore
from risk.order_validator import BALANCE_EPSILON
from strategy.errors import FeedConnectionError, FeedError
from strategy.execution import ExecutionEngine, Fill
from strategy.execution_types import Order, OrderMode, OrderSide, Position, Trade
from strategy.order_book import OrderBook
from strategy.simulators.paper import PaperPortfolio


logger = logging.getLogger(__name__)


class TradingSystem:
    """Own all simulator state and serialize every mutation through one lock.

    Ticks, submissions, cancellations, resets and timeframe swaps each run as a
    single step under ``_lock``; nothing awaits I/O while holding it.
    """

    def __init__(
        self,
        config_obj=None,
        history_provider: Optional[HistoryProvider] = None,
        store: Optional[SnapshotStore] = None,
        ws_client: Optional[WebSocketClient] = None,
    ):
        self.config = config_obj or config
        self.exchange_cfg = self.config.exchange
        self.simulator_cfg = self.config.simulator
        self.indicator_cfg = self.config.get('indicators') or {}
        self.history_cfg = self.config.get('history') or {}
        self.monitoring_cfg = self.config.get('monitoring') or {}
        persistence_cfg = self.config.get('persistence') or {}

        self.symbol = self.exchange_cfg['symbol']
        self.max_candles = int(self.simulator_cfg.get('max_candles', 60))
        self.timeframe_minutes = int(self.simulator_cfg.get('timeframe_minutes', 5))
        self.allowed_timeframes = [int(m) for m in self.simulator_cfg.get('allowed_timeframes', [1, 5])]
        initial_cash = float(self.simulator_cfg.get('initial_cash', 10000))

        self.aggregator = CandleAggregator(self.timeframe_minutes, self.max_candles)
        self.indicators = IndicatorEngine(
            sma_period=int(self.indicator_cfg.get('sma_period', 10)),
            ema_period=int(self.indicator_cfg.get('ema_period', 10)),
            rsi_period=int(self.indicator_cfg.get('rsi_period', 14)),
        )
        self.portfolio = PaperPortfolio(initial_cash=initial_cash)
        self.execution = ExecutionEngine(self.portfolio, OrderBook())

        snapshot_path = persistence_cfg.get('snapshot_path', 'logs/simulator_snapshot.json')
        self.persistence = PersistenceCoordinator(store or JsonSnapshotStore(snapshot_path))

        intervals = self.history_cfg.get('intervals')
        self.history_provider = history_provider or BinanceHistoryProvider(
            self.symbol,
            limit=self.max_candles,
            intervals=dict(intervals) if intervals else None,
        )

        self.market_data_manager = MarketDataManager(self.symbol, ws_client or WebSocketClient(self.symbol))
        self.ws_client = self.market_data_manager.ws_client

        self.current_price: Optional[float] = None
        self.trading_enabled = False
        self.running = False
        self._lock = asyncio.Lock()
        self._reload_lock = asyncio.Lock()
        self._status_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ state

    def snapshot(self) -> Snapshot:
        position = self.execution.position
        return Snapshot(
            portfolio=self.portfolio.to_dict(),
            pending_orders=self.execution.order_book.to_list(),
            trade_history=[t.as_dict() for t in self.execution.trade_history],
            position=position.as_dict() if position else None,
        )

    def restore(self, snapshot: Optional[Snapshot]) -> None:
        """Apply a persisted snapshot; anything unusable falls back to the default state."""
        if snapshot is None:
            self._reset_state()
            return
        try:
            self.portfolio.restore(snapshot.portfolio)
            self.execution.order_book.restore(Order.from_dict(o) for o in snapshot.pending_orders)
            position = Position.from_dict(snapshot.position) if snapshot.position else None
            self.execution.restore(position, (Trade.from_dict(t) for t in snapshot.trade_history))
            self._check_reservations()
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding inconsistent snapshot: %s", exc)
            self._reset_state()
            return
        metrics.set_realized_pnl(self.stats().total_pnl)
        logger.info(
            "Restored portfolio cash=%.2f coin=%s, %s pending orders, %s trades",
            self.portfolio.cash,
            self.portfolio.coin,
            len(self.execution.order_book),
            len(self.execution.trade_history),
        )

    def _check_reservations(self) -> None:
        book = self.execution.order_book
        if book.reserved_cash() > self.portfolio.cash + BALANCE_EPSILON:
            raise ValueError(
                f"pending buys reserve {book.reserved_cash():.2f} but cash is {self.portfolio.cash:.2f}"
            )
        if book.reserved_coin() > self.portfolio.coin + BALANCE_EPSILON:
            raise ValueError(
                f"pending sells reserve {book.reserved_coin()} but coin is {self.portfolio.coin}"
            )

    def _reset_state(self) -> None:
        self.portfolio.reset()
        self.execution.order_book.restore([])
        self.execution.restore(None, [])

    def _persist(self) -> None:
        self.persistence.request_save(self.snapshot())

    # --------------------------------------------------------------- lifecycle

    async def initialize(self):
        self.restore(self.persistence.load())
        self.market_data_manager.register_handlers(
            trade_handler=self.handle_trade,
            connected_handler=self.handle_connected,
            disconnected_handler=self.handle_disconnected,
            drop_handler=self.handle_drop,
        )
        try:
            await self.change_timeframe(self.timeframe_minutes)
        except Exception as exc:
            logger.error("Initial history load failed; starting with live candles only: %s", exc)

    async def start(self):
        self.running = True
        await self.initialize()

        start_metrics_server(
            int(self.monitoring_cfg.get('prometheus_port', 9090)),
            int(self.monitoring_cfg.get('prometheus_port_scan', 0)),
        )

        self._status_task = asyncio.create_task(self._status_loop())
        tasks = [
            asyncio.create_task(self.market_data_manager.start()),
            self._status_task,
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        self.running = False
        self.trading_enabled = False
        await self.market_data_manager.stop()
        await cancel_task(self._status_task)
        self._status_task = None
        closer = getattr(self.history_provider, 'close', None)
        if closer is not None:
            await closer()
        await self.persistence.flush()

    async def _status_loop(self):
        interval = float(self.monitoring_cfg.get('status_interval_s', 30))
        while self.running:
            await asyncio.sleep(interval)
            status = self.status()
            logger.info(
                "price=%s cash=%.2f coin=%.4f upnl=%.2f open_orders=%s trades=%s connected=%s",
                status['price'],
                status['cash'],
                status['coin'],
                status['unrealized_pnl'],
                status['open_orders'],
                status['stats']['count'],
                status['trading_enabled'],
            )

    # ------------------------------------------------------------- feed events

    async def handle_trade(self, tick: PriceTick):
        async with self._lock:
            self.process_tick(tick)

    def process_tick(self, tick: PriceTick) -> List[Fill]:
        """One tick: candles, indicators, limit fills, ledger mark. Caller holds the lock."""
        self.current_price = tick.price
        metrics.record_tick()
        metrics.update_price(tick.price)

        try:
            update: CandleUpdate = self.aggregator.on_tick(tick)
        except FeedError as exc:
            metrics.record_drop(exc.reason)
            logger.debug("Tick at %s is older than the newest candle; candles unchanged", tick.timestamp)
        else:
            if update.is_new:
                metrics.record_candle_opened()
            snapshot = self.indicators.update(self.aggregator.closes())
            metrics.update_rsi(snapshot.latest()['rsi'])

        resting = len(self.execution.order_book)
        fills = self.execution.on_price_update(tick.price, tick.timestamp)
        self.portfolio.mark(tick.price)
        if fills or len(self.execution.order_book) != resting:
            self._persist()
        return fills

    async def handle_connected(self):
        self.trading_enabled = True
        logger.info("Live price connected; trading enabled")

    async def handle_disconnected(self, reason: str = ''):
        self.trading_enabled = False
        logger.warning("Live price disconnected (%s); trading disabled", reason)

    async def handle_drop(self, reason: str):
        logger.debug("Feed event dropped: %s", reason)

    # ------------------------------------------------------------ user actions

    async def submit_order(
        self,
        mode: Union[OrderMode, str],
        side: Union[OrderSide, str],
        amount: float,
        price: Optional[float] = None,
    ) -> Order:
        """Market orders fill at the last price; limit orders rest. Raises SimulatorError subclasses."""
        async with self._lock:
            if not self.trading_enabled:
                raise FeedConnectionError()
            mode = OrderMode(mode)
            side = OrderSide(side)
            if mode == OrderMode.MARKET:
                order_price = float(self.current_price or 0.0)
            else:
                order_price = float(price) if price is not None else 0.0
            order = Order(mode=mode, side=side, price=order_price, amount=float(amount))
            self.execution.submit(order)
            if self.current_price is not None:
                self.portfolio.mark(self.current_price)
            self._persist()
            return order

    async def cancel_order(self, order_id: str) -> Order:
        async with self._lock:
            order = self.execution.cancel(order_id)
            self._persist()
            return order

    async def reset_portfolio(self) -> List[Order]:
        """Back to the initial cash; pending orders go too, their reservations were against the old balances."""
        async with self._lock:
            canceled = self.execution.cancel_all()
            self.portfolio.reset()
            self.execution.reset_position()
            self._persist()
            return canceled

    async def reset_orders(self) -> List[Order]:
        async with self._lock:
            canceled = self.execution.cancel_all()
            self._persist()
            return canceled

    async def reset_history(self):
        async with self._lock:
            self.execution.clear_history()
            metrics.set_realized_pnl(0.0)
            self._persist()

    async def change_timeframe(self, minutes: int) -> IndicatorSnapshot:
        """Reload candles for a new timeframe; new state is built aside and swapped in whole."""
        minutes = int(minutes)
        if minutes not in self.allowed_timeframes:
            allowed = ", ".join(str(m) for m in self.allowed_timeframes)
            raise ValueError(f"Unsupported timeframe {minutes}m. Allowed: {allowed}")

        async with self._reload_lock:
            rows = await self.history_provider.fetch(minutes)
            staged = CandleAggregator(minutes, self.max_candles)
            staged.load_history(rows)
            staged_indicators = self.indicators.compute(staged.closes())

            async with self._lock:
                self.aggregator = staged
                self.timeframe_minutes = minutes
                self.indicators.snapshot = staged_indicators
            logger.info("Timeframe set to %sm with %s candles", minutes, len(staged))
            return staged_indicators

    # ------------------------------------------------------------------- reads

    def stats(self) -> TradeStats:
        return compute_stats(self.execution.trade_history)

    def status(self) -> Dict:
        price = self.current_price
        return {
            'symbol': self.symbol,
            'price': price,
            'timeframe_minutes': self.timeframe_minutes,
            'cash': self.portfolio.cash,
            'coin': self.portfolio.coin,
            'unrealized_pnl': self.portfolio.unrealized_pnl(price),
            'position': self.execution.position.as_dict() if self.execution.position else None,
            'open_orders': len(self.execution.order_book),
            'trading_enabled': self.trading_enabled,
            'indicators': self.indicators.to_dict(),
            'stats': self.stats().to_dict(),
        }


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        # start() already ran stop() as its cleanup
        logger.info("System shutting down on interrupt")


if __name__ == "__main__":
    setup_logging(config.get('monitoring', {}).get('log_level', 'INFO'))
    asyncio.run(main())
