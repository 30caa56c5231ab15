import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.tick_count = Counter('sim_ticks_processed_total', 'Total price ticks processed')
        self.dropped_events = Counter('sim_dropped_events_total', 'Total dropped feed events', ['reason'])
        self.candles_opened = Counter('sim_candles_opened_total', 'Total candles opened from live ticks')

        self.current_price = Gauge('sim_current_price', 'Last traded price')
        self.rsi_value = Gauge('sim_rsi_current', 'Latest RSI value')

        self.orders_placed = Counter('sim_orders_placed_total', 'Total orders accepted', ['mode'])
        self.orders_filled = Counter('sim_orders_filled_total', 'Total orders filled')
        self.orders_cancelled = Counter('sim_orders_cancelled_total', 'Total orders cancelled')
        self.orders_rejected = Counter('sim_orders_rejected_total', 'Total orders rejected', ['reason'])

        self.pnl_realized = Gauge('sim_pnl_realized_total', 'Total realized PnL')
        self.pnl_unrealized = Gauge('sim_pnl_unrealized', 'Equity minus the starting baseline')
        self.equity = Gauge('sim_account_equity', 'Cash plus coin marked at the last price')

        self.reconnect_count = Counter('sim_websocket_reconnects_total', 'Total WebSocket reconnects')
        self.feed_connected = Gauge('sim_feed_connected', 'Live price feed connected flag')

    def record_tick(self):
        self.tick_count.inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def record_candle_opened(self):
        self.candles_opened.inc()

    def update_price(self, price: float):
        self.current_price.set(price)

    def update_rsi(self, rsi: Optional[float]):
        if rsi is not None:
            self.rsi_value.set(rsi)

    def record_order_placed(self, mode: str):
        self.orders_placed.labels(mode=mode).inc()

    def record_order_filled(self):
        self.orders_filled.inc()

    def record_order_cancelled(self):
        self.orders_cancelled.inc()

    def record_order_rejected(self, reason: str):
        self.orders_rejected.labels(reason=reason).inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def set_realized_pnl(self, total: float):
        self.pnl_realized.set(total)

    def update_unrealized_pnl(self, pnl: float):
        self.pnl_unrealized.set(pnl)

    def update_equity(self, equity: float):
        self.equity.set(equity)

    def record_reconnect(self):
        self.reconnect_count.inc()

    def update_feed_connected(self, connected: bool):
        self.feed_connected.set(1 if connected else 0)


def start_metrics_server(port: int = 9090, port_scan_limit: int = 0) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
