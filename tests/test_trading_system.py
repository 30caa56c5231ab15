import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from config import SectionProxy
from ingest.normalizer import PriceTick
from ingest.websocket_client import WebSocketClient
from main import TradingSystem
from orchestration.persistence import JsonSnapshotStore, Snapshot
from strategy.errors import FeedConnectionError, ValidationError
from strategy.execution_types import Order, OrderMode, OrderSide, OrderStatus

MINUTE = 60_000


def _config():
    return SectionProxy({
        'exchange': {'symbol': 'BTCUSDT', 'ws_url': 'wss://example.invalid/ws'},
        'websocket': {'reconnect_backoff': [0], 'stream_stale_s': 1},
        'simulator': {'initial_cash': 10000, 'max_candles': 60, 'timeframe_minutes': 5, 'allowed_timeframes': [1, 5]},
        'indicators': {'sma_period': 3, 'ema_period': 3, 'rsi_period': 3},
    })


class FakeHistory:
    def __init__(self):
        self.calls = []
        self.closed = False

    async def fetch(self, timeframe_minutes):
        self.calls.append(timeframe_minutes)
        width = timeframe_minutes * MINUTE
        return [(i * width, 100.0 + i) for i in range(5)]

    async def close(self):
        self.closed = True


def _system(tmp_path, history=None):
    return TradingSystem(
        _config(),
        history_provider=history or FakeHistory(),
        store=JsonSnapshotStore(tmp_path / 'snap.json'),
        ws_client=WebSocketClient('BTCUSDT', url='wss://example.invalid/ws', reconnect_backoff=[0], jitter_s=0),
    )


def test_submit_requires_live_connection(tmp_path):
    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        with pytest.raises(FeedConnectionError):
            await system.submit_order('market', 'buy', 1)

        await system.handle_connected()
        await system.handle_disconnected('socket closed')
        with pytest.raises(FeedConnectionError):
            await system.submit_order('limit', 'buy', 1, price=90)
        assert system.portfolio.cash == 10000

    asyncio.run(_run())


def test_market_round_trip_through_ticks(tmp_path):
    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        await system.handle_connected()

        with pytest.raises(ValidationError) as excinfo:
            await system.submit_order('market', 'buy', 1)
        assert excinfo.value.kind == ValidationError.PRICE

        await system.handle_trade(PriceTick(10 * 5 * MINUTE, 100.0))
        order = await system.submit_order('market', 'buy', 1)
        assert order.status == OrderStatus.FILLED
        assert system.portfolio.cash == pytest.approx(9900.0)

        await system.handle_trade(PriceTick(10 * 5 * MINUTE + 1000, 120.0))
        assert system.status()['unrealized_pnl'] == pytest.approx(20.0)
        await system.submit_order('market', 'sell', 1)
        await system.persistence.flush()
        return system

    system = asyncio.run(_run())
    assert system.portfolio.cash == pytest.approx(10020.0)
    assert system.execution.position is None
    assert system.stats().total_pnl == pytest.approx(20.0)
    assert system.stats().win_rate_pct == 100


def test_limit_order_fills_on_tick(tmp_path):
    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        await system.handle_connected()
        await system.handle_trade(PriceTick(0, 100.0))

        order = await system.submit_order('limit', 'buy', 1, price=90)
        assert system.execution.available_cash() == pytest.approx(9910.0)

        await system.handle_trade(PriceTick(1000, 95.0))
        assert order.status == OrderStatus.PENDING

        await system.handle_trade(PriceTick(2000, 89.0))
        await system.persistence.flush()
        return system, order

    system, order = asyncio.run(_run())
    assert order.status == OrderStatus.FILLED
    assert order.fill_price == 90
    assert system.portfolio.cash == pytest.approx(9910.0)
    assert system.portfolio.coin == pytest.approx(1.0)


def test_reload_reproduces_state(tmp_path):
    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        await system.handle_connected()
        await system.handle_trade(PriceTick(0, 100.0))
        await system.submit_order('market', 'buy', 2)
        await system.submit_order('market', 'sell', 1)
        await system.submit_order('limit', 'sell', 1, price=150)
        await system.submit_order('limit', 'buy', 1, price=50)
        await system.persistence.flush()
        before = system.snapshot()

        reloaded = _system(tmp_path)
        await reloaded.initialize()
        return before, reloaded

    before, reloaded = asyncio.run(_run())
    assert reloaded.snapshot() == before
    assert reloaded.execution.available_coin() == pytest.approx(0.0)
    assert reloaded.execution.available_cash() == pytest.approx(reloaded.portfolio.cash - 50)


def test_corrupt_snapshot_starts_from_defaults(tmp_path):
    (tmp_path / 'snap.json').write_text('{"portfolio": {"cash": "lots"')

    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        return system

    system = asyncio.run(_run())
    assert system.portfolio.cash == 10000
    assert system.portfolio.coin == 0
    assert len(system.execution.order_book) == 0
    assert system.execution.trade_history == []


def test_change_timeframe_swaps_candles(tmp_path):
    history = FakeHistory()

    async def _run():
        system = _system(tmp_path, history)
        await system.initialize()
        assert system.aggregator.timeframe_minutes == 5

        snapshot = await system.change_timeframe(1)
        with pytest.raises(ValueError):
            await system.change_timeframe(3)
        return system, snapshot

    system, snapshot = asyncio.run(_run())
    assert history.calls == [5, 1]
    assert system.timeframe_minutes == 1
    assert system.aggregator.timeframe_minutes == 1
    assert system.aggregator.closes() == [100.0, 101.0, 102.0, 103.0, 104.0]
    assert snapshot.sma[-1] == pytest.approx(103.0)
    assert system.aggregator.active is None


def test_history_failure_keeps_running(tmp_path):
    class BrokenHistory(FakeHistory):
        async def fetch(self, timeframe_minutes):
            raise RuntimeError("exchange unavailable")

    async def _run():
        system = _system(tmp_path, BrokenHistory())
        await system.initialize()
        await system.handle_trade(PriceTick(0, 100.0))
        return system

    system = asyncio.run(_run())
    assert len(system.aggregator) == 1
    assert system.current_price == 100.0


def test_resets(tmp_path):
    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        await system.handle_connected()
        await system.handle_trade(PriceTick(0, 100.0))
        await system.submit_order('market', 'buy', 1)
        await system.submit_order('market', 'sell', 1)
        await system.submit_order('market', 'buy', 1)
        await system.submit_order('limit', 'buy', 1, price=80)

        canceled = await system.reset_orders()
        assert [o.status for o in canceled] == [OrderStatus.CANCELED]
        assert len(system.execution.order_book) == 0

        await system.reset_history()
        assert system.stats().count == 0

        await system.reset_portfolio()
        await system.persistence.flush()
        return system

    system = asyncio.run(_run())
    assert system.portfolio.cash == 10000
    assert system.portfolio.coin == 0
    assert system.execution.position is None


def test_reset_portfolio_cancels_resting_orders(tmp_path):
    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        await system.handle_connected()
        await system.handle_trade(PriceTick(0, 100.0))
        await system.submit_order('market', 'buy', 100)
        await system.handle_trade(PriceTick(1000, 200.0))
        await system.submit_order('market', 'sell', 100)
        buy = await system.submit_order('limit', 'buy', 100, price=150)

        canceled = await system.reset_portfolio()
        await system.handle_trade(PriceTick(2000, 140.0))
        await system.persistence.flush()
        return system, buy, canceled

    system, buy, canceled = asyncio.run(_run())
    assert canceled == [buy]
    assert buy.status == OrderStatus.CANCELED
    assert system.portfolio.cash == 10000
    assert system.portfolio.coin == 0
    assert len(system.execution.order_book) == 0


def test_snapshot_with_unbacked_reservations_starts_from_defaults(tmp_path):
    store = JsonSnapshotStore(tmp_path / 'snap.json')
    order = Order(mode=OrderMode.LIMIT, side=OrderSide.BUY, price=150.0, amount=1.0, id='o-1')
    store.save(Snapshot(portfolio={'cash': 100.0, 'coin': 0.0}, pending_orders=[order.as_dict()]))

    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        return system

    system = asyncio.run(_run())
    assert system.portfolio.cash == 10000
    assert len(system.execution.order_book) == 0


def test_stale_tick_leaves_candles_but_moves_price(tmp_path):
    width = 5 * MINUTE

    async def _run():
        system = _system(tmp_path)
        await system.initialize()
        await system.handle_connected()
        await system.handle_trade(PriceTick(100 * width + 1, 100.0))
        await system.submit_order('limit', 'buy', 1, price=95)

        await system.handle_trade(PriceTick(100 * width - 1, 94.0))
        await system.handle_trade(PriceTick(100 * width + 2, 101.0))
        await system.persistence.flush()
        return system

    system = asyncio.run(_run())
    open_times = [c.open_time for c in system.aggregator.candles]
    assert open_times == sorted(open_times)
    assert open_times.count(100 * width) == 1
    assert system.aggregator.closes()[-1] == 101.0
    assert system.current_price == 101.0
    assert system.portfolio.coin == pytest.approx(1.0)


def test_main_stops_once_when_interrupted(monkeypatch):
    import main as entrypoint

    class InterruptedSystem:
        stops = 0

        def __init__(self, config_obj=None):
            pass

        async def start(self):
            await self.stop()
            raise asyncio.CancelledError()

        async def stop(self):
            InterruptedSystem.stops += 1

    monkeypatch.setattr(entrypoint, 'TradingSystem', InterruptedSystem)
    asyncio.run(entrypoint.main())

    assert InterruptedSystem.stops == 1
