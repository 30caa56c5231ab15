import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from api.metrics import metrics
from risk.order_validator import OrderValidator
from strategy.errors import NoPositionError, ValidationError
from strategy.execution_types import (
    Order,
    OrderMode,
    OrderSide,
    OrderStatus,
    Position,
    Trade,
    now_ms,
)
from strategy.order_book import OrderBook
from strategy.simulators.paper import DUST, PaperPortfolio


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fill:
    order: Order
    price: float
    trade: Optional[Trade] = None


class ExecutionEngine:
    """Validate, rest, fill and settle simulator orders.

    Sole writer of portfolio balances, the open position and the trade history.
    """

    def __init__(self, portfolio: PaperPortfolio, order_book: Optional[OrderBook] = None,
                 validator: Optional[OrderValidator] = None):
        self.portfolio = portfolio
        self.order_book = order_book or OrderBook()
        self.validator = validator or OrderValidator()
        self.position: Optional[Position] = None
        self._history: List[Trade] = []

    @property
    def trade_history(self) -> List[Trade]:
        return list(self._history)

    def available_cash(self) -> float:
        return self.portfolio.cash - self.order_book.reserved_cash()

    def available_coin(self) -> float:
        return self.portfolio.coin - self.order_book.reserved_coin()

    def submit(self, order: Order, timestamp: Optional[int] = None) -> Optional[Fill]:
        """Market orders fill now and return the Fill; limit orders rest and return None."""
        try:
            self.validator.validate(order, self.available_cash(), self.available_coin())
        except ValidationError as exc:
            metrics.record_order_rejected(exc.kind)
            raise

        if order.mode == OrderMode.MARKET:
            try:
                fill = self.execute(order, order.price, timestamp)
            except NoPositionError:
                metrics.record_order_rejected('no_position')
                raise
            metrics.record_order_placed(order.mode.value)
            return fill

        self.order_book.add(order)
        metrics.record_order_placed(order.mode.value)
        logger.info(
            "Limit %s %s @ %.2f resting (id=%s)",
            order.side.value,
            order.amount,
            order.price,
            order.id,
        )
        return None

    def cancel(self, order_id: str) -> Order:
        order = self.order_book.cancel(order_id)
        metrics.record_order_cancelled()
        logger.info("Canceled order %s", order_id)
        return order

    def cancel_all(self) -> List[Order]:
        canceled = self.order_book.cancel_all()
        for _ in canceled:
            metrics.record_order_cancelled()
        return canceled

    def on_price_update(self, price: float, timestamp: Optional[int] = None) -> List[Fill]:
        fills: List[Fill] = []
        for order in self.order_book.crossed(price):
            self.order_book.remove(order.id)
            try:
                # balances can shrink between submit and fill
                self.validator.validate(order, self.portfolio.cash, self.portfolio.coin)
            except ValidationError as exc:
                order.status = OrderStatus.CANCELED
                metrics.record_order_rejected(exc.kind)
                logger.error(
                    "Limit %s %s crossed at %.2f but no longer fits balances (%s); canceled",
                    order.side.value,
                    order.id,
                    price,
                    exc.message,
                )
                continue
            try:
                fills.append(self.execute(order, order.price, timestamp))
            except NoPositionError:
                order.status = OrderStatus.CANCELED
                metrics.record_order_rejected('no_position')
                logger.error(
                    "Limit sell %s crossed at %.2f with no open position; canceled",
                    order.id,
                    price,
                )
        return fills

    def execute(self, order: Order, price: float, timestamp: Optional[int] = None) -> Fill:
        ts = timestamp if timestamp is not None else now_ms()
        trade = None
        if order.side == OrderSide.BUY:
            self.portfolio.apply_buy(price, order.amount)
            if self.position is None:
                self.position = Position(entry_price=price, amount=order.amount, opened_at=ts)
            else:
                self.position = self.position.blend(price, order.amount)
        else:
            position = self.position
            if position is None:
                raise NoPositionError(order.id)
            self.portfolio.apply_sell(price, order.amount)
            pnl = (price - position.entry_price) * order.amount
            trade = Trade(
                opened_at=position.opened_at,
                closed_at=ts,
                entry_price=position.entry_price,
                exit_price=price,
                amount=order.amount,
                pnl=pnl,
            )
            self._history.append(trade)
            remaining = position.amount - order.amount
            if remaining > DUST:
                self.position = Position(position.entry_price, remaining, position.opened_at)
            else:
                self.position = None
            self.portfolio.record_pnl(pnl)

        order.status = OrderStatus.FILLED
        order.filled_at = ts
        order.fill_price = price
        metrics.record_order_filled()
        logger.info(
            "Executed %s %s %s @ %.2f%s",
            order.mode.value,
            order.side.value,
            order.amount,
            price,
            f" pnl={trade.pnl:.2f}" if trade else "",
        )
        return Fill(order=order, price=price, trade=trade)

    def reset_position(self) -> None:
        self.position = None

    def clear_history(self) -> None:
        self._history = []

    def restore(self, position: Optional[Position], history: Iterable[Trade]) -> None:
        self.position = position
        self._history = list(history)
