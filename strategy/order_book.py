import logging
from collections import OrderedDict
from typing import Dict, Iterable, List

from strategy.errors import OrderNotFoundError
from strategy.execution_types import Order, OrderMode, OrderSide, OrderStatus


logger = logging.getLogger(__name__)


class OrderBook:
    """Pending limit orders in submission order.

    Pending orders escrow what they would spend: a buy reserves ``price * amount``
    of cash, a sell reserves ``amount`` of coin.
    """

    def __init__(self) -> None:
        self._pending: "OrderedDict[str, Order]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._pending

    def pending(self) -> List[Order]:
        return list(self._pending.values())

    def add(self, order: Order) -> None:
        if order.mode != OrderMode.LIMIT:
            raise ValueError(f"Only limit orders rest on the book (got {order.mode.value})")
        if order.id in self._pending:
            raise ValueError(f"Duplicate order id {order.id}")
        self._pending[order.id] = order

    def remove(self, order_id: str) -> Order:
        try:
            return self._pending.pop(order_id)
        except KeyError:
            raise OrderNotFoundError(order_id) from None

    def cancel(self, order_id: str) -> Order:
        order = self.remove(order_id)
        order.status = OrderStatus.CANCELED
        return order

    def cancel_all(self) -> List[Order]:
        canceled = []
        for order_id in list(self._pending):
            canceled.append(self.cancel(order_id))
        return canceled

    def crossed(self, price: float) -> List[Order]:
        """Orders the price has reached, earliest submitted first."""
        out = []
        for order in self._pending.values():
            if order.side == OrderSide.BUY and price <= order.price:
                out.append(order)
            elif order.side == OrderSide.SELL and price >= order.price:
                out.append(order)
        return out

    def reserved_cash(self) -> float:
        return sum(o.notional for o in self._pending.values() if o.side == OrderSide.BUY)

    def reserved_coin(self) -> float:
        return sum(o.amount for o in self._pending.values() if o.side == OrderSide.SELL)

    def restore(self, orders: Iterable[Order]) -> None:
        self._pending = OrderedDict()
        for order in orders:
            if order.status != OrderStatus.PENDING:
                logger.warning("Skipping non-pending order %s in snapshot", order.id)
                continue
            self.add(order)

    def to_list(self) -> List[Dict]:
        return [o.as_dict() for o in self._pending.values()]
