import itertools
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


class OrderMode(str, Enum):
    MARKET = 'market'
    LIMIT = 'limit'


class OrderSide(str, Enum):
    BUY = 'buy'
    SELL = 'sell'


class OrderStatus(str, Enum):
    PENDING = 'pending'
    FILLED = 'filled'
    CANCELED = 'canceled'


_order_seq = itertools.count(1)


def next_order_id() -> str:
    """Millisecond clock plus a process-local sequence, unique even within one ms."""
    return f"{int(time.time() * 1000)}-{next(_order_seq)}"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Order:
    """Simulator order; market orders fill on submit, limit orders wait for a price cross."""

    mode: OrderMode
    side: OrderSide
    price: float
    amount: float
    id: str = field(default_factory=next_order_id)
    status: OrderStatus = OrderStatus.PENDING
    created_at: int = field(default_factory=now_ms)
    filled_at: Optional[int] = None
    fill_price: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.price * self.amount

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "side": self.side.value,
            "price": self.price,
            "amount": self.amount,
            "status": self.status.value,
            "created_at": self.created_at,
            "filled_at": self.filled_at,
            "fill_price": self.fill_price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Order':
        return cls(
            mode=OrderMode(data["mode"]),
            side=OrderSide(data["side"]),
            price=float(data["price"]),
            amount=float(data["amount"]),
            id=str(data["id"]),
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            created_at=int(data.get("created_at") or 0),
            filled_at=data.get("filled_at"),
            fill_price=data.get("fill_price"),
        )


@dataclass(frozen=True)
class Position:
    entry_price: float
    amount: float
    opened_at: int

    def blend(self, price: float, amount: float) -> 'Position':
        """Average an additional buy into the cost basis."""
        total = self.amount + amount
        entry = (self.entry_price * self.amount + price * amount) / total
        return replace(self, entry_price=entry, amount=total)

    def as_dict(self) -> Dict[str, Any]:
        return {"entry_price": self.entry_price, "amount": self.amount, "opened_at": self.opened_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            entry_price=float(data["entry_price"]),
            amount=float(data["amount"]),
            opened_at=int(data["opened_at"]),
        )


@dataclass(frozen=True)
class Trade:
    opened_at: int
    closed_at: int
    entry_price: float
    exit_price: float
    amount: float
    pnl: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "amount": self.amount,
            "pnl": self.pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Trade':
        return cls(
            opened_at=int(data["opened_at"]),
            closed_at=int(data["closed_at"]),
            entry_price=float(data["entry_price"]),
            exit_price=float(data["exit_price"]),
            amount=float(data["amount"]),
            pnl=float(data["pnl"]),
        )
