import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)


# Residue left by float subtraction when an order spends an entire balance.
DUST = 1e-9


def _floor_dust(value: float) -> float:
    return 0.0 if abs(value) < DUST else value


@dataclass
class Balances:
    cash: float
    coin: float


class PaperPortfolio:
    """Cash/coin ledger for the simulator, with P&L measured against a fixed baseline.

    Only the execution engine moves balances; everything else reads.
    """

    def __init__(self, initial_cash: float = 10000.0, baseline: Optional[float] = None) -> None:
        self.initial_cash = float(initial_cash)
        self.baseline = float(baseline if baseline is not None else initial_cash)
        self._balances = Balances(cash=self.initial_cash, coin=0.0)

    @property
    def cash(self) -> float:
        return self._balances.cash

    @property
    def coin(self) -> float:
        return self._balances.coin

    def apply_buy(self, price: float, amount: float) -> None:
        self._balances.cash = _floor_dust(self._balances.cash - price * amount)
        self._balances.coin += amount

    def apply_sell(self, price: float, amount: float) -> None:
        self._balances.cash += price * amount
        self._balances.coin = _floor_dust(self._balances.coin - amount)

    def record_pnl(self, pnl: float) -> None:
        metrics.record_pnl(pnl)

    def equity(self, price: Optional[float]) -> float:
        return self.cash + self.coin * float(price or 0.0)

    def unrealized_pnl(self, price: Optional[float]) -> float:
        return self.equity(price) - self.baseline

    def mark(self, price: Optional[float]) -> None:
        metrics.update_equity(self.equity(price))
        metrics.update_unrealized_pnl(self.unrealized_pnl(price))

    def reset(self) -> None:
        self._balances = Balances(cash=self.initial_cash, coin=0.0)
        logger.info("Portfolio reset to cash=%.2f", self.initial_cash)

    def restore(self, data: Dict[str, Any]) -> None:
        cash = float(data['cash'])
        coin = float(data['coin'])
        if cash < 0 or coin < 0:
            raise ValueError(f"Negative balances in snapshot: cash={cash} coin={coin}")
        self._balances = Balances(cash=cash, coin=coin)

    def to_dict(self) -> Dict[str, float]:
        return {'cash': self.cash, 'coin': self.coin}
