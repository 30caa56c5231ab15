import math
from dataclasses import dataclass, asdict
from typing import Dict, Iterable

from strategy.execution_types import Trade


@dataclass(frozen=True)
class TradeStats:
    count: int = 0
    wins: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    best: float = 0.0
    worst: float = 0.0

    @property
    def win_rate_pct(self) -> int:
        # half-up, 12.5% shows as 13%
        return int(math.floor(self.win_rate * 100 + 0.5)) if self.count else 0

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['win_rate_pct'] = self.win_rate_pct
        return data


def compute_stats(history: Iterable[Trade]) -> TradeStats:
    pnls = [t.pnl for t in history]
    if not pnls:
        return TradeStats()
    wins = sum(1 for p in pnls if p > 0)
    return TradeStats(
        count=len(pnls),
        wins=wins,
        win_rate=wins / len(pnls),
        total_pnl=sum(pnls),
        best=max(pnls),
        worst=min(pnls),
    )
