import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from strategy.execution_types import Order, Position, Trade


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """Immutable persisted state: balances, pending orders, closed trades and the open position."""

    portfolio: Dict[str, float]
    pending_orders: List[Dict[str, Any]] = field(default_factory=list)
    trade_history: List[Dict[str, Any]] = field(default_factory=list)
    position: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'portfolio': dict(self.portfolio),
            'pending_orders': [dict(o) for o in self.pending_orders],
            'trade_history': [dict(t) for t in self.trade_history],
            'position': dict(self.position) if self.position else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Snapshot':
        """Parse and validate; raises on anything that would poison state."""
        if not isinstance(data, dict):
            raise ValueError("snapshot is not an object")
        portfolio = data['portfolio']
        cash = float(portfolio['cash'])
        coin = float(portfolio['coin'])
        if cash < 0 or coin < 0:
            raise ValueError("negative balances")
        orders = [Order.from_dict(o).as_dict() for o in data.get('pending_orders') or []]
        trades = [Trade.from_dict(t).as_dict() for t in data.get('trade_history') or []]
        position_raw = data.get('position')
        position = Position.from_dict(position_raw).as_dict() if position_raw else None
        return cls(
            portfolio={'cash': cash, 'coin': coin},
            pending_orders=orders,
            trade_history=trades,
            position=position,
        )


class SnapshotStore(Protocol):
    def save(self, snapshot: Snapshot) -> None:
        ...

    def load(self) -> Optional[Snapshot]:
        ...


class JsonSnapshotStore:
    """Single JSON file; writes go to a temp file and are renamed into place."""

    def __init__(self, path):
        self.path = Path(path)

    def save(self, snapshot: Snapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2))
        os.replace(tmp, self.path)

    def load(self) -> Optional[Snapshot]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            return Snapshot.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Snapshot %s unreadable, starting from defaults: %s", self.path, exc)
            return None


class PersistenceCoordinator:
    """Fire-and-forget saves off the event loop.

    Requests are coalesced: while a write is in flight only the newest pending
    snapshot is kept, so writes land in order and never pile up.
    """

    def __init__(self, store: SnapshotStore):
        self.store = store
        self._pending: Optional[Snapshot] = None
        self._task: Optional[asyncio.Task] = None

    def load(self) -> Optional[Snapshot]:
        return self.store.load()

    def request_save(self, snapshot: Snapshot) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(snapshot)
            return
        self._pending = snapshot
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending is not None:
            snapshot, self._pending = self._pending, None
            await asyncio.to_thread(self._write, snapshot)

    def _write(self, snapshot: Snapshot) -> None:
        try:
            self.store.save(snapshot)
        except Exception as exc:
            logger.error("Snapshot persist failed: %s", exc)

    async def flush(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._pending is not None:
            snapshot, self._pending = self._pending, None
            self._write(snapshot)
