import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional

from ingest.websocket_client import WebSocketClient

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[None]]


class MarketDataManager:
    """Route feed events to registered async handlers, isolating handler failures."""

    _WS_EVENT_MAP = {
        'trade': 'trade',
        'connected': 'connected',
        'disconnected': 'disconnected',
        'dropped_event': 'drop',
    }

    _ALIASES = {
        'trade_handler': 'trade',
        'connected_handler': 'connected',
        'disconnected_handler': 'disconnected',
        'drop_handler': 'drop',
    }

    def __init__(self, symbol: str, ws_client: WebSocketClient):
        self.symbol = symbol
        self.ws_client = ws_client
        self._handlers: Dict[str, Handler] = {}

        self._register_ws_handlers()

    def _register_ws_handlers(self) -> None:
        for ws_event, logical_name in self._WS_EVENT_MAP.items():
            self.ws_client.register_handler(ws_event, self._build_dispatcher(logical_name))

    def register_handlers(self, **handlers: Optional[Handler]) -> None:
        """Register async callbacks per logical event name."""
        for name, handler in self._normalize_handlers(handlers).items():
            if handler is None:
                continue
            self._handlers[name] = handler

    def _normalize_handlers(self, handlers: Mapping[str, Optional[Handler]]) -> Dict[str, Optional[Handler]]:
        normalized: Dict[str, Optional[Handler]] = {}
        for key, handler in handlers.items():
            logical = self._ALIASES.get(key, key)
            normalized[logical] = handler
        return normalized

    def _build_dispatcher(self, logical_name: str) -> Handler:
        async def _dispatch(*payload):
            handler = self._handlers.get(logical_name)
            if not handler:
                return
            try:
                await handler(*payload)
            except Exception:
                logger.exception("Market data handler %s failed", logical_name)

        return _dispatch

    async def start(self):
        await self.ws_client.start()

    async def stop(self):
        await self.ws_client.stop()
