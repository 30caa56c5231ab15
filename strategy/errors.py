from typing import Optional


class SimulatorError(Exception):
    """Base class for recoverable simulator errors."""


class ValidationError(SimulatorError):
    """Order rejected at submission; nothing was changed."""

    AMOUNT = 'amount'
    PRICE = 'price'
    INSUFFICIENT_CASH = 'insufficient_cash'
    INSUFFICIENT_COIN = 'insufficient_coin'

    def __init__(self, kind: str, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


class NoPositionError(SimulatorError):
    def __init__(self, order_id: Optional[str] = None):
        self.order_id = order_id
        super().__init__("No open position to close.")


class OrderNotFoundError(SimulatorError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"No pending order with id {order_id}")


class FeedError(SimulatorError):
    """Malformed or unparseable price update."""

    def __init__(self, reason: str, raw=None):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Bad feed event ({reason})")


class FeedConnectionError(SimulatorError, ConnectionError):
    def __init__(self, message: str = "Live connection required to trade."):
        super().__init__(message)
