import logging
import math

from strategy.errors import ValidationError
from strategy.execution_types import Order, OrderMode, OrderSide


logger = logging.getLogger(__name__)

# Float slack when comparing a cost against a balance it exactly equals.
BALANCE_EPSILON = 1e-9


class OrderValidator:
    """Pre-trade checks. Balances passed in are already net of pending-order reservations."""

    def validate(self, order: Order, available_cash: float, available_coin: float) -> None:
        if not math.isfinite(order.amount) or order.amount <= 0:
            raise ValidationError(ValidationError.AMOUNT, "Amount must be greater than zero.")

        if order.mode == OrderMode.LIMIT and (not math.isfinite(order.price) or order.price <= 0):
            raise ValidationError(ValidationError.PRICE, "Limit price required.")
        if order.mode == OrderMode.MARKET and (not math.isfinite(order.price) or order.price <= 0):
            raise ValidationError(ValidationError.PRICE, "No live price available yet.")

        if order.side == OrderSide.BUY and available_cash + BALANCE_EPSILON < order.notional:
            logger.info(
                "Rejected buy %s: cost %.2f exceeds available cash %.2f",
                order.id,
                order.notional,
                available_cash,
            )
            raise ValidationError(ValidationError.INSUFFICIENT_CASH, "Insufficient cash.")

        if order.side == OrderSide.SELL and available_coin + BALANCE_EPSILON < order.amount:
            logger.info(
                "Rejected sell %s: amount %s exceeds available coin %s",
                order.id,
                order.amount,
                available_coin,
            )
            raise ValidationError(ValidationError.INSUFFICIENT_COIN, "Insufficient coin balance.")
