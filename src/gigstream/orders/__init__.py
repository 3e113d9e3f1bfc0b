"""Order lifecycle — status transitions and disputes."""

from gigstream.orders.disputes import DisputeHandler
from gigstream.orders.state_machine import OrderAction, OrderStateMachine

__all__ = ["DisputeHandler", "OrderAction", "OrderStateMachine"]
