# event_bus first: portfolio.order_adjustment imports it while this package initializes
from positiondesk.services.event_bus import ORDER_CHANGED, EventBus, EventPublisher
from positiondesk.services.open_orders import OpenOrdersView
from positiondesk.services.option_chain import OptionChainView

__all__ = [
    "ORDER_CHANGED",
    "EventBus",
    "EventPublisher",
    "OpenOrdersView",
    "OptionChainView",
]
