"""
In-process event bus delivering typed events (e.g. message_received) to subscribers.
"""
import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe('message_received', dispatcher.handle_event)
        await bus.publish('message_received', {'channel': 'whatsapp', 'from': '+55...'})
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable):
        """
        Args:
            event_name: Event to listen to
            handler: Callable (sync or async) receiving (event_name, payload)
        """
        self.subscribers.setdefault(event_name, []).append(handler)
        logger.debug(f"Added subscriber to {event_name}")

    def unsubscribe(self, event_name: str, handler: Callable):
        if event_name in self.subscribers:
            self.subscribers[event_name] = [h for h in self.subscribers[event_name] if h != handler]

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> List[Any]:
        """
        Deliver an event to every subscriber, in subscription order.

        Every handler runs even if an earlier one fails; the first failure is
        re-raised afterwards.

        Returns:
            Handler return values
        """
        results = []
        errors = []
        for handler in list(self.subscribers.get(event_name, [])):
            try:
                result = handler(event_name, payload)
                if inspect.isawaitable(result):
                    result = await result
                results.append(result)
            except Exception as e:
                logger.exception(f"Error in subscriber handler for {event_name}: {e}")
                errors.append(e)

        if errors:
            raise errors[0]
        return results
