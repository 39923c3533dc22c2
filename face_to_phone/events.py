"""
In-process publish/subscribe used to keep decisions apart from recording.
"""
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

FRAUD_ANALYZED = "fraud.analyzed"

Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """Awaits each subscriber in turn; a failing subscriber never affects the publisher."""

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler):
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, topic: str, payload: Any) -> int:
        """
        Deliver a payload to every subscriber of ``topic``.

        Returns:
            Number of subscribers that handled the payload without error
        """
        delivered = 0
        for handler in list(self._subscribers.get(topic, [])):
            try:
                await handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber {getattr(handler, '__qualname__', handler)} failed on {topic}: {str(e)}")
        return delivered
