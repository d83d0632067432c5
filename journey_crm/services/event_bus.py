"""
Journey CRM - Event Bus

In-process publish/subscribe between the core and the messaging layer.
Handlers are awaited in subscription order; a failing handler propagates
to the publisher.
"""

import inspect
import logging
from typing import Callable, List

logger = logging.getLogger("event_bus")


class EventBus:

    def __init__(self):
        self._handlers: List[Callable] = []

    def subscribe(self, handler: Callable):
        """handler(event) - sync or async"""
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Callable):
        self._handlers.remove(handler)

    async def publish(self, event):
        logger.debug(f"[EVENT] {type(event).__name__} -> {len(self._handlers)} handler(s)")
        for handler in list(self._handlers):
            result = handler(event)
            if inspect.isawaitable(result):
                await result


class RecordingEventBus(EventBus):
    """Keeps every published event in `events` (admin tooling, tests)"""

    def __init__(self):
        super().__init__()
        self.events = []

    async def publish(self, event):
        self.events.append(event)
        await super().publish(event)
