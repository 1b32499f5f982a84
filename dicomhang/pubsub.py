"""
Minimal publish/subscribe capability for service events.

Listeners run synchronously, in subscription order. Exceptions raised by a
listener propagate to whoever triggered the broadcast.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    event_name: str
    id: str
    service: "PubSubService"

    def unsubscribe(self) -> bool:
        return self.service.unsubscribe(self.event_name, self.id)


class PubSubService:

    def __init__(self, events: Dict[str, str]):
        self.EVENTS = dict(events)
        self.listeners: Dict[str, Dict[str, Callable[[Any], None]]] = {}

    def subscribe(self, event_name: str, callback: Callable[[Any], None]) -> Subscription:
        """
        Register a listener for an event.

        Args:
            event_name (str): One of the values of ``EVENTS``.
            callback (Callable[[Any], None]): Called with the event payload.

        Returns:
            Subscription: Handle whose ``unsubscribe()`` removes the listener.

        Raises:
            ValueError: If the event is not supported by this service.
        """
        if event_name not in self.EVENTS.values():
            raise ValueError(f"Event '{event_name}' is not supported.")
        listener_id = uuid.uuid4().hex
        self.listeners.setdefault(event_name, {})[listener_id] = callback
        return Subscription(event_name=event_name, id=listener_id, service=self)

    def unsubscribe(self, event_name: str, listener_id: str) -> bool:
        listeners = self.listeners.get(event_name, {})
        if listener_id not in listeners:
            return False
        del listeners[listener_id]
        return True

    def broadcast_event(self, event_name: str, event_data: Any) -> None:
        listeners = list(self.listeners.get(event_name, {}).values())
        logger.debug(f"Broadcasting {event_name} to {len(listeners)} listener(s)")
        for callback in listeners:
            callback(event_data)
