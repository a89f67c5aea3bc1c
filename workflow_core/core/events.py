"""Publish/subscribe for execution events."""

import threading
import uuid
from typing import Callable, Dict, Optional, Tuple

from ..models.core import ExecutionEvent
from .logging import get_logger

logger = get_logger(__name__)

EventListener = Callable[[ExecutionEvent], None]


class EventBus:
    """
    Synchronous, thread-safe event fan-out.

    Listeners run on the publishing thread. A failing listener is logged and
    never affects the publisher or the other listeners.
    """

    def __init__(self):
        self._listeners: Dict[str, Tuple[EventListener, Optional[str]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener, execution_id: Optional[str] = None) -> str:
        """
        Register ``listener`` for all events, or only those of ``execution_id``.

        Returns:
            str: Subscription id for :meth:`unsubscribe`
        """
        subscription_id = str(uuid.uuid4())
        with self._lock:
            self._listeners[subscription_id] = (listener, execution_id)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._listeners.pop(subscription_id, None) is not None

    def publish(self, event: ExecutionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener, execution_id in listeners:
            if execution_id is not None and execution_id != event.execution_id:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {event.type.value} on {event.execution_id}: {e}")

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
