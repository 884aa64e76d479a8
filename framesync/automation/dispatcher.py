"""FIFO action queue with an in-flight marker, plus event-trigger routing."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Union

from .models import Action, QueuedAction

logger = logging.getLogger(__name__)

TriggerHandler = Callable[[Mapping[str, Any]], Union[None, Awaitable[None]]]


class TriggerDispatcher:
    """Owns the ordered queue of pending actions.

    At most one action is in flight: :meth:`begin_next` refuses to hand out a
    second one until :meth:`complete` is called. Only pending actions can be
    cancelled or cleared.
    """

    def __init__(self) -> None:
        self._pending: Deque[QueuedAction] = deque()
        self._in_flight: Optional[QueuedAction] = None
        self._handlers: Dict[str, List[TriggerHandler]] = {}
        self._running = False

    def enqueue(self, action: Action) -> QueuedAction:
        queued = QueuedAction(action=action)
        self._pending.append(queued)
        logger.debug("Enqueued action", extra={"action_id": queued.action_id, "action_type": action.action_type})
        return queued

    def begin_next(self) -> Optional[QueuedAction]:
        if self._in_flight is not None:
            raise RuntimeError(f"Action {self._in_flight.action_id} is already in flight")
        if not self._pending:
            return None
        self._in_flight = self._pending.popleft()
        return self._in_flight

    def complete(self, action_id: str) -> None:
        if self._in_flight is None or self._in_flight.action_id != action_id:
            raise RuntimeError(f"Action {action_id} is not in flight")
        self._in_flight = None

    @property
    def in_flight(self) -> Optional[QueuedAction]:
        return self._in_flight

    def pending(self) -> List[QueuedAction]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def cancel(self, action_id: str) -> bool:
        for queued in self._pending:
            if queued.action_id == action_id:
                self._pending.remove(queued)
                logger.info("Cancelled pending action", extra={"action_id": action_id})
                return True
        return False

    def clear(self) -> int:
        removed = len(self._pending)
        self._pending.clear()
        if removed:
            logger.info("Cleared pending actions", extra={"removed": removed})
        return removed

    def register_trigger(self, event_type: str, handler: TriggerHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unregister_trigger(self, event_type: str, handler: TriggerHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def registered_events(self) -> List[str]:
        return sorted(event for event, handlers in self._handlers.items() if handlers)

    def start(self) -> None:
        self._running = True
        logger.info("Trigger dispatcher started", extra={"events": self.registered_events()})

    def stop(self) -> None:
        self._running = False
        logger.info("Trigger dispatcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def dispatch(self, event_type: str, payload: Optional[Mapping[str, Any]] = None) -> int:
        """Invoke the handlers registered for ``event_type``; return how many ran."""

        if not self._running:
            logger.info("Dispatcher stopped; ignoring event", extra={"event_type": event_type})
            return 0
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            logger.debug("No triggers registered", extra={"event_type": event_type})
            return 0
        invoked = 0
        for handler in handlers:
            try:
                result = handler(dict(payload or {}))
                if inspect.isawaitable(result):
                    await result
                invoked += 1
            except Exception:
                logger.exception("Trigger handler failed", extra={"event_type": event_type})
        return invoked


__all__ = ["TriggerDispatcher", "TriggerHandler"]
