"""Tenant event emission.

Governance services receive an ``EventSink`` at construction and call
``emit`` for noteworthy decisions. ``EventSystem`` is the in-process
implementation; handlers are awaited in subscription order and their failures
are logged, never propagated into the governance call that emitted.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

SOD_CRITICAL_VIOLATION = "sod.critical_violation"
ACCESS_REQUEST_HIGH_RISK = "access_request.high_risk"
ACCESS_REQUEST_OVERDUE = "access_request.overdue"
ANOMALY_DETECTED = "anomaly.detected"
JIT_HIGH_RISK_REQUEST = "jit_access.high_risk_request"
JIT_AUTO_REVOKED = "jit_access.auto_revoked"

EventHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class EventSink(ABC):
    """Outbound hook consumed by an external policy/notification engine."""

    @abstractmethod
    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Publish an event. Payloads always carry ``tenant_id``."""
        pass


class EventSystem(EventSink):
    """In-process event dispatcher with per-event subscriptions."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: List[EventHandler] = []
        self.event_counts: Dict[str, int] = defaultdict(int)

    def on(self, event_name: str, handler: EventHandler) -> None:
        """Subscribe to one event name, or to every event with ``"*"``."""
        if event_name == "*":
            self._wildcard_handlers.append(handler)
        else:
            self._handlers[event_name].append(handler)

    def off(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._wildcard_handlers if event_name == "*" else self._handlers[event_name]
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info("Emitting event %s for tenant %s", event_name, payload.get("tenant_id"))
        self.event_counts[event_name] += 1

        for handler in [*self._handlers.get(event_name, []), *self._wildcard_handlers]:
            try:
                result = handler(event_name, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in event handler for %s", event_name)

    def get_statistics(self) -> Dict[str, int]:
        return dict(self.event_counts)


class NullEventSink(EventSink):
    """Sink that drops every event."""

    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.debug("Dropping event %s", event_name)
