# series/domain/dispatcher.py
"""
Synchronous, in-process event bus for the series app.

    from series.domain.dispatcher import register_handler, emit

    @register_handler(SeriesNumberAllocated)
    def audit(event): ...

    emit(SeriesNumberAllocated(...))

A handler registered for a base class (e.g. DomainEvent) also receives
every subclass event. Handlers run in registration order, most specific
event class first.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Type

from .events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], None]

_registry: Dict[Type[DomainEvent], List[Handler]] = {}
_registry_lock = threading.Lock()


def register_handler(event_type: Type[DomainEvent], func: Handler = None):
    """Subscribe `func` to `event_type`; usable as a decorator. Idempotent."""

    def subscribe(handler: Handler) -> Handler:
        with _registry_lock:
            subscribers = _registry.setdefault(event_type, [])
            if handler not in subscribers:
                subscribers.append(handler)
        return handler

    return subscribe if func is None else subscribe(func)


def unregister_handler(event_type: Type[DomainEvent], func: Handler) -> None:
    with _registry_lock:
        subscribers = _registry.get(event_type)
        if subscribers and func in subscribers:
            subscribers.remove(func)


def handlers_for(event_type: Type[DomainEvent]) -> List[Handler]:
    with _registry_lock:
        found: List[Handler] = []
        for klass in event_type.__mro__:
            for handler in _registry.get(klass, ()):
                if handler not in found:
                    found.append(handler)
        return found


def emit(event: DomainEvent) -> int:
    """
    Deliver `event` to its subscribers and return how many ran cleanly.
    An exception in one subscriber is logged with its traceback; the
    remaining subscribers still run.
    """
    delivered = 0
    for handler in handlers_for(type(event)):
        try:
            handler(event)
        except Exception:
            logger.exception(
                "%s subscriber %s failed",
                type(event).__name__,
                getattr(handler, "__qualname__", repr(handler)),
            )
        else:
            delivered += 1
    return delivered
