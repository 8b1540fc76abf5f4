# Overview: Explicit publish/subscribe channel for order/lock/settlement changes.

import logging
from collections import defaultdict
from types import MethodType
from typing import Callable, DefaultDict, List, Union
import weakref

logger = logging.getLogger(__name__)

LOCKS_CHANGED = "locks.changed"
LOCKS_REFRESHED = "locks.refreshed"
ORDER_SAVED = "order.saved"
ORDER_CANCELLED = "order.cancelled"
SETTLEMENT_COMPLETED = "settlement.completed"


class EventBus:
    """Minimal pub/sub helper that avoids retaining dead listeners."""

    __slots__ = ("_subs",)

    def __init__(self) -> None:
        self._subs: DefaultDict[str, List[Union[Callable[..., None], weakref.WeakMethod]]] = defaultdict(list)

    def subscribe(self, event_name: str, callback: Callable[..., None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        listeners = self._subs[event_name]
        if isinstance(callback, MethodType):
            listeners.append(weakref.WeakMethod(callback))
        else:
            listeners.append(callback)
        return lambda: self.unsubscribe(event_name, callback)

    def unsubscribe(self, event_name: str, callback: Callable[..., None]) -> None:
        listeners = self._subs.get(event_name)
        if not listeners:
            return
        kept = []
        for cb in listeners:
            target = cb() if isinstance(cb, weakref.WeakMethod) else cb
            if target is None or target == callback:
                continue
            kept.append(cb)
        self._subs[event_name] = kept

    def emit(self, event_name: str, **payload) -> None:
        """
        Deliver *payload* to every live listener.

        Publishers emit after their changes are committed, so a failing
        listener is logged and does not abort delivery to the others.
        """
        listeners = self._subs.get(event_name)
        if not listeners:
            return

        alive: List[Union[Callable[..., None], weakref.WeakMethod]] = []
        for cb in listeners:
            if isinstance(cb, weakref.WeakMethod):
                fn = cb()
                if fn is None:
                    continue
            else:
                fn = cb
            alive.append(cb)
            try:
                fn(**payload)
            except Exception:
                logger.exception("Listener for %s failed", event_name)
        self._subs[event_name] = alive

    def clear(self) -> None:
        self._subs.clear()


bus = EventBus()
