from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class Signal:
    """Listener registry for pipeline events.

    Listeners run synchronously on the thread that calls ``emit`` (the
    pipeline thread), once per event.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def connect(self, listener: Callable[..., Any]) -> Callable[..., Any]:
        with self._lock:
            self._listeners.append(listener)
        return listener

    def disconnect(self, listener: Callable[..., Any]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, *args: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(*args)
            except Exception as exc:
                logger.warning("listener for %s failed: %s", self.name, exc)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class EventRecorder:
    """Collects emitted events so a consumer thread can drain them later."""

    def __init__(self, *signals: Signal):
        self._events: list[tuple[str, tuple]] = []
        self._lock = threading.Lock()
        for sig in signals:
            self.watch(sig)

    def watch(self, sig: Signal) -> None:
        def _record(*args: Any, _name: str = sig.name) -> None:
            with self._lock:
                self._events.append((_name, args))

        sig.connect(_record)

    def drain(self) -> list[tuple[str, tuple]]:
        with self._lock:
            events, self._events = self._events, []
        return events

    def last(self, name: str) -> Optional[tuple]:
        with self._lock:
            for ev_name, args in reversed(self._events):
                if ev_name == name:
                    return args
        return None
