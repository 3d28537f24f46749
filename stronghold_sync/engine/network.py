"""Network status signals."""

from __future__ import annotations

import logging
from typing import Callable, List, Protocol

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]
Unsubscribe = Callable[[], None]


class NetworkMonitor(Protocol):
    def is_online(self) -> bool:
        ...

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """Call ``listener`` with the new state on every transition."""


class ManualNetworkMonitor:
    """Online/offline state driven by explicit ``set_online`` calls."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[Listener] = []

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Network %s.", "restored" if online else "lost")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Network listener %r raised.", listener)

    def subscribe(self, listener: Listener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


__all__ = ["Listener", "ManualNetworkMonitor", "NetworkMonitor", "Unsubscribe"]
