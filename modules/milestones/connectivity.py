"""Online/offline signal injected into the update manager."""

from __future__ import annotations

from typing import Callable

import structlog

logger = structlog.get_logger()

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Holds the current connectivity state and notifies listeners on transitions.

    Whatever knows about the network (an OS hook, a health check, a test)
    calls :meth:`set_online`; listeners only fire when the state changes.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error("connectivity_listener_error", error=str(e), exc_info=True)
