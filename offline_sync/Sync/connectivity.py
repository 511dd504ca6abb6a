# connectivity.py
# Description: Connectivity monitor interface and a manually driven implementation.
#
# Imports
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:


@dataclass(frozen=True)
class ConnectivityChange:
    was_online: bool
    is_online: bool

    @property
    def came_online(self) -> bool:
        return self.is_online and not self.was_online


ConnectivityListener = Callable[[ConnectivityChange], None]


class ConnectivityMonitor(ABC):
    """Source of the current online/offline state and of its transitions."""

    @property
    @abstractmethod
    def is_online(self) -> bool:
        ...

    @abstractmethod
    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Registers `listener` for transitions. Returns a function that unsubscribes it."""


class ManualConnectivityMonitor(ConnectivityMonitor):
    """
    Connectivity state set explicitly by the application (an "offline mode"
    switch) or by tests. Listeners are called synchronously, on the thread that
    changes the state, and only when the state actually changes.
    """

    def __init__(self, online: bool = True):
        self._online = bool(online)
        self._listeners: List[ConnectivityListener] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return _unsubscribe

    def set_online(self, online: bool) -> bool:
        """Sets the state. Returns True if it changed."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            change = ConnectivityChange(was_online=self._online, is_online=online)
            self._online = online
            listeners = list(self._listeners)

        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in listeners:
            try:
                listener(change)
            except Exception as e:
                logger.opt(exception=True).error(f"Connectivity listener {listener!r} failed: {e}")
        return True

    def toggle(self) -> bool:
        """Flips the state and returns the new one."""
        self.set_online(not self._online)
        return self._online

#
# End of connectivity.py
########################################################################################################################
