"""Connectivity signal consumed by the engine."""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ConnectivitySource(Protocol):
    """Anything that can tell whether the network is reachable right now."""

    @property
    def is_connected(self) -> bool: ...


class NetworkMonitor:
    """
    Connectivity flag owned by the host application.

    The host updates it from its platform reachability callbacks and then
    calls SyncEngine.handle_network_change; the engine only reads it.
    """

    def __init__(self, is_connected: bool = True):
        self._connected = is_connected

    @property
    def is_connected(self) -> bool:
        return self._connected

    def update(self, is_connected: bool) -> bool:
        """Set the flag. Returns True if it changed."""
        changed = is_connected != self._connected
        self._connected = is_connected
        if changed:
            logger.info("Network %s", "available" if is_connected else "lost")
        return changed
