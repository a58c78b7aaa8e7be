# =============================================================================
# casefile_core/offline/connection_manager.py
# Connectivity detection for the field client
# =============================================================================
"""
ConnectionManager - tracks whether the remote system can be reached.

Features:
- Internet probe plus a probe of the configured gateway host
- Periodic health checks on a background thread
- Callbacks on status changes (the sync dispatcher pushes on reconnect)
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Internet and gateway host reachable
    OFFLINE = "offline"         # No connectivity
    DEGRADED = "degraded"       # Internet OK but gateway host unavailable
    CHECKING = "checking"
    UNKNOWN = "unknown"


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    internet_available: bool = False
    remote_available: bool = False
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class ConnectionManager:
    """
    Usage:
        manager = ConnectionManager(settings.remote_url)
        manager.initialize()
        if manager.is_online:
            ...
    """

    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5

    PROBE_HOSTS = (
        ("8.8.8.8", 53),
        ("1.1.1.1", 53),
    )

    def __init__(self, remote_url: Optional[str] = None):
        self.remote_url = remote_url or ""
        self._state = ConnectionState()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._initialized = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    def initialize(self, start_monitoring: bool = True) -> None:
        """
        Run a first check and optionally start background monitoring.

        Args:
            start_monitoring: Whether to start the monitor thread
        """
        if self._initialized:
            return

        self.check_connection()
        if start_monitoring:
            self.start_monitoring()

        self._initialized = True
        logger.info(f"ConnectionManager initialized. Status: {self._state.status.value}")

    def check_connection(self) -> ConnectionState:
        """Probe connectivity and update state; callbacks fire on a status change."""
        old_status = self._state.status
        self._state.status = ConnectionStatus.CHECKING
        self._state.last_check = datetime.now()

        internet_ok = self._check_internet()
        remote_ok = internet_ok and self._check_remote()
        self._state.internet_available = internet_ok
        self._state.remote_available = remote_ok

        if internet_ok and remote_ok:
            new_status = ConnectionStatus.ONLINE
        elif internet_ok:
            new_status = ConnectionStatus.DEGRADED
        else:
            new_status = ConnectionStatus.OFFLINE
        self._set_status(new_status, old_status)
        return self._state

    def _set_status(self, new_status: ConnectionStatus, old_status: ConnectionStatus) -> None:
        self._state.status = new_status
        if new_status == ConnectionStatus.ONLINE:
            self._state.last_online = datetime.now()
            self._state.consecutive_failures = 0
            self._state.error_message = None
        else:
            self._state.consecutive_failures += 1

        if old_status != new_status:
            logger.info(f"Connection status changed: {old_status.value} -> {new_status.value}")
            self._notify_callbacks()

    def _probe(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.CONNECTION_TIMEOUT):
                return True
        except OSError as e:
            logger.debug(f"Probe {host}:{port} failed: {e}")
            return False

    def _check_internet(self) -> bool:
        return any(self._probe(host, port) for host, port in self.PROBE_HOSTS)

    def _check_remote(self) -> bool:
        if not self.remote_url:
            # Nothing configured to reach; internet access is all we can test
            return True
        parsed = urlparse(self.remote_url)
        if not parsed.hostname:
            self._state.error_message = f"Invalid remote URL: {self.remote_url}"
            return False
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return self._probe(parsed.hostname, port)

    # =========================================================================
    # MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor",
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        while not self._stop_monitoring.is_set():
            interval = self.CHECK_INTERVAL_ONLINE if self.is_online else self.CHECK_INTERVAL_OFFLINE
            if self._stop_monitoring.wait(timeout=interval):
                break
            self.check_connection()

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in self._callbacks:
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def force_offline(self) -> None:
        """Force offline mode (user preference or tests)."""
        self._state.internet_available = False
        self._state.remote_available = False
        self._set_status(ConnectionStatus.OFFLINE, self._state.status)
        logger.info("Forced offline mode")

    def force_online(self) -> None:
        """Mark the remote as reachable without probing."""
        self._state.internet_available = True
        self._state.remote_available = True
        self._set_status(ConnectionStatus.ONLINE, self._state.status)

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "internet": self._state.internet_available,
            "remote": self._state.remote_available,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
