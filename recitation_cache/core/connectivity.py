"""
Network connectivity monitoring.

Tracks whether the content API is reachable, either by polling a probe on a
background thread or from state pushed by the host platform. Any failure to
determine connectivity is reported as offline.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional

import aiohttp

from ..models.records import ConnectivityState
from ..utils.logger import get_logger
from ..utils.observers import Subscribers, Unsubscribe
from .exceptions import InvalidArgumentError

logger = get_logger(__name__)

Probe = Callable[[], bool]

DEFAULT_PROBE_URL = "https://api.alquran.cloud/v1/meta"


class HttpConnectivityProbe:
    """
    Probe reachability with a lightweight HTTP HEAD request.

    Any response below 500 counts as online; timeouts, DNS failures and
    server errors count as offline.

    Example:
        >>> probe = HttpConnectivityProbe()
        >>> monitor = ConnectivityMonitor(probe=probe)
    """

    def __init__(self, url: str = DEFAULT_PROBE_URL, timeout: float = 5.0):
        if not url or not url.strip():
            raise InvalidArgumentError("Probe URL cannot be empty")
        if timeout <= 0:
            raise InvalidArgumentError(f"Probe timeout must be positive, got {timeout}")
        self.url = url.strip()
        self.timeout = timeout

    async def check(self) -> bool:
        """
        Perform one reachability check.

        Returns:
            True if the host answered
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.head(self.url, allow_redirects=True) as response:
                    return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Connectivity probe to {self.url} failed: {e}")
            return False

    def __call__(self) -> bool:
        return asyncio.run(self.check())


class ConnectivityMonitor:
    """
    Observe online/offline transitions.

    Features:
    - Optional background polling of a probe callable
    - Push updates through report() for platform events
    - At-most-once notification per actual transition
    - Fail-safe: unknown connectivity is reported as OFFLINE
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        interval: float = 30.0,
        initial_state: ConnectivityState = ConnectivityState.OFFLINE,
    ):
        """
        Initialize connectivity monitor.

        Args:
            probe: Callable returning True when the network is reachable
            interval: Seconds between probes while running
            initial_state: State reported before the first probe or report
        """
        if interval <= 0:
            raise InvalidArgumentError(f"Polling interval must be positive, got {interval}")

        self.probe = probe
        self.interval = interval
        self._state = ConnectivityState(initial_state)
        self._lock = threading.Lock()
        self._subscribers: Subscribers[ConnectivityState] = Subscribers("connectivity")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def current_state(self) -> ConnectivityState:
        """Last known connectivity state."""
        with self._lock:
            return self._state

    @property
    def is_online(self) -> bool:
        return self.current_state() is ConnectivityState.ONLINE

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def on_change(self, handler: Callable[[ConnectivityState], None]) -> Unsubscribe:
        """
        Register a callback invoked once per actual transition.

        Returns:
            Callable that removes the handler again
        """
        return self._subscribers.subscribe(handler)

    subscribe = on_change

    def unsubscribe(self, handler: Callable[[ConnectivityState], None]) -> None:
        self._subscribers.unsubscribe(handler)

    def report(self, state: ConnectivityState) -> bool:
        """
        Push a connectivity observation.

        Args:
            state: Observed state

        Returns:
            True if the state changed (handlers were notified)
        """
        state = ConnectivityState(state)
        with self._lock:
            if state is self._state:
                return False
            previous, self._state = self._state, state

        logger.info(f"Connectivity changed: {previous.value} -> {state.value}")
        self._subscribers.notify(state)
        return True

    def check_now(self) -> ConnectivityState:
        """
        Run the probe once and report its result.

        Returns:
            The resulting state (OFFLINE when no probe is configured or it fails)
        """
        if self.probe is None:
            return self.current_state()

        try:
            online = bool(self.probe())
        except Exception as e:
            logger.warning(f"Connectivity probe failed, assuming offline: {e}")
            online = False

        state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        self.report(state)
        return state

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check_now()
            self._stop_event.wait(self.interval)

    def start(self) -> None:
        """Start background polling (no-op without a probe or when running)."""
        if self.probe is None:
            logger.debug("No connectivity probe configured; relying on reported state")
            return
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="connectivity-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Connectivity monitor started (every {self.interval:g}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop background polling and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Connectivity monitor stopped")


# Process-wide monitor instance
_monitor: Optional[ConnectivityMonitor] = None
_monitor_lock = threading.Lock()


def init_monitor(
    probe: Optional[Probe] = None,
    interval: float = 30.0,
    start: bool = True,
) -> ConnectivityMonitor:
    """
    Create the process-wide connectivity monitor.

    Calling it again returns the existing monitor unchanged.

    Args:
        probe: Reachability probe (defaults to HttpConnectivityProbe)
        interval: Seconds between probes
        start: Whether to start background polling immediately

    Returns:
        The process-wide monitor
    """
    global _monitor
    with _monitor_lock:
        if _monitor is None:
            _monitor = ConnectivityMonitor(
                probe=probe if probe is not None else HttpConnectivityProbe(),
                interval=interval,
            )
            if start:
                _monitor.start()
        return _monitor


def get_monitor() -> ConnectivityMonitor:
    """
    Return the process-wide monitor.

    Raises:
        RuntimeError: If init_monitor() has not been called
    """
    if _monitor is None:
        raise RuntimeError(
            "Connectivity monitor not initialized. Call init_monitor() first."
        )
    return _monitor


def shutdown_monitor() -> None:
    """Stop and discard the process-wide monitor."""
    global _monitor
    with _monitor_lock:
        if _monitor is not None:
            _monitor.stop()
            _monitor._subscribers.clear()
            _monitor = None
