"""
Module providing the discovery manager, which ties the transport and the service
cache together.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from ssdp_discovery.cache import CacheEntry, ServiceCache
from ssdp_discovery.errors import FetchFailure, MessageParseError, TransportIOError
from ssdp_discovery.message import Method, ProtocolMessage
from ssdp_discovery.transport import Transport
from ssdp_discovery.utilities.cli import CancellationToken

DEFAULT_SEARCH_TARGET = "ssdp:all"
DEFAULT_SEARCH_ATTEMPTS = 3
DEFAULT_FETCH_WORKERS = 8
DEFAULT_POLL_INTERVAL = 0.25


class DiscoveryManager:
    """
    Listens for service announcements, fetches the descriptor of every new or
    refreshed service, and hands discovered services to consumers.

    .. code::

        with DiscoveryManager() as manager:
            manager.start()
            manager.search("upnp:rootdevice")
            while (entry := manager.read()) is not None:
                message, descriptor = entry
                print(message.location)

    :param transport: Transport to receive and send discovery traffic with. A
        :class:`Transport` on the standard multicast group is created by default.
        The transport is opened by :meth:`start` if needed, and closed by
        :meth:`stop` only if the manager opened it.
    :param fetch_workers: Maximum number of descriptors fetched concurrently.
    :param poll_interval: Interval, in seconds, at which the receive loop checks for
        cancellation while no datagram arrives.
    :param clock: Function returning the current wall-clock time, used to expire
        cache entries.
    :param logger: Logger to report to. Defaults to the logger of this module.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        fetch_workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.transport = transport if transport is not None else Transport(logger=logger)
        self.poll_interval = (
            poll_interval if poll_interval is not None else DEFAULT_POLL_INTERVAL
        )
        self._opened_transport = False

        self._cache = ServiceCache(clock=clock, logger=logger)
        self._fetch_pool = ThreadPoolExecutor(
            max_workers=fetch_workers or DEFAULT_FETCH_WORKERS,
            thread_name_prefix="ssdp-fetch",
        )
        self._cancellation = CancellationToken()
        self._cancellation.subscribe_cancellation(self._cache.close)
        self._receive_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return (
            self._receive_thread is not None
            and self._receive_thread.is_alive()
            and not self._cancellation.is_cancelled
        )

    def start(self):
        """
        Start listening for discovery traffic in the background.

        :raises TransportIOError: if the transport cannot be opened.
        :raises RuntimeError: if the manager is already started, or was stopped.
        """
        with self._lock:
            if self._cancellation.is_cancelled:
                raise RuntimeError("Discovery manager has been stopped.")
            if self._receive_thread is not None:
                raise RuntimeError("Discovery manager already running!")
            if not self.transport.is_open:
                self.transport.open()
                self._opened_transport = True
            self._receive_thread = threading.Thread(
                target=self._receive_loop, name="ssdp-receive", daemon=True
            )
            self._receive_thread.start()

    def stop(self):
        """
        Stop the manager.

        Every reader waiting in :meth:`read` is woken with ``None``, the receive loop
        and the descriptor fetches that have not started yet are cancelled, and the
        transport is closed if the manager opened it. Fetches already running finish
        in the background, and their results are dropped.
        """
        self._cancellation.cancel()
        self._fetch_pool.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            receive_thread = self._receive_thread
        if receive_thread is not None and receive_thread is not threading.current_thread():
            receive_thread.join()
        if self._opened_transport:
            self.transport.close()
            self._opened_transport = False

    def search(
        self,
        target: str = DEFAULT_SEARCH_TARGET,
        attempts: int = DEFAULT_SEARCH_ATTEMPTS,
    ) -> threading.Thread:
        """
        Send search probes in the background.

        Probes are sent back to back. Replies are not waited for: they arrive through
        the receive loop like any other announcement.

        :param target: The search target, e.g. ``ssdp:all`` or ``upnp:rootdevice``.
        :param attempts: Number of probes to send.
        :return: The thread sending the probes.
        """
        thread = threading.Thread(
            target=self._send_searches,
            args=(target, attempts),
            name="ssdp-search",
            daemon=True,
        )
        thread.start()
        return thread

    def read(self, timeout: Optional[float] = None) -> Optional[CacheEntry]:
        """
        Wait for the next discovered service.

        Services are handed out in the order they were discovered, each to a single
        reader. Once a service is handed out, expired services are removed from the
        cache.

        :param timeout: Time, in seconds, to wait. Waits indefinitely by default.
        :return: The ``(message, descriptor)`` pair of the service, or ``None`` once
            the manager is stopped.
        :raises queue.Empty: if no service was discovered within ``timeout``.
        """
        return self._cache.read(timeout)

    def services(self) -> dict[str, CacheEntry]:
        """
        The services currently cached, keyed by their unique service name (USN).
        """
        return self._cache.snapshot()

    def handle_message(self, message: ProtocolMessage):
        """
        Consider a received message, and fetch its descriptor in the background if
        it announces a new or changed service. Search probes are ignored.
        """
        if message.method == Method.SEARCH:
            return
        if not self._cache.offer(message):
            self.logger.debug(f"Dropped {message}, cache still valid")
            return
        try:
            self._fetch_pool.submit(self._fetch_descriptor, message)
        except RuntimeError:
            # the pool refuses work once the manager is stopped
            self._cache.fail(message)

    def _receive_loop(self):
        while not self._cancellation.is_cancelled:
            try:
                message = self.transport.receive(timeout=self.poll_interval)
            except MessageParseError as e:
                self.logger.debug(f"Dropped datagram: {e}")
                continue
            except TransportIOError as e:
                if not self._cancellation.is_cancelled:
                    self.logger.error(f"Discovery receive loop stopped: {e}")
                return
            if message is not None:
                self.handle_message(message)

    def _fetch_descriptor(self, message: ProtocolMessage):
        try:
            descriptor = self.transport.fetch_descriptor(message)
        except FetchFailure as e:
            self.logger.warning(
                f"Failed to fetch the descriptor of {message.service_id}: {e}"
            )
            self._cache.fail(message)
            return
        if self._cache.complete(message, descriptor):
            self.logger.info(f"Discovered {message}")

    def _send_searches(self, target: str, attempts: int):
        for _ in range(attempts):
            if self._cancellation.is_cancelled:
                return
            try:
                self.transport.send_search(target)
            except TransportIOError as e:
                self.logger.warning(f"Failed to send search for {target}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
