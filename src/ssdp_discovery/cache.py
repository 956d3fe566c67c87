"""
Module providing the cache of discovered services.

The cache is owned by a single thread. Every other thread talks to it by posting
commands to its inbox and waiting on a :class:`concurrent.futures.Future` for the
answer, so deciding whether an announcement needs a descriptor fetch, marking that
fetch as in flight, storing its result and handing services to readers never
interleave.
"""

import logging
import threading
import time
from collections import deque, namedtuple
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Callable, Optional

from ssdp_discovery.message import ProtocolMessage

CacheEntry = namedtuple("CacheEntry", ["message", "descriptor"])


def is_newer(message: ProtocolMessage, reference: Optional[ProtocolMessage]) -> bool:
    """
    Whether ``message`` supersedes ``reference`` for the same service.

    A message supersedes another if it expires strictly later or points at a
    different descriptor location.
    """
    if reference is None:
        return True
    return (
        reference.expires_at < message.expires_at
        or reference.location != message.location
    )


@dataclass
class _InFlight:
    # the message the descriptor is being fetched for
    fetched: ProtocolMessage
    # the most recent announcement for the same location
    latest: ProtocolMessage


@dataclass(frozen=True)
class _Command:
    reply: Future = field(default_factory=Future, compare=False)


@dataclass(frozen=True)
class _Offer(_Command):
    message: Optional[ProtocolMessage] = None


@dataclass(frozen=True)
class _Complete(_Command):
    message: Optional[ProtocolMessage] = None
    descriptor: str = ""


@dataclass(frozen=True)
class _Fail(_Command):
    message: Optional[ProtocolMessage] = None


@dataclass(frozen=True)
class _Read(_Command):
    pass


@dataclass(frozen=True)
class _Snapshot(_Command):
    pass


@dataclass(frozen=True)
class _Close(_Command):
    pass


class ServiceCache:
    """
    Time-bounded cache of discovered services and the queue of services ready to be read.

    Services go through the following states:

    * unknown: nothing is known about the service;
    * fetching: an announcement was accepted by :meth:`offer`, its descriptor is
      being fetched;
    * cached: :meth:`complete` stored the descriptor, and the service is queued
      for a reader;
    * expired: the ``max-age`` of the last accepted announcement has passed. The
      entry is removed the next time a reader is served.

    :param clock: Function returning the current wall-clock time, in seconds since the epoch.
    :param logger: Logger to report to. Defaults to the logger of this module.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or time.time

        # only touched by the cache thread
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, _InFlight] = {}
        self._ready: deque[str] = deque()
        self._waiting_readers: deque[Future] = deque()

        self._inbox: Queue = Queue()
        self._inbox_lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name="ssdp-service-cache", daemon=True
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: ProtocolMessage) -> bool:
        """
        Consider an announcement for the cache.

        If the message supersedes both the cached entry and any fetch in flight for
        the same service, it is marked as being fetched and the caller is expected
        to fetch its descriptor, then report with :meth:`complete` or :meth:`fail`.
        A message for the same location as a fetch already in flight only extends
        the expiry that fetch will be stored with.

        :param message: The received announcement.
        :return: Whether the caller should fetch the descriptor of the message.
        """
        return self._call(_Offer(message=message), default=False)

    def complete(self, message: ProtocolMessage, descriptor: str) -> bool:
        """
        Store the descriptor fetched for a message accepted by :meth:`offer`, and
        queue the service for a reader.

        :return: Whether the result was stored. Results of fetches superseded by a
            newer announcement are discarded.
        """
        return self._call(
            _Complete(message=message, descriptor=descriptor), default=False
        )

    def fail(self, message: ProtocolMessage):
        """
        Report that the descriptor of a message accepted by :meth:`offer` could not
        be fetched. The service goes back to unknown.
        """
        self._call(_Fail(message=message), default=None)

    def snapshot(self) -> dict[str, CacheEntry]:
        """
        Copy of the cached entries, keyed by service identifier. Expired entries
        that have not been pruned yet are included.
        """
        return self._call(_Snapshot(), default={})

    def read(self, timeout: Optional[float] = None) -> Optional[CacheEntry]:
        """
        Wait for the next service ready to be read.

        Services are handed out in the order their descriptors were stored, each to
        a single reader. Entries that expired meanwhile are skipped. Once a service
        is handed out, every expired entry is removed from the cache.

        :param timeout: Time, in seconds, to wait for a service. Waits indefinitely
            by default.
        :return: The cache entry of the service, or ``None`` once the cache is closed.
        :raises Empty: if no service became ready within ``timeout``.
        """
        command = _Read()
        if not self._post(command):
            return None
        try:
            return command.reply.result(timeout)
        except FutureTimeoutError:
            # the request is withdrawn unless the cache thread already answered it
            if command.reply.cancel():
                raise Empty
            return command.reply.result()

    def close(self):
        """
        Wake every waiting reader with ``None`` and stop the cache thread. Later
        calls to :meth:`read` return ``None`` straight away.
        """
        with self._inbox_lock:
            if self._closed:
                return
            self._closed = True
            self._inbox.put(_Close())
        if threading.current_thread() is not self._thread:
            self._thread.join()

    def _post(self, command: _Command) -> bool:
        with self._inbox_lock:
            if self._closed:
                return False
            self._inbox.put(command)
            return True

    def _call(self, command: _Command, default):
        if not self._post(command):
            return default
        return command.reply.result()

    def _run(self):
        handlers = {
            _Offer: self._handle_offer,
            _Complete: self._handle_complete,
            _Fail: self._handle_fail,
            _Read: self._handle_read,
            _Snapshot: self._handle_snapshot,
        }
        while True:
            command = self._inbox.get()
            if isinstance(command, _Close):
                self._handle_close()
                return
            try:
                handlers[type(command)](command)
            except Exception as e:
                self.logger.exception(f"Service cache failed to handle {command}")
                if not command.reply.done():
                    command.reply.set_exception(e)

    def _handle_offer(self, command: _Offer):
        message = command.message
        service_id = message.service_id
        cached = self._entries.get(service_id)
        if not is_newer(message, cached.message if cached is not None else None):
            command.reply.set_result(False)
            return

        in_flight = self._in_flight.get(service_id)
        if in_flight is not None and in_flight.latest.location == message.location:
            if is_newer(message, in_flight.latest):
                in_flight.latest = message
            command.reply.set_result(False)
            return

        self._in_flight[service_id] = _InFlight(fetched=message, latest=message)
        command.reply.set_result(True)

    def _handle_complete(self, command: _Complete):
        service_id = command.message.service_id
        in_flight = self._in_flight.get(service_id)
        if in_flight is None or in_flight.fetched is not command.message:
            self.logger.debug(
                f"Discarded descriptor of {service_id}, a newer announcement superseded it"
            )
            command.reply.set_result(False)
            return

        del self._in_flight[service_id]
        # update before notify, so a queued identifier always has an entry
        self._entries[service_id] = CacheEntry(in_flight.latest, command.descriptor)
        self._ready.append(service_id)
        command.reply.set_result(True)
        self._serve_readers()

    def _handle_fail(self, command: _Fail):
        service_id = command.message.service_id
        in_flight = self._in_flight.get(service_id)
        if in_flight is not None and in_flight.fetched is command.message:
            del self._in_flight[service_id]
        command.reply.set_result(None)

    def _handle_read(self, command: _Read):
        # forget readers that timed out while nothing was ready
        self._waiting_readers = deque(
            reply for reply in self._waiting_readers if not reply.cancelled()
        )
        self._waiting_readers.append(command.reply)
        self._serve_readers()

    def _handle_snapshot(self, command: _Snapshot):
        command.reply.set_result(dict(self._entries))

    def _handle_close(self):
        while self._waiting_readers:
            reply = self._waiting_readers.popleft()
            if reply.set_running_or_notify_cancel():
                reply.set_result(None)
        # commands posted before the close are answered first by the queue order
        self._entries.clear()
        self._in_flight.clear()
        self._ready.clear()

    def _serve_readers(self):
        while self._waiting_readers:
            service_id, entry = self._pop_ready_entry()
            if entry is None:
                return
            reply = self._pop_waiting_reader()
            if reply is None:
                self._ready.appendleft(service_id)
                return
            reply.set_result(entry)
            self._prune_expired()

    def _pop_ready_entry(self):
        now = self._clock()
        while self._ready:
            service_id = self._ready.popleft()
            entry = self._entries.get(service_id)
            if entry is not None and not entry.message.is_expired(now):
                return service_id, entry
        return None, None

    def _pop_waiting_reader(self) -> Optional[Future]:
        while self._waiting_readers:
            reply = self._waiting_readers.popleft()
            # readers that timed out have cancelled their request
            if reply.set_running_or_notify_cancel():
                return reply
        return None

    def _prune_expired(self):
        now = self._clock()
        expired = [
            service_id
            for service_id, entry in self._entries.items()
            if entry.message.is_expired(now)
        ]
        for service_id in expired:
            del self._entries[service_id]
        if expired:
            self.logger.debug(f"Removed expired services: {', '.join(expired)}")
