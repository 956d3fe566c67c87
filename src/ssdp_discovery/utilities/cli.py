import threading
from contextlib import contextmanager
from signal import SIGINT, signal

from ssdp_discovery.utilities.event import Event


@contextmanager
def suppress_keyboard_interrupt_as_cancellation():
    """
    Context manager that suppresses KeyboardInterrupt and instead yields a cancellation token that can be polled to
    check if a keyboard interrupt has occurred during the lifetime of the context.
    """
    token = CancellationToken()

    prev_handler = signal(SIGINT, lambda _, __: token.cancel())
    try:
        yield token
    finally:
        signal(SIGINT, prev_handler)


class CancellationToken:
    """
    A flag that can be raised once, from any thread, to ask long running work to finish.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        self._on_cancellation = Event()
        self._lock = threading.Lock()

    def subscribe_cancellation(self, callback):
        """
        Register a callback to run when the token is cancelled, or immediately if it already is.
        """
        with self._lock:
            if not self._cancelled.is_set():
                self._on_cancellation.add_callback(callback)
                return
        callback()

    @property
    def is_cancelled(self):
        """
        Has this token been cancelled?
        """
        return self._cancelled.is_set()

    def cancel(self):
        """
        Cancel this token.
        """
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
        self._on_cancellation.invoke()

    def wait_cancellation(self, timeout=None) -> bool:
        """
        Block until this token is cancelled.

        :param timeout: Optional time in seconds after which to give up waiting.
        :return: Whether the token was cancelled.
        """
        return self._cancelled.wait(timeout)
