from threading import Lock
from typing import Callable


class Event:
    """
    A list of callbacks that are all invoked, in order of registration, when the event is called.

    Callbacks can be added and removed from any thread.
    """

    def __init__(self):
        self._callbacks: list[Callable[..., None]] = []
        self._lock = Lock()

    def add_callback(self, callback: Callable[..., None]):
        """
        Add a callback to this event, which will be invoked every time this event is invoked.

        :param callback: The callback to be called when this event is triggered
        """
        with self._lock:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[..., None]):
        """
        Remove a callback from this event.

        :param callback: The callback to be removed from this event's callbacks
        """
        with self._lock:
            self._callbacks.remove(callback)

    def invoke(self, *args, **kwargs):
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(*args, **kwargs)

    __call__ = invoke
