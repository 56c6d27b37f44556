import logging
import threading

logger = logging.getLogger(__name__)


class EventSource(object):
    """
    A list of handlers that are each called with the arguments passed to fire().

    Handlers may be added and removed from any thread. Firing iterates over a snapshot
    of the handlers, so a handler may remove itself while being called.
    A handler that raises is logged and does not prevent the remaining handlers from
    being called.
    """

    def __init__(self, log=logger):
        self._handlers = ()
        self._lock = threading.Lock()
        self.logger = log

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        with self._lock:
            if handler not in self._handlers:
                self._handlers = self._handlers + (handler,)
        return self

    def remove(self, handler):
        with self._lock:
            if handler in self._handlers:
                self._handlers = tuple(h for h in self._handlers if h != handler)
        return self

    def handlers(self):
        return self._handlers

    def fire(self, *args, **kwargs):
        for handler in self._handlers:
            try:
                handler(*args, **kwargs)
            except Exception as e:
                self.logger.exception("event handler %s failed: %s" % (handler, e))
