import logging
import threading

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """ Runs a given function on a background thread at a fixed interval until stopped.
        Exceptions are logged and the loop carries on with the next interval.
        The background thread is registered as a daemon.

        :param fn: the function to run
        :param interval: the time in seconds between the end of one call and the start of the next
        :param name: the name given to the background thread
    """

    def __init__(self, fn, interval, name=None, log=logger):
        self.fn = fn
        self.interval = interval
        self.name = name
        self.stop_event = threading.Event()
        self.background_thread = None
        self.logger = log
        self._lock = threading.Lock()

    def start(self):
        """ Starts the background thread, if not already started. """
        with self._lock:
            if self.background_thread is None:
                self.stop_event.clear()
                t = threading.Thread(target=self._run, name=self.name, daemon=True)
                self.background_thread = t
                t.start()

    def _run(self):
        while self.running():
            self._do()
            self.stop_event.wait(self.interval)
        self.logger.info("background thread %s exiting" % self.name)

    def _do(self):
        """ runs the function and captures any exceptions """
        try:
            self.fn()
        except Exception as e:
            self.logger.exception("periodic call %s failed: %s" % (self.name, e))

    def running(self):
        return not self.stop_event.is_set()

    def stop(self, timeout=None):
        """ signals the background thread to stop and waits for it to exit """
        self.stop_event.set()
        with self._lock:
            thread = self.background_thread
            self.background_thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout)
