import time


class RetryStrategy:
    """ Decides how long to wait before an operation is attempted again. """

    def __call__(self, current_time=None):
        return 0

    def failed(self, current_time):
        """ notes that an attempt failed at the given time """

    def reset(self):
        """ notes that an attempt succeeded """


class BackoffRetryStrategy(RetryStrategy):
    """
    Exponential backoff between attempts. The first wait after a failure is `floor` seconds
    and each further consecutive failure doubles the wait, up to `ceiling` seconds.
    A successful attempt resets the wait to the floor.

    :param floor:   the shortest wait, in seconds
    :param ceiling: the longest wait, in seconds
    """

    def __init__(self, floor=1, ceiling=60):
        if floor <= 0 or ceiling < floor:
            raise ValueError("invalid backoff window %s..%s" % (floor, ceiling))
        self.floor = floor
        self.ceiling = ceiling
        self.delay = floor          # the wait that applies after the last failure
        self.last_failed = None     # the time of the last failure
        self._next_delay = floor

    @classmethod
    def for_timeout(cls, timeout_ms=None, floor=1, minimum_ceiling=60):
        """
        Builds a strategy for a unit with the given timeout. The ceiling is the larger of
        the timeout and `minimum_ceiling` seconds.
        >>> BackoffRetryStrategy.for_timeout(120000).ceiling
        120.0
        >>> BackoffRetryStrategy.for_timeout(None).ceiling
        60
        """
        ceiling = minimum_ceiling if not timeout_ms else max(timeout_ms / 1000, minimum_ceiling)
        return cls(floor, ceiling)

    def __call__(self, current_time=None):
        """
        :return: the time in seconds until the next attempt is due. Zero or less means
            an attempt may be made now.
        """
        if self.last_failed is None:
            return 0
        if current_time is None:
            current_time = time.time()
        return self.delay - (current_time - self.last_failed)

    def failed(self, current_time):
        self.last_failed = current_time
        self.delay = self._next_delay
        self._next_delay = min(self._next_delay * 2, self.ceiling)

    def reset(self):
        self.last_failed = None
        self.delay = self.floor
        self._next_delay = self.floor
