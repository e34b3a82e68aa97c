from scanbutton.support.mixins import CommonEqualityMixin, StringerMixin


class RetryStrategy:
    """ Decides how long to wait before the next attempt. """

    @property
    def wait(self):
        return 0

    def failed(self):
        """ records a failed attempt and returns how long to wait before the next one """
        return self.wait

    def reset(self):
        """ records a sustained success """


class ExponentialBackoffStrategy(RetryStrategy, CommonEqualityMixin, StringerMixin):
    """
    Waits initial_wait after the first failure, and multiplies the wait by factor after every
    further consecutive failure, never waiting longer than max_wait.

    The current wait is always min(max_wait, initial_wait * factor ** attempt_count).
    """

    def __init__(self, initial_wait, factor=2, max_wait=1800):
        """
        :param initial_wait: The wait in seconds after the first failure.
        :param factor: The growth factor applied per consecutive failure. Must be at least 1.
        :param max_wait: The ceiling in seconds for the wait.
        """
        if initial_wait < 0:
            raise ValueError("initial wait must not be negative: %s" % initial_wait)
        if factor < 1:
            raise ValueError("backoff factor must be at least 1: %s" % factor)
        if max_wait < initial_wait:
            raise ValueError("maximum wait %s is less than the initial wait %s" % (max_wait, initial_wait))
        self.initial_wait = initial_wait
        self.factor = factor
        self.max_wait = max_wait
        self.attempt_count = 0
        self._wait = initial_wait

    @property
    def wait(self):
        return self._wait

    def failed(self):
        """
        Returns the wait for this failure and escalates the wait for the next one.
        >>> s = ExponentialBackoffStrategy(5, 2, 30)
        >>> [s.failed() for _ in range(5)]
        [5, 10, 20, 30, 30]
        """
        wait = self._wait
        self.attempt_count += 1
        self._wait = self._compute_wait(self.attempt_count)
        return wait

    def reset(self):
        self.attempt_count = 0
        self._wait = self.initial_wait

    def _compute_wait(self, attempt_count):
        if self._wait >= self.max_wait:
            return self.max_wait
        try:
            return min(self.max_wait, self.initial_wait * self.factor ** attempt_count)
        except OverflowError:
            return self.max_wait
