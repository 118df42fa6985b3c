from threading import Lock


class ConcurrencyGovernor:
    """Counts the jobs whose child process is currently alive."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._running = 0

    @property
    def running(self) -> int:
        return self._running

    def increment(self) -> int:
        with self._lock:
            self._running += 1
            return self._running

    def decrement(self) -> int:
        with self._lock:
            if self._running == 0:
                raise RuntimeError("concurrency governor decremented below zero")
            self._running -= 1
            return self._running

    def free_capacity(self, limit: int) -> int:
        return limit - self._running
