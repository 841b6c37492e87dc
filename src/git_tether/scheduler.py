import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class Scheduler:
    """A fixed-interval tick source.

    Ticks are produced on a monotonic clock. The first tick fires immediately
    when `run_on_start` is set. If a callback overruns the interval, missed ticks
    are dropped rather than delivered in a burst.

    Attributes:
        interval (float): Seconds between ticks.
        run_on_start (bool): Whether a tick is produced as soon as iteration starts.
    """

    def __init__(self, interval: float, run_on_start: bool = True):
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.interval = interval
        self.run_on_start = run_on_start
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ends iteration at the next suspension point. Safe to call from signal handlers."""
        self._stop.set()

    def ticks(self) -> Iterator[int]:
        """Yields consecutive tick numbers until stopped.

        Yields:
            int: The tick count, starting at 1.
        """
        count = 0
        next_at = time.monotonic()
        if not self.run_on_start:
            next_at += self.interval

        while not self._stop.is_set():
            delay = next_at - time.monotonic()
            if delay > 0 and self._stop.wait(delay):
                return

            count += 1
            yield count

            # Skip ticks that elapsed while the consumer was busy.
            next_at += self.interval
            now = time.monotonic()
            if next_at < now:
                missed = int((now - next_at) // self.interval) + 1
                next_at += missed * self.interval

    def run(
        self, callback: Callable[[], object], ticks: Iterable[object] | None = None
    ) -> int:
        """Invokes the callback once per tick.

        Exceptions escaping the callback are logged and do not stop the loop.

        Args:
            callback (Callable[[], object]): The work to do on each tick.
            ticks (Iterable | None, optional): A tick source to use instead of the
                                               wall clock (e.g. a list in tests).
                                               Defaults to `self.ticks()`.

        Returns:
            int: The number of ticks processed.
        """
        processed = 0
        for _ in ticks if ticks is not None else self.ticks():
            if self._stop.is_set():
                break
            processed += 1
            try:
                callback()
            except Exception:
                logger.exception("LOOP ERROR: Tick callback failed")
        return processed
