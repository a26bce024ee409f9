import heapq
import itertools
import logging
import time
from typing import Callable, Dict, Optional


class SystemClock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class Scheduler:
    """Keyed deadline queue for deferred session work.

    - One live entry per key; scheduling a key again replaces the old entry
    - Cancelled or replaced entries stay in the heap and are skipped when popped
    - Nothing runs on its own: ``run_due`` is called from the session tick, so
      callbacks execute under the session lock and must re-check their
      preconditions before acting
    """

    def __init__(self, clock, logger: Optional[logging.Logger] = None):
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._heap = []
        self._live: Dict[str, int] = {}
        self._deadlines: Dict[str, int] = {}
        self._counter = itertools.count()

    def call_at(self, key: str, when_ms: int, callback: Callable[[], None]) -> None:
        token = next(self._counter)
        self._live[key] = token
        self._deadlines[key] = when_ms
        heapq.heappush(self._heap, (when_ms, token, key, callback))

    def call_later(self, key: str, delay_ms: int, callback: Callable[[], None]) -> None:
        self.call_at(key, self.clock.now_ms() + delay_ms, callback)

    def cancel(self, key: str) -> bool:
        self._deadlines.pop(key, None)
        return self._live.pop(key, None) is not None

    def cancel_all(self) -> None:
        self._live.clear()
        self._deadlines.clear()
        self._heap.clear()

    def deadline(self, key: str) -> Optional[int]:
        return self._deadlines.get(key)

    def pending(self, key: str) -> bool:
        return key in self._live

    def run_due(self, now: Optional[int] = None) -> int:
        if now is None:
            now = self.clock.now_ms()
        fired = 0
        while self._heap and self._heap[0][0] <= now:
            when, token, key, callback = heapq.heappop(self._heap)
            if self._live.get(key) != token:
                continue
            del self._live[key]
            self._deadlines.pop(key, None)
            fired += 1
            try:
                callback()
            except Exception:
                self.logger.exception(f"[scheduler-error] key={key} deadline={when}")
        return fired


def start_ticker(app, socketio, registry) -> None:
    """Drive every session's tick from one background task.

    - No-ops in TESTING mode (tests call ``tick`` themselves)
    - Starts at most once per registry
    - A failing tick is logged and the loop keeps going
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return
    if getattr(registry, 'ticker_started', False):
        return
    registry.ticker_started = True

    interval = max(50, int(app.config.get('TICK_INTERVAL_MS', 300))) / 1000.0

    def _worker():
        app.logger.info(f"[ticker-start] interval={interval}s")
        while True:
            socketio.sleep(interval)
            try:
                registry.tick_all()
            except Exception:
                app.logger.exception("[ticker-error] tick failed")

    socketio.start_background_task(_worker)
