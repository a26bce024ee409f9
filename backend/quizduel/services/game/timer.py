from quizduel.models import TimerState

MIN_SECONDS = 1
MAX_SECONDS = 999


def _coerce_seconds(seconds) -> int:
    try:
        value = int(float(seconds))
    except (TypeError, ValueError, OverflowError):
        value = 0
    return max(MIN_SECONDS, min(MAX_SECONDS, value))


class TimerService:
    """Single countdown stored as an absolute deadline.

    Remaining time is always derived as ``max(0, ends_at - now)``; nothing
    decrements a counter.
    """

    def __init__(self, state: TimerState, clock, grace_ms: int = 300):
        self.state = state
        self.clock = clock
        self.grace_ms = grace_ms

    @property
    def running(self) -> bool:
        return self.state.ends_at is not None

    def start(self, seconds) -> int:
        s = _coerce_seconds(seconds)
        self.state.duration_sec = s
        self.state.ends_at = self.clock.now_ms() + s * 1000
        self.state.paused_remaining_ms = 0
        self.state.last_expired_at = None
        return s

    def stop(self) -> bool:
        if self.state.ends_at is None:
            return False
        self.state.paused_remaining_ms = max(0, self.state.ends_at - self.clock.now_ms())
        self.state.ends_at = None
        return True

    def resume(self) -> bool:
        if self.state.ends_at is not None or self.state.paused_remaining_ms <= 0:
            return False
        # duration_sec keeps the original total
        self.state.ends_at = self.clock.now_ms() + self.state.paused_remaining_ms
        self.state.paused_remaining_ms = 0
        return True

    def reset(self) -> None:
        self.state.ends_at = None
        self.state.duration_sec = 0
        self.state.paused_remaining_ms = 0
        self.state.last_expired_at = None

    def remaining_ms(self, now=None) -> int:
        if now is None:
            now = self.clock.now_ms()
        if self.state.ends_at is not None:
            return max(0, self.state.ends_at - now)
        return self.state.paused_remaining_ms

    def tick(self, now=None) -> bool:
        """Record a natural expiry. Returns True when the countdown just ran out."""
        if now is None:
            now = self.clock.now_ms()
        if self.state.ends_at is None or now < self.state.ends_at:
            return False
        self.state.last_expired_at = self.state.ends_at
        self.state.ends_at = None
        return True

    def accepts_submission(self, now=None) -> bool:
        if now is None:
            now = self.clock.now_ms()
        if self.state.duration_sec <= 0 or self.state.ends_at is not None:
            return True
        if self.state.last_expired_at is None:
            return True
        return now - self.state.last_expired_at <= self.grace_ms
