from typing import Dict


class IdempotencyGuard:
    """Drop client retries of an action already applied.

    Clients attach a generated ``action_id`` to mutating commands and resend
    it after an ack timeout. The first sighting is recorded; another sighting
    within ``window_ms`` is a duplicate. Entries older than the window are
    purged lazily, at most once per window.
    """

    def __init__(self, clock, window_ms: int = 10_000):
        self.clock = clock
        self.window_ms = window_ms
        self._seen: Dict[str, int] = {}
        self._last_purge = 0

    def is_duplicate(self, action_id) -> bool:
        if not action_id:
            return False
        action_id = str(action_id)
        now = self.clock.now_ms()
        self._purge(now)
        first_seen = self._seen.get(action_id)
        if first_seen is not None and now - first_seen <= self.window_ms:
            return True
        self._seen[action_id] = now
        return False

    def _purge(self, now: int) -> None:
        if now - self._last_purge < self.window_ms:
            return
        self._last_purge = now
        for key, ts in list(self._seen.items()):
            if now - ts > self.window_ms:
                del self._seen[key]

    def __len__(self) -> int:
        return len(self._seen)
