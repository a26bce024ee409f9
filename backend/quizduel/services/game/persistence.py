import json
import logging
import os
import signal
import sys
from typing import Callable, Optional, Tuple

STATE_FILE = 'state.json'
TEAMS_FILE = 'teams.json'
FLUSH_KEY = 'persist.flush'
# A steady stream of mutations still gets written after this many debounce periods
MAX_DELAY_FACTOR = 5


class Snapshotter:
    """Debounced JSON snapshots of one session.

    ``mark_dirty`` is cheap and called after every mutation; the write runs
    from the session scheduler once mutations have been quiet for
    ``debounce_ms``. Files are replaced atomically, so a crash mid-write leaves
    the previous snapshot intact. Write failures are logged and never reach
    game logic.
    """

    def __init__(
        self,
        data_dir: str,
        collect: Callable[[], Tuple[dict, list]],
        scheduler,
        clock,
        debounce_ms: int = 600,
        enabled: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.data_dir = data_dir
        self.collect = collect
        self.scheduler = scheduler
        self.clock = clock
        self.debounce_ms = debounce_ms
        self.enabled = enabled
        self.logger = logger or logging.getLogger(__name__)
        self._dirty_since: Optional[int] = None
        self.writes = 0

    @property
    def dirty(self) -> bool:
        return self._dirty_since is not None

    def path(self, name: str) -> str:
        return os.path.join(self.data_dir, name)

    def mark_dirty(self) -> None:
        if not self.enabled:
            return
        now = self.clock.now_ms()
        if self._dirty_since is None:
            self._dirty_since = now
        due = min(now + self.debounce_ms, self._dirty_since + self.debounce_ms * MAX_DELAY_FACTOR)
        self.scheduler.call_at(FLUSH_KEY, due, self.flush)

    def flush(self) -> bool:
        self.scheduler.cancel(FLUSH_KEY)
        self._dirty_since = None
        if not self.enabled:
            return False
        state_doc, teams_doc = self.collect()
        ok_state = self._write(STATE_FILE, state_doc)
        ok_teams = self._write(TEAMS_FILE, teams_doc)
        if ok_state and ok_teams:
            self.writes += 1
        return ok_state and ok_teams

    def _write(self, name: str, doc) -> bool:
        target = self.path(name)
        tmp = target + '.tmp'
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
            return True
        except (OSError, TypeError, ValueError):
            self.logger.exception(f"[persist-error] file={target}")
            return False

    def _read(self, name: str):
        target = self.path(name)
        if not os.path.exists(target):
            return None
        try:
            with open(target, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError):
            self.logger.exception(f"[persist-load-error] file={target}")
            return None

    def load(self) -> Tuple[Optional[dict], Optional[list]]:
        state_doc = self._read(STATE_FILE)
        teams_doc = self._read(TEAMS_FILE)
        if not isinstance(state_doc, dict):
            state_doc = None
        if not isinstance(teams_doc, list):
            teams_doc = None
        return state_doc, teams_doc


def install_shutdown_handlers(registry, logger: logging.Logger) -> None:
    """Flush every session synchronously on SIGINT/SIGTERM/SIGQUIT, then exit."""

    def _handler(signum, frame):
        logger.info(f"[lifecycle] {signal.Signals(signum).name} received, flushing state and exiting")
        registry.flush_all()
        sys.exit(0)

    for name in ('SIGINT', 'SIGTERM', 'SIGQUIT'):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError) as exc:
            logger.warning(f"[lifecycle] cannot install {name} handler: {exc}")
