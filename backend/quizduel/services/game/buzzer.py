import logging
from typing import Callable, Optional

from quizduel.categories import RACE_CATEGORY, race_labels_for
from quizduel.models import (
    BUZZER_IDLE,
    BUZZER_LOCK,
    BUZZER_READY,
    BuzzerState,
    Phase,
    ack,
    reject,
)

AUTO_UNLOCK_KEY = 'buzzer.auto_unlock'


class BuzzerArbiter:
    """First-to-buzz arbitration for the race category.

    Each round offers a primary and an alternate label. A draw activates one
    of them; the first accepted buzz locks the draw and opens an answer
    window. If the admin neither confirms nor reopens before the window
    closes, the scheduled auto-unlock reopens buzzing.
    """

    def __init__(
        self,
        state_ref,
        teams,
        ledger,
        scheduler,
        clock,
        answer_window_ms: int = 45_000,
        on_change: Optional[Callable[[], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._state_ref = state_ref
        self.teams = teams
        self.ledger = ledger
        self.scheduler = scheduler
        self.clock = clock
        self.answer_window_ms = answer_window_ms
        self.on_change = on_change or (lambda: None)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def state(self):
        return self._state_ref()

    @property
    def buzzer(self) -> BuzzerState:
        return self.state.buzzer

    def _race_category(self) -> bool:
        return self.state.current_category is RACE_CATEGORY

    def _race_round(self) -> bool:
        return self.state.phase == Phase.CATEGORY and self._race_category()

    # ---- drawing ----

    def arm_for_round(self, round_index: int) -> bool:
        """Pick the label for a freshly entered round."""
        self.buzzer.exhausted = False
        return self._pick(round_index)

    def _pick(self, round_index: int) -> bool:
        b = self.buzzer
        primary, alternate = race_labels_for(round_index)
        if primary not in b.used_labels:
            pick = primary
        elif alternate not in b.used_labels:
            pick = alternate
        else:
            pick = None
        if pick is None:
            self.scheduler.cancel(AUTO_UNLOCK_KEY)
            b.exhausted = True
            b.active_label = None
            b.buzz_order = []
            b.locked = False
            b.answer_window_ends_at = None
            b.stage = BUZZER_LOCK
            self.logger.info(f"[buzzer-exhausted] round={round_index} used={b.used_labels}")
            return False
        b.active_label = pick
        b.used_labels.append(pick)
        self._reopen()
        return True

    def _reopen(self) -> None:
        self.scheduler.cancel(AUTO_UNLOCK_KEY)
        b = self.buzzer
        b.buzz_order = []
        b.locked = False
        b.answer_window_ends_at = None
        b.stage = BUZZER_READY
        b.draw_seq += 1

    def draw(self):
        if not self._race_category():
            return reject('not_race_category')
        if self.buzzer.exhausted:
            return reject('exhausted')
        if not self._pick(self.state.round_index):
            return reject('exhausted')
        self.logger.info(f"[buzzer-draw] round={self.state.round_index} label={self.buzzer.active_label}")
        return ack(label=self.buzzer.active_label)

    # ---- buzzing ----

    def late_info(self) -> dict:
        b = self.buzzer
        first = b.buzz_order[0] if b.buzz_order else None
        team = self.teams.get(first['team_id']) if first else None
        return {
            'first_team_id': first['team_id'] if first else None,
            'first_team_name': (team.name if team else first['team_id']) if first else None,
            'at': first['ts'] if first else None,
            'answer_window_ends_at': b.answer_window_ends_at,
        }

    def buzz(self, team_id):
        if not self._race_round():
            return reject('wrong_phase')
        if team_id not in self.teams:
            return reject('unknown_team')
        b = self.buzzer
        if not b.active_label:
            return reject('no_draw')
        if any(entry['team_id'] == team_id for entry in b.buzz_order):
            return reject('already_buzzed')
        if b.locked:
            return reject('locked', **self.late_info())

        now = self.clock.now_ms()
        b.buzz_order.append({'team_id': team_id, 'ts': now})
        b.locked = True
        b.stage = BUZZER_LOCK
        b.answer_window_ends_at = now + self.answer_window_ms
        round_key = self.state.round_key
        seq = b.draw_seq
        self.scheduler.call_at(
            AUTO_UNLOCK_KEY,
            b.answer_window_ends_at,
            lambda: self._auto_unlock(round_key, seq),
        )
        self.logger.info(f"[buzzer-lock] team={team_id} window_ends={b.answer_window_ends_at}")
        return ack(answer_window_ends_at=b.answer_window_ends_at)

    def rearm_auto_unlock(self) -> bool:
        """Re-schedule the auto-unlock for a lock restored from a snapshot."""
        b = self.buzzer
        if not self._race_round() or not b.locked or b.answer_window_ends_at is None:
            return False
        round_key = self.state.round_key
        seq = b.draw_seq
        self.scheduler.call_at(AUTO_UNLOCK_KEY, b.answer_window_ends_at, lambda: self._auto_unlock(round_key, seq))
        return True

    def _auto_unlock(self, round_key, seq) -> bool:
        state = self.state
        b = state.buzzer
        if not self._race_round() or state.round_key != round_key or b.draw_seq != seq:
            self.logger.info(f"[buzzer-auto-unlock-abort] expected={round_key}/{seq} actual={state.round_key}/{b.draw_seq}")
            return False
        if state.round_resolved or not b.locked or b.answer_window_ends_at is None:
            return False
        if self.clock.now_ms() < b.answer_window_ends_at:
            return False
        b.buzz_order = []
        b.locked = False
        b.answer_window_ends_at = None
        b.stage = BUZZER_READY
        b.draw_seq += 1
        self.logger.info(f"[buzzer-auto-unlock] key={round_key}")
        self.on_change()
        return True

    # ---- admin ----

    def confirm(self, team_id=None):
        if not self._race_round():
            return reject('wrong_phase')
        if self.state.round_resolved:
            return reject('already_resolved')
        b = self.buzzer
        named = str(team_id) if team_id is not None else None
        if named is not None and named in self.teams:
            winner = named
        elif b.buzz_order:
            winner = b.buzz_order[0]['team_id']
        else:
            winner = None
        if winner is None or winner not in self.teams:
            return reject('no_winner')

        self.scheduler.cancel(AUTO_UNLOCK_KEY)
        b.answer_window_ends_at = None
        b.locked = True
        b.stage = BUZZER_LOCK
        self.logger.info(f"[buzzer-confirm] winner={winner} named={named} round={self.state.round_index}")
        return self.ledger.resolve_round([winner])

    def clear_buzz(self):
        if not self._race_category():
            return reject('not_race_category')
        b = self.buzzer
        if not b.active_label:
            return reject('no_draw')
        primary, alternate = race_labels_for(self.state.round_index)
        other = alternate if b.active_label == primary else primary
        if other not in b.used_labels:
            b.active_label = other
            b.used_labels.append(other)
        self._reopen()
        return ack(label=b.active_label)

    def unlock(self):
        if not self._race_category():
            return reject('not_race_category')
        b = self.buzzer
        if b.exhausted:
            return reject('exhausted')
        if not b.active_label:
            return reject('no_draw')
        self._reopen()
        return ack(label=b.active_label)

    def set_lock(self, locked):
        if not self._race_category():
            return reject('not_race_category')
        self.scheduler.cancel(AUTO_UNLOCK_KEY)
        b = self.buzzer
        b.locked = bool(locked)
        if b.locked:
            b.stage = BUZZER_LOCK
        else:
            b.answer_window_ends_at = None
            b.stage = BUZZER_READY if b.active_label else BUZZER_IDLE
        return ack(locked=b.locked)
