import logging
import os
import random
import re
import threading
from typing import Callable, Dict, Optional

from quizduel.categories import FREE_GUESS_CATEGORY, Category, InvalidPayload, normalize_submission
from quizduel.models import (
    ROUNDS_PER_CATEGORY,
    SCOREBOARD_MODES,
    GameState,
    Phase,
    ack,
    reject,
)
from .buzzer import AUTO_UNLOCK_KEY, BuzzerArbiter
from .idempotency import IdempotencyGuard
from .ledger import PotLedger
from .persistence import Snapshotter
from .scheduler import Scheduler, SystemClock
from .teams import TeamRegistry, team_key
from .timer import TimerService

ANNOUNCE_KEY = 'result.announce'
SCOREBOARD_KEY = 'scoreboard.auto_post'
GUESS_HISTORY_LIMIT = 50
MAX_ANNOUNCE_DELAY_SEC = 60

Emitter = Callable[[str, dict], None]


def _int_or(value, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


class GameSession:
    """One game room: the phase state machine and its command surface.

    All mutations, whether from a client command or from the background tick,
    run under ``self.lock``, one at a time. Every applied mutation broadcasts
    a fresh snapshot through ``emit`` and marks the snapshotter dirty.
    Commands that are not valid in the current phase are rejected with an
    ack and change nothing.
    """

    def __init__(
        self,
        room_code: str = 'MAIN',
        config=None,
        clock=None,
        emit: Optional[Emitter] = None,
        data_dir: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        config = config or {}
        self.room_code = room_code
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)
        self._emit = emit or (lambda event, payload: None)
        self.lock = threading.RLock()

        self.state = GameState(team_limit=int(config.get('TEAM_LIMIT', 3)))
        self.teams = TeamRegistry(
            starting_tokens=int(config.get('STARTING_TOKENS', 24)),
            starting_jokers=int(config.get('STARTING_JOKERS', 1)),
        )
        self.scheduler = Scheduler(self.clock, self.logger)
        self.guard = IdempotencyGuard(self.clock, window_ms=int(config.get('IDEMPOTENCY_WINDOW_MS', 10_000)))
        self.timer = TimerService(self.state.timer, self.clock, grace_ms=int(config.get('SUBMIT_GRACE_MS', 300)))
        self.ledger = PotLedger(lambda: self.state, self.teams, self.clock, self.logger)
        self.buzzer = BuzzerArbiter(
            lambda: self.state,
            self.teams,
            self.ledger,
            self.scheduler,
            self.clock,
            answer_window_ms=int(config.get('ANSWER_WINDOW_MS', 45_000)),
            on_change=lambda: self._changed(teams=True),
            logger=self.logger,
        )
        self.snapshotter = Snapshotter(
            data_dir or '',
            self.persisted_documents,
            self.scheduler,
            self.clock,
            debounce_ms=int(config.get('PERSIST_DEBOUNCE_MS', 600)),
            enabled=bool(data_dir) and bool(config.get('PERSIST_ENABLED', True)),
            logger=self.logger,
        )

    # ---- snapshots & broadcast ----

    def _install_state(self, state: GameState) -> None:
        self.state = state
        self.timer.state = state.timer

    def snapshot(self) -> dict:
        with self.lock:
            now = self.clock.now_ms()
            data = self.state.to_dict()
            data['timer']['remaining_ms'] = self.timer.remaining_ms(now)
            data['room_code'] = self.room_code
            data['server_now'] = now
            return data

    def teams_snapshot(self) -> list:
        with self.lock:
            return self.teams.to_list()

    def persisted_documents(self):
        return self.state.to_dict(), self.teams.to_list()

    def emit(self, event: str, payload: dict) -> None:
        try:
            self._emit(event, payload)
        except Exception:
            self.logger.exception(f"[emit-error] room={self.room_code} event={event}")

    def _changed(self, teams: bool = False) -> None:
        self.emit('state.update', self.snapshot())
        if teams:
            self.emit('teams.update', self.teams_snapshot())
        self.snapshotter.mark_dirty()

    def _applied(self, result: dict, teams: bool = False) -> dict:
        if result.get('ok'):
            self._changed(teams=teams)
        return result

    # ---- command surface ----

    def dispatch(self, command: str, payload=None, actor_id: Optional[str] = None) -> dict:
        """Apply a named command and return the caller's ack.

        A repeated ``action_id`` inside the idempotency window is acked as a
        duplicate without touching state.
        """
        payload = payload if isinstance(payload, dict) else {}
        handler = COMMANDS.get(command)
        if handler is None:
            return reject('unknown_command')
        actor_id = team_key(actor_id)
        with self.lock:
            action_id = payload.get('action_id')
            if self.guard.is_duplicate(action_id):
                self.logger.info(f"[duplicate] room={self.room_code} command={command} action_id={action_id}")
                return ack(duplicate=True)
            result = handler(self, actor_id, payload)
        if not result.get('ok'):
            self.logger.info(
                f"[reject] room={self.room_code} command={command} actor={actor_id} error={result.get('error')}"
            )
        return result

    # ---- team flow ----

    def join_team(self, team_id, name=None, avatar=None) -> dict:
        if not team_id:
            return reject('no_team')
        with self.lock:
            team, created = self.teams.join(str(team_id), name, avatar, self.clock.now_ms())
            self.logger.info(f"[team-join] room={self.room_code} team={team.id} name={team.name} created={created}")
            self._changed(teams=True)
            return ack(team_id=team.id, created=created)

    def set_stake(self, team_id, amount, use_joker=False) -> dict:
        with self.lock:
            return self._applied(self.ledger.set_stake(team_id, amount, use_joker))

    def _tick_timer(self) -> None:
        if self.timer.tick():
            self.logger.info(f"[timer-expired] room={self.room_code} at={self.state.timer.last_expired_at}")
            self._changed()

    def submit(self, team_id, category, payload) -> dict:
        with self.lock:
            cat = Category.resolve(category)
            if cat is None:
                return reject('unknown_category')
            state = self.state
            if state.phase != Phase.CATEGORY or state.current_category is not cat:
                return reject('wrong_phase')
            if team_id not in self.teams:
                return reject('unknown_team')
            self._tick_timer()
            if not self.timer.accepts_submission():
                self.logger.info(f"[submit-late] room={self.room_code} team={team_id} category={cat.value}")
                return reject('too_late')
            if cat.is_race:
                if isinstance(payload, dict) and payload.get('buzz'):
                    return self.buzz(team_id)
                return reject('use_buzz')
            try:
                clean = normalize_submission(cat, payload)
            except InvalidPayload as exc:
                return reject('invalid_payload', detail=str(exc))

            now = self.clock.now_ms()
            entry = dict(state.submissions.get(team_id) or {})
            entry.update(clean)
            entry['ts'] = now
            if cat is FREE_GUESS_CATEGORY:
                entry.setdefault('first_guess_ts', now)
                self._record_guess(team_id, clean.get('guess'), now)
            state.submissions[team_id] = entry
            self.logger.info(f"[submit] room={self.room_code} team={team_id} category={cat.value} keys={sorted(clean)}")
            self._changed()
            return ack()

    def _record_guess(self, team_id, guess, now) -> None:
        if not guess:
            return
        history = self.state.guess_history.setdefault(team_id, [])
        if history and history[-1]['guess'] == guess:
            return
        history.append({'guess': guess, 'ts': now})
        del history[:-GUESS_HISTORY_LIMIT]

    def buzz(self, team_id) -> dict:
        with self.lock:
            self._tick_timer()
            if not self.timer.accepts_submission():
                return reject('too_late')
            return self._applied(self.buzzer.buzz(team_id))

    # ---- phase transitions ----

    def _cancel_round_timers(self) -> None:
        self.scheduler.cancel(AUTO_UNLOCK_KEY)
        self.scheduler.cancel(ANNOUNCE_KEY)

    def start_category(self, category) -> dict:
        with self.lock:
            cat = Category.resolve(category)
            if cat is None:
                return reject('unknown_category')
            if self.state.phase not in (Phase.LOBBY, Phase.STAKE):
                return reject('wrong_phase')
            self._cancel_round_timers()
            self.state.reset_category()
            self.state.current_category = cat
            self.state.phase = Phase.STAKE
            if cat.is_race:
                self.buzzer.arm_for_round(0)
            self.logger.info(f"[category-start] room={self.room_code} category={cat.value}")
            self._changed(teams=True)
            return ack(category=cat.value)

    def lock_stakes(self) -> dict:
        with self.lock:
            return self._applied(self.ledger.lock_stakes(), teams=True)

    def resolve_round(self, winner_ids=None) -> dict:
        with self.lock:
            return self._applied(self.ledger.resolve_round(winner_ids), teams=True)

    def announce_result(self, delay_sec=0) -> dict:
        with self.lock:
            delay = max(0, min(MAX_ANNOUNCE_DELAY_SEC, _int_or(delay_sec, 0)))
            if delay == 0:
                return self._announce_now()
            record = self.state.pending_result
            if record is None:
                return reject('nothing_pending')
            if not record.belongs_to(self.state.current_category, self.state.round_index):
                return reject('stale_result')
            key = self.state.round_key
            resolved_at = record.resolved_at
            self.scheduler.call_later(ANNOUNCE_KEY, delay * 1000, lambda: self._announce_scheduled(key, resolved_at))
            self.logger.info(f"[announce-scheduled] room={self.room_code} key={key} delay={delay}s")
            return ack(scheduled_at=self.scheduler.deadline(ANNOUNCE_KEY))

    def _announce_now(self) -> dict:
        result, payload = self.ledger.announce_result()
        if payload is not None:
            self.emit('result.announce', payload)
            self._changed()
        return result

    def _announce_scheduled(self, round_key, resolved_at) -> None:
        record = self.state.pending_result
        if self.state.round_key != round_key or record is None or record.resolved_at != resolved_at:
            self.logger.info(f"[announce-abort] room={self.room_code} expected={round_key} actual={self.state.round_key}")
            return
        self._announce_now()

    def undo_round(self, snapshot) -> dict:
        with self.lock:
            result = self.ledger.undo_round(snapshot)
            if result.get('ok'):
                self.scheduler.cancel(ANNOUNCE_KEY)
            return self._applied(result, teams=True)

    def next_round(self) -> dict:
        return self._navigate(1)

    def prev_round(self) -> dict:
        return self._navigate(-1)

    def _navigate(self, delta: int) -> dict:
        with self.lock:
            state = self.state
            if state.phase != Phase.CATEGORY:
                return reject('wrong_phase')
            target = state.round_index + delta
            if not 0 <= target < ROUNDS_PER_CATEGORY:
                return reject('round_bound')
            self._cancel_round_timers()
            self.logger.info(f"[round-move] room={self.room_code} from={state.round_index} to={target}")
            state.round_index = target
            state.submissions = {}
            state.guess_history = {}
            state.pending_result = None
            state.last_result = None
            state.resolved_rounds.discard(state.round_key)
            state.round_start_ts = self.clock.now_ms()
            if state.current_category.is_race:
                self.buzzer.arm_for_round(target)
            self._changed()
            return ack(round_index=target)

    def finish_category(self) -> dict:
        with self.lock:
            if self.state.phase != Phase.CATEGORY:
                return reject('wrong_phase')
            summary = self.ledger.category_summary()
            self.logger.info(f"[category-finish] room={self.room_code} summary={summary}")
            self.emit('category.summary', summary)
            self._to_lobby()
            return ack(summary=summary)

    def goto_lobby(self) -> dict:
        with self.lock:
            category = self.state.current_category
            self.logger.info(f"[goto-lobby] room={self.room_code} prev_category={category.value if category else None}")
            self._to_lobby()
            return ack()

    def _to_lobby(self) -> None:
        self._cancel_round_timers()
        self.state.reset_category()
        self.state.phase = Phase.LOBBY
        self._changed(teams=True)

    def finish_game(self) -> dict:
        with self.lock:
            if self.state.phase != Phase.LOBBY:
                return reject('wrong_phase')
            self.state.phase = Phase.FINISHED
            standings = sorted(self.teams.to_list(), key=lambda t: (-t['tokens'], t['joined_at']))
            self.logger.info(f"[game-finish] room={self.room_code} teams={len(standings)}")
            self.emit('game.finished', {'standings': standings})
            self._changed()
            return ack(standings=standings)

    def full_reset(self) -> dict:
        with self.lock:
            self.scheduler.cancel_all()
            self.teams.clear()
            self._install_state(GameState(team_limit=int(self.config.get('TEAM_LIMIT', 3))))
            self.logger.info(f"[full-reset] room={self.room_code}")
            self.emit('server.reset', {'room_code': self.room_code, 'at': self.clock.now_ms()})
            self._changed(teams=True)
            return ack()

    # ---- timer ----

    def timer_start(self, seconds) -> dict:
        with self.lock:
            s = self.timer.start(seconds)
            self.logger.info(f"[timer-start] room={self.room_code} seconds={s}")
            self._changed()
            return ack(seconds=s, ends_at=self.state.timer.ends_at)

    def timer_stop(self) -> dict:
        with self.lock:
            if not self.timer.stop():
                return reject('not_running')
            self.logger.info(f"[timer-stop] room={self.room_code} remaining_ms={self.state.timer.paused_remaining_ms}")
            self._changed()
            return ack(paused_remaining_sec=self.state.timer.paused_remaining_sec)

    def timer_resume(self) -> dict:
        with self.lock:
            if not self.timer.resume():
                return reject('not_paused')
            self.logger.info(f"[timer-resume] room={self.room_code} ends_at={self.state.timer.ends_at}")
            self._changed()
            return ack(ends_at=self.state.timer.ends_at)

    def timer_reset(self) -> dict:
        with self.lock:
            self.timer.reset()
            self._changed()
            return ack()

    # ---- buzzer ----

    def buzzer_draw(self) -> dict:
        with self.lock:
            return self._applied(self.buzzer.draw())

    def buzzer_confirm(self, team_id=None) -> dict:
        with self.lock:
            return self._applied(self.buzzer.confirm(team_id), teams=True)

    def buzzer_clear(self) -> dict:
        with self.lock:
            return self._applied(self.buzzer.clear_buzz())

    def buzzer_unlock(self) -> dict:
        with self.lock:
            return self._applied(self.buzzer.unlock())

    def buzzer_set_lock(self, locked) -> dict:
        with self.lock:
            return self._applied(self.buzzer.set_lock(locked))

    # ---- team admin & lobby ----

    def update_team(self, team_id, patch) -> dict:
        with self.lock:
            team = self.teams.update(team_id, patch if isinstance(patch, dict) else {})
            if team is None:
                return reject('unknown_team')
            self._changed(teams=True)
            return ack(team=team.to_dict())

    def kick_team(self, team_id) -> dict:
        with self.lock:
            team = self.teams.remove(team_id)
            if team is None:
                return reject('unknown_team')
            state = self.state
            for table in (state.stakes, state.submissions, state.guess_history, state.round_wins, state.category_earnings):
                table.pop(team_id, None)
            state.buzzer.buzz_order = [b for b in state.buzzer.buzz_order if b['team_id'] != team_id]
            self.logger.info(f"[team-kick] room={self.room_code} team={team_id}")
            self._changed(teams=True)
            return ack()

    def set_team_limit(self, limit) -> dict:
        with self.lock:
            n = max(2, min(5, _int_or(limit, 3)))
            if n != self.state.team_limit:
                self.state.team_limit = n
                self.logger.info(f"[team-limit] room={self.room_code} limit={n}")
                self._changed()
            return ack(limit=n)

    def arm_lobby(self) -> dict:
        with self.lock:
            code = str(random.randint(100000, 999999))
            self.state.join_code = code
            self.emit('lobby.armed', {'code': code})
            self._changed()
            return ack(code=code)

    def set_scoreboard_mode(self, mode) -> dict:
        with self.lock:
            m = str(mode or '').upper()
            if m not in SCOREBOARD_MODES:
                return reject('invalid_mode')
            self.scheduler.cancel(SCOREBOARD_KEY)
            self.state.scoreboard_mode = m
            if m == 'RACE':
                self._schedule_scoreboard_return()
            self._changed()
            return ack(mode=m)

    def _schedule_scoreboard_return(self) -> None:
        hold_ms = int(self.config.get('SCOREBOARD_RACE_SEC', 12)) * 1000
        self.scheduler.call_later(SCOREBOARD_KEY, hold_ms, self._scoreboard_auto_post)

    def _scoreboard_auto_post(self) -> None:
        if self.state.scoreboard_mode != 'RACE':
            return
        self.state.scoreboard_mode = 'POST'
        self._changed()

    # ---- background work & lifecycle ----

    def tick(self) -> None:
        with self.lock:
            now = self.clock.now_ms()
            self._tick_timer()
            self.scheduler.run_due(now)

    def flush(self) -> bool:
        with self.lock:
            return self.snapshotter.flush()

    def load(self) -> bool:
        """Restore the last snapshot, if any, and re-arm its deferred work."""
        with self.lock:
            state_doc, teams_doc = self.snapshotter.load()
            if teams_doc is not None:
                self.teams.load(teams_doc)
            if state_doc is not None:
                self._install_state(GameState.from_dict(state_doc))
            if state_doc is None and teams_doc is None:
                return False
            self.buzzer.rearm_auto_unlock()
            if self.state.scoreboard_mode == 'RACE':
                self._schedule_scoreboard_return()
            self.logger.info(
                f"[restore] room={self.room_code} phase={self.state.phase.value} teams={len(self.teams)}"
            )
            return True


CommandHandler = Callable[[GameSession, Optional[str], dict], dict]

# Wire name -> handler(session, actor_id, payload)
COMMANDS: Dict[str, CommandHandler] = {
    'team.join': lambda s, actor, p: s.join_team(actor, p.get('name'), p.get('avatar')),
    'team.setStake': lambda s, actor, p: s.set_stake(actor, p.get('amount'), p.get('use_joker')),
    'team.submit': lambda s, actor, p: s.submit(actor, p.get('category'), p.get('payload')),
    'team.buzz': lambda s, actor, p: s.buzz(actor),
    'admin.startCategory': lambda s, actor, p: s.start_category(p.get('category')),
    'admin.lockStakes': lambda s, actor, p: s.lock_stakes(),
    'admin.resolveRound': lambda s, actor, p: s.resolve_round(p.get('winner_ids')),
    'admin.announceResult': lambda s, actor, p: s.announce_result(p.get('delay_sec', 0)),
    'admin.undoRound': lambda s, actor, p: s.undo_round(p.get('snapshot')),
    'admin.nextRound': lambda s, actor, p: s.next_round(),
    'admin.prevRound': lambda s, actor, p: s.prev_round(),
    'admin.finishCategory': lambda s, actor, p: s.finish_category(),
    'admin.gotoLobby': lambda s, actor, p: s.goto_lobby(),
    'admin.fullReset': lambda s, actor, p: s.full_reset(),
    'admin.finishGame': lambda s, actor, p: s.finish_game(),
    'admin.timer.start': lambda s, actor, p: s.timer_start(p.get('seconds')),
    'admin.timer.stop': lambda s, actor, p: s.timer_stop(),
    'admin.timer.resume': lambda s, actor, p: s.timer_resume(),
    'admin.timer.reset': lambda s, actor, p: s.timer_reset(),
    'admin.buzzer.draw': lambda s, actor, p: s.buzzer_draw(),
    'admin.buzzer.confirm': lambda s, actor, p: s.buzzer_confirm(team_key(p.get('team_id'))),
    'admin.buzzer.clearBuzz': lambda s, actor, p: s.buzzer_clear(),
    'admin.buzzer.unlock': lambda s, actor, p: s.buzzer_unlock(),
    'admin.buzzer.setLock': lambda s, actor, p: s.buzzer_set_lock(p.get('locked')),
    'admin.team.update': lambda s, actor, p: s.update_team(team_key(p.get('team_id')), p),
    'admin.team.kick': lambda s, actor, p: s.kick_team(team_key(p.get('team_id'))),
    'admin.teamLimit.set': lambda s, actor, p: s.set_team_limit(p.get('limit')),
    'admin.lobby.arm': lambda s, actor, p: s.arm_lobby(),
    'admin.scoreboard.set': lambda s, actor, p: s.set_scoreboard_mode(p.get('mode')),
}


ROOM_CODE_RE = re.compile(r'^[A-Z0-9_-]{1,16}$')


class SessionRegistry:
    """Room code -> independent ``GameSession``, created on first use."""

    def __init__(self, config, emit_factory: Optional[Callable[[str], Emitter]] = None, clock=None, logger=None):
        self.config = config
        self.emit_factory = emit_factory
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)
        self.default_room = self.normalize_code(config.get('DEFAULT_ROOM'), 'MAIN')
        self._sessions: Dict[str, GameSession] = {}
        self._lock = threading.Lock()
        self.ticker_started = False

    @staticmethod
    def normalize_code(code, default: str) -> str:
        if isinstance(code, str) and ROOM_CODE_RE.match(code.strip().upper()):
            return code.strip().upper()
        return default

    def _data_dir(self, code: str) -> Optional[str]:
        base = self.config.get('DATA_DIR')
        if not base or not self.config.get('PERSIST_ENABLED', True):
            return None
        return os.path.join(base, code)

    def get(self, code=None) -> GameSession:
        code = self.normalize_code(code, self.default_room)
        with self._lock:
            session = self._sessions.get(code)
            if session is None:
                session = GameSession(
                    room_code=code,
                    config=self.config,
                    clock=self.clock,
                    emit=self.emit_factory(code) if self.emit_factory else None,
                    data_dir=self._data_dir(code),
                    logger=self.logger,
                )
                session.load()
                self._sessions[code] = session
            return session

    def __iter__(self):
        with self._lock:
            return iter(list(self._sessions.values()))

    def __contains__(self, code) -> bool:
        return code in self._sessions

    def tick_all(self) -> None:
        for session in self:
            try:
                session.tick()
            except Exception:
                self.logger.exception(f"[tick-error] room={session.room_code}")

    def flush_all(self) -> None:
        for session in self:
            session.flush()
