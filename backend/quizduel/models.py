import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from quizduel.categories import Category

ROUNDS_PER_CATEGORY = 3
# Added to every category pot on top of the stakes
FIXED_BASE = 3


class Phase(str, Enum):
    LOBBY = 'LOBBY'
    STAKE = 'STAKE'
    CATEGORY = 'CATEGORY'
    FINISHED = 'FINISHED'


BUZZER_IDLE = 'IDLE'
BUZZER_READY = 'BUZZ_READY'
BUZZER_LOCK = 'LOCK'

SCOREBOARD_MODES = ('PRE', 'RACE', 'POST', 'FINAL')


def ack(**extra) -> Dict[str, Any]:
    payload = {'ok': True}
    payload.update(extra)
    return payload


def reject(error: str, **extra) -> Dict[str, Any]:
    payload = {'ok': False, 'error': error}
    payload.update(extra)
    return payload


def round_key_for(category: Optional[Category], round_index: int) -> Optional[str]:
    if category is None:
        return None
    return f"{category.value}:{round_index}"


@dataclass
class Team:
    id: str
    name: str
    avatar: str
    tokens: int = 0
    jokers: int = 0
    joined_at: int = 0

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'avatar': self.avatar,
            'tokens': self.tokens,
            'jokers': self.jokers,
            'joined_at': self.joined_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data['id']),
            name=str(data.get('name') or ''),
            avatar=str(data.get('avatar') or ''),
            tokens=max(0, int(data.get('tokens', 0))),
            jokers=max(0, int(data.get('jokers', 0))),
            joined_at=int(data.get('joined_at', 0)),
        )


@dataclass
class Stake:
    amount: int = 0
    joker: bool = False

    def to_dict(self):
        return {'amount': self.amount, 'joker': self.joker}


@dataclass
class TimerState:
    ends_at: Optional[int] = None
    duration_sec: int = 0
    paused_remaining_ms: int = 0
    last_expired_at: Optional[int] = None

    @property
    def paused_remaining_sec(self) -> int:
        return int(math.ceil(self.paused_remaining_ms / 1000)) if self.paused_remaining_ms > 0 else 0

    def to_dict(self):
        return {
            'ends_at': self.ends_at,
            'duration_sec': self.duration_sec,
            'paused_remaining_ms': self.paused_remaining_ms,
            'paused_remaining_sec': self.paused_remaining_sec,
            'last_expired_at': self.last_expired_at,
        }


@dataclass
class BuzzerState:
    active_label: Optional[str] = None
    used_labels: List[str] = field(default_factory=list)
    buzz_order: List[Dict[str, Any]] = field(default_factory=list)
    locked: bool = False
    answer_window_ends_at: Optional[int] = None
    exhausted: bool = False
    stage: str = BUZZER_IDLE
    # Bumped on every draw/unlock so stale auto-unlocks can tell they are stale
    draw_seq: int = 0

    def to_dict(self):
        return {
            'active_label': self.active_label,
            'used_labels': list(self.used_labels),
            'buzz_order': [dict(b) for b in self.buzz_order],
            'locked': self.locked,
            'answer_window_ends_at': self.answer_window_ends_at,
            'exhausted': self.exhausted,
            'stage': self.stage,
            'draw_seq': self.draw_seq,
        }


@dataclass
class ResolutionRecord:
    category: Optional[str]
    round_index: int
    winner_ids: List[str]
    payout: int
    total_pot: int
    carry_after: int
    per_winner_share: Optional[int] = None
    credits: Dict[str, int] = field(default_factory=dict)
    carried_amount: int = 0
    discarded_remainder: int = 0
    resolved_at: int = 0

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        if not data:
            return None
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def belongs_to(self, category: Optional[Category], round_index: int) -> bool:
        return category is not None and self.category == category.value and self.round_index == round_index


@dataclass
class GameState:
    phase: Phase = Phase.LOBBY
    current_category: Optional[Category] = None
    round_index: int = 0
    stakes: Dict[str, Stake] = field(default_factory=dict)
    category_pot: int = 0
    carry_round: int = 0
    submissions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    guess_history: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    resolved_rounds: Set[str] = field(default_factory=set)
    pending_result: Optional[ResolutionRecord] = None
    last_result: Optional[ResolutionRecord] = None
    round_wins: Dict[str, int] = field(default_factory=dict)
    category_earnings: Dict[str, int] = field(default_factory=dict)
    round_start_ts: Optional[int] = None
    timer: TimerState = field(default_factory=TimerState)
    buzzer: BuzzerState = field(default_factory=BuzzerState)
    team_limit: int = 3
    join_code: Optional[str] = None
    scoreboard_mode: str = 'POST'

    @property
    def round_key(self) -> Optional[str]:
        return round_key_for(self.current_category, self.round_index)

    @property
    def round_resolved(self) -> bool:
        key = self.round_key
        return key is not None and key in self.resolved_rounds

    def reset_category(self):
        """Clear everything scoped to the running category."""
        self.current_category = None
        self.round_index = 0
        self.stakes = {}
        self.category_pot = 0
        self.carry_round = 0
        self.submissions = {}
        self.guess_history = {}
        self.resolved_rounds = set()
        self.pending_result = None
        self.last_result = None
        self.round_wins = {}
        self.category_earnings = {}
        self.round_start_ts = None
        self.buzzer = BuzzerState()

    def to_dict(self):
        return {
            'phase': self.phase.value,
            'current_category': self.current_category.value if self.current_category else None,
            'round_index': self.round_index,
            'round_resolved': self.round_resolved,
            'stakes': {tid: s.to_dict() for tid, s in self.stakes.items()},
            'category_pot': self.category_pot,
            'carry_round': self.carry_round,
            'submissions': {tid: dict(s) for tid, s in self.submissions.items()},
            'guess_history': {tid: [dict(g) for g in h] for tid, h in self.guess_history.items()},
            'resolved_rounds': sorted(self.resolved_rounds),
            'pending_result': self.pending_result.to_dict() if self.pending_result else None,
            'last_result': self.last_result.to_dict() if self.last_result else None,
            'round_wins': dict(self.round_wins),
            'category_earnings': dict(self.category_earnings),
            'round_start_ts': self.round_start_ts,
            'timer': self.timer.to_dict(),
            'buzzer': self.buzzer.to_dict(),
            'team_limit': self.team_limit,
            'join_code': self.join_code,
            'scoreboard_mode': self.scoreboard_mode,
        }

    @classmethod
    def from_dict(cls, data):
        """Overlay a stored snapshot onto a default state.

        Unknown keys are ignored and a field that fails to load keeps its
        default, so an older or partly damaged snapshot still boots.
        """
        state = cls()
        if not isinstance(data, dict):
            return state
        for name, loader in _FIELD_LOADERS.items():
            if name not in data:
                continue
            try:
                setattr(state, name, loader(data[name]))
            except (TypeError, ValueError, KeyError, AttributeError, OverflowError):
                continue
        return state


def _load_category(raw):
    if raw is None:
        return None
    category = Category.resolve(raw)
    if category is None:
        raise ValueError(f"unknown category {raw!r}")
    return category


def _opt_int(value):
    return None if value is None else int(value)


def _load_timer(raw):
    return TimerState(
        ends_at=_opt_int(raw.get('ends_at')),
        duration_sec=int(raw.get('duration_sec') or 0),
        paused_remaining_ms=int(raw.get('paused_remaining_ms') or 0),
        last_expired_at=_opt_int(raw.get('last_expired_at')),
    )


def _load_buzzer(raw):
    return BuzzerState(
        active_label=raw.get('active_label'),
        used_labels=list(raw.get('used_labels') or []),
        buzz_order=[dict(b) for b in raw.get('buzz_order') or []],
        locked=bool(raw.get('locked')),
        answer_window_ends_at=_opt_int(raw.get('answer_window_ends_at')),
        exhausted=bool(raw.get('exhausted')),
        stage=raw.get('stage') or BUZZER_IDLE,
        draw_seq=int(raw.get('draw_seq') or 0),
    )


_FIELD_LOADERS = {
    'phase': Phase,
    'current_category': _load_category,
    'round_index': lambda v: max(0, min(ROUNDS_PER_CATEGORY - 1, int(v))),
    'stakes': lambda v: {str(k): Stake(int(s.get('amount', 0)), bool(s.get('joker'))) for k, s in v.items()},
    'category_pot': lambda v: max(0, int(v)),
    'carry_round': lambda v: max(0, int(v)),
    'submissions': lambda v: {str(k): dict(s) for k, s in v.items()},
    'guess_history': lambda v: {str(k): [dict(g) for g in h] for k, h in v.items()},
    'resolved_rounds': lambda v: set(v),
    'pending_result': ResolutionRecord.from_dict,
    'last_result': ResolutionRecord.from_dict,
    'round_wins': lambda v: {str(k): int(n) for k, n in v.items()},
    'category_earnings': lambda v: {str(k): int(n) for k, n in v.items()},
    'round_start_ts': _opt_int,
    'timer': _load_timer,
    'buzzer': _load_buzzer,
    'team_limit': lambda v: max(2, min(5, int(v))),
    'join_code': lambda v: None if v is None else str(v),
    'scoreboard_mode': lambda v: v if v in SCOREBOARD_MODES else 'POST',
}
