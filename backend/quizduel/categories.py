"""Category identifiers and per-category submission payloads.

Category names arrive from clients as raw strings, sometimes in legacy
encodings. They are resolved once, at the boundary, into ``Category`` and
never compared as raw strings afterwards. Each category accepts one payload
shape; ``normalize_submission`` validates and clamps it.
"""

import math
from enum import Enum
from typing import Any, Dict, Optional, Tuple

MAX_TEXT_LEN = 200
MAX_LIST_ITEMS = 20
MAX_BID = 10_000


class Category(str, Enum):
    HASE = 'Hase'
    KRANICH = 'Kranich'
    ROBBE = 'Robbe'
    EULE = 'Eule'
    WAL = 'Wal'
    ELCH = 'Elch'
    BAER = 'Bär'
    FUCHS = 'Fuchs'

    @property
    def is_race(self) -> bool:
        return self is RACE_CATEGORY

    @classmethod
    def resolve(cls, raw) -> Optional['Category']:
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return None
        key = raw.strip()
        key = LEGACY_NAMES.get(key, key).lower()
        for member in cls:
            if key in (member.value.lower(), member.name.lower()):
                return member
        return None


# Mis-encoded variants seen in older snapshots and clients
LEGACY_NAMES = {
    'BÃ¤r': 'Bär',
    'B??r': 'Bär',
    'Baer': 'Bär',
}

RACE_CATEGORY = Category.ELCH

# (primary, alternate) label per round of the race category
RACE_LABELS: Tuple[Tuple[str, str], ...] = (
    ('Städte', 'Berufe'),
    ('Tiere', 'Marken'),
    ('Länder', 'Dinge aus der Küche'),
)

FREE_GUESS_CATEGORY = Category.FUCHS


def race_labels_for(round_index: int) -> Tuple[str, str]:
    if 0 <= round_index < len(RACE_LABELS):
        return RACE_LABELS[round_index]
    return RACE_LABELS[0]


class InvalidPayload(ValueError):
    pass


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite_number(value) -> bool:
    if not _is_number(value):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise InvalidPayload('expected text')
    try:
        text = str(value)
    except ValueError:
        raise InvalidPayload('number too long')
    return text.strip()[:MAX_TEXT_LEN]


def _text_list(value):
    if not isinstance(value, (list, tuple)):
        raise InvalidPayload('expected a list')
    return [_text(v) for v in value[:MAX_LIST_ITEMS]]


def _percent(value) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, min(100, _round_half_up(number)))


def _hase(payload):
    return {'answers': _text_list(payload.get('answers'))}


def _kranich(payload):
    out = {}
    if 'category' in payload:
        out['category'] = _text(payload['category'])
    if 'order' in payload:
        out['order'] = _text_list(payload['order'])
    if not out:
        raise InvalidPayload('category or order required')
    return out


def _eule(payload):
    out = {key: _text_list(payload[key]) for key in ('r1', 'r3', 'r4') if key in payload}
    if not out:
        raise InvalidPayload('one of r1, r3, r4 required')
    return out


def _robbe(payload):
    perc = payload.get('perc')
    if not isinstance(perc, dict):
        raise InvalidPayload('perc required')
    a, b, c = (_percent(perc.get(k)) for k in ('a', 'b', 'c'))
    total = a + b + c
    if total != 100 and total > 0:
        scale = 100 / total
        a = _round_half_up(a * scale)
        b = _round_half_up(b * scale)
        b = min(b, 100 - a)
        c = max(0, 100 - (a + b))
    return {'perc': {'a': a, 'b': b, 'c': c}}


def _wal(payload):
    bid = payload.get('bid')
    if not _is_finite_number(bid):
        raise InvalidPayload('numeric bid required')
    return {'bid': max(0, min(MAX_BID, _round_half_up(bid)))}


def _baer(payload):
    estimate = payload.get('estimate')
    if not _is_finite_number(estimate):
        raise InvalidPayload('numeric estimate required')
    return {'estimate': estimate}


def _fuchs(payload):
    return {'guess': _text(payload.get('guess'))}


def _race(payload):
    raise InvalidPayload('race category answers by buzzing')


_NORMALIZERS = {
    Category.HASE: _hase,
    Category.KRANICH: _kranich,
    Category.ROBBE: _robbe,
    Category.EULE: _eule,
    Category.WAL: _wal,
    Category.ELCH: _race,
    Category.BAER: _baer,
    Category.FUCHS: _fuchs,
}


def normalize_submission(category: Category, payload) -> Dict[str, Any]:
    """Validate a team's submission for ``category``.

    Returns a new dict holding only the fields the category understands,
    clamped to their allowed ranges. Raises ``InvalidPayload`` when the payload
    cannot be interpreted at all.
    """
    if not isinstance(payload, dict):
        raise InvalidPayload('payload must be an object')
    return _NORMALIZERS[category](payload)


def build_recap(category: Optional[Category], round_index: int, submissions: dict, guess_history: dict) -> dict:
    recap = {
        'category': category.value if category else None,
        'round_index': round_index,
        'submissions': {tid: dict(entry) for tid, entry in submissions.items()},
    }
    if category is Category.ROBBE:
        recap['correct_key'] = None
    elif category is Category.BAER:
        recap['solution'] = None
    elif category is Category.WAL:
        recap['note'] = 'bids'
    elif category is Category.FUCHS:
        recap['note'] = 'multiple guesses allowed'
        recap['guess_history'] = {tid: list(h) for tid, h in guess_history.items()}
    return recap
