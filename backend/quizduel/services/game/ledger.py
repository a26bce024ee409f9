import logging
import math
from typing import Iterable, Optional, Tuple

from quizduel.categories import build_recap
from quizduel.models import (
    FIXED_BASE,
    ROUNDS_PER_CATEGORY,
    Phase,
    ResolutionRecord,
    Stake,
    ack,
    reject,
)
from .teams import team_key

BASE_STAKES = (0, 3, 6)
EXTENDED_STAKES = (0, 3, 6, 9)
MIN_PAID_STAKE = 3


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number == int(number) else None


class PotLedger:
    """Stakes, the category pot and round settlement.

    Operates on the session's ``GameState`` and ``TeamRegistry``. Every
    operation returns an ack dict; an operation that is not valid in the
    current state changes nothing.
    """

    def __init__(self, state_ref, teams, clock, logger: Optional[logging.Logger] = None):
        # zero-arg callable; a full reset swaps the state object
        self._state_ref = state_ref
        self.teams = teams
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @property
    def state(self):
        return self._state_ref()

    def allowed_stakes(self) -> Tuple[int, ...]:
        return EXTENDED_STAKES if self.state.team_limit > 2 else BASE_STAKES

    # ---- wagering ----

    def set_stake(self, team_id, amount, use_joker=False):
        state = self.state
        if state.phase != Phase.STAKE:
            return reject('wrong_phase')
        team = self.teams.get(team_id)
        if team is None:
            return reject('unknown_team')

        value = _as_int(amount)
        if value not in self.allowed_stakes():
            value = 0
        if team.tokens < MIN_PAID_STAKE:
            value = 0
        joker = bool(use_joker) and value > 0 and team.jokers > 0

        state.stakes[team_id] = Stake(amount=value, joker=joker)
        return ack(amount=value, joker=joker)

    def lock_stakes(self):
        state = self.state
        if state.phase != Phase.STAKE:
            return reject('wrong_phase')
        total = 0
        joker_extra = 0
        for team_id, stake in state.stakes.items():
            total += stake.amount
            if stake.joker:
                joker_extra += stake.amount
            if team_id not in self.teams:
                continue
            self.teams.debit(team_id, stake.amount)
            if stake.joker:
                self.teams.get(team_id).jokers = 0
        state.category_pot = total + joker_extra + FIXED_BASE
        state.phase = Phase.CATEGORY
        state.round_start_ts = self.clock.now_ms()
        state.resolved_rounds.discard(state.round_key)
        self.logger.info(f"[stakes-lock] category={state.current_category.value if state.current_category else None} pot={state.category_pot}")
        return ack(category_pot=state.category_pot)

    # ---- settlement ----

    def resolve_round(self, winner_ids: Optional[Iterable] = None):
        """Settle the current round.

        An empty or missing ``winner_ids`` is the explicit "no winner" signal:
        the round payout rolls into the carry. Ids that all miss the team
        registry are rejected rather than read as "no winner".
        """
        state = self.state
        if state.phase != Phase.CATEGORY:
            return reject('wrong_phase')
        if state.round_resolved:
            return reject('already_resolved')

        if winner_ids is None:
            raw_ids = []
        elif isinstance(winner_ids, (list, tuple, set)):
            raw_ids = winner_ids
        else:
            raw_ids = [winner_ids]
        seen = []
        for raw in raw_ids:
            tid = team_key(raw)
            if tid is None:
                continue
            if tid not in seen:
                seen.append(tid)
        winners = [tid for tid in seen if tid in self.teams]
        if seen and not winners:
            return reject('unknown_team')

        payout = state.category_pot // ROUNDS_PER_CATEGORY
        total_pot = payout + state.carry_round
        credits = {}
        share = None
        carried = 0
        discarded = 0

        if not winners:
            state.carry_round += payout
            carried = state.carry_round
        elif len(winners) == 1:
            credits[winners[0]] = total_pot
            state.carry_round = 0
        else:
            n = len(winners)
            share = total_pot // n
            remainder = total_pot - share * n
            credits = {tid: share for tid in winners}
            if state.round_index < ROUNDS_PER_CATEGORY - 1:
                state.carry_round = remainder
            else:
                state.carry_round = 0
                discarded = remainder
                if remainder > 0:
                    self.logger.info(
                        f"[tie-remainder-discarded] category={state.current_category.value} remainder={remainder}"
                    )

        for tid, gain in credits.items():
            self.teams.credit(tid, gain)
            state.round_wins[tid] = state.round_wins.get(tid, 0) + 1
            state.category_earnings[tid] = state.category_earnings.get(tid, 0) + gain

        state.resolved_rounds.add(state.round_key)
        record = ResolutionRecord(
            category=state.current_category.value,
            round_index=state.round_index,
            winner_ids=winners,
            payout=payout,
            total_pot=total_pot,
            carry_after=state.carry_round,
            per_winner_share=share,
            credits=credits,
            carried_amount=carried,
            discarded_remainder=discarded,
            resolved_at=self.clock.now_ms(),
        )
        state.pending_result = record
        self.logger.info(
            f"[round-resolve] key={state.round_key} winners={winners} payout={payout} total={total_pot} carry={state.carry_round}"
        )
        return ack(result=record.to_dict())

    def announce_result(self):
        """Build the announcement for the pending result and clear it.

        Returns ``(ack, payload)``; the payload is None when there is nothing
        to announce for the current round.
        """
        state = self.state
        record = state.pending_result
        if record is None:
            return reject('nothing_pending'), None
        if not record.belongs_to(state.current_category, state.round_index):
            return reject('stale_result'), None
        payload = record.to_dict()
        payload['recap'] = build_recap(state.current_category, state.round_index, state.submissions, state.guess_history)
        state.last_result = record
        state.pending_result = None
        return ack(), payload

    def undo_round(self, snapshot):
        """Restore balances and carry from a caller-captured snapshot.

        The admin surface captures ``{'tokens': {team_id: n}, 'carry_round': n}``
        before resolving; undo writes it back and re-opens the round.
        """
        state = self.state
        if state.phase != Phase.CATEGORY:
            return reject('wrong_phase')
        if not state.round_resolved:
            return reject('not_resolved')
        snapshot = snapshot if isinstance(snapshot, dict) else {}

        tokens = snapshot.get('tokens')
        restored = []
        if isinstance(tokens, dict):
            for tid, value in tokens.items():
                number = _as_float_floor(value)
                if number is not None and tid in self.teams:
                    self.teams.set_tokens(tid, number)
                    restored.append(tid)
        carry = _as_float_floor(snapshot.get('carry_round'))
        if carry is not None:
            state.carry_round = max(0, carry)

        record = None
        for candidate in (state.pending_result, state.last_result):
            if candidate is not None and candidate.belongs_to(state.current_category, state.round_index):
                record = candidate
                break
        if record is not None:
            for tid in record.winner_ids:
                if state.round_wins.get(tid):
                    state.round_wins[tid] = max(0, state.round_wins[tid] - 1)
                gain = record.credits.get(tid, 0)
                if gain and state.category_earnings.get(tid):
                    state.category_earnings[tid] = max(0, state.category_earnings[tid] - gain)

        state.pending_result = None
        state.last_result = None
        state.resolved_rounds.discard(state.round_key)
        self.logger.info(f"[round-undo] key={state.round_key} restored={restored} carry={state.carry_round}")
        return ack(restored=restored)

    def category_summary(self) -> dict:
        state = self.state
        return {
            'category': state.current_category.value if state.current_category else None,
            'earnings': dict(state.category_earnings),
            'round_wins': dict(state.round_wins),
            'pot': state.category_pot,
            'rounds_played': state.round_index + 1,
            'carry_over_unused': state.carry_round,
            'timestamp': self.clock.now_ms(),
        }


def _as_float_floor(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return max(0, int(number // 1))
