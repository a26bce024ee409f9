from quizduel.models import Phase


def _enter_category(session, category='Hase', stakes=None, jokers=()):
    assert session.start_category(category)['ok']
    for team_id, amount in (stakes or {}).items():
        session.set_stake(team_id, amount, use_joker=team_id in jokers)
    assert session.lock_stakes()['ok']


def _tokens(session, team_id):
    return session.teams.get(team_id).tokens


def test_disallowed_amount_is_stored_as_zero(three_teams):
    session = three_teams
    session.start_category('Hase')

    res = session.set_stake('a', 5)
    assert res == {'ok': True, 'amount': 0, 'joker': False}
    assert session.state.stakes['a'].amount == 0

    # 9 is only offered with more than two teams
    assert session.set_stake('b', 9)['amount'] == 9
    session.set_team_limit(2)
    assert session.set_stake('b', 9)['amount'] == 0


def test_stake_forced_to_zero_when_balance_too_low(three_teams):
    session = three_teams
    session.update_team('a', {'tokens': 2})
    session.start_category('Hase')
    assert session.set_stake('a', 3)['amount'] == 0


def test_stake_outside_stake_phase_is_rejected(three_teams):
    res = three_teams.set_stake('a', 3)
    assert res == {'ok': False, 'error': 'wrong_phase'}
    assert three_teams.state.stakes == {}


def test_pot_counts_joker_twice_plus_fixed_base(three_teams):
    session = three_teams
    _enter_category(session, stakes={'a': 6, 'b': 3, 'c': 0}, jokers=('a',))

    assert session.state.phase == Phase.CATEGORY
    assert session.state.category_pot == 6 + 3 + 0 + 6 + 3
    assert _tokens(session, 'a') == 18
    assert _tokens(session, 'b') == 21
    assert _tokens(session, 'c') == 24
    assert session.teams.get('a').jokers == 0
    assert session.teams.get('b').jokers == 1


def test_joker_ignored_for_zero_stake(three_teams):
    session = three_teams
    session.start_category('Hase')
    res = session.set_stake('a', 0, use_joker=True)
    assert res['joker'] is False


def test_lock_stakes_only_from_stake_phase(three_teams):
    assert three_teams.lock_stakes()['error'] == 'wrong_phase'


def test_resolve_twice_pays_once(three_teams):
    session = three_teams
    _enter_category(session, stakes={'a': 6, 'b': 6, 'c': 6})
    assert session.state.category_pot == 21

    first = session.resolve_round(['a'])
    assert first['ok']
    assert _tokens(session, 'a') == 18 + 7

    second = session.resolve_round(['a'])
    assert second == {'ok': False, 'error': 'already_resolved'}
    assert _tokens(session, 'a') == 25


def test_single_winner_takes_payout_plus_carry(three_teams):
    session = three_teams
    _enter_category(session)
    session.state.category_pot = 45
    session.state.carry_round = 5
    before = _tokens(session, 'b')

    res = session.resolve_round(['b'])

    assert res['result']['payout'] == 15
    assert res['result']['total_pot'] == 20
    assert _tokens(session, 'b') == before + 20
    assert session.state.carry_round == 0


def test_tie_remainder_carried_while_rounds_remain(three_teams):
    session = three_teams
    _enter_category(session)
    session.state.category_pot = 300

    res = session.resolve_round(['a', 'b', 'c'])

    record = res['result']
    assert record['per_winner_share'] == 33
    assert record['credits'] == {'a': 33, 'b': 33, 'c': 33}
    assert session.state.carry_round == 1
    assert record['discarded_remainder'] == 0


def test_tie_remainder_discarded_on_last_round(three_teams):
    session = three_teams
    _enter_category(session)
    session.next_round()
    session.next_round()
    assert session.state.round_index == 2
    session.state.category_pot = 300
    session.state.carry_round = 0

    res = session.resolve_round(['a', 'b', 'c'])

    assert res['result']['per_winner_share'] == 33
    assert res['result']['discarded_remainder'] == 1
    assert session.state.carry_round == 0


def test_tie_consumes_existing_carry(three_teams):
    session = three_teams
    _enter_category(session)
    session.state.category_pot = 300
    session.state.carry_round = 2

    res = session.resolve_round(['a', 'b', 'c'])

    assert res['result']['total_pot'] == 102
    assert res['result']['per_winner_share'] == 34
    assert session.state.carry_round == 0


def test_no_winner_rolls_payout_into_carry(three_teams):
    session = three_teams
    _enter_category(session, stakes={'a': 3, 'b': 3, 'c': 3})
    assert session.state.category_pot == 12

    res = session.resolve_round([])

    assert res['ok']
    assert session.state.carry_round == 4
    assert session.state.round_resolved
    assert res['result']['carried_amount'] == 4


def test_only_unknown_winners_is_rejected(three_teams):
    session = three_teams
    _enter_category(session)
    res = session.resolve_round(['ghost'])
    assert res == {'ok': False, 'error': 'unknown_team'}
    assert not session.state.round_resolved


def test_unknown_ids_dropped_next_to_known_winner(three_teams):
    session = three_teams
    _enter_category(session)
    session.state.category_pot = 30
    res = session.resolve_round(['ghost', 'a'])
    assert res['result']['winner_ids'] == ['a']


def test_undo_restores_balances_and_reopens_round(three_teams):
    session = three_teams
    _enter_category(session, stakes={'a': 6, 'b': 3})
    snapshot = {
        'tokens': {team.id: team.tokens for team in session.teams},
        'carry_round': session.state.carry_round,
    }
    session.resolve_round(['a', 'b'])
    assert session.state.round_wins == {'a': 1, 'b': 1}

    res = session.undo_round(snapshot)

    assert res['ok']
    assert sorted(res['restored']) == ['a', 'b', 'c']
    assert _tokens(session, 'a') == 18
    assert _tokens(session, 'b') == 21
    assert not session.state.round_resolved
    assert session.state.pending_result is None
    assert session.state.round_wins == {'a': 0, 'b': 0}

    assert session.resolve_round(['b'])['ok']


def test_undo_requires_resolved_round(three_teams):
    session = three_teams
    _enter_category(session)
    assert session.undo_round({'tokens': {}})['error'] == 'not_resolved'


def test_announce_broadcasts_recap_once(three_teams, events):
    session = three_teams
    _enter_category(session)
    session.submit('a', 'Hase', {'answers': ['Berlin', ' Paris ']})
    session.resolve_round(['a'])
    events.clear()

    res = session.announce_result()

    assert res['ok']
    announced = [payload for name, payload in events if name == 'result.announce']
    assert len(announced) == 1
    payload = announced[0]
    assert payload['winner_ids'] == ['a']
    assert payload['recap']['submissions']['a']['answers'] == ['Berlin', 'Paris']
    assert session.state.pending_result is None
    assert session.state.last_result.winner_ids == ['a']

    assert session.announce_result()['error'] == 'nothing_pending'


def test_finish_category_emits_summary_and_resets(three_teams, events):
    session = three_teams
    _enter_category(session, stakes={'a': 3})
    session.state.category_pot = 30
    session.resolve_round(['a'])

    res = session.finish_category()

    summary = res['summary']
    assert summary['category'] == 'Hase'
    assert summary['earnings'] == {'a': 10}
    assert summary['round_wins'] == {'a': 1}
    assert ('category.summary', summary) in events
    assert session.state.phase == Phase.LOBBY
    assert session.state.current_category is None
    assert session.state.stakes == {}
    assert session.state.category_pot == 0


def test_oversized_or_nan_stake_is_stored_as_zero(three_teams):
    session = three_teams
    session.start_category('Hase')

    huge = session.dispatch('team.setStake', {'amount': 10 ** 400, 'action_id': 's1'}, actor_id='a')
    assert huge == {'ok': True, 'amount': 0, 'joker': False}
    nan = session.dispatch('team.setStake', {'amount': float('nan'), 'action_id': 's2'}, actor_id='b')
    assert nan['amount'] == 0
    assert session.dispatch('team.setStake', {'amount': 6, 'action_id': 's3'}, actor_id='a')['amount'] == 6


def test_undo_skips_oversized_numbers(three_teams):
    session = three_teams
    _enter_category(session)
    session.resolve_round(['a'])
    res = session.undo_round({'tokens': {'a': 10 ** 400, 'b': 5}, 'carry_round': float('inf')})
    assert res == {'ok': True, 'restored': ['b']}
    assert _tokens(session, 'b') == 5


def test_scalar_winner_ids_are_read_as_one_id(three_teams):
    session = three_teams
    _enter_category(session)

    res = session.dispatch('admin.resolveRound', {'winner_ids': 1.5})
    assert res == {'ok': False, 'error': 'unknown_team'}
    assert not session.state.round_resolved

    res = session.dispatch('admin.resolveRound', {'winner_ids': 'a'})
    assert res['result']['winner_ids'] == ['a']


def test_nested_winner_ids_are_ignored(three_teams):
    session = three_teams
    _enter_category(session)
    res = session.dispatch('admin.resolveRound', {'winner_ids': [['a'], {'id': 'c'}, 'b']})
    assert res['result']['winner_ids'] == ['b']
