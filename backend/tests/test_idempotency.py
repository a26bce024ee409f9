from quizduel.services.game.idempotency import IdempotencyGuard


def test_repeat_within_window_is_duplicate(clock):
    guard = IdempotencyGuard(clock, window_ms=10000)
    assert not guard.is_duplicate('act-1')
    clock.advance(9999)
    assert guard.is_duplicate('act-1')
    assert not guard.is_duplicate('act-2')


def test_repeat_after_window_is_applied_again(clock):
    guard = IdempotencyGuard(clock, window_ms=10000)
    guard.is_duplicate('act-1')
    clock.advance(10001)
    assert not guard.is_duplicate('act-1')


def test_missing_action_id_is_never_duplicate(clock):
    guard = IdempotencyGuard(clock)
    assert not guard.is_duplicate(None)
    assert not guard.is_duplicate('')
    assert not guard.is_duplicate(None)
    assert len(guard) == 0


def test_expired_entries_are_purged(clock):
    guard = IdempotencyGuard(clock, window_ms=1000)
    for i in range(5):
        guard.is_duplicate(f'act-{i}')
    assert len(guard) == 5
    clock.advance(5000)
    guard.is_duplicate('fresh')
    assert len(guard) == 1


def test_duplicate_set_stake_applies_once(three_teams):
    session = three_teams
    session.start_category('Hase')

    first = session.dispatch('team.setStake', {'amount': 3, 'action_id': 'stake-1'}, actor_id='a')
    retry = session.dispatch('team.setStake', {'amount': 6, 'action_id': 'stake-1'}, actor_id='a')

    assert first['ok'] and first['amount'] == 3
    assert retry == {'ok': True, 'duplicate': True}
    assert session.state.stakes['a'].amount == 3


def test_duplicate_resolve_pays_once(three_teams):
    session = three_teams
    session.start_category('Hase')
    session.lock_stakes()
    session.state.category_pot = 30
    before = session.teams.get('b').tokens

    payload = {'winner_ids': ['b'], 'action_id': 'resolve-1'}
    session.dispatch('admin.resolveRound', payload)
    session.dispatch('admin.resolveRound', payload)

    assert session.teams.get('b').tokens == before + 10


def test_duplicate_does_not_broadcast(three_teams, events):
    session = three_teams
    session.dispatch('admin.teamLimit.set', {'limit': 4, 'action_id': 'lim-1'})
    events.clear()
    session.dispatch('admin.teamLimit.set', {'limit': 5, 'action_id': 'lim-1'})
    assert events == []
    assert session.state.team_limit == 4
