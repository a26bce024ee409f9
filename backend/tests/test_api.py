import os


def test_index_and_health(client):
    assert client.get('/').get_json()['status'] == 'ok'
    res = client.get('/health')
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['default_room'] == 'MAIN'


def test_state_snapshot_normalizes_room_code(client):
    res = client.get('/api/rooms/main/state')
    assert res.status_code == 200
    data = res.get_json()
    assert data['room_code'] == 'MAIN'
    assert data['phase'] == 'LOBBY'
    assert 'server_now' in data


def test_command_endpoint_joins_team(client):
    res = client.post('/api/rooms/MAIN/commands/team.join', json={'actor_id': 't1', 'name': 'Alpha'})
    assert res.status_code == 200
    assert res.get_json()['team_id'] == 't1'

    teams = client.get('/api/rooms/MAIN/teams').get_json()
    assert [t['id'] for t in teams] == ['t1']
    assert teams[0]['tokens'] == 24


def test_unknown_command_is_404(client):
    res = client.post('/api/rooms/MAIN/commands/admin.explode', json={})
    assert res.status_code == 404
    assert 'error' in res.get_json()


def test_rejected_command_is_409(client):
    res = client.post('/api/rooms/MAIN/commands/admin.lockStakes', json={})
    assert res.status_code == 409
    assert res.get_json() == {'ok': False, 'error': 'wrong_phase'}


def test_full_round_over_http(client):
    for team_id in ('a', 'b'):
        client.post('/api/rooms/MAIN/commands/team.join', json={'actor_id': team_id})
    client.post('/api/rooms/MAIN/commands/admin.startCategory', json={'category': 'Wal'})
    client.post('/api/rooms/MAIN/commands/team.setStake', json={'actor_id': 'a', 'amount': 6})
    client.post('/api/rooms/MAIN/commands/team.setStake', json={'actor_id': 'b', 'amount': 3})
    client.post('/api/rooms/MAIN/commands/admin.lockStakes', json={})

    res = client.post('/api/rooms/MAIN/commands/admin.resolveRound', json={'winner_ids': ['b']})
    assert res.get_json()['result']['payout'] == 4

    teams = {t['id']: t['tokens'] for t in client.get('/api/rooms/MAIN/teams').get_json()}
    assert teams == {'a': 18, 'b': 25}


def test_rooms_are_isolated(client):
    client.post('/api/rooms/QUIZ2/commands/team.join', json={'actor_id': 'x'})
    assert client.get('/api/rooms/MAIN/teams').get_json() == []
    assert len(client.get('/api/rooms/QUIZ2/teams').get_json()) == 1


def test_flush_writes_snapshot(client, flask_app):
    client.post('/api/rooms/MAIN/commands/team.join', json={'actor_id': 't1'})
    res = client.post('/api/rooms/MAIN/flush')
    assert res.get_json()['written'] is True
    room_dir = os.path.join(flask_app.config['DATA_DIR'], 'MAIN')
    assert os.path.exists(os.path.join(room_dir, 'state.json'))
    assert os.path.exists(os.path.join(room_dir, 'teams.json'))


def test_state_show_command(flask_app):
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['state-show'])
    assert result.exit_code == 0
    assert '"phase": "LOBBY"' in result.output


def test_state_reset_command(flask_app, registry):
    registry.get('MAIN').join_team('t1', 'Alpha')
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['state-reset', 'MAIN'])
    assert 'Room MAIN has been reset!' in result.output
    assert len(registry.get('MAIN').teams) == 0
