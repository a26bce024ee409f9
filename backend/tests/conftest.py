import os
import sys
import logging
import pytest

# Ensure the backend root (containing the `quizduel` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from quizduel import create_app, get_registry, socketio
from quizduel.services.game.session import GameSession


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    DATA_DIR = None
    PERSIST_ENABLED = True
    ALLOWED_ORIGINS = []
    DEFAULT_ROOM = 'MAIN'
    STARTING_TOKENS = 24
    STARTING_JOKERS = 1
    TEAM_LIMIT = 3
    ANSWER_WINDOW_MS = 45000
    IDEMPOTENCY_WINDOW_MS = 10000
    PERSIST_DEBOUNCE_MS = 600
    TICK_INTERVAL_MS = 300
    SUBMIT_GRACE_MS = 300
    SCOREBOARD_RACE_SEC = 12


class ManualClock:
    """Epoch-ms clock that only moves when a test advances it."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def now_ms(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


def _config_dict(data_dir):
    config = {k: getattr(TestConfig, k) for k in dir(TestConfig) if k.isupper()}
    config['DATA_DIR'] = data_dir
    return config


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def events():
    """Broadcasts recorded by the standalone session, as (event, payload) pairs."""
    return []


@pytest.fixture()
def make_session(tmp_path, clock, events):
    def _make(room_code='MAIN', data_dir=None, **overrides):
        config = _config_dict(str(tmp_path))
        config.update(overrides)
        return GameSession(
            room_code=room_code,
            config=config,
            clock=clock,
            emit=lambda event, payload: events.append((event, payload)),
            data_dir=data_dir if data_dir is not None else str(tmp_path / room_code),
            logger=logging.getLogger('quizduel.tests'),
        )
    return _make


@pytest.fixture()
def session(make_session):
    return make_session()


@pytest.fixture()
def three_teams(session):
    for team_id, name in (('a', 'Alpha'), ('b', 'Bravo'), ('c', 'Charlie')):
        session.join_team(team_id, name)
    return session


@pytest.fixture()
def flask_app(tmp_path, clock):
    class _Config(TestConfig):
        DATA_DIR = str(tmp_path / 'data')

    application = create_app(_Config, clock=clock)
    with application.app_context():
        yield application


@pytest.fixture()
def registry(flask_app):
    return get_registry(flask_app)


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
