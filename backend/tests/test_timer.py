import pytest

from quizduel.models import TimerState
from quizduel.services.game.timer import TimerService


@pytest.fixture()
def timer(clock):
    return TimerService(TimerState(), clock, grace_ms=300)


@pytest.mark.parametrize('raw, expected', [(0, 1), (5000, 999), ('abc', 1), ('30', 30), (12.7, 12)])
def test_start_clamps_seconds(timer, raw, expected):
    assert timer.start(raw) == expected
    assert timer.state.duration_sec == expected


def test_stop_and_resume_preserve_remaining_time(timer, clock):
    timer.start(30)
    clock.advance(10000)

    assert timer.stop()
    assert timer.state.ends_at is None
    assert timer.state.paused_remaining_ms == 20000
    assert timer.state.paused_remaining_sec == 20

    clock.advance(60000)
    assert timer.remaining_ms() == 20000

    assert timer.resume()
    assert timer.state.ends_at == clock.now + 20000
    assert timer.state.duration_sec == 30
    clock.advance(5000)
    assert timer.remaining_ms() == 15000


def test_paused_seconds_round_up(timer, clock):
    timer.start(10)
    clock.advance(500)
    timer.stop()
    assert timer.state.paused_remaining_ms == 9500
    assert timer.state.paused_remaining_sec == 10


def test_stop_and_resume_require_matching_state(timer):
    assert not timer.stop()
    assert not timer.resume()
    timer.start(5)
    assert not timer.resume()


def test_remaining_never_negative(timer, clock):
    timer.start(1)
    clock.advance(5000)
    assert timer.remaining_ms() == 0


def test_tick_reports_expiry_once(timer, clock):
    timer.start(2)
    ends_at = timer.state.ends_at
    clock.advance(1999)
    assert not timer.tick()
    clock.advance(1)
    assert timer.tick()
    assert timer.state.last_expired_at == ends_at
    assert timer.state.ends_at is None
    assert not timer.tick()


def test_submissions_accepted_inside_grace_window(timer, clock):
    timer.start(2)
    clock.advance(2000)
    timer.tick()
    clock.advance(300)
    assert timer.accepts_submission()
    clock.advance(1)
    assert not timer.accepts_submission()

    timer.start(5)
    assert timer.accepts_submission()


def test_reset_clears_everything(timer, clock):
    timer.start(10)
    clock.advance(1000)
    timer.stop()
    timer.reset()
    assert timer.state == TimerState()


def test_session_rejects_submission_after_grace(three_teams, clock, events):
    session = three_teams
    session.start_category('Hase')
    session.lock_stakes()
    session.timer_start(5)
    events.clear()

    clock.advance(5400)
    res = session.submit('a', 'Hase', {'answers': ['late']})

    assert res == {'ok': False, 'error': 'too_late'}
    assert 'a' not in session.state.submissions
    # the expiry itself was broadcast
    assert any(name == 'state.update' for name, _ in events)


def test_session_accepts_submission_inside_grace(three_teams, clock):
    session = three_teams
    session.start_category('Hase')
    session.lock_stakes()
    session.timer_start(5)
    clock.advance(5200)
    assert session.submit('a', 'Hase', {'answers': ['just in time']})['ok']


def test_session_timer_expiry_broadcast_on_tick(three_teams, clock, events):
    session = three_teams
    session.timer_start(3)
    events.clear()
    clock.advance(3000)
    session.tick()
    updates = [payload for name, payload in events if name == 'state.update']
    assert updates
    assert updates[-1]['timer']['ends_at'] is None
    assert updates[-1]['timer']['last_expired_at'] is not None
    assert updates[-1]['timer']['remaining_ms'] == 0
