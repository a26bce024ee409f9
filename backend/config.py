import os

BACKEND_ROOT = os.path.abspath(os.path.dirname(__file__))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    # Snapshots are written to DATA_DIR/<room>/state.json and teams.json
    DATA_DIR = os.environ.get('DATA_DIR') or os.path.join(BACKEND_ROOT, 'data')
    PERSIST_ENABLED = os.environ.get('PERSIST_ENABLED', '1') not in ('0', 'false', 'no')
    # Extra CORS origins, comma separated
    ALLOWED_ORIGINS = [o.strip() for o in os.environ.get('ALLOWED_ORIGINS', '').split(',') if o.strip()]
    DEFAULT_ROOM = os.environ.get('DEFAULT_ROOM', 'MAIN')
    # Team economy
    STARTING_TOKENS = int(os.environ.get('STARTING_TOKENS', '24'))
    STARTING_JOKERS = int(os.environ.get('STARTING_JOKERS', '1'))
    TEAM_LIMIT = int(os.environ.get('TEAM_LIMIT', '3'))
    # Buzzer answer window after the first buzz (ms)
    ANSWER_WINDOW_MS = int(os.environ.get('ANSWER_WINDOW_MS', '45000'))
    # Duplicate actionId window (ms)
    IDEMPOTENCY_WINDOW_MS = int(os.environ.get('IDEMPOTENCY_WINDOW_MS', '10000'))
    # Quiet period before a snapshot is written (ms)
    PERSIST_DEBOUNCE_MS = int(os.environ.get('PERSIST_DEBOUNCE_MS', '600'))
    # Background tick for timer expiry and scheduled callbacks (ms)
    TICK_INTERVAL_MS = int(os.environ.get('TICK_INTERVAL_MS', '300'))
    # Late submissions are accepted this long after the countdown expired (ms)
    SUBMIT_GRACE_MS = int(os.environ.get('SUBMIT_GRACE_MS', '300'))
    # Scoreboard race animation hold before returning to POST (sec)
    SCOREBOARD_RACE_SEC = int(os.environ.get('SCOREBOARD_RACE_SEC', '12'))
