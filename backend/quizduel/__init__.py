from flask import Flask, current_app
from flask_cors import CORS
from flask_socketio import SocketIO
import click
import json
from config import Config

allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

EXTENSION_KEY = 'quizduel'


def get_registry(app=None):
    app = app or current_app
    return app.extensions[EXTENSION_KEY]


def _room_emitter(room_code):
    def _emit(event, payload):
        # socketio.emit since this may run from the background ticker
        socketio.emit(event, payload, to=f"room:{room_code}", namespace='/ws')
    return _emit


def create_app(config_class=Config, clock=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    origins = allowed_origins + list(flask_app.config.get('ALLOWED_ORIGINS') or [])
    CORS(flask_app, supports_credentials=True, origins=origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=origins)

    from quizduel.services.game.session import SessionRegistry
    registry = SessionRegistry(flask_app.config, emit_factory=_room_emitter, clock=clock, logger=flask_app.logger)
    flask_app.extensions[EXTENSION_KEY] = registry

    from quizduel.main import main
    flask_app.register_blueprint(main)

    from quizduel.api.rooms import rooms
    flask_app.register_blueprint(rooms, url_prefix='/api/rooms')

    from quizduel.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('state-show')
    @click.argument('room', required=False)
    def state_show_command(room):
        """Prints the current snapshot of a room."""
        session = registry.get(room)
        click.echo(json.dumps(session.snapshot(), indent=2, ensure_ascii=False))

    @click.command('state-reset')
    @click.argument('room', required=False)
    def state_reset_command(room):
        """Wipes teams and game state of a room and writes the empty snapshot."""
        session = registry.get(room)
        session.full_reset()
        session.flush()
        click.echo(f'Room {session.room_code} has been reset!')

    flask_app.cli.add_command(state_show_command)
    flask_app.cli.add_command(state_reset_command)

    return flask_app
