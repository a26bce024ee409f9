from flask import Blueprint, current_app, jsonify, request

from quizduel import get_registry
from quizduel.services.game.session import COMMANDS

rooms = Blueprint('rooms', __name__)


@rooms.route('/<code>/state', methods=['GET'])
def get_state(code):
    return jsonify(get_registry().get(code).snapshot())


@rooms.route('/<code>/teams', methods=['GET'])
def get_teams(code):
    return jsonify(get_registry().get(code).teams_snapshot())


@rooms.route('/<code>/commands/<command>', methods=['POST'])
def run_command(code, command):
    """Dispatch a command the same way a socket client would.

    The JSON body is the payload; ``actor_id`` in the body or query string
    selects the acting team for ``team.*`` commands.
    """
    if command not in COMMANDS:
        return jsonify({'error': f'unknown command {command}'}), 404
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'payload must be a JSON object'}), 400
    actor = data.get('actor_id') or request.args.get('actor_id')
    session = get_registry().get(code)
    result = session.dispatch(command, data, actor_id=actor)
    if not result.get('ok'):
        return jsonify(result), 409
    current_app.logger.info(f"[http-command] room={session.room_code} command={command} actor={actor}")
    return jsonify(result)


@rooms.route('/<code>/flush', methods=['POST'])
def flush_room(code):
    session = get_registry().get(code)
    written = session.flush()
    return jsonify({'ok': True, 'written': written, 'room_code': session.room_code})
