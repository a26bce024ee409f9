import time

from flask import Blueprint, jsonify

from quizduel import get_registry

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'service': 'quizduel', 'status': 'ok'})


@main.route('/health')
def health():
    registry = get_registry()
    return jsonify({
        'ok': True,
        'rooms': sorted(session.room_code for session in registry),
        'default_room': registry.default_room,
        'time': int(time.time() * 1000),
    })
