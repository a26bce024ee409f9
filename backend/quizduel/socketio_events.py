from typing import Any, Dict

from flask import current_app, request
from flask_socketio import emit, join_room, leave_room

from quizduel import get_registry, socketio
from quizduel.models import ack
from quizduel.services.game.scheduler import start_ticker
from quizduel.services.game.session import COMMANDS
from quizduel.services.game.teams import team_key

_sid_to_ctx: Dict[str, Dict[str, Any]] = {}


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _room(room_code: str) -> str:
    return f"room:{room_code}"


def _ctx() -> Dict[str, Any]:
    return _sid_to_ctx.setdefault(_get_sid(), {})


def _session():
    return get_registry().get(_ctx().get('room_code'))


def handle_connect(auth=None):
    registry = get_registry()
    start_ticker(current_app._get_current_object(), socketio, registry)
    ctx = _ctx()
    if isinstance(auth, dict) and team_key(auth.get('team_id')):
        ctx['team_id'] = team_key(auth['team_id'])
    # Every socket sits in the default room until it asks for another one
    ctx['room_code'] = registry.default_room
    join_room(_room(registry.default_room))
    emit('connected', {'message': 'Connected to /ws', 'room_code': registry.default_room})


def handle_disconnect(reason=None):
    ctx = _sid_to_ctx.pop(_get_sid(), None)
    if ctx and ctx.get('team_id'):
        current_app.logger.info(f"[disconnect] room={ctx.get('room_code')} team={ctx['team_id']}")


def handle_room_join(data=None):
    data = data if isinstance(data, dict) else {}
    registry = get_registry()
    code = registry.normalize_code(data.get('room_code'), registry.default_room)
    ctx = _ctx()
    previous = ctx.get('room_code')
    if previous and previous != code:
        leave_room(_room(previous))
    join_room(_room(code))
    ctx['room_code'] = code
    session = registry.get(code)
    emit('room.joined', {'room_code': code, 'state': session.snapshot(), 'teams': session.teams_snapshot()})
    return ack(room_code=code)


def handle_team_join(data=None):
    data = data if isinstance(data, dict) else {}
    ctx = _ctx()
    team_id = team_key(data.get('team_id')) or ctx.get('team_id') or _get_sid()
    result = _session().dispatch('team.join', data, actor_id=team_id)
    if result.get('ok'):
        ctx['team_id'] = result['team_id']
    return result


def _command_handler(command: str):
    def _handler(data=None):
        data = data if isinstance(data, dict) else {}
        actor = _ctx().get('team_id') or data.get('actor_id')
        result = _session().dispatch(command, data, actor_id=actor)
        if result.get('error') == 'locked' and 'first_team_id' in result:
            emit('buzzer.late', {k: v for k, v in result.items() if k not in ('ok', 'error')})
        return result
    _handler.__name__ = f"handle_{command.replace('.', '_')}"
    return _handler


def handle_state_request(data=None):
    snapshot = _session().snapshot()
    emit('state.update', snapshot)
    return ack(state=snapshot)


def handle_teams_request(data=None):
    teams = _session().teams_snapshot()
    emit('teams.update', teams)
    return ack(teams=teams)


def handle_lobby_code(data=None):
    session = _session()
    with session.lock:
        code = session.state.join_code
    return ack(code=code)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('room.join', handle_room_join, namespace=namespace)
        socketio.on_event('team.join', handle_team_join, namespace=namespace)
        socketio.on_event('state.request', handle_state_request, namespace=namespace)
        socketio.on_event('teams.request', handle_teams_request, namespace=namespace)
        socketio.on_event('lobby.code', handle_lobby_code, namespace=namespace)
        for command in COMMANDS:
            if command == 'team.join':
                continue
            socketio.on_event(command, _command_handler(command), namespace=namespace)
