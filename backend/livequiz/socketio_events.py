from functools import wraps

from flask import current_app, request
from flask_socketio import emit, join_room, leave_room
from pydantic import ValidationError

from livequiz import get_services, socketio
from livequiz.errors import ErrorKind, GameError
from livequiz.schemas import Quiz

# Max accepted messages per second per (connection, event)
EVENT_LIMITS = {
    'host-join': 5,
    'player-join': 5,
    'player-name-change': 5,
    'start-game': 3,
    'rematch-game': 3,
    'submit-answer': 3,
    'use-power-up': 3,
    'next-question': 5,
    'end-question-early': 3,
    'kick-player': 5,
    'leave-game': 5,
    'submit-proposal': 5,
    'quick-response': 10,
    'chat-message': 5,
    'lock-consensus': 3,
}


def _get_sid() -> str:
    return request.sid  # type: ignore[attr-defined]


def socket_handler(event: str, error_event: str = 'error'):
    """Rate-limit the inbound message and turn ``GameError`` into a reply
    to the sender only."""

    def decorator(fn):
        @wraps(fn)
        def wrapper(data=None):
            services = get_services()
            sid = _get_sid()
            allowed = services.rate_limiter.check_rate_limit(
                sid, event, EVENT_LIMITS.get(event), notifier=lambda name, payload: emit(name, payload)
            )
            if not allowed:
                return None
            try:
                return fn(services, sid, data if isinstance(data, dict) else {})
            except GameError as exc:
                current_app.logger.info(f"[denied] event={event} sid={sid} key={exc.kind.value} msg={exc.message!r}")
                payload = exc.to_payload()
                if error_event == 'power-up-result':
                    payload['success'] = False
                emit(error_event, payload)
                return None
        return wrapper
    return decorator


def _host_game(services, sid, data):
    pin = data.get('pin')
    game = services.sessions.get_game(pin) if pin else services.sessions.find_game_by_host(sid)
    if game is None:
        raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
    if game.host_id != sid:
        raise GameError(ErrorKind.NOT_HOST, 'Only the host can do that')
    return game


def _player_game(services, sid):
    entry = services.players.get_player(sid)
    if entry is None:
        raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
    game = services.sessions.get_game(entry['gamePin'])
    if game is None:
        raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
    return game


def _parse_quiz(raw) -> Quiz:
    if not isinstance(raw, dict):
        raise GameError(ErrorKind.INVALID_INPUT, 'Quiz data is required')
    try:
        return Quiz.model_validate(
            raw, context={'default_time_limit': current_app.config.get('DEFAULT_QUESTION_TIME_SEC', 20)}
        )
    except ValidationError as exc:
        problems = '; '.join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()[:5]
        )
        raise GameError(ErrorKind.INVALID_QUIZ, f'Invalid quiz: {problems}') from exc


def _end_hosted_game(services, game, reason):
    services.players.handle_host_disconnect(game, reason=reason)
    services.sessions.delete_game(game.pin)


# ---- connection lifecycle ----

def handle_connect(auth=None):
    emit('connected', {'sid': _get_sid()})


def handle_disconnect(reason=None):
    services = get_services()
    sid = _get_sid()
    services.rate_limiter.forget(sid)
    entry = services.players.get_player(sid)
    if entry is not None:
        services.players.handle_player_disconnect(sid, services.sessions.get_game(entry['gamePin']))
    for hosted in services.sessions.find_games_by_host(sid):
        _end_hosted_game(services, hosted, 'Host disconnected')


# ---- host ----

@socket_handler('host-join')
def handle_host_join(services, sid, data):
    quiz = _parse_quiz(data.get('quiz'))
    if services.players.get_player(sid) is not None:
        raise GameError(ErrorKind.ALREADY_IN_GAME, 'Already joined a game as a player')
    game = services.sessions.create_game(sid, quiz)
    join_room(game.room)
    emit('game-created', {
        'pin': game.pin,
        'title': game.title,
        'questionCount': len(game.questions),
        'consensusMode': game.is_consensus,
    })


@socket_handler('start-game')
def handle_start_game(services, sid, data):
    services.sessions.start_game(_host_game(services, sid, data))


@socket_handler('next-question')
def handle_next_question(services, sid, data):
    services.sessions.manual_advance_to_next_question(_host_game(services, sid, data))


@socket_handler('end-question-early')
def handle_end_question_early(services, sid, data):
    services.question_flow.end_question_early(_host_game(services, sid, data))


@socket_handler('kick-player')
def handle_kick_player(services, sid, data):
    game = _host_game(services, sid, data)
    player_id = data.get('playerId')
    if not isinstance(player_id, str) or not player_id:
        raise GameError(ErrorKind.INVALID_INPUT, 'playerId is required')
    services.players.kick_player(game, player_id)


@socket_handler('rematch-game')
def handle_rematch_game(services, sid, data):
    services.sessions.rematch(_host_game(services, sid, data))


@socket_handler('lock-consensus')
def handle_lock_consensus(services, sid, data):
    services.consensus.lock_consensus(_host_game(services, sid, data))


# ---- players ----

@socket_handler('player-join')
def handle_player_join(services, sid, data):
    pin = data.get('pin')
    if services.sessions.find_game_by_host(sid) is not None:
        raise GameError(ErrorKind.ALREADY_IN_GAME, 'The host cannot join as a player')
    services.players.join(sid, pin, data.get('playerName'), services.sessions.get_game(pin))


@socket_handler('player-name-change')
def handle_player_name_change(services, sid, data):
    entry = services.players.get_player(sid)
    game = services.sessions.get_game(entry['gamePin']) if entry else None
    services.players.change_name(sid, data.get('newName'), game)


@socket_handler('submit-answer', error_event='answer-error')
def handle_submit_answer(services, sid, data):
    game = _player_game(services, sid)
    pin = data.get('pin')
    if pin is not None and pin != game.pin:
        raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
    services.question_flow.handle_answer_submission(sid, data.get('answer'), game, data.get('questionIndex'))


@socket_handler('use-power-up', error_event='power-up-result')
def handle_use_power_up(services, sid, data):
    game = _player_game(services, sid)
    with game.lock:
        result = game.use_power_up(sid, data.get('powerUpType') or data.get('type'))
    current_app.logger.info(f"[power-up] pin={game.pin} sid={sid} type={result['type']}")
    emit('power-up-result', result)


@socket_handler('leave-game')
def handle_leave_game(services, sid, data):
    hosted = services.sessions.find_games_by_host(sid)
    if hosted:
        for game in hosted:
            _end_hosted_game(services, game, 'Host left the game')
            leave_room(game.room)
            emit('left', {'pin': game.pin})
        return
    entry = services.players.get_player(sid)
    if entry is None:
        raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
    services.players.handle_player_disconnect(sid, services.sessions.get_game(entry['gamePin']))
    emit('left', {'pin': entry['gamePin']})


# ---- consensus ----

@socket_handler('submit-proposal')
def handle_submit_proposal(services, sid, data):
    services.consensus.submit_proposal(sid, _player_game(services, sid), data.get('answer'))


@socket_handler('quick-response')
def handle_quick_response(services, sid, data):
    services.consensus.quick_response(sid, _player_game(services, sid), data.get('type'), data.get('target'))


@socket_handler('chat-message')
def handle_chat_message(services, sid, data):
    services.consensus.chat(sid, _player_game(services, sid), data.get('text'))


HANDLERS = (
    ('connect', handle_connect),
    ('disconnect', handle_disconnect),
    ('host-join', handle_host_join),
    ('start-game', handle_start_game),
    ('next-question', handle_next_question),
    ('end-question-early', handle_end_question_early),
    ('kick-player', handle_kick_player),
    ('rematch-game', handle_rematch_game),
    ('lock-consensus', handle_lock_consensus),
    ('player-join', handle_player_join),
    ('player-name-change', handle_player_name_change),
    ('submit-answer', handle_submit_answer),
    ('use-power-up', handle_use_power_up),
    ('leave-game', handle_leave_game),
    ('submit-proposal', handle_submit_proposal),
    ('quick-response', handle_quick_response),
    ('chat-message', handle_chat_message),
)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    for name, handler in HANDLERS:
        socketio.on_event(name, handler, namespace='/ws')

    if testing:
        for name, handler in HANDLERS:
            socketio.on_event(name, handler, namespace='/')
