import heapq
import os
import sys
import pytest

# Ensure the backend root (containing the `livequiz` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from livequiz import create_app, db, get_services, socketio
from livequiz.schemas import Quiz
from livequiz.services import build_services
from livequiz.services.timers import Clock, TimerHandle


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_CONCURRENT_GAMES = 100
    MAX_PLAYERS_PER_GAME = 200


class ManualClock(Clock):
    """Virtual time: callbacks fire only inside ``advance``."""

    def __init__(self, start_ms=1_700_000_000_000):
        self.now = start_ms
        self._queue = []
        self._seq = 0

    def now_ms(self):
        return self.now

    def call_later(self, delay_ms, fn, label='timer'):
        handle = TimerHandle(label, self.now + max(0, int(delay_ms)))
        self._seq += 1
        heapq.heappush(self._queue, (handle.due_ms, self._seq, handle, fn))
        return handle

    def spawn(self, fn):
        fn()

    def advance(self, ms):
        target = self.now + ms
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, fn = heapq.heappop(self._queue)
            self.now = max(self.now, due)
            if handle.cancelled:
                continue
            handle.fired = True
            fn()
        self.now = target

    def pending_labels(self):
        return [h.label for _, _, h, _ in self._queue if h.pending]


class RecordingEmitter:
    def __init__(self):
        self.sent = []
        self.rooms = {}

    def emit(self, event, payload=None, to=None):
        self.sent.append((event, payload, to))

    def enter_room(self, sid, room):
        self.rooms.setdefault(room, set()).add(sid)

    def leave_room(self, sid, room):
        self.rooms.get(room, set()).discard(sid)

    def events(self, name, to=None):
        return [p for e, p, t in self.sent if e == name and (to is None or t == to)]

    def names(self, to=None):
        return [e for e, _, t in self.sent if to is None or t == to]

    def clear(self):
        self.sent.clear()


def mc_question(**overrides):
    data = {
        'question': 'Which letter is second?',
        'type': 'multiple-choice',
        'options': ['A', 'B', 'C', 'D'],
        'correctIndex': 1,
        'difficulty': 'medium',
        'timeLimit': 20,
    }
    data.update(overrides)
    return data


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def flask_app(clock):
    application = create_app(TestConfig, clock=clock)
    with application.app_context():
        # Ensure models are imported so tables are created
        import livequiz.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


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
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def emitter():
    return RecordingEmitter()


@pytest.fixture()
def core(flask_app, clock, emitter):
    """Game services wired to a recording emitter instead of Socket.IO."""
    return build_services(flask_app, clock, emitter)


@pytest.fixture()
def app_services(flask_app):
    return get_services(flask_app)


@pytest.fixture()
def make_quiz():
    def _make(questions=None, **flags):
        payload = {'title': 'Test Quiz', 'questions': questions or [mc_question()]}
        payload.update(flags)
        return Quiz.model_validate(payload)
    return _make


@pytest.fixture()
def lobby(core, make_quiz):
    """Create a game and join players into it; returns the Game."""
    def _lobby(player_names=('Alice',), host_id='host-1', quiz=None, **flags):
        game = core.sessions.create_game(host_id, quiz or make_quiz(**flags))
        for idx, name in enumerate(player_names, start=1):
            core.players.join(f'p{idx}', game.pin, name, game)
        return game
    return _lobby
