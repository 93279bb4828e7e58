import re
import threading
from typing import Dict, List, Optional

from livequiz.errors import ErrorKind, GameError

from .game import Game, GameState

# letters, digits, spaces and - _ ' . ! ?
NAME_PATTERN = re.compile(r"^[\w \-'.!?]+$")


class PlayerManagementService:
    """Lobby admission, renames and disconnect fan-out.

    Owns the connection registry (sid -> game pin and name) so that a
    disconnect can find its game without scanning every session.
    """

    def __init__(self, emitter, batcher, results, settings, logger):
        self.emitter = emitter
        self.batcher = batcher
        self.results = results
        self.settings = settings
        self.logger = logger
        self._lock = threading.Lock()
        self._players: Dict[str, Dict[str, str]] = {}

    def validate_name(self, name) -> str:
        if not isinstance(name, str):
            raise GameError(ErrorKind.INVALID_INPUT, 'Player name is required')
        name = name.strip()
        limit = int(self.settings.get('MAX_PLAYER_NAME_LENGTH', 20))
        if not name or len(name) > limit:
            raise GameError(ErrorKind.NAME_LENGTH, f'Name must be between 1 and {limit} characters')
        if not NAME_PATTERN.match(name):
            raise GameError(ErrorKind.NAME_INVALID_CHARS, 'Name contains invalid characters')
        return name

    def get_player(self, sid: str) -> Optional[Dict[str, str]]:
        with self._lock:
            entry = self._players.get(sid)
            return dict(entry) if entry else None

    def get_player_count(self) -> int:
        with self._lock:
            return len(self._players)

    def get_player_list(self, game: Game) -> List[dict]:
        with game.lock:
            return game.player_list()

    def join(self, sid: str, pin, name, game: Optional[Game]):
        if not isinstance(pin, str) or not pin or not isinstance(name, str) or not name:
            raise GameError(ErrorKind.INVALID_INPUT, 'Game PIN and player name are required')
        name = self.validate_name(name)
        if game is None:
            raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
        with self._lock:
            if sid in self._players:
                raise GameError(ErrorKind.ALREADY_IN_GAME, 'Already joined a game')

        with game.lock:
            if game.host_id == sid:
                raise GameError(ErrorKind.ALREADY_IN_GAME, 'The host cannot join as a player')
            if game.game_state != GameState.LOBBY:
                raise GameError(ErrorKind.GAME_ALREADY_STARTED, 'Game already started')
            with self._lock:
                if sid in self._players:
                    raise GameError(ErrorKind.ALREADY_IN_GAME, 'Already joined a game')
                player = game.add_player(sid, name)
                self._players[sid] = {'gamePin': game.pin, 'name': name}
            self.emitter.enter_room(sid, game.room)
            players = game.player_list()
            self.emitter.emit('player-joined', {
                'gamePin': game.pin,
                'playerName': name,
                'players': players,
            }, to=sid)
            self.emitter.emit('player-list-update', {'players': players}, to=game.room)
        self.logger.info(f"[player-joined] pin={game.pin} sid={sid} name={name!r} players={len(players)}")
        return player

    def change_name(self, sid: str, new_name, game: Optional[Game]) -> str:
        if self.get_player(sid) is None:
            raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
        new_name = self.validate_name(new_name)
        if game is None:
            raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
        with game.lock:
            if game.game_state != GameState.LOBBY:
                raise GameError(ErrorKind.GAME_ALREADY_STARTED, 'Names can only be changed in the lobby')
            player = game.players.get(sid)
            if player is None:
                raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
            if game.name_taken(new_name, exclude_id=sid):
                raise GameError(ErrorKind.NAME_ALREADY_TAKEN, 'That name is already taken')
            old_name = player.name
            player.name = new_name
            with self._lock:
                if sid in self._players:
                    self._players[sid]['name'] = new_name
            self.emitter.emit('name-changed', {'oldName': old_name, 'newName': new_name}, to=sid)
            self.emitter.emit('player-list-update', {'players': game.player_list()}, to=game.room)
        self.logger.info(f"[name-changed] pin={game.pin} sid={sid} {old_name!r} -> {new_name!r}")
        return new_name

    def _emit_answer_count(self, game: Game) -> None:
        self.batcher.emit(game.host_id, 'answer-count-update', {
            'answeredPlayers': game.answered_count(),
            'totalPlayers': len(game.players),
        })

    def handle_player_disconnect(self, sid: str, game: Optional[Game]) -> bool:
        with self._lock:
            entry = self._players.pop(sid, None)
        if entry is None:
            return False
        if game is None:
            return True
        with game.lock:
            player = game.remove_player(sid)
            if player is None:
                return True
            self.emitter.leave_room(sid, game.room)
            self.emitter.emit('player-list-update', {'players': game.player_list()}, to=game.room)
            self.emitter.emit('player-disconnected', {'playerId': sid, 'playerName': player.name}, to=game.room)
            if game.game_state == GameState.QUESTION:
                self._emit_answer_count(game)
        self.logger.info(f"[player-left] pin={game.pin} sid={sid} name={player.name!r}")
        return True

    def kick_player(self, game: Game, player_id: str, reason: str = 'Removed by host') -> None:
        with game.lock:
            player = game.remove_player(player_id)
            if player is None:
                raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
            with self._lock:
                self._players.pop(player_id, None)
            self.emitter.emit('player-kicked', {'reason': reason}, to=player_id)
            self.emitter.leave_room(player_id, game.room)
            self.emitter.emit('player-list-update', {'players': game.player_list()}, to=game.room)
            if game.game_state == GameState.QUESTION:
                self._emit_answer_count(game)
        self.logger.info(f"[player-kicked] pin={game.pin} sid={player_id} name={player.name!r}")

    def handle_host_disconnect(self, game: Game, reason: str = 'Host disconnected') -> None:
        with game.lock:
            previous = game.game_state
            game.end_question()
            if previous in (GameState.QUESTION, GameState.REVEALING, GameState.FINISHED):
                self.results.save_game(game)
            self.batcher.emit_immediate(game.room, 'game-ended', {'reason': reason})
            player_ids = list(game.players)
            with self._lock:
                for pid in player_ids:
                    self._players.pop(pid, None)
            for pid in player_ids:
                self.emitter.leave_room(pid, game.room)
            game.cleanup()
        self.logger.info(f"[host-left] pin={game.pin} reason={reason!r} players={len(player_ids)} state={previous.value}")
