"""Consensus mode: the whole room agrees on one answer for a team score."""

from typing import Optional

from livequiz.errors import ErrorKind, GameError

from .game import Game, GameState
from .question_types import INDEX_TYPES

QUICK_RESPONSE_TYPES = ('propose', 'agree', 'unsure', 'discuss', 'ready')


class ConsensusFlowService:
    def __init__(self, emitter, clock, settings, logger):
        self.emitter = emitter
        self.clock = clock
        self.settings = settings
        self.logger = logger

    def _require_consensus(self, game: Optional[Game]) -> Game:
        if game is None:
            raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
        if not game.is_consensus:
            raise GameError(ErrorKind.CONSENSUS_NOT_ACTIVE, 'Consensus mode is not active')
        return game

    def _require_player(self, game: Game, sid: str):
        player = game.players.get(sid)
        if player is None:
            raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
        return player

    def submit_proposal(self, sid: str, game: Optional[Game], answer) -> dict:
        game = self._require_consensus(game)
        with game.lock:
            if game.consensus_locked:
                raise GameError(ErrorKind.CONSENSUS_ALREADY_LOCKED, 'Consensus already locked')
            question = game.current_question_data
            if game.game_state != GameState.QUESTION or question is None:
                raise GameError(ErrorKind.CONSENSUS_NO_QUESTION, 'No active question')
            self._require_player(game, sid)
            options = question.options_list
            if (question.type not in INDEX_TYPES or isinstance(answer, bool)
                    or not isinstance(answer, int) or not 0 <= answer < len(options)):
                raise GameError(ErrorKind.CONSENSUS_INVALID_ANSWER, 'Invalid answer')
            answer = game.translate_shuffled_answer(sid, answer, 'multiple-choice')

            game.submit_proposal(sid, answer)
            distribution = game.proposal_distribution()
            self.emitter.emit('proposal-update', distribution, to=game.room)
            if game.check_consensus(distribution):
                self.emitter.emit('consensus-threshold-met', {
                    'answer': distribution['leadingAnswer'],
                    'percentage': distribution['consensusPercent'],
                    'threshold': game.consensus_config['threshold'],
                }, to=game.room)
        return distribution

    def quick_response(self, sid: str, game: Optional[Game], kind, target: Optional[str] = None) -> dict:
        game = self._require_consensus(game)
        with game.lock:
            self._require_player(game, sid)
            if kind not in QUICK_RESPONSE_TYPES:
                raise GameError(ErrorKind.CONSENSUS_INVALID_RESPONSE, 'Invalid response type')
            if game.current_question_data is None:
                raise GameError(ErrorKind.CONSENSUS_NO_QUESTION, 'No active question')
            message = game.add_discussion_message(
                sid, 'quick', kind, self.clock.now_ms(),
                target_player=target if isinstance(target, str) else None,
            )
            self.emitter.emit('quick-response', message, to=game.room)
        return message

    def chat(self, sid: str, game: Optional[Game], text) -> dict:
        game = self._require_consensus(game)
        with game.lock:
            if not game.consensus_config['allowChat']:
                raise GameError(ErrorKind.CONSENSUS_CHAT_DISABLED, 'Chat is disabled for this game')
            self._require_player(game, sid)
            if not isinstance(text, str):
                raise GameError(ErrorKind.CONSENSUS_EMPTY_MESSAGE, 'Message is empty')
            limit = int(self.settings.get('CHAT_MESSAGE_MAX_LENGTH', 200))
            content = text.strip()[:limit].replace('<', '').replace('>', '').strip()
            if not content:
                raise GameError(ErrorKind.CONSENSUS_EMPTY_MESSAGE, 'Message is empty')
            message = game.add_discussion_message(sid, 'chat', content, self.clock.now_ms())
            self.emitter.emit('chat-message', message, to=game.room)
        return message

    def lock_consensus(self, game: Optional[Game]) -> dict:
        game = self._require_consensus(game)
        with game.lock:
            if game.consensus_locked:
                raise GameError(ErrorKind.CONSENSUS_ALREADY_LOCKED, 'Consensus already locked')
            if game.current_question_data is None or game.game_state not in (GameState.QUESTION, GameState.REVEALING):
                raise GameError(ErrorKind.CONSENSUS_NO_QUESTION, 'No active question')
            result = game.lock_consensus()
            self.emitter.emit('consensus-reached', result, to=game.room)
            self.emitter.emit('team-score-update', {
                'teamScore': game.team_score,
                'questionPoints': result['teamPoints'],
                'isCorrect': result['isCorrect'],
            }, to=game.room)
        self.logger.info(
            f"[consensus-locked] pin={game.pin} question={game.current_question + 1} answer={result['answer']} "
            f"percent={result['percentage']} points={result['teamPoints']} team={game.team_score}"
        )
        return result
