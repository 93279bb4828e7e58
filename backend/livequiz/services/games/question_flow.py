from typing import Optional

from livequiz.errors import ErrorKind, GameError

from .game import Game, GameState


class QuestionFlowService:
    def __init__(self, sessions, players, emitter, batcher, clock, settings, logger):
        self.sessions = sessions
        self.players = players
        self.emitter = emitter
        self.batcher = batcher
        self.clock = clock
        self.settings = settings
        self.logger = logger

    def handle_answer_submission(self, sid: str, answer, game: Optional[Game], question_index=None) -> dict:
        """Record one player's answer and end the question once everyone is in.

        Returns the stored answer record; denials raise ``GameError``.
        """
        if self.players.get_player(sid) is None:
            raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found')
        if game is None:
            raise GameError(ErrorKind.GAME_NOT_FOUND, 'Game not found')
        if question_index is not None and (isinstance(question_index, bool) or not isinstance(question_index, int)):
            raise GameError(ErrorKind.INVALID_INPUT, 'questionIndex must be an integer')

        with game.lock:
            if game.game_state != GameState.QUESTION:
                raise GameError(ErrorKind.QUESTION_CLOSED, 'Question is not accepting answers')
            if question_index is not None and question_index != game.current_question:
                raise GameError(ErrorKind.QUESTION_CLOSED, 'Answer is for a different question')
            record = game.submit_answer(sid, answer, self.clock.now_ms())
            self.emitter.emit('answer-submitted', {'answer': answer}, to=sid)

            answered = game.answered_count()
            total = len(game.players)
            self.batcher.emit(game.host_id, 'answer-count-update', {
                'answeredPlayers': answered,
                'totalPlayers': total,
            })
            self.batcher.emit(game.host_id, 'player-answered', {
                'playerId': sid,
                'playerName': game.players[sid].name,
                'answeredPlayers': answered,
                'totalPlayers': total,
            })
            self.logger.debug(
                f"[answer] pin={game.pin} question={game.current_question + 1} sid={sid} "
                f"correct={record['isCorrect']} points={record['points']} answered={answered}/{total}"
            )
            if total > 0 and answered == total and not game.ending_question_early:
                self.end_question_early(game)
        return record

    def end_question_early(self, game: Game) -> bool:
        """Close the question after a short grace period so the last
        submitter still sees their confirmation."""
        with game.lock:
            if game.game_state != GameState.QUESTION or game.ending_question_early:
                return False
            game.ending_question_early = True
            game.cancel_timer('question_timer')
            game.cancel_timer('advance_timer')
            self.sessions.schedule_timer(
                game, 'early_end_timer', self.settings.get('EARLY_END_DELAY_MS', 1000),
                self._finish_early, GameState.QUESTION, game.current_question,
            )
        self.logger.info(f"[early-end] pin={game.pin} question={game.current_question + 1}")
        return True

    def _finish_early(self, game: Game) -> None:
        self.sessions.reveal_question(game, early_end=True)
