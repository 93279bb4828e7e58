import random
import threading
from typing import Callable, Dict, List, Optional

from livequiz.errors import ErrorKind, GameError

from .game import Game, GameState, iso_from_ms, shuffle_with_mapping
from .question_types import INDEX_TYPES, correct_answer_descriptor


class GameSessionService:
    """Session directory and the per-game question scheduler.

    Every timer callback is a hint: it runs under the game lock and only
    acts if the game is still in the state (and on the question) it was
    armed for. Otherwise it logs ``[timer-abort]`` and returns.
    """

    def __init__(self, settings, clock, emitter, batcher, players, results, logger, rng=None):
        self.settings = settings
        self.clock = clock
        self.emitter = emitter
        self.batcher = batcher
        self.players = players
        self.results = results
        self.logger = logger
        self.rng = rng or random.Random()
        self._lock = threading.Lock()
        self._games: Dict[str, Game] = {}
        self._cleanup_timer = None

    # -- directory --------------------------------------------------------

    def generate_game_pin(self) -> str:
        # caller holds self._lock
        length = int(self.settings.get('PIN_LENGTH', 6))
        low, high = 10 ** (length - 1), 10 ** length - 1
        while True:
            pin = str(self.rng.randint(low, high))
            if pin not in self._games:
                return pin

    def create_game(self, host_id: str, quiz) -> Game:
        """Register a new game for ``host_id``.

        Any game the same connection already hosts is taken out of the
        directory in the same step and ended with ``Host started new game``.
        """
        limit = int(self.settings.get('MAX_CONCURRENT_GAMES', 100))
        with self._lock:
            at_limit = len(self._games) >= limit
        if at_limit:
            self.cleanup_stale_games()
        game = None
        with self._lock:
            replaced = [g for g in self._games.values() if g.host_id == host_id]
            for old in replaced:
                del self._games[old.pin]
            live = len(self._games)
            if live < limit:
                pin = self.generate_game_pin()
                game = Game(pin, host_id, quiz, self.settings, self.clock.now_ms(), rng=random.Random(self.rng.random()))
                self._games[pin] = game
        for old in replaced:
            self.players.handle_host_disconnect(old, reason='Host started new game')
            self._discard(old)
        if game is None:
            self.logger.warning(f"[game-limit] live={live} limit={limit} host={host_id}")
            raise GameError(ErrorKind.GAME_LIMIT_REACHED, f'Server is at capacity (max {limit} games)')
        self.logger.info(f"[game-created] pin={game.pin} host={host_id} questions={len(quiz.questions)} title={quiz.title!r}")
        return game

    def get_game(self, pin) -> Optional[Game]:
        if not isinstance(pin, str):
            return None
        with self._lock:
            return self._games.get(pin)

    def find_game_by_host(self, host_id: str) -> Optional[Game]:
        games = self.find_games_by_host(host_id)
        return games[0] if games else None

    def find_games_by_host(self, host_id: str) -> List[Game]:
        with self._lock:
            return [game for game in self._games.values() if game.host_id == host_id]

    def list_games(self) -> List[Game]:
        with self._lock:
            return list(self._games.values())

    def game_count(self) -> int:
        with self._lock:
            return len(self._games)

    def delete_game(self, pin: str) -> bool:
        with self._lock:
            game = self._games.pop(pin, None)
        if game is None:
            return False
        self._discard(game)
        return True

    def _discard(self, game: Game) -> None:
        with game.lock:
            game.cleanup()
        self.batcher.cleanup_room(game.room)
        if not self.find_games_by_host(game.host_id):
            self.batcher.cleanup_room(game.host_id)
        self.logger.info(f"[game-deleted] pin={game.pin}")

    # -- timers -----------------------------------------------------------

    def schedule_timer(self, game: Game, attr: str, delay_ms: int, action: Callable[[Game], None],
                       expected_state: GameState, expected_question: Optional[int] = None):
        """Arm ``game.<attr>``; caller holds the game lock."""
        holder = {}

        def _callback():
            self._fire(game, attr, holder.get('handle'), action, expected_state, expected_question)

        old = getattr(game, attr)
        if old is not None:
            old.cancel()
        handle = self.clock.call_later(delay_ms, _callback, label=f'{attr}:{game.pin}')
        holder['handle'] = handle
        setattr(game, attr, handle)
        self.logger.debug(
            f"[timer-set] game={game.pin} timer={attr} delay={delay_ms}ms state={expected_state.value} question={expected_question}"
        )
        return handle

    def _fire(self, game: Game, attr: str, handle, action, expected_state: GameState, expected_question) -> None:
        with game.lock:
            if handle is None or getattr(game, attr) is not handle:
                self.logger.debug(f"[timer-abort] game={game.pin} timer={attr} superseded")
                return
            setattr(game, attr, None)
            if game.game_state != expected_state or (
                expected_question is not None and game.current_question != expected_question
            ):
                self.logger.info(
                    f"[timer-abort] game={game.pin} timer={attr} expected_state={expected_state.value} "
                    f"actual_state={game.game_state.value} expected_question={expected_question} "
                    f"actual_question={game.current_question}"
                )
                return
            self.logger.debug(f"[timer-fire] game={game.pin} timer={attr} state={game.game_state.value}")
            try:
                action(game)
            except Exception:
                self.logger.exception(f"[timer-error] game={game.pin} timer={attr}")
                game.is_advancing = False
                game.ending_question_early = False

    # -- state machine ------------------------------------------------------

    def start_game(self, game: Game) -> None:
        with game.lock:
            if game.game_state != GameState.LOBBY:
                raise GameError(ErrorKind.GAME_ALREADY_STARTED, 'Game already started')
            game.game_state = GameState.STARTING
            game.start_time = iso_from_ms(self.clock.now_ms())
            self.emitter.emit('game-started', {
                'gamePin': game.pin,
                'questionCount': len(game.questions),
                'manualAdvancement': game.quiz.manual_advancement,
                'powerUpsEnabled': game.quiz.power_ups_enabled,
            }, to=game.room)
            self.schedule_timer(
                game, 'start_timer', self.settings.get('GAME_START_DELAY_MS', 3000),
                self._begin_next_question, GameState.STARTING,
            )
        self.logger.info(f"[game-started] pin={game.pin} players={len(game.players)}")

    def _begin_next_question(self, game: Game) -> None:
        if game.next_question():
            self.start_question(game)
        else:
            self.end_game(game)

    def _question_payload(self, game: Game, question) -> dict:
        payload = {
            'questionNumber': game.current_question + 1,
            'totalQuestions': len(game.questions),
            'question': question.text,
            'type': question.type,
            'timeLimit': question.time_limit,
        }
        if question.options_list:
            payload['options'] = question.options_list
        if question.image:
            payload['image'] = question.image
        if question.video:
            payload['video'] = question.video
        if game.is_consensus:
            payload.update({
                'consensusMode': True,
                'consensusThreshold': game.consensus_config['threshold'],
                'discussionTime': game.consensus_config['discussionTime'],
                'allowChat': game.consensus_config['allowChat'],
            })
        return payload

    def start_question(self, game: Game) -> None:
        with game.lock:
            question = game.current_question_data
            if question is None:
                self.end_game(game)
                return
            game.game_state = GameState.QUESTION
            game.question_start_time = self.clock.now_ms()
            game.answer_mappings = {}
            game.ending_question_early = False
            if game.is_consensus:
                game.reset_consensus_for_question()

            self.batcher.flush_room(game.room)
            payload = self._question_payload(game, question)
            options = question.options_list
            if game.quiz.randomize_answers and question.type in INDEX_TYPES and len(options) >= 2:
                self.emitter.emit('question-start', payload, to=game.host_id)
                for pid in game.players:
                    shuffled, mapping = shuffle_with_mapping(options, game.rng)
                    game.answer_mappings[pid] = mapping
                    self.emitter.emit('question-start', dict(payload, options=shuffled), to=pid)
            else:
                self.emitter.emit('question-start', payload, to=game.room)

            self.schedule_timer(
                game, 'question_timer', question.time_limit * 1000,
                self.handle_question_timeout, GameState.QUESTION, game.current_question,
            )
        self.logger.info(
            f"[question-start] pin={game.pin} question={game.current_question + 1}/{len(game.questions)} "
            f"type={question.type} limit={question.time_limit}s"
        )

    def handle_question_timeout(self, game: Game) -> None:
        with game.lock:
            if game.game_state != GameState.QUESTION:
                return
            if game.ending_question_early:
                self.logger.info(f"[timer-abort] game={game.pin} timer=question_timer early end in progress")
                return
            self.reveal_question(game, early_end=False)

    def reveal_question(self, game: Game, early_end: bool = False) -> None:
        """Close the current question and show everyone the answer."""
        with game.lock:
            game.cancel_timer('early_end_timer')
            game.ending_question_early = False
            game.end_question()
            question = game.current_question_data
            descriptor = correct_answer_descriptor(question)
            if early_end:
                descriptor['earlyEnd'] = True

            self.batcher.flush_room(game.room)
            self.emitter.emit('question-timeout', descriptor, to=game.room)
            stats = game.answer_statistics()
            if stats is not None:
                self.batcher.emit(game.host_id, 'answer-statistics', stats)
            self.emit_player_results(game, question, descriptor)
            self.logger.info(
                f"[question-end] pin={game.pin} question={game.current_question + 1} "
                f"answered={game.answered_count()}/{len(game.players)} early={early_end}"
            )
            self.advance_to_next_question(game)

    def emit_player_results(self, game: Game, question, descriptor: dict) -> None:
        for pid, player in game.players.items():
            record = player.answers.get(game.current_question)
            payload = {
                'isCorrect': bool(record and record['isCorrect']),
                'points': record['points'] if record else 0,
                'totalScore': player.score,
                'questionType': question.type,
                'correctAnswer': descriptor['correctAnswer'],
            }
            if record and 'partialScore' in record:
                payload['partialScore'] = record['partialScore']
            if question.explanation:
                payload['explanation'] = question.explanation
            if 'correctAnswers' in descriptor:
                payload['correctAnswers'] = descriptor['correctAnswers']
            self.emitter.emit('player-result', payload, to=pid)

    def advance_to_next_question(self, game: Game) -> None:
        with game.lock:
            if game.game_state in (GameState.FINISHED, GameState.ENDED) or game.is_advancing:
                self.logger.debug(f"[advance-skip] pin={game.pin} state={game.game_state.value} advancing={game.is_advancing}")
                return
            game.is_advancing = True
            self.schedule_timer(
                game, 'advance_timer', self.settings.get('LEADERBOARD_DISPLAY_TIME_MS', 3000),
                self._after_reveal, GameState.REVEALING, game.current_question,
            )

    def _after_reveal(self, game: Game) -> None:
        leaderboard = game.update_leaderboard()
        self.batcher.flush_room(game.room)
        self.emitter.emit('question-end', {'showStatistics': True}, to=game.room)
        self.batcher.emit(game.room, 'leaderboard-update', {'leaderboard': leaderboard})
        if game.quiz.manual_advancement:
            self.emitter.emit('show-next-button', {'isLastQuestion': not game.has_more_questions()}, to=game.host_id)
            game.is_advancing = False
            return
        self.emitter.emit('show-leaderboard', {'leaderboard': leaderboard[:5]}, to=game.room)
        self.schedule_timer(
            game, 'leaderboard_timer', self.settings.get('LEADERBOARD_DISPLAY_TIME_MS', 3000),
            self._proceed, GameState.REVEALING, game.current_question,
        )

    def _proceed(self, game: Game) -> None:
        game.is_advancing = False
        self._begin_next_question(game)

    def manual_advance_to_next_question(self, game: Game) -> bool:
        with game.lock:
            if game.is_advancing:
                return False
            if game.game_state == GameState.FINISHED:
                self.emitter.emit('hide-next-button', None, to=game.host_id)
                return False
            if game.game_state != GameState.REVEALING:
                self.logger.info(f"[manual-advance-ignored] pin={game.pin} state={game.game_state.value}")
                return False
            game.is_advancing = True
            game.cancel_timer('advance_timer')
            self.emitter.emit('hide-next-button', None, to=game.host_id)
            leaderboard = game.update_leaderboard()
            self.emitter.emit('show-leaderboard', {'leaderboard': leaderboard[:5]}, to=game.room)
            self.schedule_timer(
                game, 'leaderboard_timer', self.settings.get('LEADERBOARD_DISPLAY_TIME_MS', 3000),
                self._proceed, GameState.REVEALING, game.current_question,
            )
        return True

    def end_game(self, game: Game) -> None:
        with game.lock:
            if game.game_state in (GameState.FINISHED, GameState.ENDED):
                return
            game.game_state = GameState.FINISHED
            game.end_time = iso_from_ms(self.clock.now_ms())
            game.is_advancing = False
            game.clear_timers()
            self.emitter.emit('hide-next-button', None, to=game.host_id)
            game.update_leaderboard()
            self.batcher.flush_room(game.room)
            self.results.save_game(game)
            self.schedule_timer(
                game, 'advance_timer', self.settings.get('GAME_END_DELAY_MS', 1000),
                self._emit_game_end, GameState.FINISHED,
            )
        self.logger.info(f"[game-finished] pin={game.pin} players={len(game.players)}")

    def _emit_game_end(self, game: Game) -> None:
        final = list(game.leaderboard)
        self.emitter.emit('game-end', {'finalLeaderboard': final}, to=game.host_id)
        for pid, player in game.players.items():
            self.emitter.emit('game-end', {
                'finalLeaderboard': final,
                'playerScore': player.score,
                'conceptMastery': game.concept_mastery(pid),
            }, to=pid)

    def rematch(self, game: Game) -> None:
        with game.lock:
            if game.game_state != GameState.FINISHED:
                raise GameError(ErrorKind.INVALID_INPUT, 'Rematch is only available after the game ends')
            game.reset()
            self.emitter.emit('game-reset', {
                'pin': game.pin,
                'title': game.title,
                'players': game.player_list(),
                'questionCount': len(game.questions),
            }, to=game.room)
        self.logger.info(f"[game-reset] pin={game.pin} players={len(game.players)}")

    # -- reclamation --------------------------------------------------------

    def cleanup_stale_games(self) -> List[str]:
        now = self.clock.now_ms()
        stale_age = self.settings.get('STALE_GAME_AGE_MS', 2 * 60 * 60 * 1000)
        orphan_age = self.settings.get('ORPHAN_LOBBY_AGE_MS', 30 * 60 * 1000)
        removed = []
        for game in self.list_games():
            with game.lock:
                age = now - game.created_at
                expired = age > stale_age
                orphaned = game.game_state == GameState.LOBBY and not game.players and age > orphan_age
                if not (expired or orphaned):
                    continue
                if game.game_state != GameState.ENDED:
                    self.players.handle_host_disconnect(game, reason='Game expired' if expired else 'Game abandoned')
            self.delete_game(game.pin)
            removed.append(game.pin)
        if removed:
            self.logger.info(f"[cleanup] removed={len(removed)} pins={','.join(removed)} live={self.game_count()}")
        return removed

    def start_cleanup(self) -> None:
        if self._cleanup_timer is not None and self._cleanup_timer.pending:
            return
        self._cleanup_timer = self.clock.call_later(
            self.settings.get('CLEANUP_INITIAL_DELAY_MS', 5 * 60 * 1000), self._cleanup_tick, label='game-cleanup'
        )

    def _cleanup_tick(self) -> None:
        try:
            self.cleanup_stale_games()
        except Exception:
            self.logger.exception("[cleanup-error] periodic cleanup failed")
        self._cleanup_timer = self.clock.call_later(
            self.settings.get('CLEANUP_INTERVAL_MS', 30 * 60 * 1000), self._cleanup_tick, label='game-cleanup'
        )

    def stop_cleanup(self) -> None:
        if self._cleanup_timer is not None:
            self._cleanup_timer.cancel()
            self._cleanup_timer = None
