import pytest

from livequiz.errors import GameError
from livequiz.models import QuizResult
from livequiz.services.games import scheduler
from livequiz.services.games.game import GameState

MINUTE = 60 * 1000


def mc(text, correct=1):
    return {'question': text, 'options': ['A', 'B', 'C', 'D'], 'correctIndex': correct}


def test_single_player_full_game(core, clock, emitter, lobby):
    game = lobby()
    core.sessions.start_game(game)
    assert game.game_state == GameState.STARTING
    assert emitter.events('game-started', to=game.room)[0]['questionCount'] == 1

    clock.advance(3000)
    start = emitter.events('question-start', to=game.room)
    assert start == [{
        'questionNumber': 1, 'totalQuestions': 1, 'question': 'Which letter is second?',
        'type': 'multiple-choice', 'timeLimit': 20, 'options': ['A', 'B', 'C', 'D'],
    }]

    clock.advance(1000)
    record = core.question_flow.handle_answer_submission('p1', 1, game)
    assert record['points'] == 2000
    assert emitter.events('answer-submitted', to='p1') == [{'answer': 1}]
    assert emitter.events('answer-count-update', to='host-1') == [{'answeredPlayers': 1, 'totalPlayers': 1}]
    assert game.ending_question_early is True

    clock.advance(1000)
    timeout = emitter.events('question-timeout', to=game.room)
    assert len(timeout) == 1
    assert timeout[0]['earlyEnd'] is True
    assert timeout[0]['correctAnswer'] == 1
    assert emitter.events('player-result', to='p1')[0]['points'] == 2000
    assert game.game_state == GameState.REVEALING

    clock.advance(3000)
    assert emitter.events('question-end', to=game.room) == [{'showStatistics': True}]
    assert emitter.events('show-leaderboard', to=game.room)[0]['leaderboard'][0]['score'] == 2000

    clock.advance(3000)
    assert game.game_state == GameState.FINISHED
    assert QuizResult.query.count() == 1

    clock.advance(1000)
    host_end = emitter.events('game-end', to='host-1')[0]
    assert host_end['finalLeaderboard'][0]['score'] == 2000
    player_end = emitter.events('game-end', to='p1')[0]
    assert player_end['playerScore'] == 2000
    assert player_end['conceptMastery'] == {'concepts': [], 'hasConcepts': False}

    row = QuizResult.query.one()
    assert row.game_pin == game.pin
    assert row.payload['results'][0]['name'] == 'Alice'
    assert row.payload['results'][0]['score'] == 2000
    assert row.payload['results'][0]['answers']['0']['isCorrect'] is True


def test_answer_at_the_deadline_reveals_once(core, clock, emitter, lobby):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(3000)
    clock.advance(19999)
    core.question_flow.handle_answer_submission('p1', 0, game)
    clock.advance(5000)
    timeouts = emitter.events('question-timeout')
    assert len(timeouts) == 1
    assert timeouts[0]['earlyEnd'] is True
    assert len(emitter.events('player-result', to='p1')) == 1


def test_two_players_answering_together_end_the_question_once(core, clock, emitter, lobby):
    game = lobby(player_names=('Alice', 'Bob'))
    core.sessions.start_game(game)
    clock.advance(3000 + 500)

    core.question_flow.handle_answer_submission('p1', 1, game)
    assert game.ending_question_early is False
    core.question_flow.handle_answer_submission('p2', 0, game)
    assert game.ending_question_early is True
    assert emitter.events('question-timeout') == []

    clock.advance(1000)
    timeouts = emitter.events('question-timeout', to=game.room)
    assert len(timeouts) == 1
    assert timeouts[0]['earlyEnd'] is True

    clock.advance(5000)
    assert len(emitter.events('question-timeout')) == 1
    assert emitter.events('player-result', to='p1')[0]['isCorrect'] is True
    assert emitter.events('player-result', to='p2')[0]['isCorrect'] is False


def test_question_times_out_without_answers(core, clock, emitter, lobby):
    game = lobby(player_names=('Alice', 'Bob'))
    core.sessions.start_game(game)
    clock.advance(3000)
    core.question_flow.handle_answer_submission('p1', 1, game)
    clock.advance(19999)
    assert emitter.events('question-timeout') == []
    clock.advance(1)
    timeout = emitter.events('question-timeout')[0]
    assert 'earlyEnd' not in timeout
    assert emitter.events('player-result', to='p2')[0] == {
        'isCorrect': False, 'points': 0, 'totalScore': 0,
        'questionType': 'multiple-choice', 'correctAnswer': 1,
    }
    stats = emitter.events('answer-statistics', to='host-1')
    assert stats == []
    clock.advance(500)
    stats = emitter.events('answer-statistics', to='host-1')
    assert stats[-1]['answeredPlayers'] == 1
    assert stats[-1]['answerCounts']['1'] == 1


def test_late_answer_is_rejected(core, clock, lobby):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(3000 + 20000)
    with pytest.raises(GameError) as exc:
        core.question_flow.handle_answer_submission('p1', 1, game)
    assert exc.value.kind.value == 'question_closed'


def test_answer_for_another_question_is_rejected(core, clock, lobby):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(3000)
    with pytest.raises(GameError) as exc:
        core.question_flow.handle_answer_submission('p1', 1, game, question_index=4)
    assert exc.value.kind.value == 'question_closed'
    with pytest.raises(GameError) as exc:
        core.question_flow.handle_answer_submission('p1', 1, game, question_index='0')
    assert exc.value.kind.value == 'invalid_input'


def test_unknown_player_cannot_answer(core, clock, lobby):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(3000)
    with pytest.raises(GameError) as exc:
        core.question_flow.handle_answer_submission('stranger', 1, game)
    assert exc.value.kind.value == 'player_not_found'


def test_shuffled_options_are_translated(core, clock, emitter, lobby, make_quiz, monkeypatch):
    monkeypatch.setattr(scheduler, 'shuffle_with_mapping', lambda items, rng=None: (list(reversed(items)), [3, 2, 1, 0]))
    game = lobby(quiz=make_quiz(randomizeAnswers=True))
    core.sessions.start_game(game)
    clock.advance(3000)

    assert emitter.events('question-start', to='host-1')[0]['options'] == ['A', 'B', 'C', 'D']
    assert emitter.events('question-start', to='p1')[0]['options'] == ['D', 'C', 'B', 'A']
    assert emitter.events('question-start', to=game.room) == []

    clock.advance(1000)
    record = core.question_flow.handle_answer_submission('p1', 2, game)
    assert record['answer'] == 1
    assert record['isCorrect'] is True


def test_true_false_is_never_shuffled(core, clock, emitter, lobby, make_quiz):
    quiz = make_quiz(
        questions=[{'question': 'Sky is blue', 'type': 'true-false', 'correctAnswer': True}],
        randomizeAnswers=True,
    )
    game = lobby(quiz=quiz)
    core.sessions.start_game(game)
    clock.advance(3000)
    assert len(emitter.events('question-start', to=game.room)) == 1
    assert game.answer_mappings == {}


def test_manual_advancement(core, clock, emitter, lobby, make_quiz):
    quiz = make_quiz(questions=[mc('First?'), mc('Second?')], manualAdvancement=True)
    game = lobby(quiz=quiz)
    core.sessions.start_game(game)
    clock.advance(3000)
    assert core.sessions.manual_advance_to_next_question(game) is False

    core.question_flow.handle_answer_submission('p1', 1, game)
    clock.advance(1000 + 3000)
    assert emitter.events('show-next-button', to='host-1') == [{'isLastQuestion': False}]
    assert game.is_advancing is False
    clock.advance(60000)
    assert game.game_state == GameState.REVEALING

    assert core.sessions.manual_advance_to_next_question(game) is True
    assert core.sessions.manual_advance_to_next_question(game) is False
    clock.advance(3000)
    assert game.current_question == 1
    assert emitter.events('question-start', to=game.room)[-1]['question'] == 'Second?'


def test_timer_error_resets_advancing_flags(core, clock, emitter, lobby, monkeypatch):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(3000)
    core.question_flow.handle_answer_submission('p1', 1, game)
    clock.advance(1000)
    assert game.is_advancing is True

    def boom():
        raise RuntimeError('leaderboard exploded')

    monkeypatch.setattr(game, 'update_leaderboard', boom)
    clock.advance(3000)
    assert game.is_advancing is False
    assert game.ending_question_early is False
    assert game.game_state == GameState.REVEALING
    monkeypatch.undo()
    assert core.sessions.manual_advance_to_next_question(game) is True


def test_host_disconnect_mid_question_saves_results(core, clock, emitter, lobby):
    game = lobby(player_names=('Alice', 'Bob'))
    core.sessions.start_game(game)
    clock.advance(3000)
    core.question_flow.handle_answer_submission('p1', 1, game)

    core.players.handle_host_disconnect(game)
    assert emitter.events('game-ended', to=game.room) == [{'reason': 'Host disconnected'}]
    assert game.pending_timers() == []
    assert game.game_state == GameState.ENDED
    row = QuizResult.query.one()
    assert row.game_pin == game.pin
    assert row.player_count == 2

    clock.advance(60000)
    assert emitter.events('question-timeout') == []
    assert core.sessions.delete_game(game.pin) is True
    assert core.sessions.get_game(game.pin) is None


def test_results_saved_only_once(core, clock, lobby):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(3000)
    core.question_flow.handle_answer_submission('p1', 1, game)
    clock.advance(1000 + 3000 + 3000)
    assert game.game_state == GameState.FINISHED
    core.players.handle_host_disconnect(game)
    assert QuizResult.query.count() == 1


def test_abandoned_lobby_is_reclaimed_and_pin_reused(core, clock, emitter, make_quiz, monkeypatch):
    monkeypatch.setattr(core.sessions.rng, 'randint', lambda a, b: 123456)
    rooms_cleaned = []
    original_cleanup = core.batcher.cleanup_room
    monkeypatch.setattr(core.batcher, 'cleanup_room', lambda room: (rooms_cleaned.append(room), original_cleanup(room)))

    game = core.sessions.create_game('host-1', make_quiz())
    assert game.pin == '123456'
    clock.advance(29 * MINUTE)
    assert core.sessions.cleanup_stale_games() == []
    clock.advance(2 * MINUTE)
    assert core.sessions.cleanup_stale_games() == ['123456']
    assert emitter.events('game-ended', to='game-123456') == [{'reason': 'Game abandoned'}]
    assert 'game-123456' in rooms_cleaned
    assert core.sessions.get_game('123456') is None
    assert clock.pending_labels() == []

    again = core.sessions.create_game('host-2', make_quiz())
    assert again.pin == '123456'


def test_lobby_with_players_is_not_orphaned(core, clock, lobby):
    game = lobby()
    clock.advance(31 * MINUTE)
    assert core.sessions.cleanup_stale_games() == []
    assert core.sessions.get_game(game.pin) is game


def test_expired_game_is_reclaimed(core, clock, emitter, lobby):
    game = lobby()
    core.sessions.start_game(game)
    clock.advance(2 * 60 * MINUTE + 1)
    assert core.sessions.cleanup_stale_games() == [game.pin]
    assert emitter.events('game-ended', to=game.room) == [{'reason': 'Game expired'}]


def test_periodic_cleanup_schedule(core, clock, make_quiz):
    game = core.sessions.create_game('host-1', make_quiz())
    core.sessions.start_cleanup()
    assert clock.pending_labels() == ['game-cleanup']
    clock.advance(5 * MINUTE)
    assert core.sessions.get_game(game.pin) is game
    clock.advance(30 * MINUTE)
    assert core.sessions.get_game(game.pin) is None
    assert clock.pending_labels() == ['game-cleanup']
    core.sessions.stop_cleanup()
    assert clock.pending_labels() == []


def test_game_limit(core, flask_app, clock, lobby, make_quiz):
    flask_app.config['MAX_CONCURRENT_GAMES'] = 1
    lobby()
    with pytest.raises(GameError) as exc:
        core.sessions.create_game('host-2', make_quiz())
    assert exc.value.kind.value == 'game_limit_reached'


def test_game_limit_reclaims_stale_games_first(core, flask_app, clock, make_quiz):
    flask_app.config['MAX_CONCURRENT_GAMES'] = 1
    old = core.sessions.create_game('host-1', make_quiz())
    clock.advance(31 * MINUTE)
    new = core.sessions.create_game('host-2', make_quiz())
    assert core.sessions.game_count() == 1
    assert core.sessions.list_games() == [new]
    assert old.game_state == GameState.ENDED


def test_pins_are_unique_six_digit_strings(core, make_quiz):
    pins = {core.sessions.create_game(f'host-{i}', make_quiz()).pin for i in range(50)}
    assert len(pins) == 50
    assert all(len(pin) == 6 and pin.isdigit() for pin in pins)


def test_start_game_twice(core, lobby):
    game = lobby()
    core.sessions.start_game(game)
    with pytest.raises(GameError) as exc:
        core.sessions.start_game(game)
    assert exc.value.kind.value == 'game_already_started'


def test_rematch_resets_scores(core, clock, emitter, lobby):
    game = lobby()
    with pytest.raises(GameError):
        core.sessions.rematch(game)
    core.sessions.start_game(game)
    clock.advance(3000)
    core.question_flow.handle_answer_submission('p1', 1, game)
    clock.advance(1000 + 3000 + 3000 + 1000)
    assert game.game_state == GameState.FINISHED

    core.sessions.rematch(game)
    assert game.game_state == GameState.LOBBY
    assert game.players['p1'].score == 0
    reset = emitter.events('game-reset', to=game.room)[0]
    assert reset['pin'] == game.pin
    assert reset['players'] == [{'id': 'p1', 'name': 'Alice'}]
    assert reset['questionCount'] == 1

    core.sessions.start_game(game)
    clock.advance(3000)
    assert game.game_state == GameState.QUESTION


def test_end_question_early_only_once(core, clock, lobby):
    game = lobby(player_names=('Alice', 'Bob'))
    core.sessions.start_game(game)
    clock.advance(3000)
    assert core.question_flow.end_question_early(game) is True
    assert core.question_flow.end_question_early(game) is False
    clock.advance(1000)
    assert game.game_state == GameState.REVEALING
    assert core.question_flow.end_question_early(game) is False


def test_hosting_again_replaces_the_previous_game(core, emitter, lobby, make_quiz):
    first = lobby()
    second = core.sessions.create_game('host-1', make_quiz())

    assert core.sessions.list_games() == [second]
    assert core.sessions.find_games_by_host('host-1') == [second]
    assert first.game_state == GameState.ENDED
    assert emitter.events('game-ended', to=first.room) == [{'reason': 'Host started new game'}]
    assert core.players.get_player('p1') is None


def test_hosting_again_at_the_game_limit(core, flask_app, lobby, make_quiz):
    flask_app.config['MAX_CONCURRENT_GAMES'] = 1
    lobby()
    second = core.sessions.create_game('host-1', make_quiz())
    assert core.sessions.list_games() == [second]
