import math
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from livequiz.errors import ErrorKind, GameError

from .question_types import (
    INDEX_TYPES,
    correct_answer_key,
    count_keys,
    empty_answer_counts,
    is_valid_choice,
    normalize_answer,
)
from .scoring import calculate_consensus_team_points, calculate_score, get_difficulty_multiplier

POWER_UP_TYPES = ('fifty-fifty', 'extend-time', 'double-points')
TIMER_NAMES = ('question_timer', 'advance_timer', 'leaderboard_timer', 'start_timer', 'early_end_timer')
LEADERBOARD_SIZE = 10


class GameState(str, Enum):
    LOBBY = 'lobby'
    STARTING = 'starting'
    QUESTION = 'question'
    REVEALING = 'revealing'
    FINISHED = 'finished'
    ENDED = 'ended'


def iso_from_ms(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


def shuffle_with_mapping(items: List[Any], rng=None) -> Tuple[List[Any], List[int]]:
    """Fisher-Yates shuffle that also returns ``mapping[shuffled] = original``."""
    rng = rng or random
    order = list(range(len(items)))
    for i in range(len(order) - 1, 0, -1):
        j = rng.randint(0, i)
        order[i], order[j] = order[j], order[i]
    return [items[k] for k in order], order


def fresh_power_ups() -> Dict[str, Dict[str, bool]]:
    return {
        'fifty-fifty': {'available': True, 'used': False},
        'extend-time': {'available': True, 'used': False},
        'double-points': {'available': True, 'used': False, 'active': False},
    }


@dataclass
class Player:
    id: str
    name: str
    score: int = 0
    answers: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    power_ups: Optional[Dict[str, Dict[str, bool]]] = None

    @property
    def total_time(self) -> int:
        return sum(int(a.get('timeMs') or 0) for a in self.answers.values())

    def summary(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name}

    def leaderboard_entry(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'score': self.score, 'totalTime': self.total_time}


class Game:
    """In-memory state of one live session.

    Game is a passive container: it never schedules anything itself.
    Timer attributes hold handles created by the session scheduler.
    Callers must hold ``lock`` while touching any attribute.
    """

    def __init__(self, pin: str, host_id: str, quiz, settings: Mapping, created_at_ms: int, rng=None):
        self.lock = threading.RLock()
        self.pin = pin
        self.host_id = host_id
        self.quiz = quiz
        self.settings = settings
        self.rng = rng or random.Random()
        self.created_at = created_at_ms

        self.players: Dict[str, Player] = {}
        self.current_question = -1
        self.game_state = GameState.LOBBY
        self.question_start_time: Optional[int] = None
        self.start_time: Optional[str] = None
        self.end_time: Optional[str] = None
        self.leaderboard: List[Dict[str, Any]] = []
        self.answer_mappings: Dict[str, List[int]] = {}

        self.question_timer = None
        self.advance_timer = None
        self.leaderboard_timer = None
        self.start_timer = None
        self.early_end_timer = None
        self.is_advancing = False
        self.ending_question_early = False
        self.results_saved = False

        self.consensus_config = {
            'threshold': int(quiz.consensus_threshold),
            'discussionTime': int(quiz.discussion_time),
            'allowChat': bool(quiz.allow_chat),
        }
        self.proposals: Dict[str, Any] = {}
        self.discussion_messages: List[Dict[str, Any]] = []
        self.team_score = 0
        self.consensus_locked = False
        self._message_seq = 0

    @property
    def room(self) -> str:
        return f'game-{self.pin}'

    @property
    def title(self) -> str:
        return self.quiz.title

    @property
    def questions(self):
        return self.quiz.questions

    @property
    def is_consensus(self) -> bool:
        return bool(self.quiz.consensus_mode)

    @property
    def current_question_data(self):
        if 0 <= self.current_question < len(self.questions):
            return self.questions[self.current_question]
        return None

    def has_more_questions(self) -> bool:
        return self.current_question + 1 < len(self.questions)

    # -- players --------------------------------------------------------

    def add_player(self, player_id: str, name: str) -> Player:
        limit = int(self.settings.get('MAX_PLAYERS_PER_GAME', 200))
        if len(self.players) >= limit:
            raise GameError(ErrorKind.GAME_FULL, f'Game is full (max {limit} players)')
        player = Player(
            id=player_id,
            name=name,
            power_ups=fresh_power_ups() if self.quiz.power_ups_enabled else None,
        )
        self.players[player_id] = player
        return player

    def remove_player(self, player_id: str) -> Optional[Player]:
        self.proposals.pop(player_id, None)
        self.answer_mappings.pop(player_id, None)
        return self.players.pop(player_id, None)

    def player_list(self) -> List[Dict[str, Any]]:
        return [p.summary() for p in self.players.values()]

    def name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        wanted = name.casefold()
        return any(p.name.casefold() == wanted for pid, p in self.players.items() if pid != exclude_id)

    # -- question lifecycle -----------------------------------------------

    def next_question(self) -> bool:
        if not self.has_more_questions():
            return False
        self.current_question += 1
        self.game_state = GameState.QUESTION
        self.ending_question_early = False
        self.clear_timers()
        return True

    def end_question(self) -> None:
        self.game_state = GameState.REVEALING
        for name in ('question_timer', 'advance_timer'):
            self.cancel_timer(name)

    def answered_count(self) -> int:
        idx = self.current_question
        return sum(1 for p in self.players.values() if idx in p.answers)

    def all_answered(self) -> bool:
        total = len(self.players)
        return total > 0 and self.answered_count() == total

    def translate_shuffled_answer(self, player_id: str, answer, question_type: str):
        mapping = self.answer_mappings.get(player_id)
        if not mapping or question_type not in INDEX_TYPES:
            return answer
        if question_type == 'multiple-choice':
            return mapping[answer] if 0 <= answer < len(mapping) else answer
        return [mapping[a] if 0 <= a < len(mapping) else a for a in answer]

    def submit_answer(self, player_id: str, raw_answer, now_ms: int) -> Dict[str, Any]:
        player = self.players.get(player_id)
        if player is None:
            raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found in game')
        question = self.current_question_data
        if self.game_state != GameState.QUESTION or question is None:
            raise GameError(ErrorKind.QUESTION_CLOSED, 'Question is not accepting answers')
        if self.current_question in player.answers:
            raise GameError(ErrorKind.ANSWER_ALREADY_SUBMITTED, 'Answer already submitted')

        answer = normalize_answer(question.type, raw_answer)
        answer = self.translate_shuffled_answer(player_id, answer, question.type)
        if not is_valid_choice(question, answer):
            raise GameError(ErrorKind.INVALID_INPUT, 'Answer does not match the question options')

        multiplier = self.consume_double_points(player_id)
        start = self.question_start_time if self.question_start_time is not None else now_ms
        result = calculate_score(
            answer, question, start, now_ms, self.settings,
            scoring_config=self.quiz.scoring_config,
            double_points_multiplier=multiplier,
        )
        record = {
            'answer': answer,
            'isCorrect': result.is_correct,
            'points': result.points,
            'timeMs': max(0, now_ms - start),
            'doublePointsUsed': multiplier > 1,
            'breakdown': result.breakdown,
        }
        if result.partial_score is not None:
            record['partialScore'] = result.partial_score
        player.answers[self.current_question] = record
        player.score += result.points
        return record

    # -- power-ups --------------------------------------------------------

    def use_power_up(self, player_id: str, power_up: str) -> Dict[str, Any]:
        if not self.quiz.power_ups_enabled:
            raise GameError(ErrorKind.POWER_UPS_DISABLED, 'Power-ups are not enabled for this game')
        player = self.players.get(player_id)
        if player is None or player.power_ups is None:
            raise GameError(ErrorKind.PLAYER_NOT_FOUND, 'Player not found in game')
        if power_up not in POWER_UP_TYPES:
            raise GameError(ErrorKind.POWER_UP_UNKNOWN, f'Unknown power-up: {power_up}')
        if self.game_state != GameState.QUESTION:
            raise GameError(ErrorKind.QUESTION_CLOSED, 'Power-ups can only be used during a question')
        state = player.power_ups[power_up]
        if not state['available'] or state['used']:
            raise GameError(ErrorKind.POWER_UP_UNAVAILABLE, 'Power-up already used')

        question = self.current_question_data
        result: Dict[str, Any] = {'success': True, 'type': power_up}
        if power_up == 'fifty-fifty':
            if question.type != 'multiple-choice':
                raise GameError(ErrorKind.POWER_UP_UNAVAILABLE, 'Fifty-fifty only works on multiple-choice questions')
            result['hiddenOptions'] = self.hidden_options_for(player_id, question)
        elif power_up == 'extend-time':
            result['extraSeconds'] = int(self.settings.get('EXTEND_TIME_SECONDS', 10))
        else:
            state['active'] = True
            result['active'] = True
        state['used'] = True
        state['available'] = False
        return result

    def hidden_options_for(self, player_id: str, question) -> List[int]:
        wrong = [i for i in range(len(question.options)) if i != question.correct_index]
        hidden = self.rng.sample(wrong, math.ceil(len(wrong) / 2))
        mapping = self.answer_mappings.get(player_id)
        if mapping:
            hidden = [mapping.index(i) for i in hidden]
        return sorted(hidden)

    def consume_double_points(self, player_id: str) -> int:
        player = self.players.get(player_id)
        if player is None or not player.power_ups:
            return 1
        state = player.power_ups['double-points']
        if state.get('active'):
            state['active'] = False
            return 2
        return 1

    # -- consensus --------------------------------------------------------

    def submit_proposal(self, player_id: str, answer) -> None:
        self.proposals[player_id] = answer

    def proposal_distribution(self) -> Dict[str, Any]:
        grouped: Dict[Any, Dict[str, Any]] = {}
        for pid, answer in self.proposals.items():
            player = self.players.get(pid)
            if player is None:
                continue
            entry = grouped.setdefault(answer, {'count': 0, 'players': []})
            entry['count'] += 1
            entry['players'].append(player.name)

        leading = None
        top = 0
        for answer in sorted(grouped):
            if grouped[answer]['count'] > top:
                top = grouped[answer]['count']
                leading = answer

        total_players = len(self.players)
        percent = math.floor(top * 100 / total_players + 0.5) if total_players else 0
        return {
            'proposals': {str(a): grouped[a] for a in sorted(grouped)},
            'consensusPercent': percent,
            'leadingAnswer': leading,
            'totalProposals': sum(e['count'] for e in grouped.values()),
            'totalPlayers': total_players,
        }

    def check_consensus(self, distribution: Optional[Dict[str, Any]] = None) -> bool:
        distribution = distribution or self.proposal_distribution()
        return (
            distribution['leadingAnswer'] is not None
            and distribution['consensusPercent'] >= self.consensus_config['threshold']
        )

    def lock_consensus(self) -> Dict[str, Any]:
        question = self.current_question_data
        distribution = self.proposal_distribution()
        met = self.check_consensus(distribution)
        answer = distribution['leadingAnswer']
        is_correct = False
        if met:
            if question.type == 'multiple-choice':
                is_correct = answer == question.correct_index
            elif question.type == 'multiple-correct':
                is_correct = answer in question.correct_indices
        team_points = calculate_consensus_team_points(
            question, distribution['consensusPercent'], is_correct, self.settings, self.quiz.scoring_config
        ) if met else 0
        self.consensus_locked = True
        self.team_score += team_points
        return {
            'answer': answer,
            'percentage': distribution['consensusPercent'],
            'thresholdMet': met,
            'isCorrect': is_correct,
            'teamPoints': team_points,
            'totalTeamScore': self.team_score,
        }

    def add_discussion_message(self, player_id: str, kind: str, content: str, now_ms: int,
                               target_player: Optional[str] = None) -> Dict[str, Any]:
        player = self.players[player_id]
        self._message_seq += 1
        message = {
            'id': f'{now_ms}-{self._message_seq}',
            'playerId': player_id,
            'playerName': player.name,
            'type': kind,
            'content': content,
            'targetPlayer': target_player,
            'timestamp': now_ms,
        }
        self.discussion_messages.append(message)
        limit = int(self.settings.get('DISCUSSION_MESSAGE_LIMIT', 50))
        if len(self.discussion_messages) > limit:
            del self.discussion_messages[:-limit]
        return message

    def reset_consensus_for_question(self) -> None:
        self.proposals.clear()
        self.discussion_messages.clear()
        self.consensus_locked = False

    # -- results --------------------------------------------------------

    def update_leaderboard(self) -> List[Dict[str, Any]]:
        ranked = sorted(self.players.values(), key=lambda p: (-p.score, p.total_time))
        self.leaderboard = [p.leaderboard_entry() for p in ranked[:LEADERBOARD_SIZE]]
        return self.leaderboard

    def scoring_info(self, question) -> Dict[str, Any]:
        multiplier = get_difficulty_multiplier(question.difficulty, self.settings, self.quiz.scoring_config)
        config = self.quiz.scoring_config
        return {
            'basePoints': self.settings.get('BASE_POINTS', 100) * multiplier,
            'difficultyMultiplier': multiplier,
            'difficulty': question.difficulty,
            'timeBonusEnabled': config.time_bonus_enabled if config else True,
            'timeBonusThreshold': config.time_bonus_threshold if config else 0,
        }

    def answer_statistics(self) -> Optional[Dict[str, Any]]:
        question = self.current_question_data
        if question is None:
            return None
        counts = empty_answer_counts(question)
        answered = 0
        for player in self.players.values():
            record = player.answers.get(self.current_question)
            if record is None:
                continue
            answered += 1
            for key in count_keys(question, record['answer']):
                counts[key] = counts.get(key, 0) + 1
        return {
            'totalPlayers': len(self.players),
            'answeredPlayers': answered,
            'answerCounts': counts,
            'questionType': question.type,
            'optionCount': len(question.options_list) or 4,
            'scoringInfo': self.scoring_info(question),
        }

    def concept_mastery(self, player_id: str) -> Dict[str, Any]:
        player = self.players.get(player_id)
        tally: Dict[str, Dict[str, int]] = {}
        if player is not None:
            last = min(self.current_question, len(self.questions) - 1)
            for idx in range(last + 1):
                question = self.questions[idx]
                record = player.answers.get(idx)
                for concept in question.concepts:
                    entry = tally.setdefault(concept, {'correct': 0, 'total': 0})
                    entry['total'] += 1
                    if record and record.get('isCorrect'):
                        entry['correct'] += 1
        concepts = [
            {
                'name': name,
                'mastery': math.floor(entry['correct'] * 100 / entry['total'] + 0.5),
                'correct': entry['correct'],
                'total': entry['total'],
            }
            for name, entry in tally.items() if entry['total']
        ]
        concepts.sort(key=lambda c: (c['mastery'], c['name']))
        return {'concepts': concepts, 'hasConcepts': bool(concepts)}

    def results_artifact(self, saved_at: str) -> Dict[str, Any]:
        ranked = sorted(self.players.values(), key=lambda p: (-p.score, p.total_time))
        questions = []
        for number, question in enumerate(self.questions, start=1):
            entry = {
                'questionNumber': number,
                'text': question.text,
                'type': question.type,
                'options': question.options_list,
                'correctAnswer': correct_answer_key(question),
                'difficulty': question.difficulty,
                'timeLimit': question.time_limit,
                'concepts': list(question.concepts),
            }
            if question.type == 'multiple-correct':
                entry['correctAnswers'] = list(question.correct_indices)
            if question.type == 'ordering':
                entry['correctOrder'] = list(question.correct_order)
            questions.append(entry)
        artifact = {
            'quizTitle': self.title,
            'gamePin': self.pin,
            'gameMode': 'consensus' if self.is_consensus else 'classic',
            'results': [
                {
                    'name': p.name,
                    'score': p.score,
                    'answers': {str(idx): rec for idx, rec in sorted(p.answers.items())},
                }
                for p in ranked
            ],
            'startTime': self.start_time,
            'endTime': self.end_time,
            'saved': saved_at,
            'questions': questions,
        }
        if self.is_consensus:
            artifact['teamScore'] = self.team_score
        return artifact

    # -- teardown ---------------------------------------------------------

    def cancel_timer(self, name: str) -> None:
        handle = getattr(self, name)
        if handle is not None:
            handle.cancel()
        setattr(self, name, None)

    def clear_timers(self) -> None:
        for name in TIMER_NAMES:
            self.cancel_timer(name)

    def pending_timers(self) -> List[str]:
        return [name for name in TIMER_NAMES if getattr(self, name) is not None and getattr(self, name).pending]

    def reset(self) -> None:
        """Back to the lobby for a rematch; PIN, quiz and players stay."""
        self.clear_timers()
        for player in self.players.values():
            player.score = 0
            player.answers = {}
            player.power_ups = fresh_power_ups() if self.quiz.power_ups_enabled else None
        self.current_question = -1
        self.game_state = GameState.LOBBY
        self.question_start_time = None
        self.start_time = None
        self.end_time = None
        self.leaderboard = []
        self.answer_mappings = {}
        self.is_advancing = False
        self.ending_question_early = False
        self.results_saved = False
        self.reset_consensus_for_question()
        self.team_score = 0

    def cleanup(self) -> None:
        self.clear_timers()
        self.players.clear()
        self.answer_mappings.clear()
        self.proposals.clear()
        self.game_state = GameState.ENDED

    def summary(self) -> Dict[str, Any]:
        return {
            'pin': self.pin,
            'title': self.title,
            'state': self.game_state.value,
            'playerCount': len(self.players),
            'players': self.player_list(),
            'currentQuestion': self.current_question,
            'totalQuestions': len(self.questions),
            'createdAt': iso_from_ms(self.created_at),
            'consensusMode': self.is_consensus,
            'teamScore': self.team_score,
        }
