import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .question_types import evaluate


@dataclass
class ScoreResult:
    points: int
    is_correct: bool
    breakdown: Dict[str, Any] = field(default_factory=dict)
    partial_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'points': self.points,
            'isCorrect': self.is_correct,
            'breakdown': dict(self.breakdown),
        }
        if self.partial_score is not None:
            data['partialScore'] = self.partial_score
        return data


def get_difficulty_multiplier(difficulty: str, settings: Mapping, scoring_config=None):
    """Session override, then the global table, then 2."""
    overrides = getattr(scoring_config, 'difficulty_multipliers', None) or {}
    if difficulty in overrides:
        return overrides[difficulty]
    defaults = settings.get('DIFFICULTY_MULTIPLIERS') or {}
    return defaults.get(difficulty, 2)


def calculate_time_bonus(elapsed_ms: int, max_bonus_ms: int, threshold_ms: int = 0) -> int:
    if threshold_ms > 0 and elapsed_ms <= threshold_ms:
        return max_bonus_ms
    return max(0, max_bonus_ms - elapsed_ms)


def calculate_score(
    answer,
    question,
    question_start_ms: int,
    now_ms: int,
    settings: Mapping,
    scoring_config=None,
    double_points_multiplier: int = 1,
) -> ScoreResult:
    """Score one translated, normalized answer.

    - points = base (100 x difficulty) + scaled time bonus when correct
    - ordering questions earn that sum times the share of positions right
    - the double-points power-up multiplies the final value
    """
    fraction = evaluate(question, answer, settings.get('DEFAULT_NUMERIC_TOLERANCE', 0.1))
    multiplier = get_difficulty_multiplier(question.difficulty, settings, scoring_config)
    base_points = settings.get('BASE_POINTS', 100) * multiplier

    time_bonus_enabled = True
    threshold = 0
    if scoring_config is not None:
        time_bonus_enabled = scoring_config.time_bonus_enabled
        threshold = scoring_config.time_bonus_threshold

    elapsed = max(0, now_ms - question_start_ms)
    scaled_bonus = 0
    if time_bonus_enabled:
        bonus = calculate_time_bonus(elapsed, settings.get('MAX_BONUS_TIME_MS', 10000), threshold)
        scaled_bonus = math.floor(bonus * multiplier / settings.get('TIME_BONUS_DIVISOR', 10))

    partial_score = None
    if question.type == 'ordering':
        partial_score = fraction
        is_correct = fraction == 1
        points = math.floor((base_points + scaled_bonus) * fraction)
    else:
        is_correct = fraction == 1
        points = math.floor(base_points + scaled_bonus) if is_correct else 0

    points *= double_points_multiplier
    breakdown = {
        'basePoints': base_points if points else 0,
        'timeBonus': scaled_bonus if points else 0,
        'difficultyMultiplier': multiplier,
        'doublePointsMultiplier': double_points_multiplier,
    }
    return ScoreResult(points=int(points), is_correct=is_correct, breakdown=breakdown, partial_score=partial_score)


def get_consensus_bonus(consensus_percent: float) -> float:
    if consensus_percent >= 100:
        return 1.5
    if consensus_percent >= 75:
        return 1.2
    return 1.0


def calculate_consensus_team_points(question, consensus_percent: float, is_correct: bool, settings: Mapping, scoring_config=None) -> int:
    if not is_correct:
        return 0
    multiplier = get_difficulty_multiplier(question.difficulty, settings, scoring_config)
    base_points = settings.get('BASE_POINTS', 100) * multiplier
    return int(math.floor(base_points * get_consensus_bonus(consensus_percent)))
