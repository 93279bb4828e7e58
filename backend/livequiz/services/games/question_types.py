"""Per-type answer handling: normalization, correctness and counting."""

import json
import math
from typing import Any, Dict, List

from livequiz.errors import ErrorKind, GameError

INDEX_TYPES = ('multiple-choice', 'multiple-correct')


def _as_index(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError('boolean is not an option index')
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    raise ValueError(f'not an option index: {value!r}')


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f'not a boolean: {value!r}')


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError('boolean is not a number')
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError('number must be finite')
    return number


def normalize_answer(question_type: str, answer: Any):
    """Coerce a raw client answer into the canonical shape for its type.

    Raises ``GameError(invalid_input)`` for anything that cannot be coerced.
    """
    try:
        if question_type == 'multiple-choice':
            return _as_index(answer)
        if question_type in ('multiple-correct', 'ordering'):
            if not isinstance(answer, (list, tuple)):
                raise ValueError('expected a list')
            return [_as_index(v) for v in answer]
        if question_type == 'true-false':
            return _as_bool(answer)
        if question_type == 'numeric':
            return _as_number(answer)
    except (TypeError, ValueError) as exc:
        raise GameError(ErrorKind.INVALID_INPUT, f'Invalid answer: {exc}') from exc
    raise GameError(ErrorKind.INVALID_INPUT, f'Unknown question type: {question_type}')


def correct_answer_key(question):
    if question.type == 'multiple-choice':
        return question.correct_index
    if question.type == 'multiple-correct':
        return list(question.correct_indices)
    if question.type == 'ordering':
        return list(question.correct_order)
    return question.correct_answer


def ordering_fraction(answer: List[int], correct_order: List[int]) -> float:
    if not correct_order or len(answer) != len(correct_order):
        return 0.0
    matches = sum(1 for got, want in zip(answer, correct_order) if got == want)
    return matches / len(correct_order)


def evaluate(question, answer, default_tolerance: float = 0.1) -> float:
    """Return 1.0 for correct, 0.0 for incorrect, or the share of
    matching positions for ordering questions."""
    qtype = question.type
    if qtype == 'multiple-choice':
        return 1.0 if answer == question.correct_index else 0.0
    if qtype == 'multiple-correct':
        return 1.0 if sorted(set(answer)) == sorted(set(question.correct_indices)) and len(answer) == len(set(answer)) else 0.0
    if qtype == 'true-false':
        return 1.0 if answer == question.correct_answer else 0.0
    if qtype == 'numeric':
        tolerance = question.tolerance if question.tolerance is not None else default_tolerance
        return 1.0 if abs(answer - question.correct_answer) <= tolerance else 0.0
    if qtype == 'ordering':
        return ordering_fraction(answer, question.correct_order)
    return 0.0


def is_valid_choice(question, answer) -> bool:
    """Bounds check for already-normalized answers."""
    options = question.options_list
    if question.type == 'multiple-choice':
        return 0 <= answer < len(options)
    if question.type == 'multiple-correct':
        return bool(answer) and all(0 <= a < len(options) for a in answer)
    if question.type == 'ordering':
        return len(answer) == len(options) and all(0 <= a < len(options) for a in answer)
    return True


def empty_answer_counts(question) -> Dict[str, int]:
    if question.type in INDEX_TYPES:
        return {str(i): 0 for i in range(len(question.options_list))}
    if question.type == 'true-false':
        return {'true': 0, 'false': 0}
    return {}


def count_keys(question, answer) -> List[str]:
    """Keys of ``answerCounts`` that a single answer contributes to."""
    if question.type == 'multiple-choice':
        return [str(answer)]
    if question.type == 'multiple-correct':
        return [str(a) for a in sorted(set(answer))]
    if question.type == 'true-false':
        return ['true' if answer else 'false']
    if question.type == 'numeric':
        return [format_number(answer)]
    if question.type == 'ordering':
        return [json.dumps(list(answer))]
    return []


def format_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def correct_answer_descriptor(question) -> Dict[str, Any]:
    """Payload fragment revealing the answer in ``question-timeout``."""
    options = question.options_list
    qtype = question.type
    data: Dict[str, Any] = {'questionType': qtype}
    if qtype == 'multiple-choice':
        data['correctAnswer'] = question.correct_index
        data['correctOption'] = options[question.correct_index]
    elif qtype == 'multiple-correct':
        data['correctAnswer'] = list(question.correct_indices)
        data['correctAnswers'] = list(question.correct_indices)
        data['correctOption'] = ', '.join(options[i] for i in question.correct_indices)
    elif qtype == 'true-false':
        data['correctAnswer'] = question.correct_answer
        data['correctOption'] = question.correct_answer
    elif qtype == 'numeric':
        data['correctAnswer'] = question.correct_answer
        data['correctOption'] = format_number(question.correct_answer)
        if question.tolerance is not None:
            data['tolerance'] = question.tolerance
    elif qtype == 'ordering':
        data['correctAnswer'] = list(question.correct_order)
        data['correctOrder'] = list(question.correct_order)
        data['correctOption'] = ' -> '.join(options[i] for i in question.correct_order)
    if question.explanation:
        data['explanation'] = question.explanation
    if question.explanation_video:
        data['explanationVideo'] = question.explanation_video
    return data
