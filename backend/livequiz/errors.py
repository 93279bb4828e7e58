from enum import Enum


class ErrorKind(str, Enum):
    """Stable identifiers sent to clients as ``messageKey``."""

    INVALID_INPUT = 'invalid_input'
    INVALID_QUIZ = 'invalid_quiz'
    GAME_NOT_FOUND = 'game_not_found'
    GAME_ALREADY_STARTED = 'game_already_started'
    GAME_FULL = 'game_full'
    GAME_LIMIT_REACHED = 'game_limit_reached'
    PLAYER_NOT_FOUND = 'player_not_found'
    NAME_INVALID_CHARS = 'name_invalid_chars'
    NAME_LENGTH = 'name_length'
    NAME_ALREADY_TAKEN = 'name_already_taken'
    NOT_HOST = 'not_host'
    ALREADY_IN_GAME = 'already_in_game'
    QUESTION_CLOSED = 'question_closed'
    ANSWER_ALREADY_SUBMITTED = 'answer_already_submitted'
    POWER_UPS_DISABLED = 'power_ups_disabled'
    POWER_UP_UNAVAILABLE = 'power_up_unavailable'
    POWER_UP_UNKNOWN = 'power_up_unknown'
    CONSENSUS_NOT_ACTIVE = 'consensus_not_active'
    CONSENSUS_NO_QUESTION = 'consensus_no_question'
    CONSENSUS_ALREADY_LOCKED = 'consensus_already_locked'
    CONSENSUS_INVALID_ANSWER = 'consensus_invalid_answer'
    CONSENSUS_INVALID_RESPONSE = 'consensus_invalid_response'
    CONSENSUS_CHAT_DISABLED = 'consensus_chat_disabled'
    CONSENSUS_EMPTY_MESSAGE = 'consensus_empty_message'
    RATE_LIMITED = 'rate_limited'
    INTERNAL = 'internal'


class GameError(Exception):
    """A caller-scoped denial raised by the game services."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_payload(self) -> dict:
        return {'error': self.message, 'messageKey': self.kind.value}

    def __repr__(self):
        return f"GameError({self.kind.value!r}, {self.message!r})"
