"""Inbound quiz payloads.

A quiz arrives with ``host-join`` as loosely typed JSON from the editor.
These models are the single place it is validated; the rest of the
package only ever sees parsed ``Quiz`` / question objects.
"""

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

Difficulty = Literal['easy', 'medium', 'hard']

QUESTION_TYPES = ('multiple-choice', 'multiple-correct', 'true-false', 'numeric', 'ordering')


class ScoringConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    difficulty_multipliers: Optional[Dict[str, float]] = Field(default=None, alias='difficultyMultipliers')
    time_bonus_enabled: bool = Field(default=True, alias='timeBonusEnabled')
    # ms; answers at or below this always earn the full bonus
    time_bonus_threshold: int = Field(default=0, ge=0, alias='timeBonusThreshold')


class QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    text: str = Field(validation_alias=AliasChoices('question', 'text'), min_length=1)
    difficulty: Difficulty = 'medium'
    time_limit: int = Field(default=20, ge=5, le=300, alias='timeLimit')
    explanation: Optional[str] = None
    image: Optional[str] = None
    video: Optional[str] = None
    explanation_video: Optional[str] = Field(default=None, alias='explanationVideo')
    concepts: List[str] = Field(default_factory=list)

    @property
    def options_list(self) -> List[str]:
        return list(getattr(self, 'options', None) or [])


class MultipleChoiceQuestion(QuestionBase):
    type: Literal['multiple-choice']
    options: List[str] = Field(min_length=2, max_length=6)
    correct_index: int = Field(ge=0, validation_alias=AliasChoices('correctIndex', 'correctAnswer'))

    @model_validator(mode='after')
    def _index_in_range(self):
        if self.correct_index >= len(self.options):
            raise ValueError('correctIndex must reference an option')
        return self


class MultipleCorrectQuestion(QuestionBase):
    type: Literal['multiple-correct']
    options: List[str] = Field(min_length=2, max_length=6)
    correct_indices: List[int] = Field(min_length=1, validation_alias=AliasChoices('correctIndices', 'correctAnswers'))

    @model_validator(mode='after')
    def _indices_in_range(self):
        if any(i < 0 or i >= len(self.options) for i in self.correct_indices):
            raise ValueError('correctIndices must reference options')
        self.correct_indices = sorted(set(self.correct_indices))
        return self


class TrueFalseQuestion(QuestionBase):
    type: Literal['true-false']
    correct_answer: bool = Field(alias='correctAnswer')


class NumericQuestion(QuestionBase):
    type: Literal['numeric']
    correct_answer: float = Field(alias='correctAnswer')
    tolerance: Optional[float] = Field(default=None, ge=0)


class OrderingQuestion(QuestionBase):
    type: Literal['ordering']
    options: List[str] = Field(min_length=2, max_length=8)
    correct_order: List[int] = Field(alias='correctOrder')

    @model_validator(mode='after')
    def _order_is_permutation(self):
        if sorted(self.correct_order) != list(range(len(self.options))):
            raise ValueError('correctOrder must be a permutation of the option indices')
        return self


Question = Annotated[
    Union[MultipleChoiceQuestion, MultipleCorrectQuestion, TrueFalseQuestion, NumericQuestion, OrderingQuestion],
    Field(discriminator='type'),
]


class Quiz(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    title: str = 'Untitled Quiz'
    questions: List[Question] = Field(min_length=1)
    randomize_answers: bool = Field(default=False, alias='randomizeAnswers')
    manual_advancement: bool = Field(default=False, alias='manualAdvancement')
    power_ups_enabled: bool = Field(default=False, alias='powerUpsEnabled')
    consensus_mode: bool = Field(default=False, alias='consensusMode')
    consensus_threshold: int = Field(default=66, ge=0, le=100, alias='consensusThreshold')
    discussion_time: int = Field(default=30, ge=0, alias='discussionTime')
    allow_chat: bool = Field(default=False, alias='allowChat')
    scoring_config: Optional[ScoringConfig] = Field(default=None, alias='scoringConfig')

    @field_validator('questions', mode='before')
    @classmethod
    def _fill_question_defaults(cls, value, info: ValidationInfo):
        if not isinstance(value, list):
            return value
        default_time = (info.context or {}).get('default_time_limit')
        normalized = []
        for item in value:
            if isinstance(item, dict) and not item.get('type'):
                item = {**item, 'type': 'multiple-choice'}
            if isinstance(item, dict) and default_time and 'timeLimit' not in item and 'time_limit' not in item:
                item = {**item, 'timeLimit': default_time}
            normalized.append(item)
        return normalized
