"""
Auto-grading of a single answer.

Objective types are all-or-nothing: a correct answer earns the question's
bound points, anything else earns zero. Essay and fill-in-the-blank answers
are never graded here; they come back with ``is_correct=None`` and are
flagged for manual review.
"""
from dataclasses import dataclass
from typing import Iterable, Optional
from examhub.models.answers import SingleChoiceAnswer, MultipleAnswer
from examhub.models.orm import QuestionType

SINGLE_CHOICE_TYPES = frozenset({QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE})
MANUAL_TYPES = frozenset({QuestionType.ESSAY, QuestionType.FILL_BLANK})

@dataclass(frozen=True)
class GradeResult:
    is_correct: Optional[bool]
    points_awarded: int
    needs_manual_grading: bool

    def as_dict(self) -> dict:
        return {"is_correct": self.is_correct, "points_awarded": self.points_awarded, "needs_manual_grading": self.needs_manual_grading}

MANUAL = GradeResult(is_correct=None, points_awarded=0, needs_manual_grading=True)
WRONG = GradeResult(is_correct=False, points_awarded=0, needs_manual_grading=False)

def _right(points: int) -> GradeResult:
    return GradeResult(is_correct=True, points_awarded=points, needs_manual_grading=False)

def grade_answer(question_type: QuestionType, correct_option_ids: Iterable[int], answer, points: int) -> GradeResult:
    question_type = QuestionType(question_type)
    if question_type in MANUAL_TYPES:
        return MANUAL
    correct = frozenset(correct_option_ids)
    if question_type in SINGLE_CHOICE_TYPES:
        selected = answer.selected_option_id if isinstance(answer, SingleChoiceAnswer) else None
        if selected is None: return WRONG
        return _right(points) if selected in correct else WRONG
    if question_type == QuestionType.MULTIPLE_ANSWER:
        selected_ids = answer.selected_option_ids if isinstance(answer, MultipleAnswer) else []
        if not selected_ids: return WRONG
        return _right(points) if frozenset(selected_ids) == correct else WRONG
    return MANUAL
