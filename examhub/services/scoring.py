from dataclasses import dataclass, asdict
from typing import Iterable
from sqlalchemy.orm import Session
from examhub.models.orm import ExamQuestion, UserAnswer
from examhub.services import store

@dataclass(frozen=True)
class ScoreSummary:
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    unanswered_questions: int
    needs_grading: int
    total_points: int
    max_points: int
    percentage: float

    def as_dict(self) -> dict: return asdict(self)

def aggregate(bindings: Iterable[ExamQuestion], answers: Iterable[UserAnswer]) -> ScoreSummary:
    """Totals for one attempt from its exam bindings and persisted answers."""
    bindings = list(bindings)
    bound_ids = {b.question_id for b in bindings}
    # answers to questions no longer bound (unbound or soft-deleted) do not count
    answers = [a for a in answers if a.question_id in bound_ids]
    max_points = sum(b.points or 0 for b in bindings)
    correct = [a for a in answers if a.is_correct is True]
    incorrect = sum(1 for a in answers if a.is_correct is False)
    needs_grading = sum(1 for a in answers if a.is_correct is None)
    total_points = sum(a.points_awarded or 0 for a in correct)
    # points may be re-weighted on the exam after an answer was graded
    percentage = 0.0 if max_points == 0 else min(100.0, round(total_points / max_points * 100, 2))
    return ScoreSummary(
        total_questions=len(bindings), correct_answers=len(correct), incorrect_answers=incorrect,
        unanswered_questions=len(bindings) - len(answers), needs_grading=needs_grading,
        total_points=total_points, max_points=max_points, percentage=percentage,
    )

def calculate_score(db: Session, attempt_id: int) -> ScoreSummary:
    attempt = store.get_attempt(db, attempt_id)
    return aggregate(store.get_exam_questions(db, attempt.exam_id), store.list_answers(db, attempt_id))
