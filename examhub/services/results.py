"""
Attempt results under the exam's show-answers policy.

=============  ==========================================
policy         correctness and explanations revealed when
=============  ==========================================
immediately    always
after_submit   the attempt is ``completed``
never          never
=============  ==========================================

Ownership is checked here as well as by the caller: a foreign attempt
yields ``NotOwner`` before anything is read beyond the attempt row.
"""
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session
from examhub.core.errors import NotOwner
from examhub.models.orm import Exam, ExamAttempt, AttemptStatus, ShowAnswers, UserAnswer
from examhub.services import store
from examhub.services.attempts import attempt_to_dict

def answers_visible(policy: ShowAnswers, status: AttemptStatus) -> bool:
    policy, status = ShowAnswers(policy), AttemptStatus(status)
    if policy == ShowAnswers.IMMEDIATELY: return True
    if policy == ShowAnswers.AFTER_SUBMIT: return status == AttemptStatus.COMPLETED
    return False

def _answer_dict(answer: Optional[UserAnswer]) -> Optional[Dict[str, Any]]:
    if answer is None: return None
    return {
        "selected_option_id": answer.selected_option_id, "selected_option_ids": answer.selected_option_ids,
        "text_answer": answer.text_answer, "is_correct": answer.is_correct, "points_awarded": answer.points_awarded,
        "time_spent": answer.time_spent, "marked_for_review": answer.marked_for_review,
        "answered_at": answer.answered_at.isoformat() if answer.answered_at else None,
    }

def _reveal(db: Session, exam: Exam, attempt: ExamAttempt) -> list:
    bindings = store.get_exam_questions(db, exam.id)
    ids = [b.question_id for b in bindings]
    questions = store.get_questions(db, ids); options = store.get_options(db, ids)
    answers = {a.question_id: a for a in store.list_answers(db, attempt.id)}
    return [{
        "question_id": b.question_id, "question_text": questions[b.question_id].question_text,
        "question_type": questions[b.question_id].question_type.value, "explanation": questions[b.question_id].explanation,
        "order": b.order, "points": b.points,
        "options": [{"id": o.id, "option_text": o.option_text, "order": o.order, "is_correct": o.is_correct, "explanation": o.explanation}
                    for o in options[b.question_id]],
        "user_answer": _answer_dict(answers.get(b.question_id)),
    } for b in bindings]

def get_results(db: Session, attempt_id: int, requesting_user_id: str) -> Dict[str, Any]:
    attempt = store.get_attempt(db, attempt_id)
    if attempt.user_id != requesting_user_id: raise NotOwner(attempt_id=attempt_id)
    exam = store.get_exam(db, attempt.exam_id, include_deleted=True)
    show = answers_visible(exam.show_answers_after, attempt.status)
    return {
        "attempt": attempt_to_dict(attempt),
        "exam": {"id": exam.id, "title": exam.title, "passing_score": exam.passing_score, "show_answers_after": ShowAnswers(exam.show_answers_after).value},
        "show_answers": show,
        "questions": _reveal(db, exam, attempt) if show else [],
    }
