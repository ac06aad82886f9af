"""
Attempt lifecycle: start, answer, submit, abandon.

An attempt is created ``in_progress`` and leaves that status exactly once,
through ``submit_exam`` (to ``completed`` or ``grading``) or
``abandon_attempt`` (to ``abandoned``). Answers are only written while the
attempt is in progress. Each public function is one transaction and commits
before returning.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session
from examhub.core import cache
from examhub.core.errors import (
    ExamNotPublished, ExamHasNoQuestions, AttemptLimitReached, AttemptNotInProgress,
    AttemptAlreadySubmitted, QuestionNotInExam, AnswerValidationError, NotOwner,
)
from examhub.models.answers import AnswerPayload, PAYLOAD_FOR_TYPE, SingleChoiceAnswer, MultipleAnswer, TextAnswer, answer_columns
from examhub.models.orm import Exam, ExamAttempt, ExamQuestion, Question, QuestionOption, AttemptStatus, utcnow
from examhub.services import store, grader, randomizer, scoring

logger = logging.getLogger(__name__)

_payload_adapter = TypeAdapter(AnswerPayload)

def elapsed_seconds(started_at: datetime, now: datetime) -> int:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if started_at.tzinfo is None: started_at = started_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None: now = now.replace(tzinfo=timezone.utc)
    return max(0, int((now - started_at).total_seconds()))

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def attempt_to_dict(attempt: ExamAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id, "exam_id": attempt.exam_id, "user_id": attempt.user_id, "status": AttemptStatus(attempt.status).value,
        "started_at": _iso(attempt.started_at), "completed_at": _iso(attempt.completed_at), "submitted_at": _iso(attempt.submitted_at),
        "duration": attempt.duration, "score": attempt.score, "total_points": attempt.total_points, "max_points": attempt.max_points,
        "correct_answers": attempt.correct_answers, "incorrect_answers": attempt.incorrect_answers,
        "unanswered_questions": attempt.unanswered_questions, "is_passed": attempt.is_passed,
        "time_remaining": attempt.time_remaining, "current_question_index": attempt.current_question_index,
    }

def present_question(question: Question, binding: ExamQuestion, options: Sequence[QuestionOption]) -> Dict[str, Any]:
    """Question as shown to an exam taker; option correctness is never included."""
    return {
        "question_id": question.id, "question_text": question.question_text, "question_type": question.question_type.value,
        "order": binding.order, "points": binding.points, "is_required": binding.is_required,
        "options": [{"id": o.id, "option_text": o.option_text, "order": o.order} for o in options],
    }

def _sequence(db: Session, exam: Exam, bindings: List[ExamQuestion], order_ids: Optional[List[int]] = None,
              rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
    if order_ids is None:
        bindings = randomizer.order_questions(bindings, exam.randomize_questions, rng)
    else:
        rank = {qid: i for i, qid in enumerate(order_ids)}
        bindings = sorted(bindings, key=lambda b: rank.get(b.question_id, len(rank)))
    ids = [b.question_id for b in bindings]
    questions = store.get_questions(db, ids); options = store.get_options(db, ids)
    return [present_question(questions[b.question_id], b, randomizer.order_options(options[b.question_id], exam.randomize_options, rng))
            for b in bindings]

def _owned(db: Session, attempt_id: int, user_id: str) -> ExamAttempt:
    attempt = store.get_attempt(db, attempt_id)
    if attempt.user_id != user_id: raise NotOwner(attempt_id=attempt_id)
    return attempt

# ---- start ------------------------------------------------------------------

def start_attempt(db: Session, exam_id: int, user_id: str, metadata: Optional[dict] = None,
                  rng: Optional[random.Random] = None) -> Dict[str, Any]:
    exam = store.get_exam(db, exam_id)
    if not exam.is_published: raise ExamNotPublished(exam_id=exam_id)
    bindings = store.get_exam_questions(db, exam_id)
    if not bindings: raise ExamHasNoQuestions(exam_id=exam_id)
    if exam.attempts_allowed is not None:
        used = store.count_completed_attempts(db, exam_id, user_id)
        if used >= exam.attempts_allowed:
            raise AttemptLimitReached(f"Maximum attempts ({exam.attempts_allowed}) reached for this exam", exam_id=exam_id, used=used)
    attempt = store.create_attempt(
        db, exam_id=exam_id, user_id=user_id, status=AttemptStatus.IN_PROGRESS, started_at=utcnow(),
        max_points=sum(b.points or 0 for b in bindings), current_question_index=0,
        time_remaining=exam.duration * 60 if exam.duration is not None else None, meta=metadata or None,
    )
    attempt_id = attempt.id
    questions = _sequence(db, exam, bindings, rng=rng)
    db.commit()
    cache.remember_sequence(attempt_id, [q["question_id"] for q in questions])
    logger.info("attempt %s started on exam %s by user %s (%d questions)", attempt_id, exam_id, user_id, len(questions))
    return {"attempt_id": attempt_id, "attempt": attempt_to_dict(store.get_attempt(db, attempt_id)),
            "ordered_questions": questions, "total_questions": len(questions)}

def get_attempt_questions(db: Session, attempt_id: int, user_id: str) -> Dict[str, Any]:
    """Re-fetch the presented sequence; a fresh order is drawn once the cached one has expired."""
    attempt = _owned(db, attempt_id, user_id)
    exam = store.get_exam(db, attempt.exam_id, include_deleted=True)
    order_ids = cache.recall_sequence(attempt_id) if attempt.status == AttemptStatus.IN_PROGRESS else None
    questions = _sequence(db, exam, store.get_exam_questions(db, exam.id), order_ids=order_ids)
    return {"attempt_id": attempt_id, "status": AttemptStatus(attempt.status).value,
            "questions": questions, "total_questions": len(questions)}

# ---- answers ----------------------------------------------------------------

def parse_answer(payload) -> Any:
    if isinstance(payload, (SingleChoiceAnswer, MultipleAnswer, TextAnswer)):
        return payload
    try:
        return _payload_adapter.validate_python(payload)
    except ValidationError as e:
        raise AnswerValidationError(f"Invalid answer payload: {e.errors()[0].get('msg', 'invalid')}")

def _check_answer_fits(question: Question, options: Sequence[QuestionOption], answer) -> None:
    expected = PAYLOAD_FOR_TYPE[question.question_type]
    if not isinstance(answer, expected):
        raise AnswerValidationError(
            f"{question.question_type.value} questions take a '{expected.model_fields['answer_type'].default}' answer, "
            f"got '{answer.answer_type}'", question_id=question.id)
    if isinstance(answer, SingleChoiceAnswer):
        chosen = {answer.selected_option_id} if answer.selected_option_id is not None else set()
    elif isinstance(answer, MultipleAnswer):
        chosen = set(answer.selected_option_ids)
    else:
        chosen = set()
    unknown = chosen - {o.id for o in options}
    if unknown:
        raise AnswerValidationError(f"Options {sorted(unknown)} do not belong to question {question.id}", question_id=question.id)

def submit_answer(db: Session, attempt_id: int, question_id: int, payload) -> Dict[str, Any]:
    attempt = store.get_attempt(db, attempt_id, lock=True)
    if attempt.status != AttemptStatus.IN_PROGRESS:
        raise AttemptNotInProgress(attempt_id=attempt_id, status=AttemptStatus(attempt.status).value)
    binding = store.get_binding(db, attempt.exam_id, question_id)
    if not binding: raise QuestionNotInExam(attempt_id=attempt_id, question_id=question_id)
    answer = parse_answer(payload)
    question = store.get_question(db, question_id)
    options = store.get_options(db, [question_id])[question_id]
    _check_answer_fits(question, options, answer)
    result = grader.grade_answer(question.question_type, [o.id for o in options if o.is_correct], answer, binding.points)
    store.upsert_answer(db, attempt_id, question_id, dict(
        answer_columns(answer), is_correct=result.is_correct, points_awarded=result.points_awarded, answered_at=utcnow()))
    if result.is_correct is not None:
        store.record_question_answered(db, question_id, result.is_correct)
    db.commit()
    return result.as_dict()

# ---- finalize ---------------------------------------------------------------

def submit_exam(db: Session, attempt_id: int) -> Dict[str, Any]:
    attempt = store.get_attempt(db, attempt_id, lock=True)
    if attempt.status != AttemptStatus.IN_PROGRESS:
        raise AttemptAlreadySubmitted(attempt_id=attempt_id, status=AttemptStatus(attempt.status).value)
    exam = store.get_exam(db, attempt.exam_id, include_deleted=True)
    summary = scoring.aggregate(store.get_exam_questions(db, exam.id), store.list_answers(db, attempt_id))
    # unanswered and awaiting-review both park the attempt in grading
    has_pending_work = summary.unanswered_questions > 0 or summary.needs_grading > 0
    final_status = AttemptStatus.GRADING if has_pending_work else AttemptStatus.COMPLETED
    is_passed = summary.percentage >= exam.passing_score
    now = utcnow()
    duration = elapsed_seconds(attempt.started_at, now)
    changed = store.update_attempt(db, attempt_id, {
        "status": final_status, "completed_at": now, "submitted_at": now, "duration": duration,
        "score": summary.percentage, "total_points": summary.total_points, "max_points": summary.max_points,
        "correct_answers": summary.correct_answers, "incorrect_answers": summary.incorrect_answers,
        "unanswered_questions": summary.unanswered_questions, "is_passed": is_passed,
    }, expected_status=AttemptStatus.IN_PROGRESS)
    if not changed:
        db.rollback()
        raise AttemptAlreadySubmitted(attempt_id=attempt_id)
    db.commit()
    cache.forget_sequence(attempt_id)
    logger.info("attempt %s submitted: %s, score %.2f, passed=%s", attempt_id, final_status.value, summary.percentage, is_passed)
    return {"attempt_id": attempt_id, "final_status": final_status.value, "score": summary.percentage,
            "is_passed": is_passed, "duration": duration, "summary": summary.as_dict()}

def abandon_attempt(db: Session, attempt_id: int) -> Dict[str, Any]:
    """Move an in-progress attempt to abandoned; any other status is returned unchanged."""
    attempt = store.get_attempt(db, attempt_id)
    changed = False
    if attempt.status == AttemptStatus.IN_PROGRESS:
        changed = store.update_attempt(db, attempt_id, {"status": AttemptStatus.ABANDONED, "completed_at": utcnow()},
                                       expected_status=AttemptStatus.IN_PROGRESS)
        db.commit()
    if changed:
        cache.forget_sequence(attempt_id)
        logger.info("attempt %s abandoned", attempt_id)
    attempt = store.get_attempt(db, attempt_id)
    return {"attempt_id": attempt_id, "status": AttemptStatus(attempt.status).value, "changed": changed}

# ---- reads ------------------------------------------------------------------

def get_attempt(db: Session, attempt_id: int, user_id: str) -> Dict[str, Any]:
    return attempt_to_dict(_owned(db, attempt_id, user_id))

def get_score(db: Session, attempt_id: int, user_id: str) -> Dict[str, Any]:
    _owned(db, attempt_id, user_id)
    return scoring.calculate_score(db, attempt_id).as_dict()

def list_attempts(db: Session, user_id: str, exam_id: Optional[int] = None, status: Optional[AttemptStatus] = None,
                  page: int = 1, page_size: int = 20) -> Dict[str, Any]:
    rows, total = store.list_user_attempts(db, user_id, exam_id=exam_id, status=status, page=page, page_size=page_size)
    return {"data": [attempt_to_dict(a) for a in rows],
            "pagination": {"page": page, "limit": page_size, "total": total, "total_pages": -(-total // page_size)}}
