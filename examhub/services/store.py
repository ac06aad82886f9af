"""
Exam definitions, question lookup and attempt persistence over SQLAlchemy.

Every function takes the request session; none of them commit. The caller
owns the transaction so that an answer row and the counters it bumps land
together.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import select, update, insert, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from examhub.core.errors import ExamNotFound, QuestionNotFound, AttemptNotFound
from examhub.models.orm import Exam, Question, QuestionOption, ExamQuestion, ExamAttempt, UserAnswer, AttemptStatus, utcnow

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

# ---- exam definitions -------------------------------------------------------

def get_exam(db: Session, exam_id: int, include_deleted: bool = False) -> Exam:
    """Soft-deleted exams are hidden unless ``include_deleted``; attempts already started keep their exam."""
    stmt = select(Exam).where(Exam.id == exam_id)
    if not include_deleted: stmt = stmt.where(Exam.deleted_at.is_(None))
    exam = db.scalar(stmt)
    if not exam: raise ExamNotFound(exam_id=exam_id)
    return exam

def get_exam_questions(db: Session, exam_id: int) -> List[ExamQuestion]:
    """Bindings of live (not soft-deleted) questions, in display order."""
    stmt = select(ExamQuestion).join(Question, Question.id == ExamQuestion.question_id).where(
        ExamQuestion.exam_id == exam_id, Question.deleted_at.is_(None)
    ).order_by(ExamQuestion.order, ExamQuestion.id)
    return list(db.scalars(stmt).all())

def get_binding(db: Session, exam_id: int, question_id: int) -> Optional[ExamQuestion]:
    return db.scalar(select(ExamQuestion).where(ExamQuestion.exam_id == exam_id, ExamQuestion.question_id == question_id))

# ---- questions --------------------------------------------------------------

def get_question(db: Session, question_id: int) -> Question:
    q = db.scalar(select(Question).where(Question.id == question_id, Question.deleted_at.is_(None)))
    if not q: raise QuestionNotFound(question_id=question_id)
    return q

def get_questions(db: Session, question_ids: Iterable[int]) -> Dict[int, Question]:
    ids = list(question_ids)
    if not ids: return {}
    return {q.id: q for q in db.scalars(select(Question).where(Question.id.in_(ids))).all()}

def get_options(db: Session, question_ids: Iterable[int]) -> Dict[int, List[QuestionOption]]:
    ids = list(question_ids)
    grouped: Dict[int, List[QuestionOption]] = {qid: [] for qid in ids}
    if not ids: return grouped
    rows = db.scalars(select(QuestionOption).where(QuestionOption.question_id.in_(ids)).order_by(QuestionOption.order, QuestionOption.id)).all()
    for o in rows: grouped[o.question_id].append(o)
    return grouped

def record_question_answered(db: Session, question_id: int, was_correct: bool) -> None:
    """Bump usage counters with column arithmetic so concurrent graders never lose an increment."""
    db.execute(
        update(Question).where(Question.id == question_id).values(
            usage_count=Question.usage_count + 1,
            total_answer_count=Question.total_answer_count + 1,
            correct_answer_count=Question.correct_answer_count + (1 if was_correct else 0),
        ).execution_options(synchronize_session=False)
    )

# ---- attempts ---------------------------------------------------------------

def create_attempt(db: Session, **fields) -> ExamAttempt:
    attempt = ExamAttempt(**fields)
    db.add(attempt); db.flush()
    return attempt

def get_attempt(db: Session, attempt_id: int, lock: bool = False) -> ExamAttempt:
    stmt = select(ExamAttempt).where(ExamAttempt.id == attempt_id)
    if lock: stmt = stmt.with_for_update()
    attempt = db.scalar(stmt)
    if not attempt: raise AttemptNotFound(attempt_id=attempt_id)
    return attempt

def update_attempt(db: Session, attempt_id: int, fields: dict, expected_status: Optional[AttemptStatus] = None) -> bool:
    """Apply ``fields``; with ``expected_status`` the write only happens from that status. Returns whether a row changed."""
    stmt = update(ExamAttempt).where(ExamAttempt.id == attempt_id)
    if expected_status is not None: stmt = stmt.where(ExamAttempt.status == expected_status)
    result = db.execute(stmt.values(**fields, updated_at=utcnow()).execution_options(synchronize_session=False))
    db.expire_all()
    return result.rowcount > 0

def count_completed_attempts(db: Session, exam_id: int, user_id: str) -> int:
    return db.scalar(select(func.count()).select_from(ExamAttempt).where(
        ExamAttempt.exam_id == exam_id, ExamAttempt.user_id == user_id, ExamAttempt.status == AttemptStatus.COMPLETED
    )) or 0

def list_user_attempts(db: Session, user_id: str, exam_id: Optional[int] = None, status: Optional[AttemptStatus] = None,
                       page: int = 1, page_size: int = 20) -> Tuple[List[ExamAttempt], int]:
    where = [ExamAttempt.user_id == user_id]
    if exam_id is not None: where.append(ExamAttempt.exam_id == exam_id)
    if status is not None: where.append(ExamAttempt.status == status)
    total = db.scalar(select(func.count()).select_from(ExamAttempt).where(*where)) or 0
    rows = db.scalars(select(ExamAttempt).where(*where).order_by(ExamAttempt.started_at.desc(), ExamAttempt.id.desc())
                      .limit(page_size).offset((page - 1) * page_size)).all()
    return list(rows), total

# ---- answers ----------------------------------------------------------------

def upsert_answer(db: Session, attempt_id: int, question_id: int, fields: dict) -> None:
    """Insert-or-replace keyed by (attempt_id, question_id); last write wins."""
    values = dict(fields, updated_at=utcnow())
    dialect_insert = _UPSERT_INSERTS.get(db.get_bind().dialect.name)
    try:
        with db.begin_nested():
            if dialect_insert is not None:
                stmt = dialect_insert(UserAnswer).values(attempt_id=attempt_id, question_id=question_id, **values)
                stmt = stmt.on_conflict_do_update(index_elements=["attempt_id", "question_id"], set_=values)
            else:
                stmt = insert(UserAnswer).values(attempt_id=attempt_id, question_id=question_id, **values)
            db.execute(stmt)
    except IntegrityError:
        logger.warning("answer upsert for attempt %s question %s collided, retrying as update", attempt_id, question_id)
        db.execute(update(UserAnswer).where(UserAnswer.attempt_id == attempt_id, UserAnswer.question_id == question_id)
                   .values(**values).execution_options(synchronize_session=False))
    db.expire_all()

def list_answers(db: Session, attempt_id: int) -> List[UserAnswer]:
    return list(db.scalars(select(UserAnswer).where(UserAnswer.attempt_id == attempt_id).order_by(UserAnswer.id)).all())
