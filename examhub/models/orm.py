import enum
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import BigInteger, Integer, String, Text, Boolean, ForeignKey, JSON, Numeric, DateTime, Enum, UniqueConstraint, Index

# SQLite only autoincrements INTEGER PRIMARY KEY
BigId = BigInteger().with_variant(Integer, "sqlite")

def utcnow() -> datetime: return datetime.now(timezone.utc)

class Base(DeclarativeBase): pass

class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    MULTIPLE_ANSWER = "multiple_answer"
    ESSAY = "essay"
    FILL_BLANK = "fill_blank"

class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    GRADING = "grading"
    ABANDONED = "abandoned"

class ShowAnswers(str, enum.Enum):
    IMMEDIATELY = "immediately"
    AFTER_SUBMIT = "after_submit"
    NEVER = "never"

def _enum(cls, name):
    return Enum(cls, name=name, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)

class Exam(Base):
    __tablename__ = "exams"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    title: Mapped[str] = mapped_column(String(500))
    created_by: Mapped[str] = mapped_column(String)
    category_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    passing_score: Mapped[int] = mapped_column(Integer, default=70)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempts_allowed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    randomize_questions: Mapped[bool] = mapped_column(Boolean, default=False)
    randomize_options: Mapped[bool] = mapped_column(Boolean, default=False)
    question_pool_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    show_answers_after: Mapped[ShowAnswers] = mapped_column(_enum(ShowAnswers, "show_answers"), default=ShowAnswers.AFTER_SUBMIT)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Question(Base):
    __tablename__ = "questions"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    question_text: Mapped[str] = mapped_column(Text)
    question_type: Mapped[QuestionType] = mapped_column(_enum(QuestionType, "question_type"))
    created_by: Mapped[str] = mapped_column(String)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    correct_answer_count: Mapped[int] = mapped_column(Integer, default=0)
    total_answer_count: Mapped[int] = mapped_column(Integer, default=0)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

class QuestionOption(Base):
    __tablename__ = "question_options"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id", ondelete="CASCADE"), index=True)
    option_text: Mapped[str] = mapped_column(Text)
    is_correct: Mapped[bool] = mapped_column(Boolean)
    order: Mapped[int] = mapped_column(Integer, default=0)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

class ExamQuestion(Base):
    __tablename__ = "exam_questions"
    __table_args__ = (UniqueConstraint("exam_id", "question_id", name="uq_exam_question"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    exam_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("exams.id", ondelete="CASCADE"), index=True)
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id", ondelete="CASCADE"), index=True)
    order: Mapped[int] = mapped_column(Integer)
    points: Mapped[int] = mapped_column(Integer, default=1)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)

class ExamAttempt(Base):
    __tablename__ = "exam_attempts"
    __table_args__ = (Index("ix_attempt_user_exam", "user_id", "exam_id"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    exam_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("exams.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[AttemptStatus] = mapped_column(_enum(AttemptStatus, "attempt_status"), default=AttemptStatus.IN_PROGRESS, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score: Mapped[float | None] = mapped_column(Numeric(5, 2, asdecimal=False), nullable=True)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    max_points: Mapped[int] = mapped_column(Integer, default=0)
    correct_answers: Mapped[int] = mapped_column(Integer, default=0)
    incorrect_answers: Mapped[int] = mapped_column(Integer, default=0)
    unanswered_questions: Mapped[int] = mapped_column(Integer, default=0)
    is_passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    time_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_question_index: Mapped[int] = mapped_column(Integer, default=0)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class UserAnswer(Base):
    __tablename__ = "user_answers"
    __table_args__ = (UniqueConstraint("attempt_id", "question_id", name="uq_attempt_question"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    attempt_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("exam_attempts.id", ondelete="CASCADE"), index=True)
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id"), index=True)
    selected_option_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("question_options.id"), nullable=True)
    selected_option_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    text_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0)
    time_spent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    marked_for_review: Mapped[bool] = mapped_column(Boolean, default=False)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
