from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from examhub.core.auth import exam_taker as taker, TokenData
from examhub.core.config import DEFAULT_PAGE_SIZE
from examhub.core.database import get_db
from examhub.core.errors import NotOwner
from examhub.models.answers import AnswerPayload
from examhub.models.orm import AttemptStatus
from examhub.services import attempts, results, store

router = APIRouter()

class AttemptStart(BaseModel):
  exam_id: int
  metadata: Optional[Dict[str, Any]] = None

class AttemptOut(BaseModel):
  id: int
  exam_id: int
  user_id: str
  status: str
  started_at: Optional[str] = None
  completed_at: Optional[str] = None
  submitted_at: Optional[str] = None
  duration: Optional[int] = None
  score: Optional[float] = None
  total_points: Optional[int] = None
  max_points: Optional[int] = None
  correct_answers: Optional[int] = None
  incorrect_answers: Optional[int] = None
  unanswered_questions: Optional[int] = None
  is_passed: Optional[bool] = None
  time_remaining: Optional[int] = None
  current_question_index: Optional[int] = None

class Pagination(BaseModel):
  page: int
  limit: int
  total: int
  total_pages: int

class AttemptPage(BaseModel):
  data: List[AttemptOut]
  pagination: Pagination

class AttemptStarted(BaseModel):
  attempt_id: int
  attempt: AttemptOut
  ordered_questions: List[dict]
  total_questions: int

class AttemptQuestions(BaseModel):
  attempt_id: int
  status: str
  questions: List[dict]
  total_questions: int

class AttemptScore(BaseModel):
  total_questions: int
  correct_answers: int
  incorrect_answers: int
  unanswered_questions: int
  needs_grading: int
  total_points: int
  max_points: int
  percentage: float

class AnswerSubmit(BaseModel):
  question_id: int
  answer: AnswerPayload

class AnswerGraded(BaseModel):
  is_correct: Optional[bool]
  points_awarded: int
  needs_manual_grading: bool

class ExamSubmitted(BaseModel):
  attempt_id: int
  final_status: str
  score: float
  is_passed: bool
  duration: int
  summary: dict

class AttemptAbandoned(BaseModel):
  attempt_id: int
  status: str
  changed: bool

class AttemptResults(BaseModel):
  attempt: AttemptOut
  exam: dict
  show_answers: bool
  questions: List[dict]

def _own(db: Session, attempt_id: int, user: TokenData):
  if store.get_attempt(db, attempt_id).user_id != user.sub: raise NotOwner(attempt_id=attempt_id)

@router.post("", response_model=AttemptStarted, status_code=201)
def start_attempt(payload: AttemptStart, request: Request, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  meta = {"ip_address": request.client.host if request.client else None, "user_agent": request.headers.get("user-agent")}
  meta.update(payload.metadata or {})
  return attempts.start_attempt(db, payload.exam_id, user.sub, metadata=meta)

@router.get("", response_model=AttemptPage)
def list_attempts(exam_id: Optional[int] = None, status: Optional[AttemptStatus] = None,
                  page: int = Query(1, ge=1), page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
                  user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  return attempts.list_attempts(db, user.sub, exam_id=exam_id, status=status, page=page, page_size=page_size)

@router.get("/{attempt_id}", response_model=AttemptOut)
def get_attempt(attempt_id: int, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  return attempts.get_attempt(db, attempt_id, user.sub)

@router.get("/{attempt_id}/questions", response_model=AttemptQuestions)
def attempt_questions(attempt_id: int, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  return attempts.get_attempt_questions(db, attempt_id, user.sub)

@router.get("/{attempt_id}/score", response_model=AttemptScore)
def attempt_score(attempt_id: int, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  return attempts.get_score(db, attempt_id, user.sub)

@router.post("/{attempt_id}/answers", response_model=AnswerGraded)
def submit_answer(attempt_id: int, payload: AnswerSubmit, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  _own(db, attempt_id, user)
  return attempts.submit_answer(db, attempt_id, payload.question_id, payload.answer)

@router.post("/{attempt_id}/submit", response_model=ExamSubmitted)
def submit_exam(attempt_id: int, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  _own(db, attempt_id, user)
  return attempts.submit_exam(db, attempt_id)

@router.post("/{attempt_id}/abandon", response_model=AttemptAbandoned)
def abandon_attempt(attempt_id: int, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  _own(db, attempt_id, user)
  return attempts.abandon_attempt(db, attempt_id)

@router.get("/{attempt_id}/results", response_model=AttemptResults)
def attempt_results(attempt_id: int, user: TokenData = Depends(taker), db: Session = Depends(get_db)):
  return results.get_results(db, attempt_id, user.sub)
