import os
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_SECRET", "test-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from examhub.core import cache
from examhub.core.auth import create_token
from examhub.core.database import get_db, enable_sqlite_savepoints
from examhub.models.orm import Base, Exam, Question, QuestionOption, ExamQuestion, QuestionType


class DictRedis:
    """Just enough of the redis client for the sequence cache."""

    def __init__(self):
        self.data = {}

    def set(self, key, value, ex=None):
        self.data[key] = value
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    # seeded rows stay readable after commit without reopening a transaction on the shared connection
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = DictRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    return fake


@pytest.fixture
def client(engine):
    from examhub.main import app
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def override():
        s = factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(user_id="alice", roles=("user",)):
        return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}
    return headers


class Builder:
    """Seeds exams and questions straight into the tables the attempt core reads."""

    def __init__(self, db):
        self.db = db

    def exam(self, questions=(), **fields):
        fields.setdefault("title", "Demo exam")
        fields.setdefault("created_by", "author")
        fields.setdefault("is_published", True)
        fields.setdefault("passing_score", 50)
        exam = Exam(**fields)
        self.db.add(exam); self.db.flush()
        for i, (question, points) in enumerate(questions):
            self.db.add(ExamQuestion(exam_id=exam.id, question_id=question.id, order=i + 1, points=points, is_required=True))
        self.db.commit()
        return exam

    def question(self, question_type=QuestionType.MULTIPLE_CHOICE, options=(), text="Q?"):
        q = Question(question_text=text, question_type=question_type, created_by="author", explanation="Because")
        self.db.add(q); self.db.flush()
        opts = []
        for i, (label, correct) in enumerate(options):
            o = QuestionOption(question_id=q.id, option_text=label, is_correct=correct, order=i)
            self.db.add(o); opts.append(o)
        self.db.commit()
        return q, {o.option_text: o.id for o in opts}

    def single(self, correct="A", labels=("A", "B", "C")):
        return self.question(QuestionType.MULTIPLE_CHOICE, [(l, l == correct) for l in labels])

    def multi(self, correct=("A", "C"), labels=("A", "B", "C", "D")):
        return self.question(QuestionType.MULTIPLE_ANSWER, [(l, l in correct) for l in labels])

    def essay(self):
        return self.question(QuestionType.ESSAY, [])


@pytest.fixture
def build(db):
    return Builder(db)

