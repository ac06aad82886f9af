import pytest
import redis
from examhub.core import cache
from examhub.core.errors import (
    ExamNotFound, ExamNotPublished, ExamHasNoQuestions, AttemptLimitReached, AttemptNotFound, AttemptNotInProgress,
    AttemptAlreadySubmitted, QuestionNotInExam, AnswerValidationError, NotOwner,
)
from examhub.models.answers import SingleChoiceAnswer, MultipleAnswer, TextAnswer
from examhub.models.orm import ExamAttempt, Question, UserAnswer, AttemptStatus
from examhub.services import attempts


def two_single_choice_exam(build, **exam_fields):
    q1, o1 = build.single(correct="A")
    q2, o2 = build.single(correct="B")
    exam = build.exam([(q1, 1), (q2, 1)], **exam_fields)
    return exam, (q1, o1), (q2, o2)


def test_scenario_a_one_right_one_wrong(db, build):
    exam, (q1, o1), (q2, o2) = two_single_choice_exam(build)
    started = attempts.start_attempt(db, exam.id, "alice")
    aid = started["attempt_id"]
    assert started["total_questions"] == 2
    attempts.submit_answer(db, aid, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))
    attempts.submit_answer(db, aid, q2.id, SingleChoiceAnswer(selected_option_id=o2["C"]))
    out = attempts.submit_exam(db, aid)
    assert out["final_status"] == "completed"
    assert out["score"] == 50.0
    assert out["summary"]["correct_answers"] == 1
    assert out["summary"]["incorrect_answers"] == 1
    assert out["summary"]["unanswered_questions"] == 0
    row = db.get(ExamAttempt, aid)
    assert row.status == AttemptStatus.COMPLETED and row.score == 50.0 and row.is_passed is True
    assert row.duration is not None and row.submitted_at is not None


def test_scenario_b_unanswered_essay_goes_to_grading(db, build):
    q, _ = build.essay()
    exam = build.exam([(q, 5)], passing_score=60)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    out = attempts.submit_exam(db, aid)
    assert out["final_status"] == "grading"
    assert out["summary"]["total_points"] == 0 and out["score"] == 0
    assert out["summary"]["max_points"] == 5
    assert out["is_passed"] is False


def test_answered_essay_still_needs_grading(db, build):
    q, _ = build.essay()
    exam = build.exam([(q, 5)], passing_score=0)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    graded = attempts.submit_answer(db, aid, q.id, TextAnswer(text_answer="An essay"))
    assert graded == {"is_correct": None, "points_awarded": 0, "needs_manual_grading": True}
    out = attempts.submit_exam(db, aid)
    assert out["final_status"] == "grading" and out["summary"]["needs_grading"] == 1
    # pass/fail reflects the score at submission time
    assert out["is_passed"] is True


def test_scenario_c_attempt_limit(db, build):
    exam, (q1, o1), (q2, o2) = two_single_choice_exam(build, attempts_allowed=1)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    attempts.submit_answer(db, aid, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))
    attempts.submit_answer(db, aid, q2.id, SingleChoiceAnswer(selected_option_id=o2["B"]))
    assert attempts.submit_exam(db, aid)["final_status"] == "completed"
    with pytest.raises(AttemptLimitReached):
        attempts.start_attempt(db, exam.id, "alice")
    # other users are unaffected
    assert attempts.start_attempt(db, exam.id, "bob")["attempt_id"]


def test_abandoned_and_grading_attempts_do_not_count_toward_limit(db, build):
    exam, _, _ = two_single_choice_exam(build, attempts_allowed=1)
    attempts.abandon_attempt(db, attempts.start_attempt(db, exam.id, "alice")["attempt_id"])
    attempts.submit_exam(db, attempts.start_attempt(db, exam.id, "alice")["attempt_id"])
    assert attempts.start_attempt(db, exam.id, "alice")["attempt_id"]


def test_scenario_d_superset_selection(db, build):
    q, o = build.multi(correct=("A", "C"))
    exam = build.exam([(q, 4)])
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    graded = attempts.submit_answer(db, aid, q.id, MultipleAnswer(selected_option_ids=[o["A"], o["B"], o["C"]]))
    assert graded["is_correct"] is False and graded["points_awarded"] == 0


def test_scenario_e_resubmission_overwrites(db, build):
    q, o = build.single(correct="B")
    exam = build.exam([(q, 2)])
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    attempts.submit_answer(db, aid, q.id, SingleChoiceAnswer(selected_option_id=o["A"]))
    attempts.submit_answer(db, aid, q.id, SingleChoiceAnswer(selected_option_id=o["B"]))
    rows = db.query(UserAnswer).filter_by(attempt_id=aid).all()
    assert len(rows) == 1
    assert rows[0].selected_option_id == o["B"] and rows[0].is_correct is True and rows[0].points_awarded == 2
    out = attempts.submit_exam(db, aid)
    assert out["score"] == 100.0 and out["summary"]["correct_answers"] == 1


def test_start_preconditions_in_order(db, build):
    with pytest.raises(ExamNotFound):
        attempts.start_attempt(db, 999, "alice")
    q, _ = build.single()
    draft = build.exam([(q, 1)], is_published=False)
    with pytest.raises(ExamNotPublished):
        attempts.start_attempt(db, draft.id, "alice")
    empty = build.exam([])
    with pytest.raises(ExamHasNoQuestions):
        attempts.start_attempt(db, empty.id, "alice")


def test_soft_deleted_exam_is_not_found(db, build):
    from datetime import datetime, timezone
    q, _ = build.single()
    exam = build.exam([(q, 1)], deleted_at=datetime.now(timezone.utc))
    with pytest.raises(ExamNotFound):
        attempts.start_attempt(db, exam.id, "alice")


def test_start_sets_points_timer_and_metadata(db, build, fake_redis):
    q1, _ = build.single()
    q2, _ = build.multi()
    exam = build.exam([(q1, 2), (q2, 3)], duration=30)
    out = attempts.start_attempt(db, exam.id, "alice", metadata={"user_agent": "pytest"})
    row = db.get(ExamAttempt, out["attempt_id"])
    assert row.status == AttemptStatus.IN_PROGRESS
    assert row.max_points == 5 and row.time_remaining == 1800 and row.current_question_index == 0
    assert row.meta == {"user_agent": "pytest"}
    assert [q["question_id"] for q in out["ordered_questions"]] == [q1.id, q2.id]
    assert cache.sequence_key(out["attempt_id"]) in fake_redis.data


def test_presented_questions_hide_correctness(db, build):
    q, _ = build.single()
    exam = build.exam([(q, 1)])
    out = attempts.start_attempt(db, exam.id, "alice")
    for option in out["ordered_questions"][0]["options"]:
        assert "is_correct" not in option


def test_randomized_sequence_is_cached_for_refetch(db, build):
    qs = [build.single()[0] for _ in range(8)]
    exam = build.exam([(q, 1) for q in qs], randomize_questions=True)
    out = attempts.start_attempt(db, exam.id, "alice")
    order = [q["question_id"] for q in out["ordered_questions"]]
    assert sorted(order) == sorted(q.id for q in qs)
    again = attempts.get_attempt_questions(db, out["attempt_id"], "alice")
    assert [q["question_id"] for q in again["questions"]] == order


def test_refetch_without_cache_still_returns_every_question(db, build, fake_redis):
    qs = [build.single()[0] for _ in range(4)]
    exam = build.exam([(q, 1) for q in qs], randomize_questions=True)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    fake_redis.data.clear()
    again = attempts.get_attempt_questions(db, aid, "alice")
    assert sorted(q["question_id"] for q in again["questions"]) == sorted(q.id for q in qs)
    with pytest.raises(NotOwner):
        attempts.get_attempt_questions(db, aid, "mallory")


def test_submit_answer_preconditions(db, build):
    exam, (q1, o1), _ = two_single_choice_exam(build)
    other_q, other_o = build.single()
    with pytest.raises(AttemptNotFound):
        attempts.submit_answer(db, 12345, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    with pytest.raises(QuestionNotInExam):
        attempts.submit_answer(db, aid, other_q.id, SingleChoiceAnswer(selected_option_id=other_o["A"]))
    attempts.abandon_attempt(db, aid)
    with pytest.raises(AttemptNotInProgress):
        attempts.submit_answer(db, aid, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))


def test_payload_must_match_question_type(db, build):
    q, o = build.single()
    essay, _ = build.essay()
    exam = build.exam([(q, 1), (essay, 1)])
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    with pytest.raises(AnswerValidationError):
        attempts.submit_answer(db, aid, q.id, MultipleAnswer(selected_option_ids=[o["A"]]))
    with pytest.raises(AnswerValidationError):
        attempts.submit_answer(db, aid, essay.id, SingleChoiceAnswer(selected_option_id=o["A"]))
    with pytest.raises(AnswerValidationError):
        attempts.submit_answer(db, aid, q.id, {"answer_type": "bogus"})
    assert db.query(UserAnswer).filter_by(attempt_id=aid).count() == 0


def test_options_of_another_question_are_rejected(db, build):
    q, _ = build.single()
    _, foreign = build.single()
    exam = build.exam([(q, 1)])
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    with pytest.raises(AnswerValidationError):
        attempts.submit_answer(db, aid, q.id, SingleChoiceAnswer(selected_option_id=foreign["A"]))


def test_dict_payloads_are_parsed(db, build):
    q, o = build.multi(correct=("A", "C"))
    exam = build.exam([(q, 2)])
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    graded = attempts.submit_answer(db, aid, q.id, {"answer_type": "multiple_answer", "selected_option_ids": [o["C"], o["A"]], "time_spent": 12})
    assert graded["is_correct"] is True and graded["points_awarded"] == 2
    row = db.query(UserAnswer).filter_by(attempt_id=aid).one()
    assert row.time_spent == 12 and row.answered_at is not None


def test_counters_bump_only_for_auto_graded_answers(db, build):
    q, o = build.single(correct="A")
    essay, _ = build.essay()
    exam = build.exam([(q, 1), (essay, 1)])
    for user, pick in (("alice", "A"), ("bob", "B")):
        aid = attempts.start_attempt(db, exam.id, user)["attempt_id"]
        attempts.submit_answer(db, aid, q.id, SingleChoiceAnswer(selected_option_id=o[pick]))
        attempts.submit_answer(db, aid, essay.id, TextAnswer(text_answer="words"))
    db.expire_all()
    counted = db.get(Question, q.id)
    assert (counted.usage_count, counted.total_answer_count, counted.correct_answer_count) == (2, 2, 1)
    untouched = db.get(Question, essay.id)
    assert untouched.usage_count == 0


def test_submit_twice_fails(db, build):
    exam, _, _ = two_single_choice_exam(build)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    attempts.submit_exam(db, aid)
    with pytest.raises(AttemptAlreadySubmitted):
        attempts.submit_exam(db, aid)
    with pytest.raises(AttemptNotFound):
        attempts.submit_exam(db, 4242)


def test_abandon_is_idempotent(db, build, fake_redis):
    exam, _, _ = two_single_choice_exam(build)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    first = attempts.abandon_attempt(db, aid)
    assert first == {"attempt_id": aid, "status": "abandoned", "changed": True}
    assert cache.sequence_key(aid) not in fake_redis.data
    assert db.get(ExamAttempt, aid).completed_at is not None
    assert attempts.abandon_attempt(db, aid)["changed"] is False
    with pytest.raises(AttemptAlreadySubmitted):
        attempts.submit_exam(db, aid)


def test_abandon_after_submit_returns_current_state(db, build):
    exam, _, _ = two_single_choice_exam(build)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    attempts.submit_exam(db, aid)
    out = attempts.abandon_attempt(db, aid)
    assert out["status"] == "grading" and out["changed"] is False


def test_score_of_in_progress_attempt(db, build):
    exam, (q1, o1), _ = two_single_choice_exam(build)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    attempts.submit_answer(db, aid, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))
    score = attempts.get_score(db, aid, "alice")
    assert score["percentage"] == 50.0 and score["unanswered_questions"] == 1


def test_list_attempts_paginates_newest_first(db, build):
    exam, _, _ = two_single_choice_exam(build)
    ids = [attempts.start_attempt(db, exam.id, "alice")["attempt_id"] for _ in range(3)]
    attempts.start_attempt(db, exam.id, "bob")
    page = attempts.list_attempts(db, "alice", page=1, page_size=2)
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
    assert [a["id"] for a in page["data"]] == [ids[2], ids[1]]
    attempts.abandon_attempt(db, ids[0])
    abandoned = attempts.list_attempts(db, "alice", status=AttemptStatus.ABANDONED)
    assert [a["id"] for a in abandoned["data"]] == [ids[0]]


class DownRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")
        return fail


def test_lifecycle_survives_redis_outage(db, build, monkeypatch, caplog):
    monkeypatch.setattr(cache, "redis_client", DownRedis())
    exam, (q1, o1), (q2, o2) = two_single_choice_exam(build, randomize_questions=True)
    started = attempts.start_attempt(db, exam.id, "alice")
    aid = started["attempt_id"]
    assert db.get(ExamAttempt, aid).status == AttemptStatus.IN_PROGRESS
    again = attempts.get_attempt_questions(db, aid, "alice")
    assert sorted(q["question_id"] for q in again["questions"]) == sorted([q1.id, q2.id])
    attempts.submit_answer(db, aid, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))
    attempts.submit_answer(db, aid, q2.id, SingleChoiceAnswer(selected_option_id=o2["B"]))
    assert attempts.submit_exam(db, aid)["final_status"] == "completed"
    other = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    assert attempts.abandon_attempt(db, other)["changed"] is True
    assert "could not cache sequence" in caplog.text


def test_attempt_checks_come_before_payload_shape(db, build):
    exam, (q1, _), _ = two_single_choice_exam(build)
    other_q, _ = build.single()
    bad = {"answer_type": "nonsense"}
    with pytest.raises(AttemptNotFound):
        attempts.submit_answer(db, 12345, q1.id, bad)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    with pytest.raises(QuestionNotInExam):
        attempts.submit_answer(db, aid, other_q.id, bad)
    with pytest.raises(AnswerValidationError):
        attempts.submit_answer(db, aid, q1.id, bad)
    attempts.abandon_attempt(db, aid)
    with pytest.raises(AttemptNotInProgress):
        attempts.submit_answer(db, aid, q1.id, bad)


def test_started_attempt_outlives_exam_soft_delete(db, build):
    from datetime import datetime, timezone
    from examhub.services.results import get_results
    exam, (q1, o1), (q2, o2) = two_single_choice_exam(build)
    aid = attempts.start_attempt(db, exam.id, "alice")["attempt_id"]
    exam.deleted_at = datetime.now(timezone.utc)
    db.commit()
    assert attempts.get_attempt_questions(db, aid, "alice")["total_questions"] == 2
    attempts.submit_answer(db, aid, q1.id, SingleChoiceAnswer(selected_option_id=o1["A"]))
    assert attempts.submit_exam(db, aid)["final_status"] == "grading"
    assert get_results(db, aid, "alice")["attempt"]["status"] == "grading"
    with pytest.raises(ExamNotFound):
        attempts.start_attempt(db, exam.id, "alice")
