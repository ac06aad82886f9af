"""
Typed failures raised by the attempt lifecycle.

Every error carries a stable ``code`` and belongs to exactly one kind
(not found, invalid state, permission denied, validation); the HTTP layer
maps the kind to a status code.
"""
from typing import Optional


class ExamError(Exception):
    code = "exam_error"
    default_message = "Exam operation failed"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class NotFoundError(ExamError):
    code = "not_found"


class InvalidStateError(ExamError):
    code = "invalid_state"


class PermissionDeniedError(ExamError):
    code = "permission_denied"


class AnswerValidationError(ExamError):
    code = "validation_error"
    default_message = "Answer does not match the question"


class ExamNotFound(NotFoundError):
    code = "exam_not_found"
    default_message = "Exam not found"


class QuestionNotFound(NotFoundError):
    code = "question_not_found"
    default_message = "Question not found"


class AttemptNotFound(NotFoundError):
    code = "attempt_not_found"
    default_message = "Attempt not found"


class QuestionNotInExam(NotFoundError):
    code = "question_not_in_exam"
    default_message = "Question not part of this exam"


class ExamNotPublished(InvalidStateError):
    code = "exam_not_published"
    default_message = "Exam is not published yet"


class ExamHasNoQuestions(InvalidStateError):
    code = "exam_has_no_questions"
    default_message = "Exam has no questions"


class AttemptLimitReached(InvalidStateError):
    code = "attempt_limit_reached"
    default_message = "Maximum attempts reached for this exam"


class AttemptNotInProgress(InvalidStateError):
    code = "attempt_not_in_progress"
    default_message = "Cannot submit answer for completed or abandoned attempt"


class AttemptAlreadySubmitted(InvalidStateError):
    code = "attempt_already_submitted"
    default_message = "Attempt already submitted"


class NotOwner(PermissionDeniedError):
    code = "not_owner"
    default_message = "You can only access your own attempts"
