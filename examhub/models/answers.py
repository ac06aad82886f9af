from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field, constr
from examhub.models.orm import QuestionType

class _AnswerBase(BaseModel):
    time_spent: Optional[int] = Field(default=None, ge=0)
    marked_for_review: bool = False

class SingleChoiceAnswer(_AnswerBase):
    answer_type: Literal["single_choice"] = "single_choice"
    selected_option_id: Optional[int] = None

class MultipleAnswer(_AnswerBase):
    answer_type: Literal["multiple_answer"] = "multiple_answer"
    selected_option_ids: List[int] = Field(default_factory=list)

class TextAnswer(_AnswerBase):
    answer_type: Literal["text"] = "text"
    text_answer: constr(min_length=1)

AnswerPayload = Annotated[Union[SingleChoiceAnswer, MultipleAnswer, TextAnswer], Field(discriminator="answer_type")]

PAYLOAD_FOR_TYPE = {
    QuestionType.MULTIPLE_CHOICE: SingleChoiceAnswer,
    QuestionType.TRUE_FALSE: SingleChoiceAnswer,
    QuestionType.MULTIPLE_ANSWER: MultipleAnswer,
    QuestionType.ESSAY: TextAnswer,
    QuestionType.FILL_BLANK: TextAnswer,
}

def answer_columns(payload) -> dict:
    """Row fields for a payload; exactly one answer column is populated."""
    return {
        "selected_option_id": payload.selected_option_id if isinstance(payload, SingleChoiceAnswer) else None,
        "selected_option_ids": sorted(set(payload.selected_option_ids)) if isinstance(payload, MultipleAnswer) else None,
        "text_answer": payload.text_answer if isinstance(payload, TextAnswer) else None,
        "time_spent": payload.time_spent or 0,
        "marked_for_review": payload.marked_for_review,
    }
