"""Topic practice routes: untimed, one question at a time.

  GET  /api/practice/topics/{topic_id}/questions      → questions for a topic
  POST /api/practice/questions/{question_id}/answer   → grade + record attempt
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from pastprep.api.deps import get_current_user, get_store
from pastprep.db.models import User
from pastprep.schemas.practice import (
    PracticeAnswerResult,
    PracticeAnswerSubmit,
    PracticeQuestionRead,
)
from pastprep.services.errors import QuestionNotFound, TopicNotFound
from pastprep.services.practice import grade_practice_answer, topic_questions
from pastprep.services.rate_limiter import require_grading_rate_limit
from pastprep.services.store import ExamStore

router = APIRouter()


@router.get("/topics/{topic_id}/questions", response_model=list[PracticeQuestionRead])
def list_topic_questions(
    topic_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: ExamStore = Depends(get_store),
):
    try:
        return topic_questions(store, topic_id)
    except TopicNotFound:
        raise HTTPException(status_code=404, detail="Topic not found")


@router.post("/questions/{question_id}/answer", response_model=PracticeAnswerResult)
def answer_question(
    question_id: uuid.UUID,
    body: PracticeAnswerSubmit,
    current_user: User = Depends(get_current_user),
    store: ExamStore = Depends(get_store),
    _rl=Depends(require_grading_rate_limit),
):
    """Grade a practice answer and record it outside any exam session."""
    if not body.answer.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Please provide an answer",
        )
    try:
        return grade_practice_answer(store, current_user.id, question_id, body.answer)
    except QuestionNotFound:
        raise HTTPException(status_code=404, detail="Question not found")
