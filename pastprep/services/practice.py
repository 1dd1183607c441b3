"""Topic practice: grade one answer at a time and record it without a session."""

import logging
import uuid

from pastprep.schemas.practice import PracticeAnswerResult, PracticeQuestionRead
from pastprep.schemas.records import AttemptRecord, QuestionType
from pastprep.services.errors import QuestionNotFound, TopicNotFound
from pastprep.services.grading import grade_exact_match, grade_keyword_ratio
from pastprep.services.store import ExamStore

logger = logging.getLogger(__name__)


def topic_questions(store: ExamStore, topic_id: uuid.UUID) -> list[PracticeQuestionRead]:
    rows = store.get_topic_questions(topic_id)
    if rows is None:
        raise TopicNotFound(f"Topic {topic_id} not found")
    return [
        PracticeQuestionRead(**question.model_dump(), paper_name=paper_name, paper_year=paper_year)
        for question, paper_name, paper_year in rows
    ]


def grade_practice_answer(
    store: ExamStore,
    user_id: uuid.UUID,
    question_id: uuid.UUID,
    answer: str,
) -> PracticeAnswerResult:
    """Grade with the practice heuristics and persist a session-less attempt.

    MCQ answers use exact matching; everything else the keyword-ratio scheme,
    which awards proportional credit.
    """
    question = store.get_grading_question(question_id)
    if question is None:
        raise QuestionNotFound(f"Question {question_id} not found")

    if question.question_type is QuestionType.MCQ:
        grade = grade_exact_match(answer, question.correct_answer, question.marks)
    else:
        grade = grade_keyword_ratio(answer, question.correct_answer, question.marks)

    store.insert_attempt(
        AttemptRecord(
            user_id=user_id,
            question_id=question.id,
            user_answer=answer,
            is_correct=grade.is_correct,
            marks_awarded=grade.marks_awarded,
            exam_session_id=None,
        )
    )
    logger.debug(
        "Practice attempt user=%s question=%s → %.2f/%.2f",
        user_id, question.id, grade.marks_awarded, question.marks,
    )
    return PracticeAnswerResult(
        question_id=question.id,
        user_answer=answer,
        is_correct=grade.is_correct,
        marks_awarded=grade.marks_awarded,
        max_marks=question.marks,
        correct_answer=question.correct_answer,
        sample_answer=question.sample_answer,
    )
