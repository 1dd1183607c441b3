"""Grading strategy selection and local answer matching.

MCQ questions use exact membership in the accepted-answer list.
Short-answer and essay questions go to the external grading service when one
is configured, otherwise (or when that service fails) to local keyword
matching.

Two local heuristics live here and are deliberately kept apart:
  * ``keyword_contains``: exam submissions. Correct when the answer contains
    any accepted answer as a substring.
  * ``grade_keyword_ratio``: topic practice. Proportional credit from the
    share of long words of the first accepted answer found in the answer.
They disagree on the same input; callers pick the one their flow uses.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import NamedTuple

from pastprep.schemas.records import QuestionType

logger = logging.getLogger(__name__)

# Share of marks granted by keyword matching after the external grader failed
FALLBACK_CREDIT = 0.5
# External grades at or above this percentage count as correct
ESSAY_PASS_PERCENTAGE = 50.0
# Topic practice: words must be longer than this to count as keywords
PRACTICE_MIN_KEYWORD_LENGTH = 3
PRACTICE_PASS_RATIO = 0.7


class GradingStrategy(str, Enum):
    EXACT_MATCH = "exact_match"
    EXTERNAL_SERVICE = "external_service"
    KEYWORD_FALLBACK = "keyword_fallback"


class Grade(NamedTuple):
    is_correct: bool
    marks_awarded: float


def select_strategy(question_type: QuestionType, external_configured: bool) -> GradingStrategy:
    """Map a question type and the service configuration to a strategy."""
    if question_type is QuestionType.MCQ:
        return GradingStrategy.EXACT_MATCH
    if external_configured:
        return GradingStrategy.EXTERNAL_SERVICE
    return GradingStrategy.KEYWORD_FALLBACK


def clamp_marks(value: float, max_marks: float) -> float:
    return max(0.0, min(float(max_marks), float(value)))


# ── Exact match (MCQ) ────────────────────────────────────────────────────────


def grade_exact_match(answer: str, accepted: list[str], marks: float) -> Grade:
    """Selected option must equal one of the accepted strings."""
    if answer in accepted:
        return Grade(True, float(marks))
    return Grade(False, 0.0)


# ── Keyword containment (exam flow) ──────────────────────────────────────────


def keyword_contains(answer: str, accepted: list[str]) -> bool:
    """Case-insensitive: does the answer contain any accepted answer?"""
    haystack = answer.lower().strip()
    if not haystack:
        return False
    for candidate in accepted:
        needle = candidate.lower().strip()
        # an empty key would match every answer
        if needle and needle in haystack:
            return True
    return False


def grade_keyword_fallback(
    answer: str,
    accepted: list[str],
    marks: float,
    *,
    credit: float = 1.0,
) -> Grade:
    """Local grading for free-text answers in an exam submission.

    ``credit`` scales the marks for a match: 1.0 when no external service is
    configured, ``FALLBACK_CREDIT`` when the service was tried and failed.
    """
    if keyword_contains(answer, accepted):
        return Grade(True, clamp_marks(marks * credit, marks))
    return Grade(False, 0.0)


# ── Keyword ratio (topic practice flow) ──────────────────────────────────────


def grade_keyword_ratio(answer: str, accepted: list[str], marks: float) -> Grade:
    """Partial credit from the first accepted answer's long words.

    Words of more than three characters are keywords; the fraction present
    (as substrings) in the lowercased answer scales the marks. A fraction of
    at least 0.7 is reported as correct.
    """
    reference = accepted[0].lower() if accepted else ""
    keywords = [w for w in reference.split(" ") if len(w) > PRACTICE_MIN_KEYWORD_LENGTH]
    if not keywords:
        return Grade(False, 0.0)

    lowered = answer.lower()
    matched = sum(1 for keyword in keywords if keyword in lowered)
    ratio = matched / len(keywords)
    logger.debug("Practice keyword match %d/%d", matched, len(keywords))
    return Grade(ratio >= PRACTICE_PASS_RATIO, clamp_marks(marks * ratio, marks))
