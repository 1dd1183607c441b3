"""HTTP client for external essay grading.

Two back-ends, tried in this order of preference:
  1. A configured grading endpoint that speaks the ``GradeEssayRequest`` /
     ``GradingOutcome`` JSON contract.
  2. Without an endpoint, a Gemini ``generateContent`` call whose prompt asks
     for the same score shape as bare JSON.

``grade_essay`` never raises: every transport, status or parsing problem is
returned as a failed ``GradingOutcome`` so the caller can grade locally.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

import httpx
from pydantic import ValidationError

from pastprep.config import GradingConfig
from pastprep.schemas.grading import (
    EssayFeedback,
    EssayQuestionPayload,
    EssayScore,
    GradeEssayRequest,
    GradingOutcome,
    ReferenceAnswer,
)
from pastprep.schemas.records import QuestionType
from pastprep.services.grade_cache import cache_get, cache_set
from pastprep.services.grading import clamp_marks

logger = logging.getLogger(__name__)

SHORT_ESSAY_MAX_MARKS = 10

_SYSTEM_PROMPT = """\
You are an experienced exam marker for the Zambian school curriculum.
Grade the student's answer fairly and consistently using the marking guide provided.
Return ONLY valid JSON with this shape (no extra text, no markdown):
{
  "score": {
    "total_marks": number,
    "max_marks": number,
    "percentage": number,
    "breakdown": {
      "content":   {"marks": number, "max": number, "feedback": string},
      "structure": {"marks": number, "max": number, "feedback": string},
      "language":  {"marks": number, "max": number, "feedback": string},
      "relevance": {"marks": number, "max": number, "feedback": string}
    }
  },
  "feedback": {"summary": string, "strengths": [string], "improvements": [string]}
}
The "breakdown" and "feedback" members are optional."""

_MARKING_RULES = """\
Important marking rules:
- Award partial marks when the student shows partial understanding.
- Do NOT exceed the maximum marks.
- Be consistent and fair; avoid being too strict or too generous.
- Consider content accuracy first, then structure, language, and relevance.

Now respond ONLY with JSON matching the shape described above. Do not include any explanation outside the JSON object."""


# ── Payload shaping ───────────────────────────────────────────────────────────


def classify_essay(question_type: QuestionType, max_marks: float) -> str:
    """``short_essay`` for short answers or anything worth at most 10 marks."""
    if question_type is QuestionType.SHORT_ANSWER or max_marks <= SHORT_ESSAY_MAX_MARKS:
        return "short_essay"
    return "long_essay"


def build_request(
    question_text: str,
    student_answer: str,
    reference_answer: str | list[str],
    max_marks: float,
    question_type: QuestionType,
    subject: str | None = None,
    topic: str | None = None,
) -> GradeEssayRequest:
    essay_type = classify_essay(question_type, max_marks)
    if essay_type == "short_essay":
        points = reference_answer if isinstance(reference_answer, list) else [reference_answer]
        reference = ReferenceAnswer(type="key_points", content=list(points))
    else:
        text = "\n".join(reference_answer) if isinstance(reference_answer, list) else reference_answer
        reference = ReferenceAnswer(type="model_essay", content=text)
    return GradeEssayRequest(
        question_type=essay_type,
        question=EssayQuestionPayload(
            text=question_text, max_marks=max_marks, subject=subject, topic=topic
        ),
        student_answer=student_answer,
        reference_answer=reference,
    )


def build_prompt(request: GradeEssayRequest) -> str:
    content = request.reference_answer.content
    reference_text = "\n- ".join(content) if isinstance(content, list) else content
    lines = [f"Question type: {request.question_type}."]
    if request.question.subject:
        lines.append(f"Subject: {request.question.subject}.")
    if request.question.topic:
        lines.append(f"Topic: {request.question.topic}.")
    lines += [
        f"Maximum marks: {request.question.max_marks:g}.",
        "",
        "Question:",
        request.question.text,
        "",
        "Marking guide / reference answer (use this to decide marks):",
        reference_text,
        "",
        "Student's answer (grade this):",
        request.student_answer,
        "",
        _MARKING_RULES,
    ]
    return "\n".join(lines)


# ── Reply parsing ─────────────────────────────────────────────────────────────


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` in *text* that parses as an object.

    Braces inside JSON strings are ignored while balancing, so prose before
    or after the object (and nested objects inside it) are handled.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            ch = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start : pos + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find("{", start + 1)
    return None


def normalise_score(raw: dict[str, Any], max_marks: float) -> EssayScore:
    """Clamp the awarded marks and recompute the percentage ourselves.

    Raises ``ValueError`` when ``total_marks`` is missing, not numeric or not
    finite. A breakdown that is not an object is dropped.
    """
    total = raw.get("total_marks")
    if isinstance(total, bool) or not isinstance(total, (int, float)):
        raise ValueError("score.total_marks is missing or not a number")
    if not math.isfinite(total):
        raise ValueError(f"score.total_marks is not finite: {total}")
    breakdown = raw.get("breakdown")
    awarded = clamp_marks(total, max_marks)
    percentage = awarded / max_marks * 100 if max_marks > 0 else 0.0
    return EssayScore(
        total_marks=awarded,
        max_marks=max_marks,
        percentage=round(percentage, 2),
        breakdown=breakdown if isinstance(breakdown, dict) else None,
    )


def _parse_feedback(raw: Any) -> EssayFeedback | None:
    if not isinstance(raw, dict):
        return None
    try:
        return EssayFeedback.model_validate(raw)
    except ValidationError:
        logger.debug("Ignoring malformed grading feedback: %s", raw)
        return None


# ── Client ────────────────────────────────────────────────────────────────────


class EssayGradingClient:
    """Async wrapper around the grading endpoint and the LLM fallback."""

    def __init__(
        self,
        config: GradingConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self) -> "EssayGradingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── health ────────────────────────────────────────────────────────────

    async def healthy(self) -> bool:
        if not self._config.endpoint_configured:
            return False
        try:
            r = await self._http.get(f"{self._config.api_url}/health")
            return r.status_code == 200 and r.json().get("status") == "healthy"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Grading API health check failed: %s", e)
            return False

    # ── grading ───────────────────────────────────────────────────────────

    async def grade_essay(
        self,
        question_text: str,
        student_answer: str,
        reference_answer: str | list[str],
        max_marks: float,
        question_type: QuestionType,
        subject: str | None = None,
        topic: str | None = None,
    ) -> GradingOutcome:
        request = build_request(
            question_text,
            student_answer,
            reference_answer,
            max_marks,
            question_type,
            subject,
            topic,
        )
        cache_params = request.model_dump()
        cached = cache_get("essay", cache_params)
        if cached is not None:
            try:
                outcome = GradingOutcome.model_validate(cached)
            except ValidationError:
                logger.warning("Ignoring unreadable cached grade for %s", request.question.text[:60])
            else:
                outcome.source = "cache"
                return outcome

        if self._config.endpoint_configured:
            outcome = await self._grade_via_endpoint(request)
        else:
            outcome = await self._grade_via_llm(request)

        if outcome.success:
            cache_set("essay", cache_params, outcome.model_dump())
        else:
            logger.warning(
                "Essay grading failed (%s): %s",
                outcome.error.code,
                outcome.error.message,
            )
        return outcome

    async def _grade_via_endpoint(self, request: GradeEssayRequest) -> GradingOutcome:
        url = f"{self._config.api_url}{self._config.api_path}"
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"

        try:
            r = await self._http.post(url, json=request.model_dump(), headers=headers)
        except httpx.TimeoutException as e:
            return GradingOutcome.failure(
                "TIMEOUT",
                f"Grading API did not answer within {self._config.timeout_seconds:g}s",
                str(e) or None,
            )
        except httpx.HTTPError as e:
            return GradingOutcome.failure(
                "NETWORK_ERROR",
                str(e) or "Failed to connect to grading API",
                "Please check your network connection and API configuration",
            )

        try:
            body = r.json()
        except ValueError:
            body = None

        if r.is_error:
            error = body.get("error") if isinstance(body, dict) else None
            error = error if isinstance(error, dict) else {}
            return GradingOutcome.failure(
                error.get("code") or f"HTTP_{r.status_code}",
                error.get("message") or f"API returned status {r.status_code}",
                error.get("details"),
            )

        if not isinstance(body, dict):
            return GradingOutcome.failure(
                "MALFORMED_RESPONSE", "Grading API returned a non-JSON body"
            )
        if not body.get("success"):
            error = body.get("error") if isinstance(body.get("error"), dict) else {}
            return GradingOutcome.failure(
                error.get("code") or "GRADING_FAILED",
                error.get("message") or "Grading API reported failure",
                error.get("details"),
            )
        return self._success(body, request.question.max_marks, "endpoint")

    async def _grade_via_llm(self, request: GradeEssayRequest) -> GradingOutcome:
        if not self._config.gemini_api_key:
            return GradingOutcome.failure(
                "NO_GEMINI_API_KEY",
                "Gemini API key is not configured",
                "Set GEMINI_API_KEY or GRADING_API_URL",
            )

        url = f"{self._config.gemini_api_base}/models/{self._config.gemini_model}:generateContent"
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": _SYSTEM_PROMPT}, {"text": build_prompt(request)}],
                }
            ]
        }
        try:
            r = await self._http.post(
                url, params={"key": self._config.gemini_api_key}, json=payload
            )
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            return GradingOutcome.failure("TIMEOUT", "Gemini did not answer in time", str(e) or None)
        except (httpx.HTTPError, ValueError) as e:
            return GradingOutcome.failure("GEMINI_GRADING_ERROR", str(e) or "Gemini request failed")

        reply = _reply_text(data)
        parsed = extract_json_object(reply)
        if parsed is None:
            logger.debug("Gemini grading reply without JSON: %s", reply[:200])
            return GradingOutcome.failure(
                "NO_JSON_IN_REPLY", "Gemini response did not contain a JSON object"
            )
        return self._success(parsed, request.question.max_marks, "llm")

    @staticmethod
    def _success(body: dict[str, Any], max_marks: float, source: str) -> GradingOutcome:
        raw_score = body.get("score")
        if not isinstance(raw_score, dict):
            return GradingOutcome.failure(
                "MISSING_SCORE", "Grading response JSON is missing required score fields"
            )
        try:
            score = normalise_score(raw_score, max_marks)
        except (ValueError, ValidationError) as e:
            return GradingOutcome.failure("MISSING_SCORE", str(e))
        return GradingOutcome(
            success=True,
            score=score,
            feedback=_parse_feedback(body.get("feedback")),
            source=source,
        )


def _reply_text(data: Any) -> str:
    """Join the text parts of the first Gemini candidate."""
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    return "\n".join(p.get("text", "") for p in parts if isinstance(p, dict)).strip()
