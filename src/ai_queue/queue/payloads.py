"""Per-kind payload schemas checked at enqueue time."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from ai_queue.errors import InvalidPayloadError
from ai_queue.queue.models import JobKind

MIN_DISAGREEMENT_STATEMENTS = 2


def parse_kind(value: str) -> JobKind:
    try:
        return JobKind(value.strip().lower())
    except ValueError as error:
        supported = ", ".join(kind.value for kind in JobKind)
        raise InvalidPayloadError(
            value,
            f"unknown job kind; use one of {supported}.",
        ) from error


def validate_payload(kind: JobKind | str, payload: object) -> dict[str, Any]:
    """Return a normalized copy of payload or raise InvalidPayloadError."""

    job_kind = kind if isinstance(kind, JobKind) else parse_kind(kind)
    if not isinstance(payload, dict):
        raise InvalidPayloadError(job_kind.value, "payload must be a JSON object.")
    return _VALIDATORS[job_kind](payload)


def _validate_summarize(payload: dict[str, Any]) -> dict[str, Any]:
    kind = JobKind.SUMMARIZE.value
    normalized: dict[str, Any] = {
        "document_id": _required_text(kind, payload, "document_id"),
        "text": _required_text(kind, payload, "text"),
    }
    title = payload.get("title")
    if title is not None:
        if not isinstance(title, str):
            raise InvalidPayloadError(kind, "'title' must be a string.")
        normalized["title"] = title
    max_words = payload.get("max_words")
    if max_words is not None:
        if isinstance(max_words, bool) or not isinstance(max_words, int) or max_words <= 0:
            raise InvalidPayloadError(kind, "'max_words' must be a positive integer.")
        normalized["max_words"] = max_words
    return normalized


def _validate_evaluate(payload: dict[str, Any]) -> dict[str, Any]:
    kind = JobKind.EVALUATE.value
    normalized: dict[str, Any] = {
        "document_id": _required_text(kind, payload, "document_id"),
        "text": _required_text(kind, payload, "text"),
    }
    criteria = payload.get("criteria")
    if criteria is not None:
        if not isinstance(criteria, list) or not all(
            isinstance(item, str) and item.strip() for item in criteria
        ):
            raise InvalidPayloadError(kind, "'criteria' must be a list of non-empty strings.")
        normalized["criteria"] = [item.strip() for item in criteria]
    return normalized


def _validate_disagreement(payload: dict[str, Any]) -> dict[str, Any]:
    kind = JobKind.DISAGREEMENT_ANALYSIS.value
    topic_id = _required_text(kind, payload, "topic_id")
    statements = payload.get("statements")
    if not isinstance(statements, list) or len(statements) < MIN_DISAGREEMENT_STATEMENTS:
        raise InvalidPayloadError(
            kind,
            f"'statements' must be a list of at least {MIN_DISAGREEMENT_STATEMENTS} items.",
        )
    normalized_statements: list[dict[str, Any]] = []
    for index, statement in enumerate(statements):
        if not isinstance(statement, dict):
            raise InvalidPayloadError(kind, f"statements[{index}] must be an object.")
        text = statement.get("text")
        if not isinstance(text, str) or not text.strip():
            raise InvalidPayloadError(kind, f"statements[{index}].text must be non-empty.")
        item: dict[str, Any] = {"text": text}
        author_id = statement.get("author_id")
        if author_id is not None:
            if not isinstance(author_id, str):
                raise InvalidPayloadError(kind, f"statements[{index}].author_id must be a string.")
            item["author_id"] = author_id
        normalized_statements.append(item)
    return {"topic_id": topic_id, "statements": normalized_statements}


def _required_text(kind: str, payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayloadError(kind, f"{key!r} must be a non-empty string.")
    return value


_VALIDATORS: dict[JobKind, Callable[[dict[str, Any]], dict[str, Any]]] = {
    JobKind.SUMMARIZE: _validate_summarize,
    JobKind.EVALUATE: _validate_evaluate,
    JobKind.DISAGREEMENT_ANALYSIS: _validate_disagreement,
}
