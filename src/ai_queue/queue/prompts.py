"""Prompt builders per job kind."""

from __future__ import annotations

from typing import Any

from ai_queue.config import PromptSettings
from ai_queue.queue.models import JobKind

_TRUNCATION_MARKER = "\n[...truncated]"


def build_prompt(kind: JobKind, payload: dict[str, Any], limits: PromptSettings) -> str:
    """Render the provider prompt for a validated payload."""

    if kind is JobKind.SUMMARIZE:
        return _summarize_prompt(payload, limit=limits.summarize_text_limit)
    if kind is JobKind.EVALUATE:
        return _evaluate_prompt(payload, limit=limits.evaluate_text_limit)
    return _disagreement_prompt(payload, limit=limits.disagreement_text_limit)


def truncate_text(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + _TRUNCATION_MARKER


def _summarize_prompt(payload: dict[str, Any], *, limit: int) -> str:
    lines = ["Summarize the following document in plain prose."]
    max_words = payload.get("max_words")
    if max_words:
        lines.append(f"Use at most {max_words} words.")
    title = payload.get("title")
    if title:
        lines.append(f"Title: {title}")
    lines.extend(["", truncate_text(payload["text"], limit)])
    return "\n".join(lines)


def _evaluate_prompt(payload: dict[str, Any], *, limit: int) -> str:
    criteria = payload.get("criteria") or ["clarity", "accuracy", "depth"]
    lines = [
        "Evaluate the following document.",
        "Score each criterion from 1 to 10 and justify every score in one sentence.",
        "Criteria:",
        *(f"- {criterion}" for criterion in criteria),
        "",
        truncate_text(payload["text"], limit),
    ]
    return "\n".join(lines)


def _disagreement_prompt(payload: dict[str, Any], *, limit: int) -> str:
    rendered: list[str] = []
    for index, statement in enumerate(payload["statements"], start=1):
        author = statement.get("author_id") or "unknown"
        rendered.append(f"[{index}] ({author}) {statement['text']}")
    lines = [
        "Identify the points of disagreement between the statements below.",
        "For each point, name the statements on each side and the core issue.",
        "",
        truncate_text("\n".join(rendered), limit),
    ]
    return "\n".join(lines)
