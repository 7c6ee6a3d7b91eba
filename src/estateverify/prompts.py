"""Prompt templates sent to the external analysis provider, one per analysis task."""

from __future__ import annotations

import json
from typing import Any

RESPONSE_CONTRACT = """
Answer with a single JSON object and nothing else:
{
  "score": <number between 0 and 1, 1 meaning fully legitimate / consistent>,
  "issues": [{"code": "<snake_case>", "message": "<short sentence>", "severity": "low|medium|high|critical"}],
  "extracted": {<task specific fields, may be empty>}
}
""".strip()

TASK_PROMPTS: dict[str, str] = {
    "text_legitimacy": (
        "You review real-estate platform submissions for scams and policy violations. "
        "Assess whether the following text is a legitimate, good-faith {subject} description. "
        "Penalize scam patterns, off-platform contact attempts, misleading claims and spam."
    ),
    "consistency": (
        "Check whether the free-text description of a real-estate {subject} is consistent with "
        "its declared attributes. Report every contradiction (rooms, surface, type, location, price)."
    ),
    "image_relevance": (
        "The attached images belong to a real-estate {subject}. Assess whether they show a real "
        "property matching the declared attributes, and whether they are of acceptable quality."
    ),
    "media_authenticity": (
        "Assess whether the attached real-estate images are authentic photographs. Penalize "
        "AI-generated or digitally manipulated images, watermarks, stock photos and screenshots."
    ),
    "document_ocr": (
        "The attached files are official documents supporting a real-estate {subject} "
        "(licences, title deeds, identity papers). Read them, judge whether they look genuine and "
        "unaltered, and extract the fields {fields} into \"extracted\" (null when absent)."
    ),
}


def render_prompt(task: str, *, subject: str, text: str | None, context: dict[str, Any]) -> str:
    try:
        template = TASK_PROMPTS[task]
    except KeyError as exc:
        raise ValueError(f"unknown analysis task: {task}") from exc
    fields = ", ".join(context.get("extract_fields", [])) or "none"
    sections = [template.format(subject=subject, fields=fields)]
    attributes = {key: value for key, value in context.items() if key != "extract_fields" and value is not None}
    if attributes:
        sections.append("Declared attributes:\n" + json.dumps(attributes, ensure_ascii=False, default=str))
    if text:
        sections.append("Submitted text:\n\"\"\"\n" + text + "\n\"\"\"")
    sections.append(RESPONSE_CONTRACT)
    return "\n\n".join(sections)
