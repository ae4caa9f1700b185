"""Render a structured conversation into app-server prompt text."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from .models import EmptyPromptFallback

EMPTY_PROMPT_PLACEHOLDER = "User:\n[empty prompt]"
UNSERIALIZABLE_PROMPT_PLACEHOLDER = "User:\n[empty prompt: failed to serialize prompt]"

_ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
}


def build_prompt(
    messages: Sequence[Mapping[str, Any]],
    fallback: EmptyPromptFallback = "placeholder",
) -> str:
    """Render `messages` as labelled text blocks separated by blank lines.

    When nothing renders, `fallback` decides the result: `placeholder` sends a
    fixed empty-prompt marker, `json` sends the raw conversation, and `error` /
    `skip` return an empty string so the caller can skip the app-server.
    """
    blocks: list[str] = []
    for message in messages:
        role = message.get("role")
        text = extract_text(message.get("content"))
        if not text:
            continue
        if role == "system":
            blocks.append(f"System:\n{text}")
            continue
        label = _ROLE_LABELS.get(role, "Tool") if isinstance(role, str) else "Tool"
        blocks.append(f"{label}:\n{text}")

    prompt_text = "\n\n".join(blocks).strip()
    if prompt_text:
        return prompt_text

    if fallback == "json":
        try:
            return json.dumps(list(messages), indent=2)
        except (TypeError, ValueError):
            return UNSERIALIZABLE_PROMPT_PLACEHOLDER
    if fallback in ("error", "skip"):
        return ""
    return EMPTY_PROMPT_PLACEHOLDER


def extract_text(content: Any) -> str:
    """Flatten message content (string, text object, or part list) to text."""
    if not content:
        return ""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, Mapping):
        text = content.get("text")
        return str(text).strip() if text else ""
    if not isinstance(content, Sequence):
        return ""

    parts: list[str] = []
    for part in content:
        if not isinstance(part, Mapping):
            continue
        rendered = _render_part(part)
        if rendered:
            parts.append(rendered)
    return "\n".join(parts).strip()


def _render_part(part: Mapping[str, Any]) -> str | None:
    part_type = part.get("type")
    if part_type in ("text", "reasoning"):
        text = part.get("text")
        return str(text) if text else None
    if part_type == "tool-result":
        return _dump(part.get("output"))
    if part_type == "tool-call":
        tool_name = part.get("toolName")
        try:
            return f"[tool:{tool_name}] {json.dumps(part.get('input'))}"
        except (TypeError, ValueError):
            return f"[tool:{tool_name}]"
    if part_type == "image":
        return "[image]"
    if part_type == "file":
        filename = part.get("filename")
        return f"[file {filename}]" if filename else "[file]"
    text = part.get("text")
    if isinstance(text, str):
        return text
    return None


def _dump(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
