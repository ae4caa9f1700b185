from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

#: Approval policy accepted by `thread/start` and `turn/start`.
#:
#: Values:
#: - ``"untrusted"``: require approvals for untrusted actions.
#: - ``"on-failure"``: request approval when an action fails.
#: - ``"on-request"``: request approval only when model asks for it.
#: - ``"never"``: never request approval.
ApprovalPolicy: TypeAlias = Literal["untrusted", "on-failure", "on-request", "never"]

#: Thread-level sandbox mode accepted by `thread/start`.
SandboxMode: TypeAlias = Literal["read-only", "workspace-write", "danger-full-access"]

#: Reasoning effort level for per-turn/model behavior.
#:
#: Values are ordered from lowest to highest: ``none``, ``minimal``, ``low``,
#: ``medium``, ``high``, ``xhigh``.
ReasoningEffort: TypeAlias = Literal["none", "minimal", "low", "medium", "high", "xhigh"]

#: Reasoning summary verbosity preference.
#:
#: Values:
#: - ``"auto"``: server/model-selected default
#: - ``"concise"``: short summary
#: - ``"detailed"``: expanded summary
#: - ``"none"``: disable reasoning summary text
ReasoningSummary: TypeAlias = Literal["auto", "concise", "detailed", "none"]

#: What to send when a conversation renders to no text.
#:
#: Values:
#: - ``"placeholder"``: a fixed ``[empty prompt]`` user block
#: - ``"json"``: the raw conversation serialized as JSON
#: - ``"error"`` / ``"skip"``: send nothing and return an empty result
EmptyPromptFallback: TypeAlias = Literal["placeholder", "json", "error", "skip"]

TEXT_BLOCK_ID = "text-1"
REASONING_BLOCK_ID = "reasoning-1"


class InputTokens(BaseModel):
    """Input token counts; any field may be unknown."""

    total: int | None = None
    no_cache: int | None = None
    cache_read: int | None = None
    cache_write: int | None = None


class OutputTokens(BaseModel):
    """Output token counts; any field may be unknown."""

    total: int | None = None
    text: int | None = None
    reasoning: int | None = None


class Usage(BaseModel):
    """Token usage snapshot for one turn.

    Each `thread/tokenUsage/updated` notification replaces the whole snapshot.

    Attributes:
        input_tokens: Prompt-side counts.
        output_tokens: Completion-side counts.
        raw: The `tokenUsage` payload the snapshot was built from.
    """

    input_tokens: InputTokens = Field(default_factory=InputTokens)
    output_tokens: OutputTokens = Field(default_factory=OutputTokens)
    raw: dict[str, Any] | None = None


def usage_from_token_usage(token_usage: Any) -> Usage:
    """Map a `tokenUsage` payload to a `Usage` snapshot using its `last` entry."""
    if not isinstance(token_usage, Mapping):
        return Usage()
    last = token_usage.get("last")
    if not isinstance(last, Mapping):
        return Usage()
    output_total = _optional_int(last.get("outputTokens"))
    return Usage(
        input_tokens=InputTokens(
            total=_optional_int(last.get("inputTokens")),
            cache_read=_optional_int(last.get("cachedInputTokens")),
        ),
        output_tokens=OutputTokens(
            total=output_total,
            text=output_total,
            reasoning=_optional_int(last.get("reasoningOutputTokens")),
        ),
        raw=dict(token_usage),
    )


class FinishReason(BaseModel):
    """Terminal classification of a generation.

    Attributes:
        unified: `stop`, `error`, or `other`.
        raw: Provider-specific sub-reason (for example `empty-prompt`).
    """

    unified: Literal["stop", "error", "other"] = "other"
    raw: str | None = None


class CallWarning(BaseModel):
    """Non-fatal problem reported alongside a result."""

    type: Literal["other"] = "other"
    message: str


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class GenerateResult(BaseModel):
    """Single-shot generation result.

    Attributes:
        content: One text block with the accumulated text.
        finish_reason: How the generation ended.
        usage: Last usage snapshot reported for the turn.
        warnings: Empty-prompt or failure warnings.
    """

    content: list[TextContent] = Field(default_factory=list)
    finish_reason: FinishReason = Field(default_factory=FinishReason)
    usage: Usage = Field(default_factory=Usage)
    warnings: list[CallWarning] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.content)


class StreamStart(BaseModel):
    type: Literal["stream-start"] = "stream-start"
    warnings: list[CallWarning] = Field(default_factory=list)


class TextStart(BaseModel):
    type: Literal["text-start"] = "text-start"
    id: str = TEXT_BLOCK_ID


class TextDelta(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    id: str = TEXT_BLOCK_ID
    delta: str


class TextEnd(BaseModel):
    type: Literal["text-end"] = "text-end"
    id: str = TEXT_BLOCK_ID


class ReasoningStart(BaseModel):
    type: Literal["reasoning-start"] = "reasoning-start"
    id: str = REASONING_BLOCK_ID


class ReasoningDelta(BaseModel):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    id: str = REASONING_BLOCK_ID
    delta: str


class ReasoningEnd(BaseModel):
    type: Literal["reasoning-end"] = "reasoning-end"
    id: str = REASONING_BLOCK_ID


class StreamError(BaseModel):
    """Failure of a streamed generation; always followed by `finish`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["error"] = "error"
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


class Finish(BaseModel):
    type: Literal["finish"] = "finish"
    usage: Usage = Field(default_factory=Usage)
    finish_reason: FinishReason = Field(default_factory=FinishReason)


StreamPart: TypeAlias = Annotated[
    StreamStart
    | TextStart
    | TextDelta
    | TextEnd
    | ReasoningStart
    | ReasoningDelta
    | ReasoningEnd
    | StreamError
    | Finish,
    Field(discriminator="type"),
]


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None
