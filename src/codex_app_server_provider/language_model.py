from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from typing import Any

import structlog
from pydantic import BaseModel

from .models import (
    CallWarning,
    Finish,
    FinishReason,
    GenerateResult,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StreamError,
    StreamPart,
    StreamStart,
    TextContent,
    TextDelta,
    TextEnd,
    TextStart,
    Usage,
)
from .prompt import build_prompt
from .session import AppServerSession
from .settings import CodexAppServerSettings
from .turn import DEFAULT_ERROR_MESSAGE, TurnController, TurnSink

logger = structlog.get_logger(__name__)

EMPTY_PROMPT_WARNING = "Empty prompt; skipping codex app-server."

Prompt = str | Sequence[Mapping[str, Any]]

# Streamed generations keep running after their consumer stops reading.
_STREAM_TASKS: set[asyncio.Task[Any]] = set()


def _empty_prompt_finish() -> FinishReason:
    return FinishReason(unified="other", raw="empty-prompt")


def _failure_finish() -> FinishReason:
    return FinishReason(unified="error", raw="app-server-error")


class _CollectingSink(TurnSink):
    def __init__(self) -> None:
        self._chunks: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def on_text(self, chunk: str) -> None:
        self._chunks.append(chunk)

    def on_reasoning(self, chunk: str) -> None:
        self._chunks.append(chunk)


class _StreamingSink(TurnSink):
    """Frame content chunks as start/delta parts, opening each block once."""

    def __init__(self, emit: Callable[[BaseModel], None]) -> None:
        self._emit = emit
        self.text_started = False
        self.reasoning_started = False

    def on_text(self, chunk: str) -> None:
        if not self.text_started:
            self._emit(TextStart())
            self.text_started = True
        self._emit(TextDelta(delta=chunk))

    def on_reasoning(self, chunk: str) -> None:
        if not self.reasoning_started:
            self._emit(ReasoningStart())
            self.reasoning_started = True
        self._emit(ReasoningDelta(delta=chunk))

    def close_blocks(self) -> None:
        if self.reasoning_started:
            self._emit(ReasoningEnd())
        if self.text_started:
            self._emit(TextEnd())


class CodexLanguageModel:
    """Language model backed by a shared `codex app-server` session.

    Generations on the same session run one at a time, in call order.
    Neither `generate` nor `stream` raises for generation failures; failures
    are reported as warnings or `error` stream parts with an `error` finish
    reason.
    """

    def __init__(
        self,
        *,
        provider: str,
        model_id: str | None,
        session: AppServerSession,
        settings: CodexAppServerSettings,
    ) -> None:
        self._provider = provider
        self._model_id = model_id
        self._session = session
        self._settings = settings

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model_id(self) -> str | None:
        return self._model_id

    def __repr__(self) -> str:
        return f"CodexLanguageModel(provider={self._provider!r}, model_id={self._model_id!r})"

    async def generate(
        self,
        prompt: Prompt,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerateResult:
        """Run one generation and return its accumulated output.

        Args:
            prompt: Conversation messages (`role` / `content` mappings) or a
                plain user message string.
            cancel_event: Setting this event asks the app-server to interrupt
                the running turn; the result still reflects how the turn ended.
        """
        prompt_text = self._render(prompt)
        if not prompt_text:
            return GenerateResult(
                content=[TextContent(text="")],
                finish_reason=_empty_prompt_finish(),
                usage=Usage(),
                warnings=[CallWarning(message=EMPTY_PROMPT_WARNING)],
            )

        sink = _CollectingSink()
        controller = self._controller(sink)
        warnings: list[CallWarning] = []
        try:
            await self._session.run_serialized(
                lambda: controller.run(prompt_text, cancel_event=cancel_event)
            )
            finish_reason = controller.finish_reason
        except Exception as exc:
            logger.warning(
                "Generation failed",
                model=self._model_id,
                thread_id=controller.thread_id,
                turn_id=controller.turn_id,
                error=str(exc),
            )
            warnings.append(CallWarning(message=str(exc) or DEFAULT_ERROR_MESSAGE))
            finish_reason = _failure_finish()

        return GenerateResult(
            content=[TextContent(text=sink.text)],
            finish_reason=finish_reason,
            usage=controller.usage,
            warnings=warnings,
        )

    async def stream(
        self,
        prompt: Prompt,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamPart]:
        """Yield stream parts for one generation.

        The first part is always `stream-start` and the last is always one
        `finish`. Text and reasoning arrive as start/delta/end blocks; a failed
        generation yields a single `error` part before `finish`.
        """
        prompt_text = self._render(prompt)
        warnings = [] if prompt_text else [CallWarning(message=EMPTY_PROMPT_WARNING)]
        yield StreamStart(warnings=warnings)

        if not prompt_text:
            yield Finish(usage=Usage(), finish_reason=_empty_prompt_finish())
            return

        parts: asyncio.Queue[BaseModel | None] = asyncio.Queue()
        task = asyncio.create_task(self._pump_stream(prompt_text, cancel_event, parts.put_nowait))
        _STREAM_TASKS.add(task)
        task.add_done_callback(_STREAM_TASKS.discard)

        while True:
            part = await parts.get()
            if part is None:
                return
            yield part  # type: ignore[misc]

    async def _pump_stream(
        self,
        prompt_text: str,
        cancel_event: asyncio.Event | None,
        emit: Callable[[BaseModel | None], None],
    ) -> None:
        sink = _StreamingSink(emit)
        controller = self._controller(sink)
        try:
            try:
                await self._session.run_serialized(
                    lambda: controller.run(prompt_text, cancel_event=cancel_event)
                )
            except Exception as exc:
                logger.warning(
                    "Streamed generation failed",
                    model=self._model_id,
                    thread_id=controller.thread_id,
                    turn_id=controller.turn_id,
                    error=str(exc),
                )
                emit(StreamError(error=exc))
                emit(Finish(usage=controller.usage, finish_reason=_failure_finish()))
            else:
                sink.close_blocks()
                emit(Finish(usage=controller.usage, finish_reason=controller.finish_reason))
        finally:
            emit(None)

    def _controller(self, sink: TurnSink) -> TurnController:
        return TurnController(
            self._session,
            self._settings,
            model_id=self._model_id,
            sink=sink,
        )

    def _render(self, prompt: Prompt) -> str:
        if isinstance(prompt, str):
            prompt = [{"role": "user", "content": prompt}]
        return build_prompt(prompt, self._settings.empty_prompt_fallback)
