"""Thread/turn protocol for one generation on an app-server session."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

import structlog

from .errors import (
    CodexError,
    CodexParseError,
    CodexProtocolError,
    CodexTransportError,
    CodexTurnError,
)
from .models import FinishReason, Usage, usage_from_token_usage
from .protocol import (
    THREAD_START_METHOD,
    TURN_COMPLETED_METHOD,
    TURN_INTERRUPT_METHOD,
    TURN_START_METHOD,
    EventKind,
    ServerEvent,
    extract_thread_id,
    extract_turn_id,
)
from .session import AppServerSession
from .settings import CodexAppServerSettings

logger = structlog.get_logger(__name__)

TurnState: TypeAlias = Literal[
    "idle",
    "thread-starting",
    "thread-ready",
    "turn-starting",
    "streaming",
    "completed",
    "failed",
]

PARSE_ERROR_MESSAGE = "Failed to parse codex app-server JSONL output"
DEFAULT_ERROR_MESSAGE = "codex app-server error"

# Interrupt requests outlive the controller that fired them.
_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()

# (settings attribute, thread/start param)
_THREAD_START_FIELDS: tuple[tuple[str, str], ...] = (
    ("model_provider", "modelProvider"),
    ("approval_policy", "approvalPolicy"),
    ("sandbox_mode", "sandbox"),
    ("config", "config"),
    ("base_instructions", "baseInstructions"),
    ("developer_instructions", "developerInstructions"),
    ("experimental_raw_events", "experimentalRawEvents"),
)

# (settings attribute, turn/start param)
_TURN_START_FIELDS: tuple[tuple[str, str], ...] = (
    ("cwd", "cwd"),
    ("approval_policy", "approvalPolicy"),
    ("reasoning_effort", "effort"),
    ("reasoning_summary", "summary"),
)


class TurnSink:
    """Receives content chunks in the order the turn produces them."""

    def on_text(self, chunk: str) -> None:
        """Agent message text (a delta or a completed-item fallback)."""

    def on_reasoning(self, chunk: str) -> None:
        """Reasoning text, only when reasoning inclusion is enabled."""


@dataclass(slots=True)
class TurnOutcome:
    """Successful end of a turn.

    Attributes:
        thread_id: Thread created for the generation.
        turn_id: Turn that completed.
        finish_reason: Always `stop` for a completed turn.
        turn: The `turn` object carried by `turn/completed`, if any.
    """

    thread_id: str
    turn_id: str | None
    finish_reason: FinishReason
    turn: dict[str, Any] | None = None


class TurnController:
    """Drive one generation: thread start, turn start, event demultiplexing.

    Events for the thread that arrive before the turn id is known are buffered
    and replayed, in order and exactly once, as soon as the id is learned from
    either the first event carrying it or the `turn/start` response.
    A controller is single use.
    """

    def __init__(
        self,
        session: AppServerSession,
        settings: CodexAppServerSettings,
        *,
        model_id: str | None,
        sink: TurnSink | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._model_id = model_id
        self._sink = sink if sink is not None else TurnSink()

        self._state: TurnState = "idle"
        self._thread_id: str | None = None
        self._turn_id: str | None = None
        self._buffer: list[ServerEvent] = []
        self._saw_text_delta = False
        self._saw_reasoning_delta = False
        self._applied_item_ids: set[str] = set()
        self._usage = Usage()
        self._finish_reason = FinishReason()
        self._completion: asyncio.Future[dict[str, Any] | None] | None = None
        self._cancel_requested = False
        self._interrupt_sent = False

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    @property
    def usage(self) -> Usage:
        """Latest usage snapshot; replaced wholesale by every update."""
        return self._usage

    @property
    def finish_reason(self) -> FinishReason:
        return self._finish_reason

    async def run(
        self,
        prompt_text: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Run the turn to completion.

        Raises whatever ended the turn: `CodexTurnError` for an `error`
        notification, `CodexParseError` for unparsable output,
        `CodexTransportError` when the process exits, and `CodexProtocolError`
        for error responses or a missing thread id.
        """
        if self._state != "idle":
            raise RuntimeError("TurnController.run() may only be called once")

        loop = asyncio.get_running_loop()
        completion: asyncio.Future[dict[str, Any] | None] = loop.create_future()
        self._completion = completion
        try:
            turn = await self._run(prompt_text, cancel_event, completion)
        except BaseException:
            self._state = "failed"
            self._discard_completion()
            raise

        self._state = "completed"
        logger.info("Turn completed", thread_id=self._thread_id, turn_id=self._turn_id)
        return TurnOutcome(
            thread_id=self._thread_id or "",
            turn_id=self._turn_id,
            finish_reason=self._finish_reason,
            turn=turn,
        )

    async def _run(
        self,
        prompt_text: str,
        cancel_event: asyncio.Event | None,
        completion: asyncio.Future[dict[str, Any] | None],
    ) -> dict[str, Any] | None:
        self._state = "thread-starting"
        await self._session.initialize_once()
        thread_result = await self._session.request(THREAD_START_METHOD, self._thread_params())
        thread_id = extract_thread_id(thread_result)
        if not thread_id:
            raise CodexProtocolError("codex app-server did not return a thread id")
        self._thread_id = thread_id
        self._state = "thread-ready"
        logger.debug("Thread started", thread_id=thread_id, model=self._resolved_model())

        # Turn events can race the turn/start response, so listen first.
        unsubscribe = self._session.subscribe(self._on_event)
        watcher: asyncio.Task[None] | None = None
        try:
            self._state = "turn-starting"
            turn_result = await self._session.request(
                TURN_START_METHOD,
                self._turn_params(prompt_text),
            )
            turn_id = extract_turn_id(turn_result)
            if self._turn_id is None and turn_id:
                self._learn_turn_id(turn_id)
            self._state = "streaming"
            watcher = self._attach_cancellation(cancel_event)
            return await completion
        finally:
            unsubscribe()
            if watcher is not None:
                watcher.cancel()

    def _thread_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self._resolved_model(),
            "cwd": self._settings.cwd or os.getcwd(),
        }
        for attr_name, key_name in _THREAD_START_FIELDS:
            params[key_name] = getattr(self._settings, attr_name)
        return params

    def _turn_params(self, prompt_text: str) -> dict[str, Any]:
        params: dict[str, Any] = {
            "threadId": self._thread_id,
            "input": [{"type": "text", "text": prompt_text}],
            "sandboxPolicy": None,
            "model": self._resolved_model(),
        }
        for attr_name, key_name in _TURN_START_FIELDS:
            params[key_name] = getattr(self._settings, attr_name)
        return params

    def _resolved_model(self) -> str | None:
        return self._settings.model_override or self._model_id or None

    def _on_event(self, event: ServerEvent) -> None:
        completion = self._completion
        if completion is None or completion.done():
            return

        if event.kind is EventKind.PARSE_ERROR:
            raw = event.params.get("raw")
            self._fail(
                CodexParseError(PARSE_ERROR_MESSAGE, raw=raw if isinstance(raw, str) else None)
            )
            return
        if event.kind is EventKind.PROCESS_CLOSED:
            message = event.params.get("message")
            self._fail(CodexTransportError(str(message or "codex app-server exited")))
            return

        if self._thread_id is None or event.thread_id != self._thread_id:
            return

        if self._turn_id is None:
            if event.turn_id is None:
                self._buffer.append(event)
                return
            self._learn_turn_id(event.turn_id)
        elif event.turn_id is not None and event.turn_id != self._turn_id:
            return

        self._apply(event)

    def _learn_turn_id(self, turn_id: str) -> None:
        self._turn_id = turn_id
        buffered, self._buffer = self._buffer, []
        for event in buffered:
            if event.turn_id is not None and event.turn_id != turn_id:
                continue
            self._apply(event)
        self._maybe_interrupt()

    def _apply(self, event: ServerEvent) -> None:
        completion = self._completion
        if completion is None or completion.done():
            return

        params = event.params
        kind = event.kind
        if kind is EventKind.AGENT_MESSAGE_DELTA:
            self._saw_text_delta = True
            delta = params.get("delta")
            if isinstance(delta, str):
                self._sink.on_text(delta)
        elif kind is EventKind.REASONING_DELTA:
            if not self._settings.include_reasoning:
                return
            self._saw_reasoning_delta = True
            delta = params.get("delta")
            if isinstance(delta, str):
                self._sink.on_reasoning(delta)
        elif kind is EventKind.ITEM_COMPLETED:
            self._apply_completed_item(params.get("item"))
        elif kind is EventKind.TOKEN_USAGE_UPDATED:
            self._usage = usage_from_token_usage(params.get("tokenUsage"))
        elif kind is EventKind.TURN_COMPLETED:
            self._finish_reason = FinishReason(unified="stop", raw=TURN_COMPLETED_METHOD)
            turn = params.get("turn")
            completion.set_result(dict(turn) if isinstance(turn, Mapping) else None)
        elif kind is EventKind.ERROR:
            self._finish_reason = FinishReason(unified="error", raw="error")
            self._fail(
                CodexTurnError(
                    _error_message(params),
                    thread_id=self._thread_id,
                    turn_id=self._turn_id,
                )
            )

    def _apply_completed_item(self, item: Any) -> None:
        """Fallback content for turns whose items arrive without deltas."""
        if not isinstance(item, Mapping):
            return
        item_id = item.get("id")
        if isinstance(item_id, str) and item_id in self._applied_item_ids:
            return

        item_type = item.get("type")
        if item_type == "agentMessage":
            text = item.get("text")
            if not isinstance(text, str) or not text or self._saw_text_delta:
                return
            self._mark_applied(item_id)
            self._sink.on_text(text)
            return

        if item_type == "reasoning":
            if not self._settings.include_reasoning or self._saw_reasoning_delta:
                return
            content = item.get("content")
            if not isinstance(content, list):
                return
            lines = [str(line) for line in content if isinstance(line, str)]
            if not lines:
                return
            self._mark_applied(item_id)
            self._sink.on_reasoning("\n".join(lines))

    def _mark_applied(self, item_id: Any) -> None:
        if isinstance(item_id, str):
            self._applied_item_ids.add(item_id)

    def _fail(self, error: Exception) -> None:
        completion = self._completion
        if completion is None or completion.done():
            return
        logger.info(
            "Turn failed",
            thread_id=self._thread_id,
            turn_id=self._turn_id,
            error=str(error),
        )
        completion.set_exception(error)

    def _discard_completion(self) -> None:
        completion = self._completion
        if completion is None:
            return
        if not completion.done():
            completion.cancel()
        elif not completion.cancelled():
            # Mark a stored exception as retrieved; the caller already has one.
            completion.exception()

    def _attach_cancellation(
        self,
        cancel_event: asyncio.Event | None,
    ) -> asyncio.Task[None] | None:
        if cancel_event is None:
            return None
        if cancel_event.is_set():
            self._request_interrupt()
            return None
        return asyncio.create_task(self._watch_cancellation(cancel_event))

    async def _watch_cancellation(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        self._request_interrupt()

    def _request_interrupt(self) -> None:
        self._cancel_requested = True
        self._maybe_interrupt()

    def _maybe_interrupt(self) -> None:
        if not self._cancel_requested or self._interrupt_sent:
            return
        if self._thread_id is None or self._turn_id is None:
            return
        if self._completion is None or self._completion.done():
            return
        self._interrupt_sent = True
        task = asyncio.create_task(self._send_interrupt(self._thread_id, self._turn_id))
        _BACKGROUND_TASKS.add(task)
        task.add_done_callback(_BACKGROUND_TASKS.discard)

    async def _send_interrupt(self, thread_id: str, turn_id: str) -> None:
        logger.info("Interrupting turn", thread_id=thread_id, turn_id=turn_id)
        try:
            await self._session.request(
                TURN_INTERRUPT_METHOD,
                {"threadId": thread_id, "turnId": turn_id},
            )
        except CodexError as exc:
            logger.debug(
                "Interrupt request failed",
                thread_id=thread_id,
                turn_id=turn_id,
                error=str(exc),
            )


def _error_message(params: Mapping[str, Any]) -> str:
    message = params.get("message")
    if isinstance(message, str) and message:
        return message
    error = params.get("error")
    if isinstance(error, Mapping):
        nested = error.get("message")
        if isinstance(nested, str) and nested:
            return nested
    return DEFAULT_ERROR_MESSAGE
