from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from .approvals import ApprovalDecisions, respond_to_server_request
from .errors import CodexProtocolError, CodexTransportError
from .protocol import (
    INITIALIZE_METHOD,
    INITIALIZED_NOTIFICATION,
    ServerEvent,
    classify_message,
    extract_error,
    is_response_message,
    is_server_request,
    make_notification,
    make_process_closed_message,
    make_request,
    make_result_response,
)
from .serial_queue import SerialQueue
from .transport import ProcessExit, StdioTransport, Transport

logger = structlog.get_logger(__name__)

T = TypeVar("T")

#: Callback receiving every dispatched non-response message.
Listener = Callable[[ServerEvent], None]

DEFAULT_CLIENT_INFO: dict[str, str] = {
    "name": "codex-app-server-provider",
    "title": "Codex App Server Provider",
    "version": "0.1.0",
}


@dataclass(slots=True)
class _PendingRequest:
    request_id: int
    method: str
    future: asyncio.Future[dict[str, Any]]


class AppServerSession:
    """Persistent connection to one lazily spawned `codex app-server` process.

    The session correlates requests with responses, answers approval requests
    from static configuration, and fans every other message out to
    subscribers. When the process exits, pending requests fail, subscribers
    receive a process-closed event, and the next call spawns a fresh process.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        approvals: ApprovalDecisions | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> None:
        """Create a session bound to a transport.

        Args:
            transport: Transport that owns the app-server process.
            approvals: Answers for server-initiated approval requests.
            client_info: `clientInfo` sent in the `initialize` handshake.
        """
        self._transport = transport
        self._approvals = approvals if approvals is not None else ApprovalDecisions()
        self._client_info = (
            dict(client_info) if client_info is not None else dict(DEFAULT_CLIENT_INFO)
        )

        self._next_request_id = 1
        self._pending: dict[int, _PendingRequest] = {}
        self._listeners: dict[int, Listener] = {}
        self._listener_ids = itertools.count()
        self._initialized: asyncio.Future[dict[str, Any]] | None = None

        self._send_lock = asyncio.Lock()
        self._ensure_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self.queue = SerialQueue()

    @classmethod
    def spawn_stdio(
        cls,
        command: list[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        approvals: ApprovalDecisions | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> AppServerSession:
        """Create a session whose process is started on first use."""
        transport = StdioTransport(command, env=env, cwd=cwd)
        return cls(transport, approvals=approvals, client_info=client_info)

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def running(self) -> bool:
        """True while an app-server process is attached."""
        return self._transport.running

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> AppServerSession:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def ensure(self) -> None:
        """Spawn the app-server process unless one is already attached."""
        if self._closed:
            raise CodexTransportError("session is closed")
        if self._transport.running:
            return
        async with self._ensure_lock:
            if self._transport.running:
                return
            await self._transport.connect()
            self._initialized = None
            self._reader_task = asyncio.create_task(self._read_loop(self._transport))

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send a request and await its result.

        Raises:
            CodexProtocolError: The server answered with an error object.
            CodexTransportError: The process exited before answering.
        """
        await self.ensure()

        request_id = self._next_request_id
        self._next_request_id += 1

        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = _PendingRequest(request_id, method, future)

        try:
            await self._send(make_request(request_id, method, params))
        except CodexTransportError:
            self._pending.pop(request_id, None)
            raise

        response = await future
        error = extract_error(response)
        if error is not None:
            code = error.get("code")
            message_text = str(error.get("message", "JSON-RPC error"))
            raise CodexProtocolError(
                f"{method} failed: {message_text}",
                code=code if isinstance(code, int) else None,
                data=error.get("data"),
            )
        return response.get("result")

    async def notify(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
    ) -> None:
        """Send a notification; no reply is awaited."""
        await self.ensure()
        await self._send(make_notification(method, params))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener` for fan-out and return a function that detaches it."""
        token = next(self._listener_ids)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    async def initialize_once(self) -> dict[str, Any]:
        """Run the `initialize` / `initialized` handshake once per process.

        Concurrent and later callers share the first outcome until the process
        restarts, which clears the memo.
        """
        await self.ensure()
        if self._initialized is None:
            self._initialized = asyncio.ensure_future(self._handshake())
        return await asyncio.shield(self._initialized)

    async def run_serialized(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Run `factory()` once every previously queued generation has settled."""
        return await self.queue.run(factory)

    async def close(self) -> None:
        """Fail the running generation and pending requests, then stop the process."""
        if self._closed:
            return
        self._closed = True

        await self.queue.close()

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        self._fail_pending(CodexTransportError("session is closing"))
        self._listeners.clear()
        self._initialized = None

        await self._transport.close()

    async def _handshake(self) -> dict[str, Any]:
        result = await self.request(INITIALIZE_METHOD, {"clientInfo": self._client_info})
        await self.notify(INITIALIZED_NOTIFICATION)
        logger.debug("Initialized codex app-server", result=result)
        return result if isinstance(result, dict) else {"value": result}

    async def _send(self, payload: Mapping[str, Any]) -> None:
        async with self._send_lock:
            await self._transport.send(payload)

    async def _read_loop(self, transport: Transport) -> None:
        """Dispatch messages from one process until its output ends."""
        try:
            while True:
                message = await transport.recv()
                try:
                    await self._dispatch(message)
                except Exception:
                    logger.exception(
                        "Failed to dispatch app-server message",
                        method=message.get("method"),
                        request_id=message.get("id"),
                    )
        except CodexTransportError as exc:
            logger.debug("codex app-server output ended", reason=str(exc))
        process_exit = await transport.wait_closed()
        self._handle_exit(process_exit)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if is_response_message(message):
            self._settle(message)
            return

        if is_server_request(message):
            method = message["method"]
            params = message.get("params")
            result = respond_to_server_request(
                method,
                params if isinstance(params, Mapping) else None,
                self._approvals,
            )
            if result is not None:
                logger.info(
                    "Answered approval request",
                    method=method,
                    request_id=message["id"],
                    decision=result["decision"],
                )
                try:
                    await self._send(make_result_response(message["id"], result))
                except CodexTransportError:
                    logger.warning("Failed to answer approval request", method=method)
                return

        event = classify_message(message)
        if event is None:
            logger.debug("Dropping message without method", message=message)
            return
        self._emit(event)

    def _settle(self, message: dict[str, Any]) -> None:
        response_id = message.get("id")
        pending: _PendingRequest | None = None
        if isinstance(response_id, (int, str)):
            pending = self._pending.pop(response_id, None)  # type: ignore[arg-type]
        if pending is None:
            logger.debug("Dropping response for unknown request", request_id=response_id)
            return
        if not pending.future.done():
            pending.future.set_result(message)

    def _emit(self, event: ServerEvent) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed", method=event.method)

    def _handle_exit(self, process_exit: ProcessExit) -> None:
        self._fail_pending(CodexTransportError(process_exit.message))
        self._initialized = None
        self._reader_task = None
        event = classify_message(
            make_process_closed_message(
                process_exit.message,
                code=process_exit.code,
                signal=process_exit.signal,
            )
        )
        if event is not None:
            self._emit(event)

    def _fail_pending(self, error: Exception) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(error)
        self._pending.clear()
