from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fake_app_server import FakeAppServer, ScriptedTransport

from codex_app_server_provider.approvals import ApprovalDecisions
from codex_app_server_provider.errors import CodexProtocolError, CodexTransportError
from codex_app_server_provider.protocol import EventKind, ServerEvent
from codex_app_server_provider.session import DEFAULT_CLIENT_INFO, AppServerSession


async def _wait_until(predicate: Any, *, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("timed out waiting for condition")


def _silent_thread_start(transport: ScriptedTransport, message: dict[str, Any]) -> None:
    if message.get("method") == "thread/start":
        return
    FakeAppServer()(transport, message)


def test_initialize_handshake_runs_once_per_process() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        try:
            first, second = await asyncio.gather(
                session.initialize_once(),
                session.initialize_once(),
            )
            third = await session.initialize_once()
        finally:
            await session.close()

        assert first == second == third == {"userAgent": "fake-codex/0.0.0"}
        assert transport.methods() == ["initialize", "initialized"]
        assert transport.sent[0]["params"] == {"clientInfo": DEFAULT_CLIENT_INFO}
        assert "id" not in transport.sent[1]
        assert transport.spawn_count == 1

    asyncio.run(_run())


def test_request_ids_increase_and_results_are_correlated() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        try:
            thread = await session.request("thread/start", {"model": None})
            other = await session.request("model/list")
        finally:
            await session.close()

        assert thread == {"thread": {"id": "t1"}}
        assert other == {}
        assert [message["id"] for message in transport.sent] == [1, 2]
        assert session.pending_requests == 0

    asyncio.run(_run())


def test_error_response_raises_protocol_error() -> None:
    def handler(transport: ScriptedTransport, message: dict[str, Any]) -> None:
        transport.push(
            {
                "id": message["id"],
                "error": {"code": -32602, "message": "unknown model", "data": {"model": "x"}},
            }
        )

    async def _run() -> None:
        session = AppServerSession(ScriptedTransport(handler))
        try:
            with pytest.raises(CodexProtocolError) as exc_info:
                await session.request("thread/start", {"model": "x"})
        finally:
            await session.close()

        assert str(exc_info.value) == "thread/start failed: unknown model"
        assert exc_info.value.code == -32602
        assert exc_info.value.data == {"model": "x"}

    asyncio.run(_run())


def test_approval_requests_are_answered_and_not_fanned_out() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(
            transport,
            approvals=ApprovalDecisions(current="decline", legacy="abort"),
        )
        events: list[ServerEvent] = []
        session.subscribe(events.append)
        try:
            await session.ensure()
            transport.push(
                {
                    "id": 101,
                    "method": "item/commandExecution/requestApproval",
                    "params": {"threadId": "t1", "turnId": "r1", "command": "rm -rf build"},
                }
            )
            transport.push({"id": "legacy-1", "method": "applyPatchApproval", "params": {}})
            await _wait_until(lambda: len(transport.sent) == 2)
        finally:
            await session.close()

        assert transport.sent == [
            {"id": 101, "result": {"decision": "decline"}},
            {"id": "legacy-1", "result": {"decision": "abort"}},
        ]
        assert events == []

    asyncio.run(_run())


def test_unrecognized_server_request_is_delivered_to_subscribers() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        events: list[ServerEvent] = []
        session.subscribe(events.append)
        try:
            await session.ensure()
            transport.push({"id": 55, "method": "item/tool/call", "params": {"tool": "x"}})
            await _wait_until(lambda: bool(events))
        finally:
            await session.close()

        assert events[0].kind is EventKind.UNRECOGNIZED
        assert events[0].request_id == 55
        assert events[0].params == {"tool": "x"}
        assert transport.sent == []

    asyncio.run(_run())


def test_parse_errors_are_fanned_out_and_reading_continues() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        events: list[ServerEvent] = []
        session.subscribe(events.append)
        try:
            await session.ensure()
            transport.push_line("{not json")
            transport.push({"method": "turn/completed", "params": {"threadId": "t1"}})
            await _wait_until(lambda: len(events) == 2)
            assert await session.request("thread/start") == {"thread": {"id": "t1"}}
        finally:
            await session.close()

        assert events[0].kind is EventKind.PARSE_ERROR
        assert events[0].params["raw"] == "{not json"
        assert events[1].kind is EventKind.TURN_COMPLETED

    asyncio.run(_run())


def test_failing_listener_does_not_break_fan_out() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        received: list[str] = []

        def broken(event: ServerEvent) -> None:
            raise RuntimeError("listener bug")

        session.subscribe(broken)
        session.subscribe(lambda event: received.append(event.method))
        try:
            await session.ensure()
            transport.push({"method": "error", "params": {"message": "x"}})
            await _wait_until(lambda: bool(received))
        finally:
            await session.close()

        assert received == ["error"]

    asyncio.run(_run())


def test_unsubscribe_stops_delivery() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        first: list[str] = []
        second: list[str] = []
        unsubscribe = session.subscribe(lambda event: first.append(event.method))
        session.subscribe(lambda event: second.append(event.method))
        try:
            await session.ensure()
            unsubscribe()
            unsubscribe()
            transport.push({"method": "turn/completed", "params": {}})
            await _wait_until(lambda: bool(second))
        finally:
            await session.close()

        assert first == []
        assert second == ["turn/completed"]

    asyncio.run(_run())


def test_process_exit_fails_pending_requests_and_announces_close() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(_silent_thread_start)
        session = AppServerSession(transport)
        events: list[ServerEvent] = []
        session.subscribe(events.append)
        try:
            await session.initialize_once()
            pending = asyncio.ensure_future(session.request("thread/start"))
            await _wait_until(lambda: session.pending_requests == 1)

            transport.exit_process("fatal: config.toml is invalid")

            with pytest.raises(CodexTransportError, match="config.toml is invalid"):
                await pending
            await _wait_until(lambda: bool(events))
        finally:
            await session.close()

        assert session.pending_requests == 0
        assert events[-1].kind is EventKind.PROCESS_CLOSED
        assert events[-1].params["message"] == "fatal: config.toml is invalid"
        assert events[-1].params["code"] == 1

    asyncio.run(_run())


def test_session_respawns_and_reinitializes_after_exit() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        try:
            await session.initialize_once()
            transport.exit_process()
            await _wait_until(lambda: not session.running)

            await session.initialize_once()
            result = await session.request("thread/start")
        finally:
            await session.close()

        assert result == {"thread": {"id": "t1"}}
        assert transport.spawn_count == 2
        assert transport.methods() == [
            "initialize",
            "initialized",
            "initialize",
            "initialized",
            "thread/start",
        ]

    asyncio.run(_run())


def test_close_fails_pending_requests_and_rejects_new_ones() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(_silent_thread_start)
        session = AppServerSession(transport)
        pending = asyncio.ensure_future(session.request("thread/start"))
        await _wait_until(lambda: session.pending_requests == 1)

        await session.close()

        with pytest.raises(CodexTransportError, match="session is closing"):
            await pending
        with pytest.raises(CodexTransportError, match="session is closed"):
            await session.request("thread/start")
        assert session.closed
        assert not transport.running

    asyncio.run(_run())


def test_spawn_stdio_builds_a_lazy_stdio_session() -> None:
    session = AppServerSession.spawn_stdio(["codex", "app-server"], env={"RUST_LOG": "warn"})

    assert not session.running
    assert session.transport.command == ["codex", "app-server"]  # type: ignore[attr-defined]


def test_dispatch_failure_is_logged_and_reading_continues(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_responder(*args: Any) -> None:
        raise ValueError("unsupported approval decision")

    monkeypatch.setattr(
        "codex_app_server_provider.session.respond_to_server_request",
        broken_responder,
    )

    async def _run() -> None:
        transport = ScriptedTransport(FakeAppServer())
        session = AppServerSession(transport)
        try:
            await session.ensure()
            transport.push(
                {"id": 5, "method": "item/fileChange/requestApproval", "params": {}}
            )
            result = await asyncio.wait_for(session.request("thread/start"), timeout=1)
        finally:
            await session.close()

        assert result == {"thread": {"id": "t1"}}
        assert transport.spawn_count == 1

    asyncio.run(_run())
