from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fake_app_server import (
    PROCESS_EXIT,
    FakeAppServer,
    ScriptedTransport,
    TurnScript,
    agent_message_completed,
    delta,
    reasoning_delta,
    token_usage,
    turn_completed,
    turn_error,
)

from codex_app_server_provider import (
    CodexAppServerSettings,
    CodexLanguageModel,
    CodexUnsupportedError,
    GenerateResult,
    StreamError,
    create_codex_app_server,
)
from codex_app_server_provider.language_model import EMPTY_PROMPT_WARNING


def _settings(**overrides: Any) -> CodexAppServerSettings:
    overrides.setdefault("cwd", "/work")
    return CodexAppServerSettings(**overrides)


async def _collect(model: CodexLanguageModel, prompt: Any) -> list[Any]:
    return [part async for part in model.stream(prompt)]


def _generate(
    server: FakeAppServer,
    prompt: Any,
    **settings: Any,
) -> tuple[GenerateResult, ScriptedTransport]:
    async def _run() -> GenerateResult:
        async with create_codex_app_server(_settings(**settings), transport=transport) as provider:
            return await provider("gpt-5-codex").generate(prompt)

    transport = ScriptedTransport(server)
    return asyncio.run(_run()), transport


def _stream(
    server: FakeAppServer,
    prompt: Any,
    **settings: Any,
) -> tuple[list[Any], ScriptedTransport]:
    async def _run() -> list[Any]:
        async with create_codex_app_server(_settings(**settings), transport=transport) as provider:
            return await _collect(provider("gpt-5-codex"), prompt)

    transport = ScriptedTransport(server)
    return asyncio.run(_run()), transport


def test_generate_returns_text_usage_and_stop() -> None:
    server = FakeAppServer(TurnScript(after=[delta("Hi"), token_usage(9, 2), turn_completed()]))

    result, transport = _generate(server, "Say hi")

    assert result.text == "Hi"
    assert result.finish_reason.unified == "stop"
    assert result.finish_reason.raw == "turn/completed"
    assert result.usage.input_tokens.total == 9
    assert result.usage.output_tokens.total == 2
    assert result.warnings == []
    turn_start = transport.sent[3]
    assert turn_start["params"]["input"] == [{"type": "text", "text": "User:\nSay hi"}]


def test_generate_renders_message_lists() -> None:
    server = FakeAppServer(TurnScript(after=[turn_completed()]))
    messages = [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": [{"type": "text", "text": "What is 2+2?"}]},
    ]

    _, transport = _generate(server, messages)

    assert transport.sent[3]["params"]["input"][0]["text"] == (
        "System:\nBe brief.\n\nUser:\nWhat is 2+2?"
    )


def test_stream_frames_text_and_reasoning_blocks() -> None:
    server = FakeAppServer(
        TurnScript(
            after=[
                reasoning_delta("think"),
                delta("Hi"),
                delta(" there"),
                token_usage(3, 4),
                turn_completed(),
            ]
        )
    )

    parts, _ = _stream(server, "Say hi", include_reasoning=True)

    assert [part.type for part in parts] == [
        "stream-start",
        "reasoning-start",
        "reasoning-delta",
        "text-start",
        "text-delta",
        "text-delta",
        "reasoning-end",
        "text-end",
        "finish",
    ]
    assert parts[0].warnings == []
    assert [part.delta for part in parts if part.type == "text-delta"] == ["Hi", " there"]
    assert parts[1].id == parts[2].id == parts[6].id == "reasoning-1"
    assert parts[3].id == parts[7].id == "text-1"
    assert parts[-1].finish_reason.unified == "stop"
    assert parts[-1].usage.output_tokens.total == 4


def test_stream_emits_completed_item_fallback_as_one_delta() -> None:
    server = FakeAppServer(TurnScript(after=[agent_message_completed("Hello"), turn_completed()]))

    parts, _ = _stream(server, "Say hello")

    assert [part.type for part in parts] == [
        "stream-start",
        "text-start",
        "text-delta",
        "text-end",
        "finish",
    ]
    assert parts[2].delta == "Hello"


def test_generate_and_stream_agree_for_the_same_events() -> None:
    def script() -> TurnScript:
        return TurnScript(
            before=[delta("Hel", turn_id=None)],
            after=[
                delta("lo"),
                agent_message_completed("Hello"),
                token_usage(5, 1),
                token_usage(6, 2, reasoning=1),
                turn_completed(),
            ],
        )

    result, _ = _generate(FakeAppServer(script()), "Say hello")
    parts, _ = _stream(FakeAppServer(script()), "Say hello")

    streamed_text = "".join(part.delta for part in parts if part.type == "text-delta")
    finish = parts[-1]
    assert result.text == streamed_text == "Hello"
    assert result.usage == finish.usage
    assert result.finish_reason == finish.finish_reason


@pytest.mark.parametrize("fallback", ["skip", "error"])
def test_empty_prompt_never_touches_the_app_server(fallback: str) -> None:
    messages = [{"role": "user", "content": "   "}, {"role": "assistant", "content": []}]

    result, generate_transport = _generate(
        FakeAppServer(),
        messages,
        empty_prompt_fallback=fallback,
    )
    parts, stream_transport = _stream(FakeAppServer(), messages, empty_prompt_fallback=fallback)

    assert result.text == ""
    assert result.finish_reason.unified == "other"
    assert result.finish_reason.raw == "empty-prompt"
    assert [warning.message for warning in result.warnings] == [EMPTY_PROMPT_WARNING]

    assert [part.type for part in parts] == ["stream-start", "finish"]
    assert [warning.message for warning in parts[0].warnings] == [EMPTY_PROMPT_WARNING]
    assert parts[1].finish_reason.raw == "empty-prompt"

    assert generate_transport.spawn_count == 0
    assert stream_transport.spawn_count == 0
    assert generate_transport.sent == stream_transport.sent == []


def test_empty_prompt_placeholder_is_sent_by_default() -> None:
    server = FakeAppServer(TurnScript(after=[turn_completed()]))

    result, transport = _generate(server, [{"role": "user", "content": ""}])

    assert result.finish_reason.unified == "stop"
    assert transport.sent[3]["params"]["input"][0]["text"] == "User:\n[empty prompt]"


def test_generate_folds_turn_errors_into_a_warning() -> None:
    server = FakeAppServer(TurnScript(after=[delta("par"), turn_error("model overloaded")]))

    result, _ = _generate(server, "Say hi")

    assert result.text == "par"
    assert result.finish_reason.unified == "error"
    assert result.finish_reason.raw == "app-server-error"
    assert [warning.message for warning in result.warnings] == ["model overloaded"]


def test_stream_reports_one_error_then_finish() -> None:
    server = FakeAppServer(TurnScript(after=[delta("par"), turn_error("model overloaded")]))

    parts, _ = _stream(server, "Say hi")

    types = [part.type for part in parts]
    assert types == ["stream-start", "text-start", "text-delta", "error", "finish"]
    error = parts[3]
    assert isinstance(error, StreamError)
    assert error.message == "model overloaded"
    assert parts[-1].finish_reason.unified == "error"
    assert parts[-1].finish_reason.raw == "app-server-error"


def test_parse_error_fails_one_generation_and_the_next_succeeds() -> None:
    server = FakeAppServer(
        TurnScript(after=[delta("Hi"), "{oops"]),
        TurnScript(after=[delta("Hello"), turn_completed()]),
    )

    async def _run() -> tuple[GenerateResult, GenerateResult]:
        async with create_codex_app_server(_settings(), transport=transport) as provider:
            model = provider.language_model("gpt-5-codex")
            first = await model.generate("one")
            second = await model.generate("two")
            return first, second

    transport = ScriptedTransport(server)
    first, second = asyncio.run(_run())

    assert first.finish_reason.unified == "error"
    assert [warning.message for warning in first.warnings] == [
        "Failed to parse codex app-server JSONL output"
    ]
    assert second.text == "Hello"
    assert second.finish_reason.unified == "stop"
    assert transport.spawn_count == 1


def test_process_exit_fails_generation_and_next_call_respawns() -> None:
    server = FakeAppServer(
        TurnScript(after=[PROCESS_EXIT]),
        TurnScript(after=[delta("back"), turn_completed()]),
    )

    async def _run() -> tuple[GenerateResult, GenerateResult]:
        async with create_codex_app_server(_settings(), transport=transport) as provider:
            model = provider.language_model()
            first = await model.generate("one")
            second = await model.generate("two")
            return first, second

    transport = ScriptedTransport(server)
    first, second = asyncio.run(_run())

    assert first.finish_reason.unified == "error"
    assert [warning.message for warning in first.warnings] == ["codex app-server crashed"]
    assert second.text == "back"
    assert transport.spawn_count == 2
    assert transport.methods().count("initialize") == 2


def test_concurrent_generations_run_one_at_a_time() -> None:
    server = FakeAppServer(
        TurnScript(after=[delta("one"), turn_completed()]),
        TurnScript(after=[delta("two"), turn_completed()]),
    )

    async def _run() -> list[GenerateResult]:
        async with create_codex_app_server(_settings(), transport=transport) as provider:
            model = provider.language_model("gpt-5-codex")
            return list(await asyncio.gather(model.generate("first"), model.generate("second")))

    transport = ScriptedTransport(server)
    results = asyncio.run(_run())

    assert [result.text for result in results] == ["one", "two"]
    assert transport.methods() == [
        "initialize",
        "initialized",
        "thread/start",
        "turn/start",
        "thread/start",
        "turn/start",
    ]


def test_abandoned_stream_keeps_its_place_in_the_queue() -> None:
    server = FakeAppServer(
        TurnScript(after=[delta("one"), delta(" more"), turn_completed()]),
        TurnScript(after=[delta("two"), turn_completed()]),
    )

    async def _run() -> GenerateResult:
        async with create_codex_app_server(_settings(), transport=transport) as provider:
            model = provider.language_model("gpt-5-codex")
            stream = model.stream("first")
            async for part in stream:
                if part.type == "text-delta":
                    break
            await stream.aclose()  # type: ignore[attr-defined]
            return await model.generate("second")

    transport = ScriptedTransport(server)
    second = asyncio.run(_run())

    assert second.text == "two"
    assert transport.methods().count("turn/start") == 2


def test_cancel_event_interrupts_generation() -> None:
    server = FakeAppServer(TurnScript(after=[delta("partial")], on_interrupt=[turn_completed()]))
    cancel_event = asyncio.Event()
    cancel_event.set()

    async def _run() -> GenerateResult:
        async with create_codex_app_server(_settings(), transport=transport) as provider:
            return await provider("gpt-5-codex").generate("Say hi", cancel_event=cancel_event)

    transport = ScriptedTransport(server)
    result = asyncio.run(_run())

    assert result.text == "partial"
    assert transport.methods().count("turn/interrupt") == 1


def test_provider_surface() -> None:
    provider = create_codex_app_server(_settings(name="my-codex"), transport=ScriptedTransport())

    model = provider.language_model("gpt-5-codex")
    assert model.provider == "my-codex"
    assert model.model_id == "gpt-5-codex"
    assert provider("o3").model_id == "o3"
    assert provider.name == "my-codex"
    with pytest.raises(CodexUnsupportedError):
        provider.embedding_model("text-embedding-3-small")
    with pytest.raises(CodexUnsupportedError):
        provider.image_model()


def test_create_applies_keyword_overrides() -> None:
    provider = create_codex_app_server(
        _settings(),
        transport=ScriptedTransport(),
        include_reasoning=True,
    )

    assert provider.settings.include_reasoning is True
    assert provider.settings.cwd == "/work"


def test_stream_forwards_empty_deltas() -> None:
    server = FakeAppServer(TurnScript(after=[delta(""), delta("Hi"), turn_completed()]))

    parts, _ = _stream(server, "Say hi")

    assert [part.type for part in parts] == [
        "stream-start",
        "text-start",
        "text-delta",
        "text-delta",
        "text-end",
        "finish",
    ]
    assert [part.delta for part in parts if part.type == "text-delta"] == ["", "Hi"]


def test_closing_during_generate_returns_an_error_result() -> None:
    server = FakeAppServer(TurnScript(after=[delta("par")]))

    async def _run() -> GenerateResult:
        provider = create_codex_app_server(_settings(), transport=transport)
        pending = asyncio.ensure_future(provider("gpt-5-codex").generate("Say hi"))
        while "turn/start" not in transport.methods():
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)

        await provider.close()
        return await pending

    transport = ScriptedTransport(server)
    result = asyncio.run(_run())

    assert result.text == "par"
    assert result.finish_reason.unified == "error"
    assert result.finish_reason.raw == "app-server-error"
    assert [warning.message for warning in result.warnings] == ["session is closing"]


def test_closing_during_stream_ends_with_error_and_finish() -> None:
    server = FakeAppServer(TurnScript(after=[delta("par")]))

    async def _run() -> list[Any]:
        provider = create_codex_app_server(_settings(), transport=transport)
        parts = []
        async for part in provider("gpt-5-codex").stream("Say hi"):
            parts.append(part)
            if part.type == "text-delta":
                await provider.close()
        return parts

    transport = ScriptedTransport(server)
    parts = asyncio.run(_run())

    assert [part.type for part in parts] == [
        "stream-start",
        "text-start",
        "text-delta",
        "error",
        "finish",
    ]
    assert parts[3].message == "session is closing"
    assert parts[-1].finish_reason.unified == "error"
