from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Core request methods used by this provider.
INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "initialized"
THREAD_START_METHOD = "thread/start"
TURN_START_METHOD = "turn/start"
TURN_INTERRUPT_METHOD = "turn/interrupt"

# Turn-scoped notifications consumed by the turn controller.
AGENT_MESSAGE_DELTA_METHOD = "item/agentMessage/delta"
REASONING_TEXT_DELTA_METHOD = "item/reasoning/textDelta"
ITEM_COMPLETED_METHOD = "item/completed"
TOKEN_USAGE_UPDATED_METHOD = "thread/tokenUsage/updated"
TURN_COMPLETED_METHOD = "turn/completed"
ERROR_METHOD = "error"

# Server-initiated approval requests.
ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD = "item/commandExecution/requestApproval"
ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD = "item/fileChange/requestApproval"
LEGACY_EXEC_COMMAND_APPROVAL_METHOD = "execCommandApproval"
LEGACY_APPLY_PATCH_APPROVAL_METHOD = "applyPatchApproval"

# Synthetic methods fanned out to subscribers; never sent on the wire.
PARSE_ERROR_METHOD = "__parse_error__"
PROCESS_CLOSED_METHOD = "__process_closed__"


class EventKind(enum.Enum):
    """Closed set of message kinds delivered to session subscribers."""

    AGENT_MESSAGE_DELTA = "agent_message_delta"
    REASONING_DELTA = "reasoning_delta"
    ITEM_COMPLETED = "item_completed"
    TOKEN_USAGE_UPDATED = "token_usage_updated"
    TURN_COMPLETED = "turn_completed"
    ERROR = "error"
    PARSE_ERROR = "parse_error"
    PROCESS_CLOSED = "process_closed"
    UNRECOGNIZED = "unrecognized"


_KIND_BY_METHOD: dict[str, EventKind] = {
    AGENT_MESSAGE_DELTA_METHOD: EventKind.AGENT_MESSAGE_DELTA,
    REASONING_TEXT_DELTA_METHOD: EventKind.REASONING_DELTA,
    ITEM_COMPLETED_METHOD: EventKind.ITEM_COMPLETED,
    TOKEN_USAGE_UPDATED_METHOD: EventKind.TOKEN_USAGE_UPDATED,
    TURN_COMPLETED_METHOD: EventKind.TURN_COMPLETED,
    ERROR_METHOD: EventKind.ERROR,
    PARSE_ERROR_METHOD: EventKind.PARSE_ERROR,
    PROCESS_CLOSED_METHOD: EventKind.PROCESS_CLOSED,
}


@dataclass(slots=True)
class ServerEvent:
    """One non-response message fanned out by the session.

    Attributes:
        kind: Classified message kind.
        method: Raw method name as received (or a synthetic method).
        params: Message params, `{}` when absent or not an object.
        request_id: Id of an unanswered server-initiated request, if any.
    """

    kind: EventKind
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    request_id: int | str | None = None

    @property
    def thread_id(self) -> str | None:
        return _optional_string(self.params.get("threadId"))

    @property
    def turn_id(self) -> str | None:
        return _optional_string(self.params.get("turnId"))

    @property
    def is_transport_event(self) -> bool:
        """True for synthetic events that are not scoped to any thread."""
        return self.kind in (EventKind.PARSE_ERROR, EventKind.PROCESS_CLOSED)


def classify_message(payload: Mapping[str, Any]) -> ServerEvent | None:
    """Build a typed event from a message carrying a method, else None."""
    method = payload.get("method")
    if not isinstance(method, str):
        return None
    params = payload.get("params")
    request_id = payload.get("id")
    return ServerEvent(
        kind=_KIND_BY_METHOD.get(method, EventKind.UNRECOGNIZED),
        method=method,
        params=dict(params) if isinstance(params, Mapping) else {},
        request_id=request_id if isinstance(request_id, (int, str)) else None,
    )


def make_request(
    request_id: int,
    method: str,
    params: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a request envelope."""
    payload: dict[str, Any] = {"id": request_id, "method": method}
    if params is not None:
        payload["params"] = dict(params)
    return payload


def make_notification(
    method: str,
    params: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a notification envelope (no id, no reply expected)."""
    payload: dict[str, Any] = {"method": method}
    if params is not None:
        payload["params"] = dict(params)
    return payload


def make_result_response(
    request_id: int | str,
    result: Any,
) -> dict[str, Any]:
    """Build a success response envelope."""
    return {"id": request_id, "result": result}


def make_parse_error_message(raw: str, message: str) -> dict[str, Any]:
    """Build the synthetic message standing in for an unparsable line."""
    return {"method": PARSE_ERROR_METHOD, "params": {"raw": raw, "message": message}}


def make_process_closed_message(
    message: str,
    *,
    code: int | None = None,
    signal: str | None = None,
) -> dict[str, Any]:
    """Build the synthetic message announcing that the child process exited."""
    return {
        "method": PROCESS_CLOSED_METHOD,
        "params": {"message": message, "code": code, "signal": signal},
    }


def is_response_message(payload: Mapping[str, Any]) -> bool:
    """Return True when payload is a response (has id, no method)."""
    return "id" in payload and "method" not in payload


def is_server_request(payload: Mapping[str, Any]) -> bool:
    """Return True when payload is a request sent by the server."""
    return payload.get("id") is not None and isinstance(payload.get("method"), str)


def extract_error(payload: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return JSON-RPC error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def extract_thread_id(result: Any) -> str | None:
    """Read the thread id from a `thread/start` result."""
    if not isinstance(result, Mapping):
        return None
    thread = result.get("thread")
    if isinstance(thread, Mapping):
        thread_id = _optional_string(thread.get("id"))
        if thread_id:
            return thread_id
    return _optional_string(result.get("threadId")) or None


def extract_turn_id(result: Any) -> str | None:
    """Read the turn id from a `turn/start` result."""
    if not isinstance(result, Mapping):
        return None
    turn = result.get("turn")
    if isinstance(turn, Mapping):
        turn_id = _optional_string(turn.get("id"))
        if turn_id:
            return turn_id
    return _optional_string(result.get("turnId")) or None


def _optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) else None
