"""Static answers to server-initiated approval requests."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias, get_args

from .errors import CodexConfigError
from .protocol import (
    ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
    ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
    LEGACY_APPLY_PATCH_APPROVAL_METHOD,
    LEGACY_EXEC_COMMAND_APPROVAL_METHOD,
)

#: Decision returned for `item/commandExecution/requestApproval` and
#: `item/fileChange/requestApproval`.
ApprovalDecision: TypeAlias = Literal[
    "accept",
    "decline",
    "cancel",
    "accept_for_session",
    "accept_with_execpolicy_amendment",
]

#: Decision returned for the legacy `execCommandApproval` and
#: `applyPatchApproval` requests.
LegacyApprovalDecision: TypeAlias = Literal[
    "approved",
    "approved_for_session",
    "denied",
    "abort",
]

APPROVAL_DECISIONS: frozenset[str] = frozenset(get_args(ApprovalDecision))
LEGACY_APPROVAL_DECISIONS: frozenset[str] = frozenset(get_args(LegacyApprovalDecision))

APPROVAL_METHODS = frozenset(
    {
        ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
        ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
    }
)
LEGACY_APPROVAL_METHODS = frozenset(
    {
        LEGACY_EXEC_COMMAND_APPROVAL_METHOD,
        LEGACY_APPLY_PATCH_APPROVAL_METHOD,
    }
)


@dataclass(slots=True, frozen=True)
class ApprovalDecisions:
    """Configured answers for approval requests.

    Attributes:
        current: Decision for command-execution and file-change approvals.
        legacy: Decision for legacy exec-command and apply-patch approvals.
    """

    current: ApprovalDecision = "accept"
    legacy: LegacyApprovalDecision = "approved"

    def __post_init__(self) -> None:
        if self.current not in APPROVAL_DECISIONS:
            raise CodexConfigError(
                f"approval decision must be one of {sorted(APPROVAL_DECISIONS)}, "
                f"got {self.current!r}"
            )
        if self.legacy not in LEGACY_APPROVAL_DECISIONS:
            raise CodexConfigError(
                f"legacy approval decision must be one of {sorted(LEGACY_APPROVAL_DECISIONS)}, "
                f"got {self.legacy!r}"
            )


def respond_to_server_request(
    method: str,
    params: Mapping[str, Any] | None,
    decisions: ApprovalDecisions,
) -> dict[str, Any] | None:
    """Return the result payload for a recognized approval request.

    Returns None when `method` is not an approval request, leaving the message
    for ordinary subscriber delivery.
    """
    if method in APPROVAL_METHODS:
        return {"decision": _encode_decision(decisions.current, params or {})}
    if method in LEGACY_APPROVAL_METHODS:
        return {"decision": decisions.legacy}
    return None


def _encode_decision(decision: ApprovalDecision, params: Mapping[str, Any]) -> Any:
    if decision == "accept_with_execpolicy_amendment":
        amendment = params.get("proposedExecpolicyAmendment")
        return {
            "acceptWithExecpolicyAmendment": {
                "execpolicy_amendment": list(amendment) if isinstance(amendment, list) else [],
            }
        }
    mapping = {
        "accept": "accept",
        "accept_for_session": "acceptForSession",
        "decline": "decline",
        "cancel": "cancel",
    }
    mapped = mapping.get(decision)
    if mapped is None:
        raise ValueError(f"unsupported approval decision: {decision!r}")
    return mapped
