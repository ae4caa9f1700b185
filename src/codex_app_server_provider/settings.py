from __future__ import annotations

import os
import shlex
from collections.abc import Collection
from dataclasses import dataclass, field, replace
from typing import Any, get_args

from .approvals import (
    APPROVAL_DECISIONS,
    LEGACY_APPROVAL_DECISIONS,
    ApprovalDecision,
    ApprovalDecisions,
    LegacyApprovalDecision,
)
from .errors import CodexConfigError
from .models import (
    ApprovalPolicy,
    EmptyPromptFallback,
    ReasoningEffort,
    ReasoningSummary,
    SandboxMode,
)

APP_SERVER_SUBCOMMAND = "app-server"

CODEX_PATH_ENV = "CODEX_APP_SERVER_PATH"
CODEX_ARGS_ENV = "CODEX_APP_SERVER_ARGS"


@dataclass(slots=True)
class CodexAppServerSettings:
    """Provider configuration for one `codex app-server` session.

    Attributes:
        name: Provider name reported on language models.
        codex_path: Executable used to launch the app-server.
        args: Extra arguments appended after the `app-server` subcommand.
        env: Environment overrides layered over the inherited environment.
        cwd: Working directory for threads and turns (defaults to the current
            directory for `thread/start`).
        include_reasoning: Fold reasoning text into the generated output.
        empty_prompt_fallback: What to send when the conversation renders to
            no text (`placeholder`, `json`, `error`, `skip`).
        approval_policy: Approval policy forwarded to thread and turn start.
        approval_decision: Answer for command-execution and file-change
            approval requests.
        legacy_approval_decision: Answer for legacy exec-command and
            apply-patch approval requests.
        sandbox_mode: Thread sandbox mode.
        model_override: Model id sent instead of the language model id.
        model_provider: Model provider name forwarded to `thread/start`.
        reasoning_effort: Per-turn reasoning effort.
        reasoning_summary: Per-turn reasoning summary verbosity.
        config: Arbitrary config map forwarded to `thread/start`.
        base_instructions: Base instruction override for the thread.
        developer_instructions: Developer instruction override for the thread.
        experimental_raw_events: Ask the server for raw response events.
    """

    name: str = "codex-app-server"
    codex_path: str = "codex"
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    include_reasoning: bool = False
    empty_prompt_fallback: EmptyPromptFallback = "placeholder"
    approval_policy: ApprovalPolicy | None = None
    approval_decision: ApprovalDecision = "accept"
    legacy_approval_decision: LegacyApprovalDecision = "approved"
    sandbox_mode: SandboxMode | None = None
    model_override: str | None = None
    model_provider: str | None = None
    reasoning_effort: ReasoningEffort | None = None
    reasoning_summary: ReasoningSummary | None = None
    config: dict[str, Any] | None = None
    base_instructions: str | None = None
    developer_instructions: str | None = None
    experimental_raw_events: bool = False

    def __post_init__(self) -> None:
        if not self.codex_path:
            raise CodexConfigError("codex_path must not be empty")
        self.args = [str(arg) for arg in self.args]
        self.env = {str(key): str(value) for key, value in self.env.items()}
        _check_choice(
            "empty_prompt_fallback",
            self.empty_prompt_fallback,
            get_args(EmptyPromptFallback),
        )
        _check_choice("approval_decision", self.approval_decision, APPROVAL_DECISIONS)
        _check_choice(
            "legacy_approval_decision",
            self.legacy_approval_decision,
            LEGACY_APPROVAL_DECISIONS,
        )
        _check_choice(
            "approval_policy",
            self.approval_policy,
            get_args(ApprovalPolicy),
            allow_none=True,
        )
        _check_choice("sandbox_mode", self.sandbox_mode, get_args(SandboxMode), allow_none=True)
        _check_choice(
            "reasoning_effort",
            self.reasoning_effort,
            get_args(ReasoningEffort),
            allow_none=True,
        )
        _check_choice(
            "reasoning_summary",
            self.reasoning_summary,
            get_args(ReasoningSummary),
            allow_none=True,
        )
        if self.config is not None and not isinstance(self.config, dict):
            raise CodexConfigError("config must be a dict when provided")

    @classmethod
    def from_env(cls, **overrides: Any) -> CodexAppServerSettings:
        """Build settings using `CODEX_APP_SERVER_PATH` / `CODEX_APP_SERVER_ARGS` defaults.

        Explicit keyword overrides win over environment values.
        """
        values: dict[str, Any] = {}
        codex_path = os.getenv(CODEX_PATH_ENV)
        if codex_path:
            values["codex_path"] = codex_path
        codex_args = os.getenv(CODEX_ARGS_ENV)
        if codex_args:
            values["args"] = shlex.split(codex_args)
        values.update(overrides)
        return cls(**values)

    @property
    def command(self) -> list[str]:
        """Argv used to launch the app-server process."""
        return [self.codex_path, APP_SERVER_SUBCOMMAND, *self.args]

    @property
    def approval_decisions(self) -> ApprovalDecisions:
        return ApprovalDecisions(
            current=self.approval_decision,
            legacy=self.legacy_approval_decision,
        )

    def merged(self, **overrides: Any) -> CodexAppServerSettings:
        """Return a validated copy with `overrides` applied."""
        return replace(self, **overrides)


def _check_choice(
    name: str,
    value: Any,
    choices: Collection[str],
    *,
    allow_none: bool = False,
) -> None:
    if value is None and allow_none:
        return
    if value not in choices:
        allowed = ", ".join(sorted(choices))
        raise CodexConfigError(f"{name} must be one of: {allowed} (got {value!r})")
