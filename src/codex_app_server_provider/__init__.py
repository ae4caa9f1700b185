from .approvals import ApprovalDecision, ApprovalDecisions, LegacyApprovalDecision
from .errors import (
    CodexConfigError,
    CodexError,
    CodexParseError,
    CodexProtocolError,
    CodexTransportError,
    CodexTurnError,
    CodexUnsupportedError,
)
from .language_model import CodexLanguageModel
from .log import configure_logging
from .models import (
    ApprovalPolicy,
    CallWarning,
    EmptyPromptFallback,
    Finish,
    FinishReason,
    GenerateResult,
    InputTokens,
    OutputTokens,
    ReasoningDelta,
    ReasoningEffort,
    ReasoningEnd,
    ReasoningStart,
    ReasoningSummary,
    SandboxMode,
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
from .provider import CodexAppServerProvider, create_codex_app_server
from .session import AppServerSession
from .settings import CodexAppServerSettings
from .transport import ProcessExit, StdioTransport, Transport

__all__ = [
    "AppServerSession",
    "ApprovalDecision",
    "ApprovalDecisions",
    "ApprovalPolicy",
    "CallWarning",
    "CodexAppServerProvider",
    "CodexAppServerSettings",
    "CodexConfigError",
    "CodexError",
    "CodexLanguageModel",
    "CodexParseError",
    "CodexProtocolError",
    "CodexTransportError",
    "CodexTurnError",
    "CodexUnsupportedError",
    "EmptyPromptFallback",
    "Finish",
    "FinishReason",
    "GenerateResult",
    "InputTokens",
    "LegacyApprovalDecision",
    "OutputTokens",
    "ProcessExit",
    "ReasoningDelta",
    "ReasoningEffort",
    "ReasoningEnd",
    "ReasoningStart",
    "ReasoningSummary",
    "SandboxMode",
    "StdioTransport",
    "StreamError",
    "StreamPart",
    "StreamStart",
    "TextContent",
    "TextDelta",
    "TextEnd",
    "TextStart",
    "Transport",
    "Usage",
    "build_prompt",
    "configure_logging",
    "create_codex_app_server",
]
