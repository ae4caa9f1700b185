from __future__ import annotations

from typing import Any, NoReturn

from .errors import CodexUnsupportedError
from .language_model import CodexLanguageModel
from .session import AppServerSession
from .settings import CodexAppServerSettings
from .transport import StdioTransport, Transport


class CodexAppServerProvider:
    """Factory for language models sharing one app-server session."""

    def __init__(
        self,
        settings: CodexAppServerSettings | None = None,
        *,
        transport: Transport | None = None,
    ) -> None:
        """Create a provider.

        Args:
            settings: Provider configuration; defaults to
                `CodexAppServerSettings.from_env()`.
            transport: Transport override, mainly for tests. Defaults to a
                stdio transport running `settings.command`.
        """
        self._settings = settings if settings is not None else CodexAppServerSettings.from_env()
        if transport is None:
            transport = StdioTransport(
                self._settings.command,
                env=self._settings.env,
                cwd=self._settings.cwd,
            )
        self._session = AppServerSession(
            transport,
            approvals=self._settings.approval_decisions,
        )

    @property
    def name(self) -> str:
        return self._settings.name

    @property
    def settings(self) -> CodexAppServerSettings:
        return self._settings

    @property
    def session(self) -> AppServerSession:
        return self._session

    def __call__(self, model_id: str | None = None) -> CodexLanguageModel:
        return self.language_model(model_id)

    def language_model(self, model_id: str | None = None) -> CodexLanguageModel:
        """Return a language model bound to this provider's session."""
        return CodexLanguageModel(
            provider=self._settings.name,
            model_id=model_id,
            session=self._session,
            settings=self._settings,
        )

    def embedding_model(self, model_id: str | None = None) -> NoReturn:
        raise CodexUnsupportedError("codex-app-server does not support embeddings")

    def image_model(self, model_id: str | None = None) -> NoReturn:
        raise CodexUnsupportedError("codex-app-server does not support images")

    async def close(self) -> None:
        """Terminate the app-server process and fail anything still queued."""
        await self._session.close()

    async def __aenter__(self) -> CodexAppServerProvider:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()


def create_codex_app_server(
    settings: CodexAppServerSettings | None = None,
    *,
    transport: Transport | None = None,
    **overrides: Any,
) -> CodexAppServerProvider:
    """Create a provider; keyword `overrides` are applied on top of `settings`."""
    if overrides:
        base = settings if settings is not None else CodexAppServerSettings.from_env()
        settings = base.merged(**overrides)
    return CodexAppServerProvider(settings, transport=transport)
