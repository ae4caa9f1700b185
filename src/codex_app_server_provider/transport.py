from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from .errors import CodexTransportError
from .framing import LineFramer, parse_line

logger = structlog.get_logger(__name__)

_READ_CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class ProcessExit:
    """How the app-server process ended.

    Attributes:
        message: Trimmed stderr text, or a generic exit description.
        code: Exit code when the process exited normally.
        signal: Signal name when the process was killed by a signal.
    """

    message: str
    code: int | None = None
    signal: str | None = None


class Transport(ABC):
    """Abstract line-oriented JSON transport to one app-server process."""

    @property
    @abstractmethod
    def running(self) -> bool:
        """True while a process is attached (until its exit is collected)."""
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> None:
        """Start the process if none is attached, resetting stream buffers."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, payload: Mapping[str, Any]) -> None:
        """Send one JSON-serializable message."""
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> dict[str, Any]:
        """Receive the next message.

        Unparsable lines are returned as synthetic parse-error messages.
        Raises `CodexTransportError` once the output stream has ended.
        """
        raise NotImplementedError

    @abstractmethod
    async def wait_closed(self) -> ProcessExit:
        """Wait for the process to exit, detach it, and describe the exit."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Terminate the process and release handles."""
        raise NotImplementedError


class StdioTransport(Transport):
    """JSON transport over a subprocess stdin/stdout pipe."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        """Configure stdio transport.

        Args:
            command: Command argv used to start the app-server process.
            env: Environment overrides layered over the inherited environment.
            cwd: Optional subprocess working directory.
        """
        if not command:
            raise ValueError("stdio command must not be empty")
        self._command = list(command)
        self._env = dict(env) if env is not None else {}
        self._cwd = cwd
        self._proc: asyncio.subprocess.Process | None = None
        self._stdout_framer = LineFramer()
        self._lines: deque[str] = deque()
        self._stderr = bytearray()
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def running(self) -> bool:
        return self._proc is not None

    @property
    def stderr_text(self) -> str:
        """Everything the current process wrote to stderr so far."""
        return self._stderr.decode("utf-8", errors="replace")

    async def connect(self) -> None:
        """Start subprocess if not already running."""
        if self._proc is not None:
            return
        self._stdout_framer.reset()
        self._lines.clear()
        self._stderr.clear()
        environment = {**os.environ, **self._env}
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=environment,
            )
        except Exception as exc:
            raise CodexTransportError(
                f"failed to start codex app-server: {self._command!r} "
                f"({exc.__class__.__name__}: {exc})"
            ) from exc
        logger.info("Spawned codex app-server", command=self._command, pid=self._proc.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc))

    async def send(self, payload: Mapping[str, Any]) -> None:
        """Write one JSON line to subprocess stdin."""
        if self._proc is None or self._proc.stdin is None:
            raise CodexTransportError("stdio transport is not connected")
        line = json.dumps(dict(payload), separators=(",", ":")) + "\n"
        try:
            self._proc.stdin.write(line.encode("utf-8"))
            await self._proc.stdin.drain()
        except Exception as exc:
            raise CodexTransportError("failed writing to stdio transport") from exc

    async def recv(self) -> dict[str, Any]:
        """Read the next message from subprocess stdout."""
        if self._proc is None or self._proc.stdout is None:
            raise CodexTransportError("stdio transport is not connected")
        while True:
            while self._lines:
                message = parse_line(self._lines.popleft())
                if message is not None:
                    return message
            try:
                chunk = await self._proc.stdout.read(_READ_CHUNK_SIZE)
            except Exception as exc:
                raise CodexTransportError("failed reading from stdio transport") from exc
            if not chunk:
                raise CodexTransportError("stdio transport closed")
            self._lines.extend(self._stdout_framer.feed(chunk))

    async def wait_closed(self) -> ProcessExit:
        proc = self._proc
        if proc is None:
            return ProcessExit(message="codex app-server is not running")
        returncode = await proc.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(Exception):
                await self._stderr_task
            self._stderr_task = None
        if self._proc is proc:
            self._proc = None

        code: int | None = returncode
        signal_name: str | None = None
        if returncode is not None and returncode < 0:
            code = None
            signal_name = _signal_name(-returncode)

        message = self.stderr_text.strip()
        if not message:
            message = (
                f"codex app-server exited with code "
                f"{code if code is not None else 'unknown'} ({signal_name or 'no signal'})"
            )
        logger.info(
            "codex app-server exited",
            pid=proc.pid,
            code=code,
            signal=signal_name,
        )
        return ProcessExit(message=message, code=code, signal=signal_name)

    async def close(self) -> None:
        """Terminate subprocess and release handles."""
        if self._proc is None:
            return

        proc = self._proc
        self._proc = None

        if proc.stdin is not None:
            proc.stdin.close()

        if proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("codex app-server did not terminate, killing", pid=proc.pid)
                proc.kill()
                await proc.wait()

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._stderr_task
            self._stderr_task = None

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        framer = LineFramer()
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            self._stderr.extend(chunk)
            for line in framer.feed(chunk):
                if line:
                    logger.debug("codex stderr", pid=proc.pid, text=line)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"
