from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

import websockets

from .errors import (
    CodexLaunchError,
    CodexMalformedEnvelopeError,
    CodexRemoteClosedError,
    CodexTransportError,
)

logger = logging.getLogger(__name__)

# Default StreamReader limit is 64 KiB; app-server items can be much larger.
DEFAULT_READ_LIMIT = 16 * 1024 * 1024


class Transport(ABC):
    """Duplex line channel to an app-server endpoint.

    Implementations support exactly one concurrent reader; callers that
    share a transport go through `ReadCoalescer`.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources and establish connection."""
        raise NotImplementedError

    @abstractmethod
    async def write_line(self, line: str) -> None:
        """Write one line (without its terminator)."""
        raise NotImplementedError

    @abstractmethod
    async def read_line(self) -> str:
        """Read one line; raise `CodexRemoteClosedError` at end of stream.

        An undecodable line raises `CodexMalformedEnvelopeError` and leaves
        the stream readable.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError


class StdioTransport(Transport):
    """Line transport over a subprocess stdin/stdout pipe."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        close_timeout: float = 2.0,
        read_limit: int = DEFAULT_READ_LIMIT,
    ) -> None:
        """Configure stdio transport.

        Args:
            command: Command argv used to start the app-server process.
            cwd: Optional subprocess working directory.
            env: Optional environment for the subprocess.
            connect_timeout: Timeout for subprocess creation.
            close_timeout: Grace period for voluntary exit after stdin is
                closed, and again after terminate, before killing.
            read_limit: Maximum accepted line length in bytes.
        """
        if not command:
            raise ValueError("stdio command must not be empty")
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._read_limit = read_limit
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def returncode(self) -> int | None:
        if self._proc is None:
            return None
        return self._proc.returncode

    async def connect(self) -> None:
        """Start subprocess if not already running."""
        if self._proc is not None:
            return
        try:
            self._proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *self._command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                    cwd=self._cwd,
                    env=self._env,
                    limit=self._read_limit,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise CodexLaunchError(
                f"failed to start app-server command {self._command!r}: "
                f"{exc.__class__.__name__}: {exc}"
            ) from exc
        logger.debug("started app-server pid=%s command=%r", self._proc.pid, self._command)

    async def write_line(self, line: str) -> None:
        """Write one line to subprocess stdin."""
        if self._proc is None or self._proc.stdin is None:
            raise CodexTransportError("stdio transport is not connected")
        try:
            self._proc.stdin.write((line + "\n").encode("utf-8"))
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise CodexRemoteClosedError("app-server stdin closed") from exc
        except Exception as exc:
            raise CodexTransportError("failed writing to stdio transport") from exc

    async def read_line(self) -> str:
        """Read one line from subprocess stdout."""
        if self._proc is None or self._proc.stdout is None:
            raise CodexTransportError("stdio transport is not connected")
        try:
            raw = await self._proc.stdout.readline()
        except ValueError as exc:
            raise CodexTransportError(
                f"stdio line exceeds read limit of {self._read_limit} bytes"
            ) from exc
        except Exception as exc:
            raise CodexTransportError("failed reading from stdio transport") from exc
        if not raw:
            raise CodexRemoteClosedError("app-server stdout closed")
        return _decode_utf8(raw).rstrip("\r\n")

    async def close(self) -> None:
        """Close stdin, wait for exit, then terminate and finally kill."""
        if self._proc is None:
            return

        proc = self._proc
        self._proc = None

        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

        if proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._close_timeout)
            return
        except asyncio.TimeoutError:
            logger.debug("app-server pid=%s did not exit, terminating", proc.pid)

        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning("app-server pid=%s ignored terminate, killing", proc.pid)
            proc.kill()
            await proc.wait()


class WebSocketTransport(Transport):
    """Line transport over a websocket connection; one text frame per line."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure websocket transport.

        Args:
            url: Websocket endpoint URL.
            headers: Optional request headers, including auth.
            connect_timeout: Timeout for websocket handshake.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._socket: Any = None

    async def connect(self) -> None:
        """Open websocket if not already connected."""
        if self._socket is not None:
            return
        try:
            self._socket = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise CodexLaunchError(
                "failed to connect websocket transport: "
                f"{self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def write_line(self, line: str) -> None:
        """Send one line as a text frame."""
        if self._socket is None:
            raise CodexTransportError("websocket transport is not connected")
        try:
            await self._socket.send(line)
        except websockets.ConnectionClosed as exc:
            raise CodexRemoteClosedError("websocket closed") from exc
        except Exception as exc:
            raise CodexTransportError("failed writing to websocket transport") from exc

    async def read_line(self) -> str:
        """Receive one frame as a line."""
        if self._socket is None:
            raise CodexTransportError("websocket transport is not connected")
        try:
            message = await self._socket.recv()
        except websockets.ConnectionClosed as exc:
            raise CodexRemoteClosedError("websocket closed") from exc
        except Exception as exc:
            raise CodexTransportError(
                "failed reading from websocket transport"
            ) from exc

        if isinstance(message, (bytes, bytearray)):
            return _decode_utf8(bytes(message))
        return str(message)

    async def close(self) -> None:
        """Close websocket connection."""
        if self._socket is None:
            return
        socket = self._socket
        self._socket = None
        try:
            await socket.close()
        except Exception as exc:
            logger.debug("websocket close failed: %s", exc)


def _decode_utf8(raw: bytes) -> str:
    """Decode one inbound line; undecodable bytes are a malformed line, not EOF."""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CodexMalformedEnvelopeError("received non-UTF-8 line", line=repr(raw)) from exc
