import asyncio
import sys
from types import SimpleNamespace

import pytest

from codex_app_session.errors import (
    CodexLaunchError,
    CodexMalformedEnvelopeError,
    CodexRemoteClosedError,
    CodexTransportError,
)
from codex_app_session.transport import StdioTransport, WebSocketTransport
import codex_app_session.transport as transport_module

ECHO_SCRIPT = (
    "import sys\n"
    "while True:\n"
    "    line = sys.stdin.readline()\n"
    "    if not line:\n"
    "        break\n"
    "    sys.stdout.write(line)\n"
    "    sys.stdout.flush()\n"
)

STUBBORN_SCRIPT = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "sys.stdout.write('ready\\n')\n"
    "sys.stdout.flush()\n"
    "time.sleep(30)\n"
)


def test_stdio_transport_requires_command() -> None:
    with pytest.raises(ValueError):
        StdioTransport([])


def test_stdio_transport_round_trips_lines() -> None:
    async def _run() -> None:
        transport = StdioTransport([sys.executable, "-c", ECHO_SCRIPT])
        await transport.connect()
        try:
            await transport.write_line('{"method":"ping"}')
            assert await asyncio.wait_for(transport.read_line(), timeout=5.0) == '{"method":"ping"}'
        finally:
            await transport.close()

    asyncio.run(_run())


def test_stdio_transport_end_of_stream_raises_remote_closed() -> None:
    async def _run() -> None:
        transport = StdioTransport([sys.executable, "-c", "pass"])
        await transport.connect()
        try:
            with pytest.raises(CodexRemoteClosedError):
                await asyncio.wait_for(transport.read_line(), timeout=5.0)
        finally:
            await transport.close()

    asyncio.run(_run())


def test_stdio_transport_launch_failure() -> None:
    async def _run() -> None:
        transport = StdioTransport(["/nonexistent/codex-binary", "app-server"])
        with pytest.raises(CodexLaunchError):
            await transport.connect()

    asyncio.run(_run())


def test_stdio_transport_reports_invalid_utf8_as_malformed_line() -> None:
    script = (
        "import sys\n"
        "sys.stdout.buffer.write(b'\\xff\\xfe{}\\n')\n"
        "sys.stdout.buffer.write(b'{\"method\":\"ok\"}\\n')\n"
        "sys.stdout.flush()\n"
    )

    async def _run() -> None:
        transport = StdioTransport([sys.executable, "-c", script])
        await transport.connect()
        try:
            with pytest.raises(CodexMalformedEnvelopeError):
                await asyncio.wait_for(transport.read_line(), timeout=5.0)
            assert await asyncio.wait_for(transport.read_line(), timeout=5.0) == '{"method":"ok"}'
        finally:
            await transport.close()

    asyncio.run(_run())


@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be ignored on Windows")
def test_stdio_close_escalates_to_kill() -> None:
    async def _run() -> None:
        transport = StdioTransport([sys.executable, "-c", STUBBORN_SCRIPT], close_timeout=0.2)
        await transport.connect()
        assert await asyncio.wait_for(transport.read_line(), timeout=5.0) == "ready"
        proc = transport._proc
        assert proc is not None

        await asyncio.wait_for(transport.close(), timeout=5.0)
        assert proc.returncode is not None
        assert proc.returncode != 0

    asyncio.run(_run())


def test_websocket_transport_write_requires_connection() -> None:
    async def _run() -> None:
        transport = WebSocketTransport("ws://127.0.0.1:9999")
        with pytest.raises(CodexTransportError):
            await transport.write_line('{"jsonrpc":"2.0","id":1,"method":"ping"}')

    asyncio.run(_run())


def test_websocket_transport_connect_uses_additional_headers(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    async def fake_connect(uri: str, **kwargs: object) -> object:
        captured["uri"] = uri
        captured["kwargs"] = kwargs

        class DummySocket:
            async def close(self) -> None:
                return None

        return DummySocket()

    monkeypatch.setattr(
        transport_module,
        "websockets",
        SimpleNamespace(connect=fake_connect),
    )

    async def _run() -> None:
        transport = WebSocketTransport(
            "ws://127.0.0.1:8765",
            headers={"Authorization": "Bearer token"},
        )
        await transport.connect()
        await transport.close()

    asyncio.run(_run())
    assert captured["uri"] == "ws://127.0.0.1:8765"
    kwargs = captured["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["additional_headers"] == {"Authorization": "Bearer token"}
    assert kwargs["compression"] is None


def test_websocket_transport_connect_wraps_original_exception(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_connect(uri: str, **kwargs: object) -> object:
        raise RuntimeError("boom")

    monkeypatch.setattr(
        transport_module,
        "websockets",
        SimpleNamespace(connect=fake_connect),
    )

    async def _run() -> None:
        transport = WebSocketTransport("ws://127.0.0.1:8765")
        with pytest.raises(CodexLaunchError) as exc_info:
            await transport.connect()
        message = str(exc_info.value)
        assert "RuntimeError" in message
        assert "boom" in message

    asyncio.run(_run())


def test_websocket_transport_reads_frames_as_lines(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    class FrameSocket:
        def __init__(self) -> None:
            self.frames: list[object] = [b'{"method":"a"}', '{"method":"b"}']
            self.sent: list[str] = []

        async def recv(self) -> object:
            return self.frames.pop(0)

        async def send(self, message: str) -> None:
            self.sent.append(message)

        async def close(self) -> None:
            return None

    socket = FrameSocket()

    async def fake_connect(uri: str, **kwargs: object) -> object:
        return socket

    monkeypatch.setattr(
        transport_module,
        "websockets",
        SimpleNamespace(connect=fake_connect, ConnectionClosed=ConnectionError),
    )

    async def _run() -> None:
        transport = WebSocketTransport("ws://127.0.0.1:8765")
        await transport.connect()
        await transport.write_line('{"id":1}')
        assert await transport.read_line() == '{"method":"a"}'
        assert await transport.read_line() == '{"method":"b"}'
        await transport.close()

    asyncio.run(_run())
    assert socket.sent == ['{"id":1}']
