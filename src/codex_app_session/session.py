from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from typing import Any

from .correlator import Correlator
from .errors import (
    CodexMalformedEnvelopeError,
    CodexProtocolError,
    CodexRemoteClosedError,
    CodexRemoteError,
)
from .models import InitializeResult
from .protocol import (
    ACCOUNT_LOGIN_START_METHOD,
    ACCOUNT_READ_METHOD,
    COMMAND_EXEC_METHOD,
    INITIALIZE_METHOD,
    INITIALIZED_METHOD,
    MODEL_LIST_METHOD,
    THREAD_LIST_METHOD,
    THREAD_RESUME_METHOD,
    THREAD_START_METHOD,
    TURN_START_METHOD,
    Notification,
    RequestId,
    encode_message,
    make_error_response,
    make_notification,
    make_request,
    make_result_response,
)
from .transport import StdioTransport, Transport, WebSocketTransport

DEFAULT_OPT_OUT_NOTIFICATION_METHODS = (
    "codex/event/agent_message_content_delta",
    "codex/event/reasoning_content_delta",
    "codex/event/item_started",
    "codex/event/item_completed",
    "codex/event/task_started",
    "codex/event/task_complete",
)

CLIENT_NAME = "codex-app-session"
CLIENT_VERSION = "0.1.0"


class CodexSession:
    """Stateful JSON-RPC session with one app-server endpoint.

    Owns the transport, the request id counter and the correlator. Once the
    remote stream closes the session is dead: every current and future call
    raises `CodexRemoteClosedError`.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        request_timeout: float | None = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        """Create a session bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            request_timeout: Default timeout for request/response calls.
                None waits indefinitely.
            logger: Logger for wire traffic and lifecycle events.
        """
        self._transport = transport
        self._request_timeout = request_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._correlator = Correlator(transport, logger=self._logger)

        self._next_request_id = 1
        self._send_lock = asyncio.Lock()
        self._handshake_lock = asyncio.Lock()
        self._started = False
        self._initialized = False
        self._closed = False
        self._failure: CodexRemoteClosedError | None = None
        self._initialize_result: InitializeResult | None = None

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        close_timeout: float = 2.0,
        request_timeout: float | None = 30.0,
        logger: logging.Logger | None = None,
    ) -> CodexSession:
        """Create an unstarted session that spawns the app-server over stdio."""
        resolved_command = list(command) if command is not None else _default_stdio_command()
        transport = StdioTransport(
            resolved_command,
            cwd=cwd,
            env=env,
            connect_timeout=connect_timeout,
            close_timeout=close_timeout,
        )
        return cls(transport, request_timeout=request_timeout, logger=logger)

    @classmethod
    def connect_websocket(
        cls,
        *,
        url: str | None = None,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        request_timeout: float | None = 30.0,
        logger: logging.Logger | None = None,
    ) -> CodexSession:
        """Create an unstarted session configured for websocket transport."""
        resolved_url = url or os.getenv("CODEX_APP_SERVER_WS_URL") or "ws://127.0.0.1:8765"
        resolved_token = token or os.getenv("CODEX_APP_SERVER_TOKEN")
        resolved_headers = dict(headers) if headers is not None else {}
        if resolved_token and "Authorization" not in resolved_headers:
            resolved_headers["Authorization"] = f"Bearer {resolved_token}"

        transport = WebSocketTransport(
            resolved_url,
            headers=resolved_headers,
            connect_timeout=connect_timeout,
        )
        return cls(transport, request_timeout=request_timeout, logger=logger)

    @property
    def correlator(self) -> Correlator:
        return self._correlator

    @property
    def closed(self) -> bool:
        """True after `close()` or once the remote stream has ended."""
        return self._closed or self._failure is not None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def initialize_result(self) -> InitializeResult | None:
        return self._initialize_result

    async def start(self) -> CodexSession:
        """Connect the transport once."""
        self._ensure_usable()
        if self._started:
            return self
        await self._transport.connect()
        self._started = True
        return self

    async def __aenter__(self) -> CodexSession:
        """Support `async with CodexSession(...)` usage."""
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Close session on context-manager exit."""
        await self.close()

    async def close(self) -> None:
        """Fail outstanding reads and close the transport."""
        if self._closed:
            return
        self._closed = True
        self._correlator.close()
        await self._transport.close()
        self._started = False
        self._logger.info("session closed")

    async def initialize(
        self,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> InitializeResult:
        """Perform the `initialize` handshake and send `initialized`.

        :param params: Optional initialize payload, shallow-merged over the
            defaults (client info and notification opt-outs).
        :param timeout: Optional per-request timeout override in seconds.
        :return: Parsed initialize result.
        """
        await self.start()
        payload = _prepare_initialize_params(params)
        result = await self.request(INITIALIZE_METHOD, payload, timeout=timeout)
        await self.notify(INITIALIZED_METHOD)
        result_dict = result if isinstance(result, dict) else {"value": result}
        self._initialized = True

        user_agent = result_dict.get("userAgent")
        server_info = result_dict.get("serverInfo")
        capabilities = result_dict.get("capabilities")
        self._initialize_result = InitializeResult(
            user_agent=user_agent if isinstance(user_agent, str) else None,
            server_info=server_info if isinstance(server_info, dict) else None,
            capabilities=capabilities if isinstance(capabilities, dict) else None,
            raw=result_dict,
        )
        self._logger.info("session initialized user_agent=%s", self._initialize_result.user_agent)
        return self._initialize_result

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a JSON-RPC request and await its result.

        Notifications read while waiting are queued for `next_notification()`.
        """
        self._ensure_usable()

        request_id = self._next_request_id
        self._next_request_id += 1

        message = make_request(request_id, method, dict(params) if params is not None else None)
        self._correlator.track(request_id)
        try:
            await self._write(message)
        except BaseException:
            self._correlator.forget(request_id)
            raise

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        try:
            response = await self._correlator.wait_for_response(request_id, timeout_seconds)
        except CodexRemoteClosedError as exc:
            self._mark_dead(exc)
            raise
        except CodexMalformedEnvelopeError:
            self._logger.warning("malformed line while awaiting %s id=%s", method, request_id)
            raise

        if response.error is not None:
            code = response.error.get("code")
            message_text = str(response.error.get("message", "JSON-RPC error"))
            raise CodexRemoteError(
                f"{method} failed: {message_text}",
                code=code if isinstance(code, int) else None,
                data=response.error.get("data"),
            )
        return response.result

    async def notify(self, method: str, params: Mapping[str, Any] | None = None) -> None:
        """Send a fire-and-forget notification."""
        self._ensure_usable()
        await self._write(make_notification(method, dict(params) if params is not None else None))

    async def respond(self, request_id: RequestId, result: Any) -> None:
        """Answer a server-initiated request with a result."""
        self._ensure_usable()
        await self._write(make_result_response(request_id, result))

    async def respond_error(
        self,
        request_id: RequestId,
        code: int,
        message: str,
        data: Any = None,
    ) -> None:
        """Answer a server-initiated request with a JSON-RPC error."""
        self._ensure_usable()
        await self._write(make_error_response(request_id, code, message, data))

    async def next_notification(self, timeout: float | None = None) -> Notification | None:
        """Return the next queued or inbound notification; None on timeout."""
        self._ensure_usable()
        try:
            return await self._correlator.next_notification(timeout)
        except CodexRemoteClosedError as exc:
            self._mark_dead(exc)
            raise

    async def start_thread(self, params: Mapping[str, Any] | None = None) -> str:
        """Create a new thread and return its id."""
        await self._ensure_initialized()
        result = await self.request(THREAD_START_METHOD, params or {})
        thread_id = _extract_nested_id(result, "thread", "threadId")
        if not thread_id:
            raise CodexProtocolError("thread/start succeeded but no thread id found")
        return thread_id

    async def resume_thread(
        self,
        thread_id: str,
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """Resume an existing thread and return the active thread id."""
        await self._ensure_initialized()
        payload: dict[str, Any] = {"threadId": thread_id}
        payload.update(params or {})
        result = await self.request(THREAD_RESUME_METHOD, payload)
        return _extract_nested_id(result, "thread", "threadId") or thread_id

    async def list_threads(self, params: Mapping[str, Any] | None = None) -> Any:
        await self._ensure_initialized()
        return await self.request(THREAD_LIST_METHOD, params or {})

    async def list_models(self, params: Mapping[str, Any] | None = None) -> Any:
        await self._ensure_initialized()
        return await self.request(MODEL_LIST_METHOD, params or {})

    async def read_account(self, *, refresh_token: bool = False) -> Any:
        await self._ensure_initialized()
        return await self.request(ACCOUNT_READ_METHOD, {"refreshToken": refresh_token})

    async def start_login(self, params: Mapping[str, Any] | None = None) -> Any:
        """Start an account login flow (`{"type": "chatgpt"}` by default)."""
        await self._ensure_initialized()
        return await self.request(ACCOUNT_LOGIN_START_METHOD, params or {"type": "chatgpt"})

    async def exec_command(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        sandbox_policy: Mapping[str, Any] | None = None,
    ) -> Any:
        """Run one command through the app-server outside any thread."""
        if not command:
            raise ValueError("command must not be empty")
        await self._ensure_initialized()
        params: dict[str, Any] = {"command": list(command)}
        if cwd is not None:
            params["cwd"] = cwd
        if timeout_ms is not None:
            params["timeoutMs"] = timeout_ms
        if sandbox_policy is not None:
            params["sandboxPolicy"] = dict(sandbox_policy)
        return await self.request(COMMAND_EXEC_METHOD, params)

    async def start_turn(
        self,
        thread_id: str,
        text: str,
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """Send `turn/start` for one text input and return the turn id."""
        await self._ensure_initialized()
        payload: dict[str, Any] = {
            "threadId": thread_id,
            "input": [{"type": "text", "text": text}],
        }
        payload.update(params or {})
        result = await self.request(TURN_START_METHOD, payload)
        turn_id = _extract_nested_id(result, "turn", "turnId")
        if not turn_id:
            raise CodexProtocolError("turn/start succeeded but no turn id found")
        return turn_id

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._handshake_lock:
            if not self._initialized:
                await self.initialize()

    async def _write(self, payload: Mapping[str, Any]) -> None:
        line = encode_message(payload)
        async with self._send_lock:
            self._ensure_usable()
            self._logger.debug("send %s", line)
            try:
                await self._transport.write_line(line)
            except CodexRemoteClosedError as exc:
                self._mark_dead(exc)
                raise

    def _ensure_usable(self) -> None:
        if self._closed:
            raise CodexRemoteClosedError("session is closed")
        if self._failure is not None:
            raise self._failure

    def _mark_dead(self, exc: CodexRemoteClosedError) -> None:
        if self._failure is not None:
            return
        self._failure = exc
        self._correlator.close(str(exc))
        self._logger.warning("remote stream closed: %s", exc)


def _default_stdio_command() -> list[str]:
    """Return default app-server command for stdio mode."""
    from_env = os.getenv("CODEX_APP_SERVER_CMD")
    if from_env:
        return shlex.split(from_env)
    return ["codex", "app-server"]


def _prepare_initialize_params(params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Shallow-merge caller params over the default initialize payload.

    A caller-provided `capabilities` mapping without
    `optOutNotificationMethods` still gets the default opt-out list.
    """
    payload: dict[str, Any] = {
        "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        "capabilities": {
            "optOutNotificationMethods": list(DEFAULT_OPT_OUT_NOTIFICATION_METHODS),
        },
    }
    if params is None:
        return payload

    params_dict = dict(params)
    payload.update(params_dict)
    capabilities = params_dict.get("capabilities")
    if isinstance(capabilities, Mapping) and "optOutNotificationMethods" not in capabilities:
        capabilities_dict = dict(capabilities)
        capabilities_dict["optOutNotificationMethods"] = list(DEFAULT_OPT_OUT_NOTIFICATION_METHODS)
        payload["capabilities"] = capabilities_dict
    return payload


def _extract_nested_id(payload: Any, object_key: str, direct_key: str) -> str | None:
    """Read `payload[object_key]["id"]`, falling back to `payload[direct_key]`."""
    if not isinstance(payload, Mapping):
        return None
    nested = payload.get(object_key)
    if isinstance(nested, Mapping):
        nested_id = nested.get("id")
        if isinstance(nested_id, str) and nested_id:
            return nested_id
    direct = payload.get(direct_key)
    if isinstance(direct, str) and direct:
        return direct
    return None
