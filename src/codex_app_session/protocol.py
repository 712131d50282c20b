from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from .errors import CodexMalformedEnvelopeError

# JSON-RPC protocol version used by Codex app-server envelopes.
JSONRPC_VERSION = "2.0"

# Request methods sent by this client.
INITIALIZE_METHOD = "initialize"
THREAD_START_METHOD = "thread/start"
THREAD_RESUME_METHOD = "thread/resume"
THREAD_LIST_METHOD = "thread/list"
TURN_START_METHOD = "turn/start"
MODEL_LIST_METHOD = "model/list"
ACCOUNT_READ_METHOD = "account/read"
ACCOUNT_LOGIN_START_METHOD = "account/login/start"
COMMAND_EXEC_METHOD = "command/exec"

# Client notification sent once the initialize response arrives.
INITIALIZED_METHOD = "initialized"

# Server notifications.
ITEM_AGENT_MESSAGE_DELTA_METHOD = "item/agentMessage/delta"
ITEM_STARTED_METHOD = "item/started"
ITEM_COMPLETED_METHOD = "item/completed"
TURN_COMPLETED_METHOD = "turn/completed"
ERROR_METHOD = "error"

# Server-initiated requests that expect an approval decision.
ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD = "item/commandExecution/requestApproval"
ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD = "item/fileChange/requestApproval"
APPROVAL_REQUEST_METHODS = frozenset(
    {
        ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
        ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
        # v1 names still emitted by older app-server builds.
        "execCommandApproval",
        "applyPatchApproval",
    }
)

# Standard JSON-RPC error codes used in replies to server requests.
METHOD_NOT_FOUND_CODE = -32601
INVALID_PARAMS_CODE = -32602

RequestId: TypeAlias = int | str


@dataclass(slots=True)
class Notification:
    """Inbound message carrying a `method`.

    `id` is only set for server-initiated requests (approval requests),
    which expect a response on the same channel.
    """

    method: str
    params: Any = None
    id: RequestId | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_request(self) -> bool:
        return self.id is not None

    @property
    def params_dict(self) -> dict[str, Any]:
        """Params as a dict, or empty when absent or not an object."""
        if isinstance(self.params, Mapping):
            return dict(self.params)
        return {}


@dataclass(slots=True)
class Response:
    """Inbound response correlated to one of our requests by `id`."""

    id: RequestId
    result: Any = None
    error: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)


Envelope: TypeAlias = Notification | Response


def make_request(
    request_id: int,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC request envelope."""
    payload: dict[str, Any] = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
    }
    if params is not None:
        payload["params"] = params
    return payload


def make_notification(
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC notification envelope (no id)."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_error_response(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build a JSON-RPC error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error,
    }


def make_result_response(
    request_id: RequestId,
    result: Any,
) -> dict[str, Any]:
    """Build a JSON-RPC success response envelope."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result,
    }


def encode_message(payload: Mapping[str, Any]) -> str:
    """Serialize one envelope to a single line of compact JSON (no trailing newline)."""
    line = json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=False)
    if "\n" in line or "\r" in line:
        raise ValueError("encoded envelope contains a line break")
    return line


def decode_line(line: str | bytes) -> Envelope:
    """Parse one wire line into a `Notification` or `Response`.

    Fields outside the JSON-RPC envelope are kept in `raw`.
    """
    if isinstance(line, (bytes, bytearray)):
        try:
            text = bytes(line).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CodexMalformedEnvelopeError(
                "received non-UTF-8 line", line=repr(line)
            ) from exc
    else:
        text = line
    text = text.strip()

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CodexMalformedEnvelopeError(
            f"received invalid JSON: {exc.msg}", line=text
        ) from exc
    if not isinstance(payload, dict):
        raise CodexMalformedEnvelopeError("envelope is not a JSON object", line=text)

    if "method" in payload:
        method = payload["method"]
        if not isinstance(method, str):
            raise CodexMalformedEnvelopeError("envelope method is not a string", line=text)
        request_id = payload.get("id")
        if request_id is not None and not isinstance(request_id, (int, str)):
            raise CodexMalformedEnvelopeError("envelope id has invalid type", line=text)
        return Notification(
            method=method,
            params=payload.get("params"),
            id=request_id,
            raw=payload,
        )

    if is_response_message(payload):
        response_id = payload["id"]
        if not isinstance(response_id, (int, str)):
            raise CodexMalformedEnvelopeError("response id has invalid type", line=text)
        error = extract_error(payload)
        if error is None and payload.get("error") is not None:
            error = {"message": str(payload["error"])}
        return Response(
            id=response_id,
            result=payload.get("result"),
            error=error,
            raw=payload,
        )

    raise CodexMalformedEnvelopeError(
        "envelope has neither method nor id with result/error", line=text
    )


def is_response_message(payload: dict[str, Any]) -> bool:
    """Return True when payload is a response (has id and result/error, no method)."""
    if "method" in payload or "id" not in payload:
        return False
    return "result" in payload or "error" in payload


def extract_error(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return JSON-RPC error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def is_approval_request(notification: Notification) -> bool:
    """Return True when a server request asks for an approval decision."""
    return notification.is_request and notification.method in APPROVAL_REQUEST_METHODS


def is_turn_completed(method: str) -> bool:
    """Return True when method name indicates turn completion."""
    return method == TURN_COMPLETED_METHOD
