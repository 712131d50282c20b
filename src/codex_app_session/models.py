from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, Field

from .protocol import RequestId


class InitializeResult(BaseModel):
    """Parsed result for the `initialize` handshake response.

    Attributes:
        user_agent: User agent string reported by the server, if present.
        server_info: Optional server identity/details object.
        capabilities: Optional capability map returned by server.
        raw: Full raw initialize result payload.
    """

    user_agent: str | None = None
    server_info: dict[str, Any] | None = None
    capabilities: dict[str, Any] | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TurnState(str, Enum):
    """Lifecycle of one turn.

    `STARTED -> STREAMING -> COMPLETED` is the normal path; `TIMED_OUT`
    and `DISCONNECTED` are degraded terminals that still carry partial output.
    """

    STARTED = "started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    DISCONNECTED = "disconnected"


class TurnResult(BaseModel):
    """Assembled output of a single turn.

    Attributes:
        thread_id: Thread the turn ran on.
        turn_id: Turn identifier returned by `turn/start`.
        status: Status from the `turn/completed` payload, or `"unknown"`
            when the turn did not complete in time or the stream closed.
        state: Terminal lifecycle state of the turn.
        text: Agent message text, deltas concatenated in arrival order.
        items: `item/completed` item payloads in arrival order.
        errors: Messages from `error` notifications and failed turns.
        raw_events: Raw notifications observed for the turn.
        truncated_events: Raw events dropped by the `max_raw_events` cap.
    """

    thread_id: str
    turn_id: str
    status: str = "unknown"
    state: TurnState = TurnState.STARTED
    text: str = ""
    items: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    raw_events: list[dict[str, Any]] = Field(default_factory=list)
    truncated_events: int = 0

    @property
    def completed(self) -> bool:
        return self.state is TurnState.COMPLETED


ApprovalKind: TypeAlias = Literal["commandExecution", "fileChange"]

#: Decision sent back for an approval request.
#:
#: Values:
#: - ``"accept"``: run the command / apply the change once.
#: - ``"acceptForSession"``: accept and stop asking for similar actions.
#: - ``"decline"``: refuse; the turn continues.
#: - ``"cancel"``: refuse and interrupt the turn.
ApprovalDecision: TypeAlias = Literal["accept", "acceptForSession", "decline", "cancel"]


@dataclass(slots=True)
class ApprovalRequest:
    """Server-initiated approval request for one command or file change."""

    request_id: RequestId
    method: str
    kind: ApprovalKind
    thread_id: str | None = None
    turn_id: str | None = None
    item_id: str | None = None
    reason: str | None = None
    command: str | None = None
    cwd: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


ApprovalCallback: TypeAlias = Callable[
    [ApprovalRequest],
    ApprovalDecision | Awaitable[ApprovalDecision],
]

#: Approval policy for the notification pump: a fixed decision or a callback.
ApprovalPolicy: TypeAlias = Literal["accept", "decline"] | ApprovalCallback
