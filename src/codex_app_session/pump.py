from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from .errors import CodexMalformedEnvelopeError, CodexRemoteClosedError
from .models import ApprovalDecision, ApprovalPolicy, ApprovalRequest
from .protocol import (
    ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
    METHOD_NOT_FOUND_CODE,
    Notification,
    is_approval_request,
)
from .session import CodexSession

# Upper bound for a single blocking read inside `drain()`.
DEFAULT_READ_SLICE = 0.5

_DECISIONS = frozenset({"accept", "acceptForSession", "decline", "cancel"})

# v1 approval methods answer with ReviewDecision values.
_LEGACY_DECISIONS: dict[str, str] = {
    "accept": "approved",
    "acceptForSession": "approved_for_session",
    "decline": "denied",
    "cancel": "abort",
}
_LEGACY_APPROVAL_METHODS = frozenset({"execCommandApproval", "applyPatchApproval"})

NotificationCallback = Callable[[Notification], None]
StopCondition = Callable[[Notification], bool]


class NotificationPump:
    """Drain session notifications, answering approval requests on the way.

    Every observed notification is returned in arrival order. Server
    requests are answered before the next read: approval requests according
    to `approval_policy`, anything else with a method-not-found error.
    """

    def __init__(
        self,
        session: CodexSession,
        *,
        approval_policy: ApprovalPolicy = "accept",
        read_slice: float = DEFAULT_READ_SLICE,
        logger: logging.Logger | None = None,
    ) -> None:
        """Create a pump bound to one session.

        Args:
            session: Session to read notifications from.
            approval_policy: `"accept"`, `"decline"`, or a sync/async callable
                returning an approval decision per request.
            read_slice: Longest single read in seconds; the overall drain
                deadline is checked between slices.
            logger: Logger for approvals and skipped lines.
        """
        if read_slice <= 0:
            raise ValueError("read_slice must be positive")
        if isinstance(approval_policy, str) and approval_policy not in ("accept", "decline"):
            raise ValueError(f"unsupported approval policy: {approval_policy!r}")
        self._session = session
        self._approval_policy = approval_policy
        self._read_slice = read_slice
        self._logger = logger or logging.getLogger(__name__)
        self.malformed_lines = 0

    @property
    def session(self) -> CodexSession:
        return self._session

    async def drain(
        self,
        timeout: float | None,
        stop: StopCondition | None = None,
        *,
        on_notification: NotificationCallback | None = None,
    ) -> list[Notification]:
        """Collect notifications until `stop` matches one or `timeout` elapses.

        A `timeout` of None drains until `stop` matches. Malformed lines are
        logged and skipped. When the remote stream closes, the raised
        `CodexRemoteClosedError` carries the notifications collected so far
        in `partial_events`.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        events: list[Notification] = []

        while True:
            slice_timeout = self._read_slice
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return events
                slice_timeout = min(remaining, self._read_slice)

            try:
                notification = await self._session.next_notification(slice_timeout)
                if notification is None:
                    continue
                events.append(notification)
                if notification.is_request:
                    await self._answer_server_request(notification, deadline)
            except CodexMalformedEnvelopeError as exc:
                self.malformed_lines += 1
                self._logger.warning("skipping malformed line: %s", exc)
                continue
            except CodexRemoteClosedError as exc:
                raise CodexRemoteClosedError(str(exc), partial_events=events) from exc

            if on_notification is not None:
                on_notification(notification)
            if stop is not None and stop(notification):
                return events

    async def _answer_server_request(
        self,
        notification: Notification,
        deadline: float | None = None,
    ) -> None:
        request_id = notification.id
        if request_id is None:
            return
        if not is_approval_request(notification):
            self._logger.debug("rejecting unsupported server request %s", notification.method)
            await self._session.respond_error(
                request_id,
                METHOD_NOT_FOUND_CODE,
                f"client does not implement {notification.method}",
            )
            return

        request = parse_approval_request(notification)
        decision = await self._decide(request, deadline)
        self._logger.info(
            "approval %s id=%r -> %s", notification.method, request_id, decision
        )
        await self._session.respond(request_id, encode_approval_result(request, decision))

    async def _decide(
        self,
        request: ApprovalRequest,
        deadline: float | None = None,
    ) -> ApprovalDecision:
        """Apply the approval policy.

        An async callback is bounded by the drain deadline and declines when
        it runs past it; a sync callback runs to completion.
        """
        policy = self._approval_policy
        if policy == "accept" or policy == "decline":
            return policy
        try:
            decision = policy(request)
            if inspect.isawaitable(decision):
                remaining = None
                if deadline is not None:
                    remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
                decision = await asyncio.wait_for(decision, timeout=remaining)
        except asyncio.TimeoutError:
            self._logger.warning(
                "approval callback for id=%r missed the drain deadline, declining",
                request.request_id,
            )
            return "decline"
        except Exception:
            self._logger.warning(
                "approval callback failed for id=%r, declining", request.request_id, exc_info=True
            )
            return "decline"
        if decision not in _DECISIONS:
            self._logger.warning("approval callback returned %r, declining", decision)
            return "decline"
        return decision


def parse_approval_request(notification: Notification) -> ApprovalRequest:
    """Build an `ApprovalRequest` view of an approval notification."""
    if notification.id is None:
        raise ValueError("approval request must carry an id")
    params = notification.params_dict
    file_change = notification.method in (
        ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
        "applyPatchApproval",
    )
    command = params.get("command")
    if isinstance(command, list):
        command = " ".join(str(part) for part in command)
    return ApprovalRequest(
        request_id=notification.id,
        method=notification.method,
        kind="fileChange" if file_change else "commandExecution",
        thread_id=_optional_string(params.get("threadId") or params.get("conversationId")),
        turn_id=_optional_string(params.get("turnId")),
        item_id=_optional_string(params.get("itemId") or params.get("callId")),
        reason=_optional_string(params.get("reason")),
        command=_optional_string(command),
        cwd=_optional_string(params.get("cwd")),
        params=params,
    )


def encode_approval_result(request: ApprovalRequest, decision: ApprovalDecision) -> dict[str, Any]:
    """Encode the response `result` for an approval decision."""
    if request.method in _LEGACY_APPROVAL_METHODS:
        return {"decision": _LEGACY_DECISIONS[decision]}
    return {"decision": decision}


def _optional_string(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    return None


def is_method(method: str) -> StopCondition:
    """Return a stop condition matching notifications by method name."""

    def _matches(notification: Notification) -> bool:
        return notification.method == method

    return _matches
