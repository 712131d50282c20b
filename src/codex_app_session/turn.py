from __future__ import annotations

from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import CodexRemoteClosedError
from .models import TurnResult, TurnState
from .protocol import (
    ERROR_METHOD,
    ITEM_AGENT_MESSAGE_DELTA_METHOD,
    ITEM_COMPLETED_METHOD,
    Notification,
    is_turn_completed,
)
from .pump import NotificationPump
from .session import CodexSession

DeltaCallback = Callable[[str], None]


@dataclass(slots=True)
class _TurnAccumulator:
    thread_id: str
    turn_id: str
    max_raw_events: int | None = None
    state: TurnState = TurnState.STARTED
    deltas: list[str] = field(default_factory=list)
    items: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    raw_events: deque[dict[str, Any]] = field(init=False, default_factory=deque)
    truncated_events: int = 0
    observed: int = 0
    completed_turn: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.raw_events = deque(maxlen=self.max_raw_events)

    def apply(self, notification: Notification, on_delta: DeltaCallback | None) -> None:
        self.observed += 1
        if self.state is TurnState.STARTED:
            self.state = TurnState.STREAMING

        if self.max_raw_events is not None and len(self.raw_events) == self.max_raw_events:
            self.truncated_events += 1
        self.raw_events.append(notification.raw or _raw_from(notification))

        params = notification.params_dict
        if not self.owns(params):
            return
        method = notification.method
        if method == ITEM_AGENT_MESSAGE_DELTA_METHOD:
            delta = params.get("delta")
            if isinstance(delta, str):
                self.deltas.append(delta)
                if on_delta is not None:
                    on_delta(delta)
        elif method == ITEM_COMPLETED_METHOD:
            item = params.get("item")
            if isinstance(item, Mapping):
                self.items.append(dict(item))
        elif method == ERROR_METHOD:
            self.errors.append(_error_message(params))
        elif self.is_terminal(notification):
            turn = params.get("turn")
            self.completed_turn = dict(turn) if isinstance(turn, Mapping) else {}
            self.state = TurnState.COMPLETED
            error = self.completed_turn.get("error")
            if isinstance(error, Mapping):
                self.errors.append(_error_message({"error": error}))

    def owns(self, params: Mapping[str, Any]) -> bool:
        """True unless the event names a different turn."""
        event_turn_id = _event_turn_id(params)
        return event_turn_id is None or event_turn_id == self.turn_id

    def is_terminal(self, notification: Notification) -> bool:
        """True for `turn/completed` of this turn (or of an unnamed turn)."""
        if not is_turn_completed(notification.method):
            return False
        return self.owns(notification.params_dict)

    def result(self) -> TurnResult:
        status = "unknown"
        if self.completed_turn is not None:
            completed_status = self.completed_turn.get("status")
            status = completed_status if isinstance(completed_status, str) else "completed"

        text = "".join(self.deltas)
        if not text:
            text = _last_agent_message_text(self.items) or ""

        return TurnResult(
            thread_id=self.thread_id,
            turn_id=self.turn_id,
            status=status,
            state=self.state,
            text=text,
            items=list(self.items),
            errors=list(self.errors),
            raw_events=list(self.raw_events),
            truncated_events=self.truncated_events,
        )


class TurnRunner:
    """Run turns on a session: `turn/start`, then drain until `turn/completed`.

    A turn that times out or loses its stream still returns a `TurnResult`
    with status `"unknown"` and whatever text and items arrived.
    """

    def __init__(
        self,
        session: CodexSession,
        pump: NotificationPump | None = None,
        *,
        turn_timeout: float | None = 180.0,
        max_raw_events: int | None = None,
    ) -> None:
        """Create a turn runner.

        Args:
            session: Session used for `turn/start`.
            pump: Notification pump; defaults to one that auto-accepts
                approval requests.
            turn_timeout: Default overall deadline for one turn in seconds.
                None waits for `turn/completed` indefinitely.
            max_raw_events: Optional cap on retained raw events per turn;
                the oldest are dropped first.
        """
        if max_raw_events is not None and max_raw_events <= 0:
            raise ValueError("max_raw_events must be positive")
        self._session = session
        self._pump = pump if pump is not None else NotificationPump(session)
        self._turn_timeout = turn_timeout
        self._max_raw_events = max_raw_events

    @property
    def pump(self) -> NotificationPump:
        return self._pump

    async def run_turn(
        self,
        thread_id: str,
        text: str,
        *,
        timeout: float | None = None,
        params: Mapping[str, Any] | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> TurnResult:
        """Start a turn with `text` and wait for its terminal event.

        `on_delta` receives each agent message fragment as it arrives.
        """
        turn_id = await self._session.start_turn(thread_id, text, params)
        accumulator = _TurnAccumulator(
            thread_id=thread_id,
            turn_id=turn_id,
            max_raw_events=self._max_raw_events,
        )

        def _on_notification(notification: Notification) -> None:
            accumulator.apply(notification, on_delta)

        wait = timeout if timeout is not None else self._turn_timeout
        try:
            await self._pump.drain(
                wait,
                accumulator.is_terminal,
                on_notification=_on_notification,
            )
        except CodexRemoteClosedError as exc:
            for notification in exc.partial_events[accumulator.observed:]:
                accumulator.apply(notification, on_delta)
            if accumulator.state is not TurnState.COMPLETED:
                accumulator.state = TurnState.DISCONNECTED
            return accumulator.result()

        if accumulator.state is not TurnState.COMPLETED:
            accumulator.state = TurnState.TIMED_OUT
        return accumulator.result()


def _raw_from(notification: Notification) -> dict[str, Any]:
    raw: dict[str, Any] = {"method": notification.method}
    if notification.params is not None:
        raw["params"] = notification.params
    if notification.id is not None:
        raw["id"] = notification.id
    return raw


def _event_turn_id(params: Mapping[str, Any]) -> str | None:
    turn = params.get("turn")
    if isinstance(turn, Mapping):
        turn_id = turn.get("id")
        if isinstance(turn_id, str):
            return turn_id
    turn_id = params.get("turnId")
    if isinstance(turn_id, str):
        return turn_id
    return None


def _error_message(params: Mapping[str, Any]) -> str:
    error = params.get("error")
    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str):
            return message
    message = params.get("message")
    if isinstance(message, str):
        return message
    return "unknown error"


def _last_agent_message_text(items: list[dict[str, Any]]) -> str | None:
    text: str | None = None
    for item in items:
        if item.get("type") != "agentMessage":
            continue
        value = item.get("text")
        if isinstance(value, str):
            text = value
    return text
