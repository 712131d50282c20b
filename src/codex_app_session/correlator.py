from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TypeAlias

from .errors import (
    CodexMalformedEnvelopeError,
    CodexRemoteClosedError,
    CodexTimeoutError,
    CodexTransportError,
)
from .protocol import Envelope, Notification, RequestId, Response, decode_line
from .transport import Transport


@dataclass(slots=True, frozen=True)
class _Idle:
    pass


@dataclass(slots=True, frozen=True)
class _ReadInFlight:
    handle: asyncio.Task[str]


_ReadSlot: TypeAlias = _Idle | _ReadInFlight

_IDLE = _Idle()


class ReadCoalescer:
    """Share one in-flight `Transport.read_line()` among many waiters.

    At most one read is outstanding at any time. Waiters join the in-flight
    read with their own deadline; a waiter that times out leaves the read
    running for the next caller, so no line is lost. The first waiter to see
    a finished read consumes its line; everyone else gets `None`.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._slot: _ReadSlot = _IDLE
        self._lock = asyncio.Lock()
        self._failure: CodexRemoteClosedError | None = None
        self.reads_started = 0

    @property
    def in_flight(self) -> bool:
        return isinstance(self._slot, _ReadInFlight)

    @property
    def failure(self) -> CodexRemoteClosedError | None:
        return self._failure

    async def acquire_or_join(self) -> asyncio.Task[str]:
        """Return the in-flight read, starting one when the slot is idle."""
        self._raise_if_failed()
        async with self._lock:
            if isinstance(self._slot, _ReadInFlight):
                return self._slot.handle
            handle = asyncio.create_task(self._transport.read_line())
            handle.add_done_callback(self._on_read_done)
            self.reads_started += 1
            self._slot = _ReadInFlight(handle)
            return handle

    def complete(self, handle: asyncio.Task[str]) -> str | None:
        """Consume the line of a finished read.

        Returns None when the read is still running or another waiter
        already consumed it.
        """
        if not handle.done():
            return None
        slot = self._slot
        owned = isinstance(slot, _ReadInFlight) and slot.handle is handle
        error = None if handle.cancelled() else handle.exception()
        if isinstance(error, CodexMalformedEnvelopeError):
            # Only the consuming waiter sees a malformed line; the stream stays open.
            if not owned:
                return None
            self._slot = _IDLE
            raise error
        if handle.cancelled() or handle.exception() is not None:
            # The done callback may not have run yet.
            self._on_read_done(handle)
            self._clear(handle)
            self._raise_if_failed()
            raise CodexRemoteClosedError("read failed")
        if owned:
            self._slot = _IDLE
            return handle.result()
        return None

    async def read_line(self, timeout: float | None = None) -> str | None:
        """Read one line, waiting at most `timeout` seconds.

        Returns None on timeout, or when a concurrent waiter consumed the
        line this call was waiting on.
        """
        handle = await self.acquire_or_join()
        if not handle.done():
            # asyncio.wait leaves the shared read running on timeout.
            await asyncio.wait({handle}, timeout=timeout)
        return self.complete(handle)

    def close(self, reason: str = "session is closed") -> None:
        """Fail all current and future readers and cancel the in-flight read."""
        if self._failure is None:
            self._failure = CodexRemoteClosedError(reason)
        slot = self._slot
        self._slot = _IDLE
        if isinstance(slot, _ReadInFlight) and not slot.handle.done():
            slot.handle.cancel()

    def _on_read_done(self, handle: asyncio.Task[str]) -> None:
        if handle.cancelled():
            if self._failure is None:
                self._failure = CodexRemoteClosedError("read cancelled")
            return
        exc = handle.exception()
        if exc is None or self._failure is not None:
            return
        if isinstance(exc, CodexMalformedEnvelopeError):
            return
        if isinstance(exc, CodexRemoteClosedError):
            self._failure = exc
        elif isinstance(exc, CodexTransportError):
            failure = CodexRemoteClosedError(str(exc))
            failure.__cause__ = exc
            self._failure = failure
        else:
            failure = CodexRemoteClosedError(
                f"read failed: {exc.__class__.__name__}: {exc}"
            )
            failure.__cause__ = exc
            self._failure = failure

    def _clear(self, handle: asyncio.Task[str]) -> None:
        slot = self._slot
        if isinstance(slot, _ReadInFlight) and slot.handle is handle:
            self._slot = _IDLE

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise self._failure


class Correlator:
    """Route inbound envelopes to request waiters and the notification backlog.

    Responses for ids still awaited are retained until their waiter picks
    them up; responses for unknown or abandoned ids are dropped. Notifications
    read while waiting for a response are queued, never dropped.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._reader = ReadCoalescer(transport)
        self._outstanding: set[RequestId] = set()
        self._responses: dict[RequestId, Response] = {}
        self._backlog: deque[Notification] = deque()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def reader(self) -> ReadCoalescer:
        return self._reader

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    @property
    def outstanding(self) -> frozenset[RequestId]:
        return frozenset(self._outstanding)

    def track(self, request_id: RequestId) -> None:
        """Register an id whose response must be retained when read early."""
        self._outstanding.add(request_id)

    def forget(self, request_id: RequestId) -> None:
        """Stop awaiting an id; a later response for it is dropped."""
        self._outstanding.discard(request_id)
        self._responses.pop(request_id, None)

    async def wait_for_response(
        self,
        request_id: RequestId,
        timeout: float | None = None,
    ) -> Response:
        """Read until the response for `request_id` arrives."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        try:
            while True:
                retained = self._responses.pop(request_id, None)
                if retained is not None:
                    return retained

                remaining: float | None = None
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise CodexTimeoutError(
                            f"no response for request id={request_id} "
                            f"within {timeout:.1f}s"
                        )

                envelope = await self._read_envelope(remaining)
                if envelope is None:
                    continue
                if isinstance(envelope, Response):
                    if envelope.id == request_id:
                        return envelope
                    self._retain(envelope)
                else:
                    self._backlog.append(envelope)
        finally:
            self.forget(request_id)

    async def next_notification(self, timeout: float | None = None) -> Notification | None:
        """Return the next notification, backlog first; None on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if self._backlog:
                return self._backlog.popleft()

            remaining: float | None = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None

            envelope = await self._read_envelope(remaining)
            if envelope is None:
                continue
            if isinstance(envelope, Response):
                self._retain(envelope)
                continue
            return envelope

    def close(self, reason: str = "session is closed") -> None:
        self._reader.close(reason)
        self._outstanding.clear()
        self._responses.clear()

    async def _read_envelope(self, timeout: float | None) -> Envelope | None:
        line = await self._reader.read_line(timeout)
        if line is None:
            return None
        self._logger.debug("recv %s", line)
        return decode_line(line)

    def _retain(self, response: Response) -> None:
        if response.id in self._outstanding:
            self._responses[response.id] = response
            return
        self._logger.warning("dropping response for unknown request id=%r", response.id)
