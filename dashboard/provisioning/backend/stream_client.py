"""Server-sent event stream client used while a session is attached."""
from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Optional
from urllib.parse import quote

import httpx

from ..config import Settings
from ..state import ConnectionState
from .schemas import MalformedEvent, StreamEvent, parse_event
from .sse import SSEFrame, SSEParser

logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], Awaitable[None]]
StateHandler = Callable[[ConnectionState, Optional[str]], Awaitable[None]]
KeepAlive = Callable[[], bool]
Sleep = Callable[[float], Awaitable[None]]


class StreamRejected(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"event stream returned HTTP {status_code}")
        self.status_code = status_code


def compute_backoff(
    attempt: int,
    *,
    initial: float,
    maximum: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential delay for the ``attempt``-th consecutive failure, capped at ``maximum``."""

    exponent = max(attempt - 1, 0)
    delay = initial * (2**exponent) + rand() * jitter
    return min(delay, maximum)


async def _ignore_state(state: ConnectionState, reason: Optional[str]) -> None:
    return None


class EventStreamClient:
    """Maintains the `/provisioning/batch/events` stream for one session.

    Every successful (re)connect is treated as a fresh snapshot: the orchestrator
    replays the session and its devices, and no gap filling is attempted.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(transport=transport)
        self._sleep = sleep
        self._rand = rand
        self._timeout = httpx.Timeout(
            connect=settings.stream_connect_timeout_s,
            read=None,
            write=settings.request_timeout_s,
            pool=settings.stream_connect_timeout_s,
        )

        self._session_id: Optional[str] = None
        self._on_event: Optional[EventHandler] = None
        self._on_state: StateHandler = _ignore_state
        self._keep_alive: KeepAlive = lambda: True
        self._task: Optional[asyncio.Task[None]] = None
        self._state = ConnectionState.DISCONNECTED
        self._failures = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait(self) -> None:
        """Block until the stream stops on its own (session closed or retries exhausted)."""

        task = self._task
        if task is not None:
            await asyncio.shield(task)

    def url_for(self, session_id: str) -> str:
        return f"{self.settings.api_base_url}/provisioning/batch/events?session_id={quote(session_id, safe='')}"

    async def attach(
        self,
        session_id: str,
        on_event: EventHandler,
        on_state: Optional[StateHandler] = None,
        *,
        keep_alive: Optional[KeepAlive] = None,
    ) -> None:
        await self.detach()
        logger.info("Attaching event stream for session %s", session_id)
        self._session_id = session_id
        self._on_event = on_event
        self._on_state = on_state or _ignore_state
        self._keep_alive = keep_alive or (lambda: True)
        self._failures = 0
        self._task = asyncio.create_task(self._run(), name=f"event-stream-{session_id}")

    async def detach(self) -> None:
        task = self._task
        self._task = None
        if task is asyncio.current_task():
            # Called from inside an event handler; _run exits through keep_alive.
            self._keep_alive = lambda: False
            task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._session_id is not None:
            logger.info("Detached event stream for session %s", self._session_id)
        self._session_id = None
        await self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> None:
        """Operator-requested reconnect; resets the failure budget."""

        if self._session_id is None or self._on_event is None:
            raise RuntimeError("Event stream is not attached to a session")
        if self.running:
            self._failures = 0
            return
        self._failures = 0
        logger.info("Manual reconnect requested for session %s", self._session_id)
        self._task = asyncio.create_task(self._run(), name=f"event-stream-{self._session_id}")

    async def aclose(self) -> None:
        await self.detach()
        if self._owns_client:
            await self._client.aclose()

    async def _run(self) -> None:
        await self._set_state(ConnectionState.CONNECTING)
        while True:
            reason = "stream ended"
            try:
                await self._stream_once()
            except asyncio.CancelledError:
                raise
            except StreamRejected as exc:
                reason = str(exc)
            except httpx.HTTPError as exc:
                reason = f"{type(exc).__name__}: {exc}"

            if not self._keep_alive():
                logger.info("Session %s closed; event stream will not reconnect", self._session_id)
                await self._set_state(ConnectionState.DISCONNECTED)
                return

            self._failures += 1
            if self._failures > self.settings.max_reconnect_attempts:
                logger.error(
                    "Event stream for %s gave up after %d attempts: %s",
                    self._session_id,
                    self.settings.max_reconnect_attempts,
                    reason,
                )
                await self._set_state(ConnectionState.ERROR, reason)
                return

            delay = compute_backoff(
                self._failures,
                initial=self.settings.reconnect_initial_delay_s,
                maximum=self.settings.reconnect_max_delay_s,
                jitter=self.settings.reconnect_jitter_s,
                rand=self._rand,
            )
            logger.warning(
                "Event stream dropped (%s); reconnecting in %.2fs (attempt %d/%d)",
                reason,
                delay,
                self._failures,
                self.settings.max_reconnect_attempts,
            )
            await self._set_state(ConnectionState.RECONNECTING, reason)
            await self._sleep(delay)

    async def _stream_once(self) -> None:
        assert self._session_id is not None
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        async with self._client.stream(
            "GET",
            self.url_for(self._session_id),
            headers=headers,
            timeout=self._timeout,
        ) as resp:
            if not resp.is_success:
                raise StreamRejected(resp.status_code)
            self._failures = 0
            await self._set_state(ConnectionState.CONNECTED)
            parser = SSEParser()
            async for line in resp.aiter_lines():
                frame = parser.feed(line)
                if frame is None:
                    continue
                await self._deliver(frame)
                if not self._keep_alive():
                    return

    async def _deliver(self, frame: SSEFrame) -> None:
        try:
            event = parse_event(frame.event, frame.data)
        except MalformedEvent as exc:
            logger.warning("Dropping malformed stream frame (%s): %s", frame.event, exc)
            return
        assert self._on_event is not None
        try:
            await self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            logger.exception("Event handler failed for %s", event.type.value)

    async def _set_state(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        if state is self._state and reason is None:
            return
        self._state = state
        try:
            await self._on_state(state, reason)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            logger.exception("Connection state handler failed for %s", state.value)


__all__ = ["EventStreamClient", "StreamRejected", "compute_backoff"]
