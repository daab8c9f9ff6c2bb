from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from enum import Enum
from typing import Any, Protocol

from dexcopy.config import AppConfig, build_subscription_request
from dexcopy.errors import ConnectionFault, StreamEnd
from dexcopy.schemas import StreamType

RawMessage = Mapping[str, Any]


class Subscription(Protocol):
    async def wait_ready(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[RawMessage]: ...

    def cancel(self) -> None: ...


class StreamTransport(Protocol):
    def open(self, stream_type: StreamType, request: dict[str, Any]) -> Subscription: ...

    async def close(self) -> None: ...


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    FAULTED = "faulted"


class StreamSession:
    """One filtered subscription to the upstream event source.

    ``start()`` opens the call and waits for the server's first response.
    ``messages()`` then yields raw messages until the server closes the stream
    (``StreamEnd``) or the transport breaks (``ConnectionFault``). After
    ``stop()`` both are swallowed: teardown is expected, not a failure.
    """

    def __init__(self, transport: StreamTransport) -> None:
        self._transport = transport
        self._state = SessionState.IDLE
        self._subscription: Subscription | None = None
        self._stopping = False
        self._consumed = False
        self._log = logging.getLogger(self.__class__.__name__)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stopping

    async def start(self, cfg: AppConfig) -> None:
        if self._state in {SessionState.CONNECTING, SessionState.STREAMING}:
            raise RuntimeError(f"session already {self._state.value}")
        self._stopping = False
        self._consumed = False
        self._state = SessionState.CONNECTING
        request = build_subscription_request(cfg.filters)
        self._log.info(
            "stream_connecting server=%s stream_type=%s filters=%s",
            cfg.server.address,
            cfg.stream.type.value,
            sorted(request.keys()),
        )
        try:
            self._subscription = self._transport.open(cfg.stream.type, request)
            await self._subscription.wait_ready()
        except ConnectionFault:
            if self._stopping:
                self._state = SessionState.IDLE
                return
            self._state = SessionState.FAULTED
            raise
        except asyncio.CancelledError:
            self._cancel_subscription()
            self._state = SessionState.IDLE
            raise
        if self._stopping:
            self._state = SessionState.IDLE
            return
        self._state = SessionState.STREAMING
        self._log.info("stream_connected stream_type=%s", cfg.stream.type.value)

    async def messages(self) -> AsyncIterator[RawMessage]:
        if self._stopping:
            return
        if self._state != SessionState.STREAMING or self._subscription is None:
            raise RuntimeError(f"cannot read messages in state {self._state.value}")
        if self._consumed:
            raise RuntimeError("message sequence already consumed; start a new session")
        self._consumed = True
        try:
            async for raw in self._subscription:
                if self._stopping:
                    break
                yield raw
        except ConnectionFault:
            if self._stopping:
                self._state = SessionState.IDLE
                return
            self._state = SessionState.FAULTED
            raise
        except asyncio.CancelledError:
            if self._stopping:
                self._state = SessionState.IDLE
                return
            raise
        self._state = SessionState.IDLE
        if self._stopping:
            return
        raise StreamEnd("server closed the stream")

    def stop(self) -> None:
        if self._stopping and self._state == SessionState.IDLE:
            return
        self._stopping = True
        self._cancel_subscription()
        if self._state != SessionState.IDLE:
            self._log.info("stream_stopped previous_state=%s", self._state.value)
        self._state = SessionState.IDLE

    def _cancel_subscription(self) -> None:
        if self._subscription is None:
            return
        try:
            self._subscription.cancel()
        except Exception as exc:
            self._log.warning("stream_cancel_error error=%s", exc)
