from __future__ import annotations

import asyncio
from typing import Callable, Optional, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from clawlink.util.log import debug, log


class TransportListener(Protocol):
    async def on_open(self) -> None: ...

    async def on_message(self, text: str) -> None: ...

    async def on_closed(self, code: int, reason: str) -> None: ...

    async def on_failure(self, exc: BaseException) -> None: ...


class Transport(Protocol):
    """
    Ordered text-frame channel. `start()` returns once the connect attempt is under
    way; the outcome arrives through the listener.
    """

    async def start(self, url: str, *, headers: dict[str, str]) -> None: ...

    async def send(self, text: str) -> None: ...

    async def close(self, reason: str = "") -> None: ...


TransportFactory = Callable[[TransportListener], Transport]


class WebSocketTransport:
    def __init__(
        self,
        listener: TransportListener,
        *,
        ping_interval: float = 30.0,
        ping_timeout: float = 10.0,
    ) -> None:
        self._listener = listener
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._ws: Optional[ClientConnection] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._closing = False

    async def start(self, url: str, *, headers: dict[str, str]) -> None:
        if self._task is not None:
            raise RuntimeError("transport already started")
        self._task = asyncio.create_task(self._run(url, headers))

    async def _run(self, url: str, headers: dict[str, str]) -> None:
        try:
            async with connect(
                url,
                additional_headers=headers,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                max_size=None,
            ) as ws:
                self._ws = ws
                debug(f"WebSocket connected to {url}")
                await self._listener.on_open()
                try:
                    async for msg in ws:
                        text = msg.decode("utf-8", "replace") if isinstance(msg, bytes) else msg
                        await self._listener.on_message(text)
                except ConnectionClosed:
                    pass
                code = ws.close_code if ws.close_code is not None else 1006
                reason = ws.close_reason or ""
            self._ws = None
            debug(f"WebSocket closed: {code} - {reason}")
            await self._listener.on_closed(code, reason)
        except asyncio.CancelledError:
            self._ws = None
            if self._closing:
                await self._listener.on_closed(1000, "closed")
                return
            raise
        except Exception as exc:
            self._ws = None
            log(f"WebSocket failed: {type(exc).__name__}: {exc}")
            await self._listener.on_failure(exc)

    async def send(self, text: str) -> None:
        ws = self._ws
        if ws is None:
            raise ConnectionError("websocket is not open")
        await ws.send(text)

    async def close(self, reason: str = "") -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close(1000, reason)
            except Exception as exc:
                debug(f"WebSocket close error: {exc}")
            return
        # Still connecting: abandon the attempt.
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
