from __future__ import annotations

import asyncio
import itertools
from typing import Awaitable, Callable, Optional

from clawlink.gateway.frames import JsonObject, RequestFrame, ResponseFrame, encode_request
from clawlink.util.log import clip, debug, log


# Process-wide so ids stay unique across reconnects.
_SEQ = itertools.count(1)


class GatewayRequestError(RuntimeError):
    def __init__(self, message: str, *, request_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class RequestTimeout(GatewayRequestError):
    pass


class ConnectionLost(GatewayRequestError):
    pass


class NotConnected(GatewayRequestError):
    pass


Sender = Callable[[str], Awaitable[None]]


class RequestCorrelator:
    """
    Request/response correlation over one ordered duplex channel.

    Each outbound `req` frame gets an id of the form `<method>-<n>` and one pending
    future. The future is popped from the table before it is resolved, so every id
    resolves exactly once: by its response, by its timeout, or by `fail_all()`.
    """

    def __init__(self, *, default_timeout: float) -> None:
        self._default_timeout = default_timeout
        self._pending: dict[str, asyncio.Future[ResponseFrame]] = {}
        self._sender: Optional[Sender] = None

    def attach(self, sender: Optional[Sender]) -> None:
        self._sender = sender

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def next_id(self, method: str) -> str:
        rid = f"{method}-{next(_SEQ)}"
        while rid in self._pending:
            rid = f"{method}-{next(_SEQ)}"
        return rid

    async def request(
        self,
        method: str,
        params: Optional[JsonObject] = None,
        *,
        timeout: Optional[float] = None,
    ) -> ResponseFrame:
        rid = self.next_id(method)
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[ResponseFrame] = loop.create_future()
        self._pending[rid] = fut

        sender = self._sender
        if sender is None:
            self._pending.pop(rid, None)
            raise NotConnected(f"{method}: not connected", request_id=rid)

        data = encode_request(RequestFrame(id=rid, method=method, params=params))
        debug(f"-> {method} id={rid} {clip(data, 300)}")
        try:
            await sender(data)
        except GatewayRequestError:
            self._forget(rid, fut)
            raise
        except Exception as exc:
            self._forget(rid, fut)
            raise NotConnected(f"{method}: send failed: {exc}", request_id=rid) from exc

        wait = self._default_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(fut, timeout=wait)
        except asyncio.TimeoutError:
            raise RequestTimeout(
                f"{method}: no response within {wait:g}s", request_id=rid
            ) from None
        finally:
            # No-op when the response or fail_all() already consumed the entry.
            self._pending.pop(rid, None)

    def _forget(self, rid: str, fut: asyncio.Future[ResponseFrame]) -> None:
        self._pending.pop(rid, None)
        if fut.done() and not fut.cancelled():
            # fail_all() may have raced the failed send; mark its exception as seen.
            fut.exception()
        else:
            fut.cancel()

    def resolve(self, frame: ResponseFrame) -> bool:
        fut = self._pending.pop(frame.id, None)
        if fut is None or fut.done():
            debug(f"No pending request for id={frame.id}; dropped")
            return False
        fut.set_result(frame)
        return True

    def fail_all(self, reason: str) -> int:
        pending = list(self._pending.items())
        self._pending.clear()
        failed = 0
        for rid, fut in pending:
            if not fut.done():
                fut.set_exception(ConnectionLost(reason, request_id=rid))
                failed += 1
        if failed:
            log(f"Failed {failed} pending request(s): {reason}")
        return failed
