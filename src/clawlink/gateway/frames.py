from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional


JsonObject = dict[str, Any]


class FrameError(ValueError):
    pass


@dataclass(frozen=True)
class RequestFrame:
    id: str
    method: str
    params: Optional[JsonObject] = None


@dataclass(frozen=True)
class ResponseFrame:
    id: str
    ok: bool
    payload: Optional[JsonObject] = None
    error: Optional[JsonObject] = None

    @property
    def error_code(self) -> str:
        code = (self.error or {}).get("code")
        return code if isinstance(code, str) else ""

    @property
    def error_message(self) -> str:
        msg = (self.error or {}).get("message")
        return msg if isinstance(msg, str) else ""


@dataclass(frozen=True)
class EventFrame:
    name: str
    payload: JsonObject = field(default_factory=dict)
    seq: Optional[int] = None


Frame = RequestFrame | ResponseFrame | EventFrame


def _opt_obj(value: Any, *, where: str) -> Optional[JsonObject]:
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    raise FrameError(f"Expected object at {where}, got {type(value).__name__}")


def parse_frame(text: str) -> Frame:
    """
    Parse one gateway text frame.

    Every frame is a JSON object with a `type` of req|res|event. Anything else
    raises FrameError; the caller decides whether to log and drop it.
    """
    try:
        obj = json.loads(text)
    except ValueError as exc:
        raise FrameError(f"Invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise FrameError(f"Expected JSON object, got {type(obj).__name__}")

    t = obj.get("type")

    if t == "res":
        rid = obj.get("id")
        if not isinstance(rid, str) or not rid:
            raise FrameError("res frame without string id")
        ok = obj.get("ok")
        return ResponseFrame(
            id=rid,
            ok=ok is True,
            payload=_opt_obj(obj.get("payload"), where="res.payload"),
            error=_opt_obj(obj.get("error"), where="res.error"),
        )

    if t == "event":
        name = obj.get("event")
        if not isinstance(name, str) or not name:
            raise FrameError("event frame without event name")
        seq = obj.get("seq")
        return EventFrame(
            name=name,
            payload=_opt_obj(obj.get("payload"), where="event.payload") or {},
            seq=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
        )

    if t == "req":
        rid = obj.get("id")
        method = obj.get("method")
        if not isinstance(rid, str) or not rid:
            raise FrameError("req frame without string id")
        if not isinstance(method, str) or not method:
            raise FrameError("req frame without method")
        return RequestFrame(
            id=rid,
            method=method,
            params=_opt_obj(obj.get("params"), where="req.params"),
        )

    raise FrameError(f"Unknown frame type: {t!r}")


def encode_request(frame: RequestFrame) -> str:
    obj: JsonObject = {"type": "req", "id": frame.id, "method": frame.method}
    if frame.params is not None:
        obj["params"] = frame.params
    return json.dumps(obj, separators=(",", ":"))
