from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from clawlink.util.log import log


class EventName(str, enum.Enum):
    CONNECT_CHALLENGE = "connect.challenge"
    CHAT = "chat"
    AGENT = "agent"
    HEARTBEAT = "heartbeat"
    TICK = "tick"
    PRESENCE = "presence"

    @classmethod
    def parse(cls, name: str) -> Optional["EventName"]:
        try:
            return cls(name)
        except ValueError:
            return None


class Method:
    CONNECT = "connect"
    CHAT_SEND = "chat.send"
    CHAT_HISTORY = "chat.history"
    SESSION_LIST = "session.list"
    SESSION_RESET = "session.reset"


# ── Connection states ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class Connecting:
    pass


@dataclass(frozen=True)
class Authenticating:
    pass


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class PairingRequired:
    message: str


@dataclass(frozen=True)
class Error:
    message: str


ConnectionState = Disconnected | Connecting | Authenticating | Connected | PairingRequired | Error

NEGATIVE_STATES: tuple[type, ...] = (Disconnected, Error, PairingRequired)


# ── Chat data ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChatMessage:
    id: str
    role: str  # user|assistant
    content: str
    timestamp: int  # ms


@dataclass(frozen=True)
class SessionInfo:
    key: str
    display_name: Optional[str] = None
    label: Optional[str] = None
    derived_title: Optional[str] = None
    updated_at: Optional[int] = None
    kind: Optional[str] = None

    @property
    def title(self) -> str:
        return self.display_name or self.label or self.derived_title or self.key


@dataclass(frozen=True)
class ImageAttachment:
    mime_type: str
    file_name: str
    content: str  # base64

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "image",
            "mimeType": self.mime_type,
            "fileName": self.file_name,
            "content": self.content,
        }


# ── Observer events ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StateChanged:
    state: ConnectionState


@dataclass(frozen=True)
class ConnectionUpdate:
    connected: bool
    session_key: Optional[str] = None


@dataclass(frozen=True)
class ChatMessageAdded:
    message: ChatMessage


@dataclass(frozen=True)
class ChatHistory:
    session_key: str
    messages: tuple[ChatMessage, ...]


@dataclass(frozen=True)
class AgentThinking:
    message_id: str
    run_id: Optional[str] = None


@dataclass(frozen=True)
class ChatStream:
    message_id: str
    chunk: str


@dataclass(frozen=True)
class ChatStreamEnd:
    message_id: str
    state: str  # final|aborted|error
    message: Optional[ChatMessage] = None


@dataclass(frozen=True)
class SessionListUpdate:
    sessions: tuple[SessionInfo, ...]
    current_session_key: Optional[str]


@dataclass(frozen=True)
class UnreadSessionsChanged:
    session_keys: frozenset[str]


@dataclass(frozen=True)
class GatewayEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    seq: Optional[int] = None


ClientEvent = (
    StateChanged
    | ConnectionUpdate
    | ChatMessageAdded
    | ChatHistory
    | AgentThinking
    | ChatStream
    | ChatStreamEnd
    | SessionListUpdate
    | UnreadSessionsChanged
    | GatewayEvent
)


Callback = Callable[[Any], None]


class Observers:
    """
    Fan-out registry for client events.

    Callbacks are synchronous and run on the inbound path, so they must not block.
    Consumers that need to await should use `stream()`, which hands each consumer
    its own queue.
    """

    def __init__(self) -> None:
        self._subs: list[tuple[Optional[type], Callback]] = []
        self._queues: list[asyncio.Queue[Optional[Any]]] = []

    def subscribe(self, callback: Callback, kind: Optional[type] = None) -> Callable[[], None]:
        entry = (kind, callback)
        self._subs.append(entry)

        def unsubscribe() -> None:
            try:
                self._subs.remove(entry)
            except ValueError:
                pass

        return unsubscribe

    async def stream(self) -> AsyncIterator[Any]:
        q: asyncio.Queue[Optional[Any]] = asyncio.Queue()
        self._queues.append(q)
        try:
            while True:
                ev = await q.get()
                if ev is None:
                    return
                yield ev
        finally:
            try:
                self._queues.remove(q)
            except ValueError:
                pass

    def publish(self, event: ClientEvent) -> None:
        for kind, cb in list(self._subs):
            if kind is not None and not isinstance(event, kind):
                continue
            try:
                cb(event)
            except Exception as exc:
                log(f"Observer {getattr(cb, '__name__', cb)!r} failed on {type(event).__name__}: {exc}")
        for q in list(self._queues):
            q.put_nowait(event)

    def close(self) -> None:
        self._subs.clear()
        for q in list(self._queues):
            q.put_nowait(None)
