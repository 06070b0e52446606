from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Optional

from clawlink.constants import FALLBACK_SESSION_KEY
from clawlink.gateway.events import (
    ChatHistory,
    ChatMessage,
    ChatMessageAdded,
    Method,
    Observers,
    SessionInfo,
    SessionListUpdate,
    UnreadSessionsChanged,
)
from clawlink.gateway.rpc import RequestCorrelator
from clawlink.util.log import debug, log


def flatten_content(content: Any) -> Optional[str]:
    """
    Message content is either a plain string or a list of `{type, text}` blocks.
    Only text blocks contribute. Returns None for shapes we don't understand.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return None


def _opt_str(v: Any) -> Optional[str]:
    return v if isinstance(v, str) else None


def _opt_int(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    return None


def parse_session_rows(payload: Optional[dict[str, Any]]) -> list[SessionInfo]:
    rows = (payload or {}).get("sessions")
    if not isinstance(rows, list):
        return []
    out: list[SessionInfo] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        key = row.get("key")
        if not isinstance(key, str) or not key:
            continue
        out.append(
            SessionInfo(
                key=key,
                display_name=_opt_str(row.get("displayName")),
                label=_opt_str(row.get("label")),
                derived_title=_opt_str(row.get("derivedTitle")),
                updated_at=_opt_int(row.get("updatedAt")),
                kind=_opt_str(row.get("kind")),
            )
        )
    return out


def parse_history_messages(payload: Optional[dict[str, Any]], *, now_ms: int) -> list[ChatMessage]:
    rows = (payload or {}).get("messages")
    if not isinstance(rows, list):
        return []
    out: list[ChatMessage] = []
    for row in rows:
        if not isinstance(row, dict):
            debug("Skipping unparseable history message")
            continue
        role = row.get("role")
        if role not in ("user", "assistant"):
            continue
        content = flatten_content(row.get("content"))
        if not content:
            continue
        ts = _opt_int(row.get("timestamp"))
        out.append(
            ChatMessage(
                id=str(uuid.uuid4()),
                role=role,
                content=content,
                timestamp=ts if ts is not None else now_ms,
            )
        )
    return out


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionRequestFailed(RuntimeError):
    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message)
        self.code = code


class SessionManager:
    """
    Server-side session list, the active session key, unread sessions, and the
    in-memory message history of the active session.

    Only the client's inbound path and the session operations below mutate this
    state; everything is single-threaded on the event loop.
    """

    def __init__(
        self,
        *,
        rpc: RequestCorrelator,
        observers: Observers,
        history_limit: int,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._rpc = rpc
        self._observers = observers
        self._history_limit = history_limit
        self._clock = clock

        self.current_session_key: Optional[str] = None
        self._unread: set[str] = set()
        self._sessions: list[SessionInfo] = []
        self._messages: list[ChatMessage] = []
        self._history_epoch = 0

    # ── read-only views ──────────────────────────────────────────────────────

    @property
    def session_key(self) -> str:
        return self.current_session_key or FALLBACK_SESSION_KEY

    @property
    def unread_session_keys(self) -> frozenset[str]:
        return frozenset(self._unread)

    @property
    def sessions(self) -> tuple[SessionInfo, ...]:
        return tuple(self._sessions)

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def is_current(self, session_key: Optional[str]) -> bool:
        if session_key is None:
            return True
        return session_key == self.session_key

    # ── local mutations ──────────────────────────────────────────────────────

    def adopt_default(self, key: str) -> None:
        self.current_session_key = key

    def mark_unread(self, key: str) -> None:
        if key in self._unread:
            return
        self._unread.add(key)
        self._observers.publish(UnreadSessionsChanged(session_keys=frozenset(self._unread)))

    def clear_unread(self, key: str) -> None:
        if key not in self._unread:
            return
        self._unread.discard(key)
        self._observers.publish(UnreadSessionsChanged(session_keys=frozenset(self._unread)))

    def add_message(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._observers.publish(ChatMessageAdded(message=message))

    def upsert_message(self, message: ChatMessage) -> None:
        for i, existing in enumerate(self._messages):
            if existing.id == message.id:
                self._messages[i] = message
                return
        self._messages.append(message)

    def clear_history(self) -> None:
        self._messages = []
        # Any in-flight history load belongs to the view we just dropped.
        self._history_epoch += 1

    def _publish_history(self, key: str) -> None:
        self._observers.publish(ChatHistory(session_key=key, messages=tuple(self._messages)))

    # ── gateway operations ───────────────────────────────────────────────────

    async def request_sessions(self) -> list[SessionInfo]:
        res = await self._rpc.request(Method.SESSION_LIST, {"includeDerivedTitles": True})
        if not res.ok:
            log(f"Session list request failed: {res.error}")
            return list(self._sessions)
        self._sessions = parse_session_rows(res.payload)
        self._observers.publish(
            SessionListUpdate(
                sessions=tuple(self._sessions),
                current_session_key=self.current_session_key,
            )
        )
        return list(self._sessions)

    async def switch_session(self, key: str) -> list[ChatMessage]:
        debug(f"Switching to session: {key}")
        self.current_session_key = key
        self.clear_history()
        self.clear_unread(key)
        return await self.load_history(key)

    async def create_session(self) -> str:
        sent_key = self.session_key
        res = await self._rpc.request(Method.SESSION_RESET, {"key": sent_key})
        if not res.ok:
            message = res.error_message or "Session reset failed"
            log(f"Session reset failed: {res.error}")
            raise SessionRequestFailed(message, code=res.error_code)
        new_key = (res.payload or {}).get("key")
        key = new_key if isinstance(new_key, str) and new_key else sent_key
        self.current_session_key = key
        self.clear_history()
        self.clear_unread(key)
        self._publish_history(key)
        return key

    async def load_history(self, key: Optional[str] = None) -> list[ChatMessage]:
        """
        Rebuild the message list from `chat.history` for `key` (default: the
        current session) and return the loaded messages.

        Always publishes a ChatHistory (empty on failure) so observers never keep a
        stale view. A response that lands after the current session changed, or
        after a newer load started, is dropped. Messages added locally while the
        request was in flight are kept after the loaded history.
        """
        current = self.session_key
        target = key or current
        self._history_epoch += 1
        epoch = self._history_epoch
        issued_ids = {m.id for m in self._messages}

        messages: list[ChatMessage] = []
        try:
            res = await self._rpc.request(
                Method.CHAT_HISTORY,
                {"sessionKey": target, "limit": self._history_limit},
            )
            if res.ok:
                messages = parse_history_messages(res.payload, now_ms=self._clock())
            else:
                log(f"Chat history request failed: {res.error}")
        except Exception as exc:
            log(f"Error loading session history for {target}: {exc}")

        if epoch != self._history_epoch or self.session_key != current:
            debug(f"Discarding stale history for {target}")
            return list(self._messages)

        debug(f"Loaded {len(messages)} history messages for session {target}")
        local: list[ChatMessage] = []
        if target == current:
            local = [m for m in self._messages if m.id not in issued_ids]
        self._messages = messages + local
        self._publish_history(target)
        return list(messages)
