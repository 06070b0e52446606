from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from clawlink.gateway.events import ChatMessage, ChatStream, ChatStreamEnd, Observers
from clawlink.gateway.sessions import SessionManager, flatten_content, now_ms
from clawlink.util.log import debug, log


@dataclass
class Run:
    message_id: str
    session_key: str
    run_id: Optional[str] = None
    text: str = ""


def extract_event_text(payload: dict[str, Any]) -> str:
    message = payload.get("message")
    if not isinstance(message, dict):
        return ""
    return flatten_content(message.get("content")) or ""


def new_suffix(previous: str, full: str) -> str:
    """
    The gateway resends the whole text on every update. Only a strictly longer
    snapshot carries new content; a shorter or equal one yields nothing.
    """
    if len(full) <= len(previous):
        return ""
    return full[len(previous):]


class StreamReconstructor:
    """
    Turns full-text `chat` snapshots for the active run into incremental chunks.

    Owns the single active Run. `begin()` and `bind()` are called by the send path;
    `handle_chat()` runs on the inbound path and is the only place the run text
    changes.
    """

    def __init__(self, *, sessions: SessionManager, observers: Observers) -> None:
        self._sessions = sessions
        self._observers = observers
        self._run: Optional[Run] = None

    @property
    def active_run(self) -> Optional[Run]:
        return self._run

    def begin(self, *, message_id: str, session_key: str) -> Run:
        if self._run is not None:
            debug(f"Superseding active run {self._run.run_id or '<pending>'}")
        self._run = Run(message_id=message_id, session_key=session_key)
        return self._run

    def bind(self, run: Run, run_id: Optional[str]) -> bool:
        if self._run is not run:
            # Finished or superseded before chat.send returned.
            return False
        if run_id and run.run_id is None:
            run.run_id = run_id
        return True

    def cancel(self, run: Run) -> None:
        if self._run is run:
            self._run = None

    def reset(self) -> None:
        self._run = None

    def handle_chat(self, payload: dict[str, Any]) -> None:
        state = payload.get("state")
        if not isinstance(state, str):
            return
        run_id = payload.get("runId")
        run_id = run_id if isinstance(run_id, str) and run_id else None
        session_key = payload.get("sessionKey")
        session_key = session_key if isinstance(session_key, str) and session_key else None

        run = self._run

        if not self._sessions.is_current(session_key):
            assert session_key is not None
            self._sessions.mark_unread(session_key)
            if run is not None and run_id is not None and run.run_id == run_id and state != "delta":
                debug(f"Dropping run {run_id}: finished in inactive session {session_key}")
                self._run = None
            return

        if run is None:
            debug(f"chat {state} for run {run_id} with no active run; ignored")
            return
        if session_key is not None and session_key != run.session_key:
            debug(f"chat {state} for session {session_key} while run belongs to {run.session_key}")
            return
        if run_id is not None:
            if run.run_id is None:
                run.run_id = run_id
            elif run.run_id != run_id:
                debug(f"chat {state} for foreign run {run_id}; ignored")
                return

        if state == "delta":
            self._apply_snapshot(run, extract_event_text(payload), render=True)
            return
        if state == "final":
            self._apply_snapshot(run, extract_event_text(payload), render=False)
            self._finalize(run, state)
            return
        if state in ("aborted", "error"):
            err = payload.get("errorMessage")
            log(f"Chat run {run.run_id} {state}: {err}")
            self._finalize(run, state)
            return
        debug(f"Unknown chat state {state!r}; ignored")

    def _apply_snapshot(self, run: Run, full: str, *, render: bool) -> None:
        if len(full) < len(run.text):
            debug(f"Snapshot shorter than buffer ({len(full)} < {len(run.text)}); keeping buffer")
            return
        chunk = new_suffix(run.text, full)
        if not chunk:
            return
        run.text = full
        self._observers.publish(ChatStream(message_id=run.message_id, chunk=chunk))
        if render:
            self._sessions.upsert_message(
                ChatMessage(id=run.message_id, role="assistant", content=full, timestamp=now_ms())
            )

    def _finalize(self, run: Run, state: str) -> None:
        message: Optional[ChatMessage] = None
        if run.text:
            message = ChatMessage(
                id=run.message_id,
                role="assistant",
                content=run.text,
                timestamp=now_ms(),
            )
            self._sessions.upsert_message(message)
        self._run = None
        self._observers.publish(ChatStreamEnd(message_id=run.message_id, state=state, message=message))
