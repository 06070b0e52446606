from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence

from clawlink.constants import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_RECONNECT_DELAY_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
)
from clawlink.gateway.events import (
    NEGATIVE_STATES,
    AgentThinking,
    Authenticating,
    ChatMessage,
    Connected,
    Connecting,
    ConnectionState,
    ConnectionUpdate,
    Disconnected,
    Error,
    EventName,
    GatewayEvent,
    ImageAttachment,
    Method,
    Observers,
    PairingRequired,
    SessionInfo,
    StateChanged,
)
from clawlink.gateway.frames import (
    EventFrame,
    FrameError,
    JsonObject,
    RequestFrame,
    ResponseFrame,
    parse_frame,
)
from clawlink.gateway.handshake import (
    AuthAccepted,
    AuthPairingRequired,
    ClientSettings,
    HandshakeError,
    build_connect_params,
    classify_connect_response,
)
from clawlink.gateway.rpc import GatewayRequestError, NotConnected, RequestCorrelator
from clawlink.gateway.sessions import SessionManager, now_ms
from clawlink.gateway.stream import Run, StreamReconstructor
from clawlink.gateway.transport import Transport, TransportFactory, WebSocketTransport
from clawlink.identity.device import DeviceIdentity
from clawlink.util.log import clip, debug, log


class InvalidTransition(RuntimeError):
    pass


class ChatSendFailed(RuntimeError):
    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message)
        self.code = code


_TRANSITIONS: dict[type, tuple[type, ...]] = {
    Disconnected: (Connecting,),
    Connecting: (Authenticating, Error),
    Authenticating: (Connected, PairingRequired, Error),
    Connected: (Error,),
    PairingRequired: (),
    Error: (),
}


def _transition_allowed(current: ConnectionState, new: ConnectionState) -> bool:
    # connect() and disconnect() may be called from any state.
    if isinstance(new, (Connecting, Disconnected)):
        return True
    return isinstance(new, _TRANSITIONS[type(current)])


def normalize_host(host: str) -> str:
    h = host.strip()
    for prefix in ("ws://", "wss://", "http://", "https://"):
        if h.startswith(prefix):
            h = h[len(prefix):]
            break
    return h.rstrip("/")


class _Listener:
    """Transport callbacks tagged with the connection generation they belong to."""

    def __init__(self, client: "GatewayClient", generation: int) -> None:
        self._client = client
        self._generation = generation

    async def on_open(self) -> None:
        await self._client._on_transport_open(self._generation)

    async def on_message(self, text: str) -> None:
        await self._client._on_transport_message(self._generation, text)

    async def on_closed(self, code: int, reason: str) -> None:
        await self._client._on_transport_closed(self._generation, f"closed: {code} {reason}".strip(), failure=None)

    async def on_failure(self, exc: BaseException) -> None:
        await self._client._on_transport_closed(
            self._generation, f"{type(exc).__name__}: {exc}", failure=exc
        )


class GatewayClient:
    """
    Persistent, authenticated connection to an agent gateway.

    Lifecycle:
      Disconnected -> Connecting -> Authenticating -> Connected
      Authenticating -> PairingRequired | Error when the handshake is refused.

    While `should_reconnect` is set, entering Disconnected, Error or PairingRequired
    schedules one reconnect after a fixed delay. There is no backoff and no retry
    ceiling; `disconnect()` is the only way to stop.
    """

    def __init__(
        self,
        *,
        identity: DeviceIdentity,
        settings: ClientSettings,
        transport_factory: TransportFactory = WebSocketTransport,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        tls: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._identity = identity
        self._settings = settings
        self._transport_factory = transport_factory
        self._reconnect_delay = reconnect_delay
        self._tls = tls
        self._clock = clock

        self.observers = Observers()
        self.rpc = RequestCorrelator(default_timeout=request_timeout)
        self.sessions = SessionManager(
            rpc=self.rpc, observers=self.observers, history_limit=history_limit
        )
        self.stream = StreamReconstructor(sessions=self.sessions, observers=self.observers)

        self._state: ConnectionState = Disconnected()
        self.should_reconnect = False

        self.host = ""
        self.port = 0
        self._token = ""

        self._transport: Optional[Transport] = None
        self._generation = 0
        self._challenge_nonce: Optional[str] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._handlers: dict[EventName, Callable[[JsonObject], None]] = {
            EventName.CONNECT_CHALLENGE: self._on_challenge,
            EventName.CHAT: self._on_chat,
            EventName.AGENT: self._on_agent,
            EventName.HEARTBEAT: self._on_keepalive,
            EventName.TICK: self._on_keepalive,
            EventName.PRESENCE: self._on_keepalive,
        }
        missing = set(EventName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for events: {sorted(m.value for m in missing)}")

    # ── read-only views ──────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def current_session_key(self) -> Optional[str]:
        return self.sessions.current_session_key

    @property
    def unread_session_keys(self) -> frozenset[str]:
        return self.sessions.unread_session_keys

    @property
    def session_list(self) -> tuple[SessionInfo, ...]:
        return self.sessions.sessions

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return self.sessions.messages

    @property
    def active_run(self) -> Optional[Run]:
        return self.stream.active_run

    def subscribe(self, callback: Callable[[Any], None], kind: Optional[type] = None) -> Callable[[], None]:
        return self.observers.subscribe(callback, kind)

    async def wait_for_state(self, *kinds: type, timeout: Optional[float] = None) -> ConnectionState:
        if isinstance(self._state, kinds):
            return self._state
        fut: asyncio.Future[ConnectionState] = asyncio.get_running_loop().create_future()

        def on_state(ev: StateChanged) -> None:
            if isinstance(ev.state, kinds) and not fut.done():
                fut.set_result(ev.state)

        unsubscribe = self.observers.subscribe(on_state, StateChanged)
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        finally:
            unsubscribe()

    # ── state machine ────────────────────────────────────────────────────────

    def _transition(self, new: ConnectionState) -> bool:
        current = self._state
        if new == current:
            return False
        if not _transition_allowed(current, new):
            raise InvalidTransition(f"{type(current).__name__} -> {type(new).__name__}")
        self._state = new
        debug(f"State: {type(current).__name__} -> {new}")
        self.observers.publish(StateChanged(state=new))
        if isinstance(new, NEGATIVE_STATES) and self.should_reconnect:
            self._schedule_reconnect()
        return True

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._reconnect_task = None
        if not self.should_reconnect or not isinstance(self._state, NEGATIVE_STATES):
            return
        log(f"Reconnecting to {self.host}:{self.port}")
        try:
            await self.connect(self.host, self.port, self._token)
        except Exception as exc:
            log(f"Reconnect attempt failed: {exc}")
            if isinstance(self._state, Connecting):
                self._transition(Error(message=str(exc)))
            else:
                self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            self._reconnect_task = None

    def _spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log(f"{name} failed: {t.exception()}")

        task.add_done_callback(done)
        return task

    # ── connect / disconnect ─────────────────────────────────────────────────

    async def connect(self, host: str, port: int, token: str) -> None:
        clean_host = normalize_host(host)
        self.host = clean_host
        self.port = int(port)
        self._token = token
        self.should_reconnect = True
        self._cancel_reconnect()

        await self._drop_transport("Reconnecting")
        self._challenge_nonce = None
        self._transition(Connecting())

        self._generation += 1
        transport = self._transport_factory(_Listener(self, self._generation))
        self._transport = transport

        scheme = "wss" if self._tls else "ws"
        origin_scheme = "https" if self._tls else "http"
        url = f"{scheme}://{clean_host}:{self.port}"
        log(f"Connecting to gateway: {url}")
        await transport.start(url, headers={"Origin": f"{origin_scheme}://{clean_host}:{self.port}"})

    async def _drop_transport(self, reason: str) -> None:
        transport = self._transport
        self._transport = None
        # Bumping the generation mutes callbacks from the old transport.
        self._generation += 1
        self.rpc.attach(None)
        if transport is not None:
            self.rpc.fail_all(reason)
            await transport.close(reason)

    async def disconnect(self) -> None:
        self.should_reconnect = False
        self._cancel_reconnect()
        await self._drop_transport("User disconnected")
        self.stream.reset()
        if self._transition(Disconnected()):
            self.observers.publish(ConnectionUpdate(connected=False))
        self.rpc.fail_all("Disconnected")

    async def close(self) -> None:
        await self.disconnect()
        for task in list(self._tasks):
            task.cancel()
        self.observers.close()

    async def _send_text(self, text: str) -> None:
        transport = self._transport
        if transport is None:
            raise NotConnected("not connected")
        await transport.send(text)

    # ── transport callbacks ──────────────────────────────────────────────────

    async def _on_transport_open(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.rpc.attach(self._send_text)
        # The gateway speaks first with connect.challenge.
        self._transition(Authenticating())

    async def _on_transport_message(self, generation: int, text: str) -> None:
        if generation != self._generation:
            return
        self.handle_frame(text)

    async def _on_transport_closed(
        self, generation: int, reason: str, *, failure: Optional[BaseException]
    ) -> None:
        if generation != self._generation:
            return
        self._transport = None
        self.rpc.attach(None)
        self.rpc.fail_all("Connection lost")
        debug(f"Transport {reason}")

        state = self._state
        if isinstance(state, (PairingRequired, Error)):
            # Keep the message the operator needs to see.
            changed = False
        elif failure is not None and isinstance(state, Connecting):
            changed = self._transition(Error(message=reason))
        else:
            changed = self._transition(Disconnected())
        if changed:
            self.observers.publish(ConnectionUpdate(connected=False))

    # ── inbound dispatch ─────────────────────────────────────────────────────

    def handle_frame(self, text: str) -> None:
        try:
            frame = parse_frame(text)
        except FrameError as exc:
            log(f"Dropping frame ({exc}): {clip(text)}")
            return

        if isinstance(frame, ResponseFrame):
            self.rpc.resolve(frame)
        elif isinstance(frame, EventFrame):
            self._dispatch_event(frame)
        elif isinstance(frame, RequestFrame):
            debug(f"Ignoring server request {frame.method} id={frame.id}")

    def _dispatch_event(self, frame: EventFrame) -> None:
        kind = EventName.parse(frame.name)
        if kind is None:
            debug(f"Unhandled event: {frame.name}")
        else:
            try:
                self._handlers[kind](frame.payload)
            except Exception as exc:
                log(f"Error handling {frame.name} event: {type(exc).__name__}: {exc}")
        self.observers.publish(GatewayEvent(name=frame.name, payload=frame.payload, seq=frame.seq))

    def _on_chat(self, payload: JsonObject) -> None:
        self.stream.handle_chat(payload)

    def _on_agent(self, payload: JsonObject) -> None:
        debug(f"Agent event: {clip(str(payload))}")

    def _on_keepalive(self, payload: JsonObject) -> None:
        debug(f"Keepalive/presence: {clip(str(payload), 80)}")

    # ── auth handshake ───────────────────────────────────────────────────────

    def _on_challenge(self, payload: JsonObject) -> None:
        nonce = payload.get("nonce")
        self._challenge_nonce = nonce if isinstance(nonce, str) and nonce else None
        debug(f"Received connect challenge, nonce={(self._challenge_nonce or '')[:16]}...")
        if not isinstance(self._state, Authenticating):
            log(f"Ignoring connect.challenge in state {type(self._state).__name__}")
            return
        try:
            params = self.build_handshake()
        except HandshakeError as exc:
            log(f"Handshake aborted: {exc}")
            self._transition(Error(message=str(exc)))
            self._spawn(self._drop_transport("Handshake aborted"), name="transport close")
            return
        self._spawn(self._complete_handshake(params, self._generation), name="auth handshake")

    def build_handshake(self) -> JsonObject:
        """Build and sign the `connect` params for the buffered challenge nonce."""
        return build_connect_params(
            identity=self._identity,
            settings=self._settings,
            token=self._token,
            nonce=self._challenge_nonce,
            clock=self._clock,
        )

    async def _complete_handshake(self, params: JsonObject, generation: int) -> None:
        try:
            res = await self.rpc.request(Method.CONNECT, params)
        except GatewayRequestError as exc:
            log(f"Auth error: {exc}")
            if generation == self._generation and isinstance(self._state, Authenticating):
                self._transition(Error(message=f"Auth error: {exc}"))
                await self._drop_transport("Auth error")
            return
        if generation != self._generation or not isinstance(self._state, Authenticating):
            # Transport closed or was replaced while the response was in flight.
            debug(f"Dropping connect response in state {type(self._state).__name__}")
            return

        outcome = classify_connect_response(res)
        if isinstance(outcome, AuthAccepted):
            log("Authentication successful")
            if outcome.device_token:
                self._identity.store_device_token(outcome.device_token)
                debug("Persisted deviceToken")
            if outcome.main_session_key:
                self.sessions.adopt_default(outcome.main_session_key)
                debug(f"Default session key from gateway: {outcome.main_session_key}")
            else:
                log("No mainSessionKey in connect response")
            self._transition(Connected())
            self.observers.publish(
                ConnectionUpdate(connected=True, session_key=self.sessions.current_session_key)
            )
            self._spawn(self.sessions.load_history(), name="history load")
            return

        if isinstance(outcome, AuthPairingRequired):
            log(f"Pairing required: {outcome.message}")
            self._transition(PairingRequired(message=outcome.message))
        else:
            log(f"Authentication failed: {outcome.message} (code={res.error_code})")
            self.should_reconnect = False
            self._transition(Error(message=outcome.message))
        await self._drop_transport("Auth failed")

    # ── requests ─────────────────────────────────────────────────────────────

    async def send_request(
        self, method: str, params: Optional[JsonObject] = None, *, timeout: Optional[float] = None
    ) -> ResponseFrame:
        return await self.rpc.request(method, params, timeout=timeout)

    async def send_message(
        self, text: str, attachments: Optional[Sequence[ImageAttachment]] = None
    ) -> Optional[str]:
        """
        Send a user message and start an agent run.

        The user message is added to history before the gateway answers. Returns the
        runId; raises ChatSendFailed on `ok=false` and GatewayRequestError when the
        request itself fails.
        """
        session_key = self.sessions.session_key
        self.sessions.add_message(
            ChatMessage(id=str(uuid.uuid4()), role="user", content=text, timestamp=now_ms())
        )

        assistant_id = str(uuid.uuid4())
        run = self.stream.begin(message_id=assistant_id, session_key=session_key)

        params: JsonObject = {
            "sessionKey": session_key,
            "idempotencyKey": str(uuid.uuid4()),
            "message": text,
        }
        if attachments:
            params["attachments"] = [a.to_wire() for a in attachments]

        try:
            res = await self.rpc.request(Method.CHAT_SEND, params)
        except GatewayRequestError:
            self.stream.cancel(run)
            raise
        if not res.ok:
            self.stream.cancel(run)
            message = res.error_message or "Agent run failed"
            log(f"Agent run failed: {message}")
            raise ChatSendFailed(message, code=res.error_code)

        run_id = (res.payload or {}).get("runId")
        run_id = run_id if isinstance(run_id, str) and run_id else None
        if self.stream.bind(run, run_id):
            debug(f"Agent run started: runId={run_id}")
            self.observers.publish(AgentThinking(message_id=assistant_id, run_id=run_id))
        return run_id

    async def send_slash_command(self, command: str) -> Optional[str]:
        return await self.send_message(command)

    async def request_sessions(self) -> list[SessionInfo]:
        return await self.sessions.request_sessions()

    async def switch_session(self, key: str) -> list[ChatMessage]:
        self.observers.publish(
            ConnectionUpdate(connected=isinstance(self._state, Connected), session_key=key)
        )
        return await self.sessions.switch_session(key)

    async def create_session(self) -> str:
        key = await self.sessions.create_session()
        self.observers.publish(
            ConnectionUpdate(connected=isinstance(self._state, Connected), session_key=key)
        )
        return key

    async def load_session_history(self, key: Optional[str] = None) -> list[ChatMessage]:
        return await self.sessions.load_history(key)
