from __future__ import annotations

import asyncio
import base64
import mimetypes
import re
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from clawlink.config import Config, load_config, validate_config
from clawlink.constants import DEFAULT_KEY_PATH, DEFAULT_PORT, DEFAULT_TOKEN_PATH
from clawlink.gateway.client import ChatSendFailed, GatewayClient
from clawlink.gateway.events import (
    ChatMessage,
    ChatStream,
    ChatStreamEnd,
    Connected,
    Error,
    ImageAttachment,
    PairingRequired,
    UnreadSessionsChanged,
)
from clawlink.gateway.rpc import GatewayRequestError
from clawlink.gateway.sessions import SessionRequestFailed
from clawlink.identity.device import FileDeviceIdentity
from clawlink.util.log import set_verbose

app = typer.Typer(add_completion=False, no_args_is_help=True)

CONNECT_TIMEOUT_SECONDS = 20.0


def _is_env_var_name(value: str) -> bool:
    return bool(re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", value))


def _load_valid(config: Path, *, require_token: bool = True) -> Config:
    cfg = load_config(config)
    errors = validate_config(cfg, require_token=require_token)
    if errors:
        for e in errors:
            typer.echo(f"ERROR: {e}")
        raise typer.Exit(2)
    return cfg


def _identity(cfg: Config) -> FileDeviceIdentity:
    return FileDeviceIdentity(
        key_path=Path(cfg.identity.key_path),
        token_path=Path(cfg.identity.token_path),
    )


def build_client(cfg: Config, **kwargs: Any) -> GatewayClient:
    return GatewayClient(
        identity=_identity(cfg),
        settings=cfg.client.settings(),
        request_timeout=cfg.timing.request_timeout_seconds,
        reconnect_delay=cfg.timing.reconnect_delay_seconds,
        history_limit=cfg.timing.history_limit,
        tls=cfg.gateway.tls,
        **kwargs,
    )


async def _connect(client: GatewayClient, cfg: Config) -> None:
    await client.connect(cfg.gateway.host, cfg.gateway.port, cfg.gateway.token() or "")
    try:
        state = await client.wait_for_state(
            Connected, PairingRequired, Error, timeout=CONNECT_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        await client.close()
        typer.echo("ERROR: timed out waiting for the gateway handshake")
        raise typer.Exit(1)
    if isinstance(state, PairingRequired):
        await client.close()
        typer.echo(f"Pairing required: {state.message}")
        typer.echo("Approve this device on the gateway, then try again.")
        raise typer.Exit(3)
    if isinstance(state, Error):
        await client.close()
        typer.echo(f"ERROR: {state.message}")
        raise typer.Exit(1)


def _read_image(path: Path) -> ImageAttachment:
    mime, _ = mimetypes.guess_type(path.name)
    return ImageAttachment(
        mime_type=mime or "application/octet-stream",
        file_name=path.name,
        content=base64.b64encode(path.read_bytes()).decode("ascii"),
    )


async def _send_and_stream(
    client: GatewayClient, text: str, attachments: Optional[list[ImageAttachment]] = None
) -> Optional[ChatMessage]:
    done: asyncio.Future[ChatStreamEnd] = asyncio.get_running_loop().create_future()

    def on_chunk(ev: ChatStream) -> None:
        typer.echo(ev.chunk, nl=False)

    def on_end(ev: ChatStreamEnd) -> None:
        if not done.done():
            done.set_result(ev)

    unsub_chunk = client.subscribe(on_chunk, ChatStream)
    unsub_end = client.subscribe(on_end, ChatStreamEnd)
    try:
        if text.startswith("/") and not attachments:
            await client.send_slash_command(text)
        else:
            await client.send_message(text, attachments)
        end = await done
    finally:
        unsub_chunk()
        unsub_end()
    typer.echo("")
    if end.state in ("aborted", "error"):
        typer.echo(f"[run {end.state}]")
    return end.message


def _print_sessions(client: GatewayClient) -> None:
    current = client.current_session_key
    unread = client.unread_session_keys
    for s in sorted(client.session_list, key=lambda x: x.updated_at or 0, reverse=True):
        marker = "*" if s.key == current else ("!" if s.key in unread else " ")
        kind = f" [{s.kind}]" if s.kind else ""
        typer.echo(f"{marker} {s.key}  {s.title}{kind}")


def _print_history(messages: tuple[ChatMessage, ...] | list[ChatMessage]) -> None:
    for m in messages:
        typer.echo(f"{m.role}: {m.content}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print debug logs to stderr."),
) -> None:
    if verbose:
        set_verbose(True)


@app.command("setup")
def setup_cmd(
    config: Path = typer.Option(Path("clawlink.yaml"), "--config", "-c", dir_okay=False),
    force: bool = typer.Option(False, "--force", "-f"),
) -> None:
    """
    Interactive setup wizard that writes a starter config.
    """

    if config.exists() and not force:
        typer.echo(f"ERROR: Refusing to overwrite existing file: {config}")
        raise typer.Exit(1)

    host = typer.prompt("Step 1/4: Gateway host", default="127.0.0.1").strip()
    if not host:
        typer.echo("ERROR: host cannot be empty")
        raise typer.Exit(2)

    port_raw = typer.prompt("Step 2/4: Gateway port", default=DEFAULT_PORT)
    try:
        port = int(port_raw)
    except Exception:
        raise typer.BadParameter(f"Port must be an integer: {port_raw!r}")
    if not (0 < port < 65536):
        raise typer.BadParameter("Port must be between 1 and 65535")

    token_env = typer.prompt(
        "Step 3/4: Gateway token env var name (not the token value)",
        default="CLAWLINK_GATEWAY_TOKEN",
    ).strip()
    if not _is_env_var_name(token_env):
        typer.echo("ERROR: token_env must be a valid env var name")
        raise typer.Exit(2)

    key_path = typer.prompt("Step 4/4: Device key path", default=DEFAULT_KEY_PATH).strip()

    cfg: dict[str, Any] = {
        "gateway": {"host": host, "port": port, "token_env": token_env, "tls": False},
        "identity": {"key_path": key_path, "token_path": DEFAULT_TOKEN_PATH},
    }

    config.parent.mkdir(parents=True, exist_ok=True)
    config.write_text(yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8")
    typer.echo(f"Wrote: {config}")
    typer.echo("")
    typer.echo("Next steps:")
    typer.echo(f"1) Set env var: export {token_env}=...  (keep it secret)")
    typer.echo(f"2) Validate: clawlink validate-config --config {config}")
    typer.echo(f"3) Chat: clawlink chat --config {config}")


@app.command("validate-config")
def validate_config_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    _load_valid(config)
    typer.echo("OK")


@app.command("identity")
def identity_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    """
    Show (and create on first use) this device's identity.
    """

    cfg = _load_valid(config, require_token=False)
    ident = _identity(cfg)
    typer.echo(f"Device ID:  {ident.device_id}")
    typer.echo(f"Public key: {ident.public_key_b64url}")
    typer.echo(f"Paired:     {'yes' if ident.device_token else 'no'}")


@app.command("sessions")
def sessions_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    cfg = _load_valid(config)

    async def run() -> None:
        client = build_client(cfg)
        await _connect(client, cfg)
        try:
            await client.request_sessions()
            _print_sessions(client)
        finally:
            await client.close()

    asyncio.run(run())


@app.command("send")
def send_cmd(
    message: str = typer.Argument(...),
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
    session: Optional[str] = typer.Option(None, "--session", "-s"),
    image: Optional[Path] = typer.Option(None, "--image", exists=True, dir_okay=False),
) -> None:
    """
    Send one message and stream the reply to stdout.
    """

    cfg = _load_valid(config)
    attachments = [_read_image(image)] if image is not None else None

    async def run() -> int:
        client = build_client(cfg)
        await _connect(client, cfg)
        try:
            if session:
                await client.switch_session(session)
            await _send_and_stream(client, message, attachments)
            return 0
        except (ChatSendFailed, SessionRequestFailed, GatewayRequestError) as exc:
            typer.echo(f"ERROR: {exc}")
            return 1
        finally:
            await client.close()

    rc = asyncio.run(run())
    if rc:
        raise typer.Exit(rc)


_CHAT_HELP = (
    "Commands: /sessions, /switch <key>, /new, /history, /unread, /quit\n"
    "Anything else (including other /commands) is sent to the agent."
)


async def _chat_loop(client: GatewayClient) -> None:
    def on_unread(ev: UnreadSessionsChanged) -> None:
        if ev.session_keys:
            typer.echo(f"\n[activity in: {', '.join(sorted(ev.session_keys))}]")

    client.subscribe(on_unread, UnreadSessionsChanged)
    typer.echo(f"Connected. Session: {client.current_session_key}")
    typer.echo(_CHAT_HELP)

    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            return
        text = line.strip()
        if not text:
            continue
        cmd, _, arg = text.partition(" ")
        try:
            if cmd in ("/quit", "/exit"):
                return
            if cmd == "/help":
                typer.echo(_CHAT_HELP)
            elif cmd == "/sessions":
                await client.request_sessions()
                _print_sessions(client)
            elif cmd == "/switch" and arg.strip():
                _print_history(await client.switch_session(arg.strip()))
                typer.echo(f"[session: {client.current_session_key}]")
            elif cmd == "/new":
                key = await client.create_session()
                typer.echo(f"[session: {key}]")
            elif cmd == "/history":
                _print_history(await client.load_session_history())
            elif cmd == "/unread":
                typer.echo(", ".join(sorted(client.unread_session_keys)) or "(none)")
            else:
                await _send_and_stream(client, text)
        except (ChatSendFailed, SessionRequestFailed, GatewayRequestError) as exc:
            typer.echo(f"ERROR: {exc}")


@app.command("chat")
def chat_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    """
    Interactive chat with the gateway agent.
    """

    cfg = _load_valid(config)

    async def run() -> None:
        client = build_client(cfg)
        await _connect(client, cfg)
        try:
            await _chat_loop(client)
        finally:
            await client.close()

    asyncio.run(run())


if __name__ == "__main__":  # pragma: no cover
    app()
