from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from clawlink.constants import AUTH_PAYLOAD_VERSION, PROTOCOL_VERSION
from clawlink.gateway.frames import JsonObject, ResponseFrame
from clawlink.identity.device import DeviceIdentity


class HandshakeError(RuntimeError):
    pass


@dataclass(frozen=True)
class ClientSettings:
    client_id: str
    version: str
    platform: str
    mode: str
    role: str
    scopes: tuple[str, ...]
    locale: str
    user_agent: str


@dataclass(frozen=True)
class AuthAccepted:
    device_token: Optional[str]
    main_session_key: Optional[str]


@dataclass(frozen=True)
class AuthPairingRequired:
    message: str


@dataclass(frozen=True)
class AuthRejected:
    message: str


AuthOutcome = AuthAccepted | AuthPairingRequired | AuthRejected


def build_auth_payload(
    *,
    device_id: str,
    settings: ClientSettings,
    signed_at_ms: int,
    token: str,
    nonce: str,
) -> str:
    """
    Pipe-delimited string the device signs to bind its key to this connection:

        v2|deviceId|clientId|clientMode|role|scopes|signedAtMs|token|nonce
    """
    return "|".join(
        [
            AUTH_PAYLOAD_VERSION,
            device_id,
            settings.client_id,
            settings.mode,
            settings.role,
            ",".join(settings.scopes),
            str(signed_at_ms),
            token,
            nonce,
        ]
    )


def build_connect_params(
    *,
    identity: DeviceIdentity,
    settings: ClientSettings,
    token: str,
    nonce: Optional[str],
    clock: Callable[[], float] = time.time,
) -> JsonObject:
    if not nonce:
        raise HandshakeError("connect handshake requires a challenge nonce; none was received")

    signed_at_ms = int(clock() * 1000)
    payload = build_auth_payload(
        device_id=identity.device_id,
        settings=settings,
        signed_at_ms=signed_at_ms,
        token=token,
        nonce=nonce,
    )
    signature = identity.sign(payload.encode("utf-8"))

    return {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": {
            "id": settings.client_id,
            "version": settings.version,
            "platform": settings.platform,
            "mode": settings.mode,
        },
        "role": settings.role,
        "scopes": list(settings.scopes),
        "auth": {"token": token},
        "locale": settings.locale,
        "userAgent": settings.user_agent,
        "device": {
            "id": identity.device_id,
            "publicKey": identity.public_key_b64url,
            "signature": signature,
            "signedAt": signed_at_ms,
            "nonce": nonce,
            "payload": payload,
        },
    }


def _is_pairing_error(code: str, message: str) -> bool:
    if code.lower() == "pairing_required":
        return True
    return "pair" in message.lower()


def classify_connect_response(res: ResponseFrame) -> AuthOutcome:
    if res.ok:
        payload = res.payload or {}
        dt = payload.get("deviceToken")
        main_key: Any = None
        snapshot = payload.get("snapshot")
        if isinstance(snapshot, dict):
            defaults = snapshot.get("sessionDefaults")
            if isinstance(defaults, dict):
                main_key = defaults.get("mainSessionKey")
        return AuthAccepted(
            device_token=dt if isinstance(dt, str) and dt else None,
            main_session_key=main_key if isinstance(main_key, str) and main_key else None,
        )

    message = res.error_message
    if _is_pairing_error(res.error_code, message):
        return AuthPairingRequired(message=message or "Device pairing required")
    return AuthRejected(message=message or "Authentication failed")
