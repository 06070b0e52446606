from __future__ import annotations

import base64
import hashlib
import json
import os
from pathlib import Path
from typing import Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from clawlink.util.log import debug, log


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class DeviceIdentity(Protocol):
    """What the gateway client needs from the device's keypair and token storage."""

    @property
    def device_id(self) -> str: ...

    @property
    def public_key_b64url(self) -> str: ...

    @property
    def device_token(self) -> Optional[str]: ...

    def store_device_token(self, token: str) -> None: ...

    def sign(self, data: bytes) -> str: ...


class FileDeviceIdentity:
    """
    Ed25519 device identity kept in two local files.

    - key_path: PKCS#8 PEM private key, generated on first use (mode 0600).
    - token_path: JSON `{"deviceToken": "..."}` written after pairing approval.

    device_id is the SHA-256 hex fingerprint of the raw 32-byte public key.
    """

    def __init__(self, *, key_path: Path, token_path: Path) -> None:
        self._key_path = Path(key_path).expanduser()
        self._token_path = Path(token_path).expanduser()
        self._key = self._load_or_generate()
        raw = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._device_id = hashlib.sha256(raw).hexdigest()
        self._public_key_b64url = b64url(raw)
        debug(f"Device ID: {self._device_id[:16]}...")

    def _load_or_generate(self) -> Ed25519PrivateKey:
        if self._key_path.exists():
            key = serialization.load_pem_private_key(self._key_path.read_bytes(), password=None)
            if not isinstance(key, Ed25519PrivateKey):
                raise ValueError(f"{self._key_path} does not hold an Ed25519 private key")
            return key

        key = Ed25519PrivateKey.generate()
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(pem)
        log(f"Generated new Ed25519 device key: {self._key_path}")
        return key

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def public_key_b64url(self) -> str:
        return self._public_key_b64url

    @property
    def device_token(self) -> Optional[str]:
        try:
            raw = json.loads(self._token_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            log(f"Ignoring unreadable device token file: {self._token_path}")
            return None
        tok = raw.get("deviceToken") if isinstance(raw, dict) else None
        return tok if isinstance(tok, str) and tok else None

    def store_device_token(self, token: str) -> None:
        self._token_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"deviceToken": token}, f)

    def sign(self, data: bytes) -> str:
        return b64url(self._key.sign(data))
