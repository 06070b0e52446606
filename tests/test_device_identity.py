import base64
import hashlib
import os
import stat
import tempfile
import unittest
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from clawlink.identity.device import FileDeviceIdentity


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


class TestFileDeviceIdentity(unittest.TestCase):
    def test_generates_then_reloads_same_identity(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            key = Path(td) / "keys" / "device.pem"
            tok = Path(td) / "token.json"
            first = FileDeviceIdentity(key_path=key, token_path=tok)
            self.assertTrue(key.exists())
            if os.name == "posix":
                self.assertEqual(stat.S_IMODE(key.stat().st_mode), 0o600)

            again = FileDeviceIdentity(key_path=key, token_path=tok)
            self.assertEqual(first.device_id, again.device_id)
            self.assertEqual(first.public_key_b64url, again.public_key_b64url)

    def test_device_id_is_sha256_of_raw_public_key(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ident = FileDeviceIdentity(key_path=Path(td) / "k.pem", token_path=Path(td) / "t.json")
            raw = _b64url_decode(ident.public_key_b64url)
            self.assertEqual(len(raw), 32)
            self.assertEqual(ident.device_id, hashlib.sha256(raw).hexdigest())
            self.assertNotIn("=", ident.public_key_b64url)

    def test_signature_verifies_against_public_key(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ident = FileDeviceIdentity(key_path=Path(td) / "k.pem", token_path=Path(td) / "t.json")
            data = b"v2|dev|client|ui|operator|operator.admin|1|abc|n1"
            sig = ident.sign(data)
            self.assertNotIn("=", sig)
            raw_sig = _b64url_decode(sig)
            self.assertEqual(len(raw_sig), 64)
            pub = Ed25519PublicKey.from_public_bytes(_b64url_decode(ident.public_key_b64url))
            pub.verify(raw_sig, data)

    def test_device_token_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tok = Path(td) / "nested" / "t.json"
            ident = FileDeviceIdentity(key_path=Path(td) / "k.pem", token_path=tok)
            self.assertIsNone(ident.device_token)
            ident.store_device_token("dt-123")
            self.assertEqual(ident.device_token, "dt-123")

    def test_unreadable_token_file_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tok = Path(td) / "t.json"
            tok.write_text("{not json", encoding="utf-8")
            ident = FileDeviceIdentity(key_path=Path(td) / "k.pem", token_path=tok)
            self.assertIsNone(ident.device_token)
