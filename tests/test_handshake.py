import unittest
from typing import Optional

from clawlink.gateway.frames import ResponseFrame
from clawlink.gateway.handshake import (
    AuthAccepted,
    AuthPairingRequired,
    AuthRejected,
    ClientSettings,
    HandshakeError,
    build_auth_payload,
    build_connect_params,
    classify_connect_response,
)

SETTINGS = ClientSettings(
    client_id="openclaw-control-ui",
    version="1.0.0",
    platform="python",
    mode="ui",
    role="operator",
    scopes=("operator.admin", "operator.read"),
    locale="en-US",
    user_agent="clawlink/0.1.0",
)


class _FakeIdentity:
    device_id = "f" * 64
    public_key_b64url = "cHVia2V5"

    def __init__(self) -> None:
        self.signed: list[bytes] = []
        self.token: Optional[str] = None

    @property
    def device_token(self) -> Optional[str]:
        return self.token

    def store_device_token(self, token: str) -> None:
        self.token = token

    def sign(self, data: bytes) -> str:
        self.signed.append(data)
        return "sig-" + str(len(data))


class TestAuthPayload(unittest.TestCase):
    def test_pipe_layout(self) -> None:
        payload = build_auth_payload(
            device_id="dev",
            settings=SETTINGS,
            signed_at_ms=1700000000123,
            token="abc",
            nonce="n1",
        )
        self.assertEqual(
            payload,
            "v2|dev|openclaw-control-ui|ui|operator|operator.admin,operator.read|1700000000123|abc|n1",
        )

    def test_connect_params_carry_signed_device_block(self) -> None:
        ident = _FakeIdentity()
        params = build_connect_params(
            identity=ident,
            settings=SETTINGS,
            token="abc",
            nonce="n1",
            clock=lambda: 1700000000.5,
        )
        self.assertEqual(params["minProtocol"], 3)
        self.assertEqual(params["maxProtocol"], 3)
        self.assertEqual(
            params["client"],
            {"id": "openclaw-control-ui", "version": "1.0.0", "platform": "python", "mode": "ui"},
        )
        self.assertEqual(params["role"], "operator")
        self.assertEqual(params["scopes"], ["operator.admin", "operator.read"])
        self.assertEqual(params["auth"], {"token": "abc"})
        self.assertEqual(params["locale"], "en-US")
        self.assertEqual(params["userAgent"], "clawlink/0.1.0")

        device = params["device"]
        self.assertEqual(device["id"], ident.device_id)
        self.assertEqual(device["publicKey"], "cHVia2V5")
        self.assertEqual(device["nonce"], "n1")
        self.assertEqual(device["signedAt"], 1700000000500)
        self.assertTrue(device["payload"].endswith("|1700000000500|abc|n1"))
        self.assertEqual(ident.signed, [device["payload"].encode("utf-8")])
        self.assertEqual(device["signature"], f"sig-{len(device['payload'])}")

    def test_missing_nonce_fails_fast(self) -> None:
        ident = _FakeIdentity()
        for nonce in (None, ""):
            with self.subTest(nonce=nonce):
                with self.assertRaises(HandshakeError):
                    build_connect_params(identity=ident, settings=SETTINGS, token="abc", nonce=nonce)
        self.assertEqual(ident.signed, [])


class TestClassifyConnectResponse(unittest.TestCase):
    def test_accepted_with_token_and_default_session(self) -> None:
        res = ResponseFrame(
            id="connect-1",
            ok=True,
            payload={
                "deviceToken": "dt-1",
                "snapshot": {"sessionDefaults": {"mainSessionKey": "agent:main:main"}},
            },
        )
        self.assertEqual(
            classify_connect_response(res),
            AuthAccepted(device_token="dt-1", main_session_key="agent:main:main"),
        )

    def test_accepted_without_snapshot(self) -> None:
        res = ResponseFrame(id="connect-1", ok=True, payload={})
        self.assertEqual(classify_connect_response(res), AuthAccepted(None, None))

    def test_pairing_required_by_code(self) -> None:
        res = ResponseFrame(id="c", ok=False, error={"code": "pairing_required"})
        out = classify_connect_response(res)
        self.assertIsInstance(out, AuthPairingRequired)

    def test_pairing_required_by_message(self) -> None:
        res = ResponseFrame(id="c", ok=False, error={"code": "forbidden", "message": "Device must be PAIRED first"})
        self.assertEqual(
            classify_connect_response(res),
            AuthPairingRequired(message="Device must be PAIRED first"),
        )

    def test_other_failures_are_rejections(self) -> None:
        res = ResponseFrame(id="c", ok=False, error={"code": "unauthorized", "message": "bad token"})
        self.assertEqual(classify_connect_response(res), AuthRejected(message="bad token"))

        bare = ResponseFrame(id="c", ok=False)
        self.assertEqual(classify_connect_response(bare), AuthRejected(message="Authentication failed"))
