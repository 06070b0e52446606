import json
import unittest

from clawlink.gateway.frames import (
    EventFrame,
    FrameError,
    RequestFrame,
    ResponseFrame,
    encode_request,
    parse_frame,
)


class TestParseFrame(unittest.TestCase):
    def test_response_ok(self) -> None:
        f = parse_frame('{"type":"res","id":"chat.send-1","ok":true,"payload":{"runId":"r1"}}')
        self.assertIsInstance(f, ResponseFrame)
        assert isinstance(f, ResponseFrame)
        self.assertTrue(f.ok)
        self.assertEqual(f.id, "chat.send-1")
        self.assertEqual(f.payload, {"runId": "r1"})
        self.assertIsNone(f.error)

    def test_response_error_fields(self) -> None:
        f = parse_frame(
            json.dumps(
                {
                    "type": "res",
                    "id": "connect-2",
                    "ok": False,
                    "error": {"code": "pairing_required", "message": "device not paired"},
                }
            )
        )
        assert isinstance(f, ResponseFrame)
        self.assertFalse(f.ok)
        self.assertEqual(f.error_code, "pairing_required")
        self.assertEqual(f.error_message, "device not paired")

    def test_response_missing_ok_is_not_ok(self) -> None:
        f = parse_frame('{"type":"res","id":"x-1"}')
        assert isinstance(f, ResponseFrame)
        self.assertFalse(f.ok)
        self.assertEqual(f.error_code, "")
        self.assertEqual(f.error_message, "")

    def test_event_with_seq(self) -> None:
        f = parse_frame('{"type":"event","event":"chat","payload":{"state":"delta"},"seq":7}')
        self.assertEqual(f, EventFrame(name="chat", payload={"state": "delta"}, seq=7))

    def test_event_without_payload(self) -> None:
        f = parse_frame('{"type":"event","event":"tick"}')
        self.assertEqual(f, EventFrame(name="tick", payload={}, seq=None))

    def test_request(self) -> None:
        f = parse_frame('{"type":"req","id":"a","method":"ping"}')
        self.assertEqual(f, RequestFrame(id="a", method="ping", params=None))

    def test_malformed_frames_raise(self) -> None:
        bad = [
            "not json",
            "[1,2,3]",
            '{"type":"bogus"}',
            '{"event":"chat"}',
            '{"type":"res","ok":true}',
            '{"type":"res","id":5,"ok":true}',
            '{"type":"event"}',
            '{"type":"event","event":"chat","payload":[1]}',
            '{"type":"req","id":"a"}',
        ]
        for text in bad:
            with self.subTest(text=text):
                with self.assertRaises(FrameError):
                    parse_frame(text)


class TestEncodeRequest(unittest.TestCase):
    def test_compact_json(self) -> None:
        out = encode_request(RequestFrame(id="chat.history-3", method="chat.history", params={"limit": 2}))
        self.assertEqual(
            out,
            '{"type":"req","id":"chat.history-3","method":"chat.history","params":{"limit":2}}',
        )

    def test_params_omitted_when_none(self) -> None:
        out = json.loads(encode_request(RequestFrame(id="a-1", method="a")))
        self.assertNotIn("params", out)
