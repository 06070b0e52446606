import unittest
from typing import Any, Optional

from clawlink.gateway.events import ChatMessage, ChatStream, ChatStreamEnd, Observers, UnreadSessionsChanged
from clawlink.gateway.rpc import RequestCorrelator
from clawlink.gateway.sessions import SessionManager
from clawlink.gateway.stream import StreamReconstructor, extract_event_text, new_suffix


def chat(
    state: str,
    text: Optional[str] = None,
    *,
    run_id: Optional[str] = "r1",
    session_key: Optional[str] = "A",
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"state": state, "seq": 0, **extra}
    if run_id is not None:
        payload["runId"] = run_id
    if session_key is not None:
        payload["sessionKey"] = session_key
    if text is not None:
        payload["message"] = {"role": "assistant", "content": [{"type": "text", "text": text}]}
    return payload


class _Harness:
    def __init__(self, current: str = "A") -> None:
        self.observers = Observers()
        self.sessions = SessionManager(
            rpc=RequestCorrelator(default_timeout=1.0),
            observers=self.observers,
            history_limit=50,
        )
        self.sessions.adopt_default(current)
        self.stream = StreamReconstructor(sessions=self.sessions, observers=self.observers)
        self.events: list[Any] = []
        self.observers.subscribe(self.events.append)

    def chunks(self) -> list[str]:
        return [e.chunk for e in self.events if isinstance(e, ChatStream)]

    def ends(self) -> list[ChatStreamEnd]:
        return [e for e in self.events if isinstance(e, ChatStreamEnd)]


class TestHelpers(unittest.TestCase):
    def test_new_suffix(self) -> None:
        self.assertEqual(new_suffix("", "Hi"), "Hi")
        self.assertEqual(new_suffix("Hi", "Hi there"), " there")
        self.assertEqual(new_suffix("Hi there", "Hi there"), "")
        self.assertEqual(new_suffix("Hi there", "Hi"), "")

    def test_extract_event_text_concatenates_text_blocks(self) -> None:
        payload = {
            "message": {
                "content": [
                    {"type": "text", "text": "a"},
                    {"type": "tool_use", "name": "x"},
                    {"type": "text", "text": "b"},
                ]
            }
        }
        self.assertEqual(extract_event_text(payload), "ab")
        self.assertEqual(extract_event_text({}), "")
        self.assertEqual(extract_event_text({"message": "nope"}), "")


class TestStreamReconstructor(unittest.TestCase):
    def _started(self, h: _Harness, run_id: str = "r1") -> str:
        run = h.stream.begin(message_id="m1", session_key="A")
        h.stream.bind(run, run_id)
        return run.message_id

    def test_hi_there_scenario(self) -> None:
        h = _Harness()
        self._started(h)
        for text in ("Hi", "Hi there", "Hi there!"):
            h.stream.handle_chat(chat("delta", text))
        self.assertEqual(h.chunks(), ["Hi", " there", "!"])

        h.stream.handle_chat(chat("final", "Hi there!"))
        self.assertEqual(h.chunks(), ["Hi", " there", "!"])
        ends = h.ends()
        self.assertEqual(len(ends), 1)
        self.assertEqual(ends[0].state, "final")
        assert ends[0].message is not None
        self.assertEqual(ends[0].message.content, "Hi there!")
        self.assertEqual([m.content for m in h.sessions.messages], ["Hi there!"])
        self.assertEqual(h.sessions.messages[0].id, "m1")
        self.assertIsNone(h.stream.active_run)

    def test_chunks_concatenate_to_final_text_without_repeats(self) -> None:
        h = _Harness()
        self._started(h)
        snapshots = ["", "T", "Th", "Th", "The", "The q", "The q", "The quick", "The quick fox"]
        for s in snapshots:
            h.stream.handle_chat(chat("delta", s))
        self.assertEqual("".join(h.chunks()), "The quick fox")
        self.assertEqual(h.chunks(), ["T", "h", "e", " q", "uick", " fox"])

    def test_final_carries_tail_not_seen_in_deltas(self) -> None:
        h = _Harness()
        self._started(h)
        h.stream.handle_chat(chat("delta", "Hel"))
        h.stream.handle_chat(chat("final", "Hello"))
        self.assertEqual(h.chunks(), ["Hel", "lo"])
        self.assertEqual(h.sessions.messages[-1].content, "Hello")

    def test_shorter_snapshot_keeps_buffer(self) -> None:
        h = _Harness()
        self._started(h)
        h.stream.handle_chat(chat("delta", "Hello world"))
        h.stream.handle_chat(chat("delta", "Hello"))
        self.assertEqual(h.chunks(), ["Hello world"])
        run = h.stream.active_run
        assert run is not None
        self.assertEqual(run.text, "Hello world")

        h.stream.handle_chat(chat("final", "Hello"))
        self.assertEqual(h.sessions.messages[-1].content, "Hello world")

    def test_streaming_message_is_upserted_in_place(self) -> None:
        h = _Harness()
        h.sessions.add_message(ChatMessage(id="u1", role="user", content="q", timestamp=1))
        self._started(h)
        h.stream.handle_chat(chat("delta", "a"))
        h.stream.handle_chat(chat("delta", "ab"))
        self.assertEqual([(m.id, m.content) for m in h.sessions.messages], [("u1", "q"), ("m1", "ab")])
        h.stream.handle_chat(chat("final", "abc"))
        self.assertEqual([(m.id, m.content) for m in h.sessions.messages], [("u1", "q"), ("m1", "abc")])

    def test_aborted_without_text(self) -> None:
        h = _Harness()
        self._started(h)
        h.stream.handle_chat(chat("aborted", None, errorMessage="stopped"))
        ends = h.ends()
        self.assertEqual(len(ends), 1)
        self.assertEqual(ends[0].state, "aborted")
        self.assertIsNone(ends[0].message)
        self.assertEqual(h.sessions.messages, ())
        self.assertIsNone(h.stream.active_run)

    def test_error_after_partial_text_keeps_partial_message(self) -> None:
        h = _Harness()
        self._started(h)
        h.stream.handle_chat(chat("delta", "partial"))
        h.stream.handle_chat(chat("error", None, errorMessage="boom"))
        self.assertEqual(h.ends()[0].state, "error")
        self.assertEqual(h.sessions.messages[-1].content, "partial")

    def test_foreign_session_event_marks_unread_and_leaves_run_alone(self) -> None:
        h = _Harness(current="A")
        self._started(h, run_id="r1")
        h.stream.handle_chat(chat("delta", "Hi", run_id="r1"))

        h.stream.handle_chat(chat("delta", "other", run_id="r2", session_key="B"))
        h.stream.handle_chat(chat("final", "other!", run_id="r2", session_key="B"))

        self.assertEqual(h.sessions.unread_session_keys, frozenset({"B"}))
        self.assertEqual(h.chunks(), ["Hi"])
        self.assertEqual([m.content for m in h.sessions.messages], ["Hi"])
        run = h.stream.active_run
        assert run is not None
        self.assertEqual((run.run_id, run.text), ("r1", "Hi"))
        unread_events = [e for e in h.events if isinstance(e, UnreadSessionsChanged)]
        self.assertEqual(len(unread_events), 1)

    def test_run_finishing_in_inactive_session_is_discarded_silently(self) -> None:
        h = _Harness(current="A")
        self._started(h, run_id="r1")
        h.stream.handle_chat(chat("delta", "Hi", run_id="r1"))

        # User moved to B while r1 was still streaming in A.
        h.sessions.current_session_key = "B"
        h.sessions.clear_history()
        h.stream.handle_chat(chat("final", "Hi there", run_id="r1", session_key="A"))

        self.assertIsNone(h.stream.active_run)
        self.assertEqual(h.ends(), [])
        self.assertEqual(h.sessions.messages, ())
        self.assertIn("A", h.sessions.unread_session_keys)

    def test_other_run_in_same_session_is_ignored(self) -> None:
        h = _Harness()
        self._started(h, run_id="r1")
        h.stream.handle_chat(chat("delta", "not mine", run_id="r9"))
        self.assertEqual(h.chunks(), [])
        self.assertEqual(h.sessions.unread_session_keys, frozenset())

    def test_no_active_run_ignores_chat(self) -> None:
        h = _Harness()
        h.stream.handle_chat(chat("delta", "x"))
        h.stream.handle_chat(chat("final", "xy"))
        self.assertEqual(h.events, [])

    def test_pending_run_adopts_first_run_id(self) -> None:
        h = _Harness()
        run = h.stream.begin(message_id="m1", session_key="A")
        h.stream.handle_chat(chat("delta", "early", run_id="r5"))
        self.assertEqual(run.run_id, "r5")
        self.assertEqual(h.chunks(), ["early"])
        # chat.send returns later with the same id.
        self.assertTrue(h.stream.bind(run, "r5"))

    def test_missing_session_key_counts_as_current(self) -> None:
        h = _Harness()
        self._started(h)
        h.stream.handle_chat(chat("delta", "ok", session_key=None))
        self.assertEqual(h.chunks(), ["ok"])

    def test_bind_after_finish_reports_stale_run(self) -> None:
        h = _Harness()
        run = h.stream.begin(message_id="m1", session_key="A")
        h.stream.handle_chat(chat("final", "done", run_id="r1"))
        self.assertFalse(h.stream.bind(run, "r1"))
