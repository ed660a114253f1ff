"""Tests for recorded event decoding and session encoding."""

from __future__ import annotations

import json
import unittest

from pairflow.events.codec import decode_event, encode_event, encode_session
from pairflow.events.inbound import ImageAnalysisStarted, StreamFragment, TurnStarted
from pairflow.exceptions import MalformedFragment
from pairflow.session_manager import SessionManager


class DecodeEventTests(unittest.TestCase):
    """Validate decoding of each recorded event shape."""

    def test_turn_started_builds_user_message(self) -> None:
        event = decode_event(
            {
                "type": "TurnStarted",
                "session_id": "s1",
                "turn_id": "t1",
                "user_message": {"id": "u1", "content": "hi", "has_images": True},
            }
        )
        assert isinstance(event, TurnStarted)
        self.assertEqual(event.user_message.content, "hi")
        self.assertTrue(event.user_message.has_images)

    def test_image_analysis_started_builds_contexts(self) -> None:
        event = decode_event(
            {
                "type": "ImageAnalysisStarted",
                "session_id": "s1",
                "turn_id": "t1",
                "images": [{"id": "img-1", "image_name": "a.png"}],
            }
        )
        assert isinstance(event, ImageAnalysisStarted)
        self.assertEqual(event.images[0].image_name, "a.png")

    def test_unknown_type(self) -> None:
        with self.assertRaises(MalformedFragment):
            decode_event({"type": "Nope", "session_id": "s1"})

    def test_unexpected_fields(self) -> None:
        with self.assertRaises(MalformedFragment):
            decode_event({"type": "TurnEnded", "session_id": "s1", "turn_id": "t1", "extra": 1})

    def test_encode_then_decode_fragment(self) -> None:
        fragment = StreamFragment(
            session_id="s1", turn_id="t1", round_id="r1", kind="text", payload={"text": "x"}
        )
        self.assertEqual(decode_event(encode_event(fragment)), fragment)


class EncodeSessionTests(unittest.TestCase):
    """Validate that encoded sessions are plain JSON."""

    def test_tool_items_encode_without_parser_state(self) -> None:
        manager = SessionManager()
        manager.create_session("s1")
        manager.apply_events(
            [
                decode_event(
                    {
                        "type": "TurnStarted",
                        "session_id": "s1",
                        "turn_id": "t1",
                        "user_message": {"id": "u1", "content": "run ls"},
                    }
                ),
                StreamFragment(
                    session_id="s1",
                    turn_id="t1",
                    round_id="r1",
                    kind="tool_call",
                    payload={"id": "tool-1", "tool": "Bash", "delta": '{"cmd": "ls"}', "done": True},
                ),
            ]
        )
        session = manager.get_session("s1")
        assert session is not None
        encoded = encode_session(session)
        text = json.dumps(encoded)
        tool = encoded["dialog_turns"][0]["model_rounds"][0]["items"][0]
        self.assertEqual(tool["kind"], "tool")
        self.assertEqual(tool["status"], "pending")
        self.assertEqual(tool["tool_call"]["input"], {"cmd": "ls"})
        self.assertNotIn("params_parser", text)


if __name__ == "__main__":
    unittest.main()
