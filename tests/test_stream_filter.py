"""
llamakit :: Test Streaming Tool Filter

Tests for:
  - plain text passes through unchanged (modulo the end marker)
  - envelopes split across fragments are never shown
  - text before an envelope is shown, trailing whitespace trimmed
  - held-back prefixes of the opening delimiter

Run:
    python -m pytest tests/test_stream_filter.py -v

INL - 2025
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llamakit.tools.stream import StreamingToolFilter


def run(fragments, end_marker="<|eot_id|>"):
    f = StreamingToolFilter(end_marker=end_marker)
    shown = []
    for frag in fragments:
        shown.extend(f.feed(frag))
    rest, pending = f.finish()
    shown.extend(rest)
    return shown, pending


class TestPlainText:
    def test_char_by_char(self):
        shown, pending = run(list("The capital is Paris") + ["<|eot_id|>"])
        assert "".join(shown) == "The capital is Paris"
        assert pending is None

    def test_end_marker_fragment_is_swallowed(self):
        shown, _ = run(["Hi", "<|eot_id|>"])
        assert shown == ["Hi"]

    def test_end_marker_inside_fragment_is_stripped(self):
        shown, _ = run(["Done.<|eot_id|>"])
        assert "".join(shown) == "Done."

    def test_angle_bracket_not_a_tag(self):
        shown, pending = run(["a <", "b> c"])
        assert "".join(shown) == "a <b> c"
        assert pending is None

    def test_no_end_marker(self):
        shown, _ = run(["x", "y"], end_marker=None)
        assert "".join(shown) == "xy"


class TestEnvelopes:
    def test_text_then_envelope(self):
        shown, pending = run([
            "Paris",
            '\n\n<tool_call>{"id": 1, "name": "lookup", "arguments": {"q": "Paris"}}',
            "</tool_call>",
        ])
        assert shown == ["Paris"]
        assert pending.startswith("Paris\n\n<tool_call>")

    def test_envelope_split_across_fragments(self):
        frags = ["<tool", "_call>", '{"id": 1, "name": "sum", ', '"arguments": {}}', "</tool_call>", "<|eot_id|>"]
        shown, pending = run(frags)
        assert shown == []
        assert pending == "".join(frags)

    def test_text_before_envelope(self):
        shown, pending = run(["Let me check. ", "\n<tool_", "call>{}", "</tool_call>"])
        assert shown == ["Let me check."]
        assert pending.endswith("</tool_call>")

    def test_whitespace_before_envelope_is_held(self):
        f = StreamingToolFilter()
        assert f.feed("Sure") == ["Sure"]
        assert f.feed("  ") == []
        assert f.feed("<tool_call>") == []
        assert f.accumulating

    def test_text_after_envelope_is_not_shown(self):
        shown, pending = run(['<tool_call>{"name": "a"}</tool_call>', " trailing"])
        assert shown == []
        assert pending.endswith(" trailing")

    def test_reset_between_turns(self):
        f = StreamingToolFilter()
        f.feed("<tool_call>{}</tool_call>")
        assert f.finish()[1] is not None
        f.reset()
        assert f.feed("ok") == ["ok"]
        assert f.finish() == ([], None)


class TestHeldTail:
    @pytest.mark.parametrize("tail", ["<", "<t", "<tool_", "<tool_call"])
    def test_partial_open_tag_is_held(self, tail):
        f = StreamingToolFilter()
        assert f.feed("abc" + tail) == ["abc"]
        assert f.buffer == tail

    def test_held_tail_released_at_finish(self):
        shown, pending = run(["abc <to"])
        assert "".join(shown) == "abc <to"
        assert pending is None
