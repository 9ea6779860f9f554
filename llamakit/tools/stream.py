"""
llamakit :: Streaming Tool Filter

Incremental classifier for one streamed turn: ordinary text is passed
through as it arrives, a tool-call envelope is held back in full.

  feed(text)  -> fragments to show now
  finish()    -> (fragments still held, cumulative text if a tool call
                  was seen else None)

Held back while streaming:
  - everything from the opening delimiter onwards
  - a trailing tail that could still grow into the opening delimiter
    (trailing whitespace plus a proper prefix of "<tool_call>")
  - the end-of-turn marker, when it arrives as its own fragment

INL - 2025
"""

from typing import List, Optional, Tuple

from llamakit.tools.parser import TOOL_CALL_OPEN


class StreamingToolFilter:
    """Per-turn stream state. Call reset() before each new turn."""

    def __init__(self, end_marker: Optional[str] = "<|eot_id|>", open_tag: str = TOOL_CALL_OPEN):
        self.end_marker = end_marker
        self.open_tag = open_tag
        self.reset()

    def reset(self):
        self.buffer = ""
        self.total = ""
        self.accumulating = False

    def _strip_marker(self, text: str) -> str:
        if self.end_marker:
            return text.replace(self.end_marker, "")
        return text

    def _held_tail(self, text: str) -> int:
        """Length of the suffix of text that must wait for more input."""
        k = min(len(self.open_tag) - 1, len(text))
        while k > 0 and not text.endswith(self.open_tag[:k]):
            k -= 1
        i = len(text) - k
        while i > 0 and text[i - 1].isspace():
            i -= 1
        return len(text) - i

    def feed(self, text: str) -> List[str]:
        if not text:
            return []
        self.total += text
        if self.accumulating:
            self.buffer += text
            return []
        if self.end_marker and text == self.end_marker:
            return []
        self.buffer += text

        idx = self.buffer.find(self.open_tag)
        if idx != -1:
            head = self._strip_marker(self.buffer[:idx])
            self.buffer = self.buffer[idx:]
            self.accumulating = True
            return [head.rstrip()] if head.strip() else []

        keep = self._held_tail(self.buffer)
        out = self.buffer[:len(self.buffer) - keep]
        self.buffer = self.buffer[len(self.buffer) - keep:]
        out = self._strip_marker(out)
        return [out] if out else []

    def finish(self) -> Tuple[List[str], Optional[str]]:
        """End of turn. Returns remaining fragments and the text to dispatch, if any."""
        if self.accumulating:
            return [], self.total
        rest = self._strip_marker(self.buffer)
        self.buffer = ""
        return ([rest] if rest.strip() else []), None
