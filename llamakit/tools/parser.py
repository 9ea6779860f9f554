"""
llamakit :: Tool Call Parser

Parses tool-call envelopes from model-generated text and formats the
response envelopes fed back to the model.

  call:      <tool_call>{"id": 1, "name": "sum", "arguments": {"a": 1, "b": 2}}</tool_call>
  response:  <tool_response>
             {"id": 1, "result": 3}
             </tool_response>

A malformed envelope body never aborts the scan: it comes back as a
ToolCall carrying the parse error, and the caller decides whether that is
fatal or answered with an error envelope.

INL - 2025
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llamakit.errors import ToolCallParseError, ToolError


TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_PATTERN = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)


@dataclass
class ToolCall:
    """A parsed tool call from model output."""
    id: int
    name: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ToolError] = None  # set when the envelope body was invalid


def format_response(call_id: int, result: Any = None, error: Optional[str] = None) -> str:
    """Render one response envelope. Errors are reported as 'ToolError: <msg>'."""
    payload = {"id": call_id, "result": f"ToolError: {error}" if error is not None else result}
    return f"<tool_response>\n{json.dumps(payload, default=str)}\n</tool_response>"


class ToolCallParser:
    """Extract <tool_call> envelopes in order of appearance."""

    def find_envelopes(self, text: str) -> List[str]:
        return [m.group(1) for m in TOOL_CALL_PATTERN.finditer(text)]

    def parse(self, text: str) -> List[ToolCall]:
        """All envelopes in text. Missing ids default to the 1-based position."""
        calls = []
        for index, body in enumerate(self.find_envelopes(text), start=1):
            try:
                calls.append(self.parse_body(body, index))
            except ToolCallParseError as e:
                calls.append(ToolCall(id=index, error=e))
        return calls

    def parse_body(self, body: str, default_id: int) -> ToolCall:
        """Parse one envelope body. Raises ToolCallParseError."""
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ToolCallParseError(body, f"not valid JSON ({e.msg})", e) from e

        if not isinstance(data, dict):
            raise ToolCallParseError(body, "expected a JSON object")

        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ToolCallParseError(body, "missing tool name")

        call_id = data.get("id", default_id)
        if isinstance(call_id, bool) or not isinstance(call_id, int):
            raise ToolCallParseError(body, "id must be an integer")

        arguments = data.get("arguments", {})
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolCallParseError(body, "arguments must be an object")

        return ToolCall(id=call_id, name=name, arguments=arguments)
