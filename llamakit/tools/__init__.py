"""
llamakit :: Tools

  - registry: tool schemas and the frozen registry
  - parser: <tool_call> / <tool_response> envelopes
  - session: tool dispatch loop (blocking + streaming)
  - stream: streaming text / envelope classifier
"""

from llamakit.tools.registry import ToolRegistry, ToolRegistryBuilder, ToolSpec, tool
from llamakit.tools.parser import ToolCall, ToolCallParser, format_response
from llamakit.tools.session import ToolSession
from llamakit.tools.stream import StreamingToolFilter
