"""
llamakit :: Errors

Structured error hierarchy. Every error carries:
  - code:        stable machine-readable identifier
  - phase:       where it happened (construction, decode, transport, tool_dispatch)
  - cause:       the underlying exception, if any
  - recoverable: True for caller mistakes that a corrected retry can fix

INL - 2025
"""

from typing import Optional


class LlamaKitError(Exception):
    """Base class for all llamakit errors."""

    phase: str = "runtime"
    recoverable: bool = False

    def __init__(self, code: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause

    @classmethod
    def wrap(cls, err: BaseException) -> "LlamaKitError":
        if isinstance(err, LlamaKitError):
            return err
        return LlamaKitError("UNKNOWN", str(err), err)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, phase={self.phase!r}, message={self.message!r})"


# =========================================================================
# Construction
# =========================================================================

class ConfigurationError(LlamaKitError):
    """Invalid session configuration (bad sizes, bad group-attention params)."""

    phase = "construction"
    recoverable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__("CONFIG_INVALID", message, cause)


class ResourceError(LlamaKitError):
    """A model, context or sampler could not be created."""

    phase = "construction"

    def __init__(self, message: str, cause: Optional[BaseException] = None, code: str = "RESOURCE_FAILED"):
        super().__init__(code, message, cause)


class SessionCacheError(ResourceError):
    """Session-cache file exists but cannot be loaded."""

    def __init__(self, path: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"session cache {path!r}: {message}", cause, code="SESSION_CACHE_INVALID")
        self.path = path


# =========================================================================
# Generation
# =========================================================================

class DecodeError(LlamaKitError):
    """The compute engine failed to evaluate a batch."""

    phase = "decode"

    def __init__(self, status: int, n_tokens: int, message: str = ""):
        super().__init__(
            "DECODE_FAILED",
            message or f"failed to eval {n_tokens} tokens (status={status})",
        )
        self.status = status
        self.n_tokens = n_tokens


class ContextOverflowError(LlamaKitError):
    """Context is full and no recovery algorithm is allowed to run."""

    phase = "decode"

    def __init__(self, n_past: int, n_ctx: int, reason: str):
        super().__init__("CONTEXT_FULL", f"context full ({n_past}/{n_ctx}): {reason}")
        self.n_past = n_past
        self.n_ctx = n_ctx


class SessionClosedError(LlamaKitError):
    """The transport was closed while the caller was waiting on it."""

    phase = "transport"

    def __init__(self, message: str = "session closed", cause: Optional[BaseException] = None):
        super().__init__("SESSION_CLOSED", message, cause)


# =========================================================================
# Tool dispatch
# =========================================================================

class ToolError(LlamaKitError):
    """Base class for tool dispatch errors."""

    phase = "tool_dispatch"

    def __init__(self, code: str, tool_name: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(code, message, cause)
        self.tool_name = tool_name


class ToolCallParseError(ToolError):
    """A tool-call envelope body is not a valid call object."""

    def __init__(self, body: str, message: str, cause: Optional[BaseException] = None):
        super().__init__("TOOL_CALL_INVALID", "", f"invalid tool call {body!r}: {message}", cause)
        self.body = body


class UnknownToolError(ToolError):
    def __init__(self, tool_name: str):
        super().__init__("TOOL_UNKNOWN", tool_name, f'no tool named "{tool_name}"')


class ToolArgumentError(ToolError):
    """Arguments do not match the tool's declared parameters."""

    def __init__(self, tool_name: str, message: str):
        super().__init__("TOOL_ARGUMENTS_INVALID", tool_name, f'tool "{tool_name}": {message}')


class ToolLoopLimitError(ToolError):
    """The model kept calling tools past the configured number of rounds."""

    def __init__(self, max_rounds: int, last_output: str = ""):
        super().__init__(
            "TOOL_LOOP_LIMIT", "", f"tool dispatch exceeded {max_rounds} rounds"
        )
        self.max_rounds = max_rounds
        self.last_output = last_output
