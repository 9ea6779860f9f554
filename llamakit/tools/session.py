"""
llamakit :: Tool Session

Turns a chat session into an agentic one. The model is primed with a
system preamble listing every tool schema; each reply is scanned for
<tool_call> envelopes, the tools are invoked, and their response
envelopes are fed back as the next input until a reply contains no call.

  infer(message)              blocking, returns the final reply
  ainfer(message)             awaitable
  inference_stream(message)   plain-text fragments, tool envelopes hidden
  ainference_stream(message)  async variant

Tool calls of one turn run concurrently; responses keep call order.
Dispatch is iterative and bounded by max_tool_rounds.

INL - 2025
"""

import asyncio
import concurrent.futures
import contextlib
import json
from typing import AsyncIterator, Iterator, List, Optional

from jinja2 import Template

from llamakit.core.backend import ComputeBackend
from llamakit.core.config import SessionConfig
from llamakit.core.metrics import SessionMetrics
from llamakit.core.registry import create_backend
from llamakit.engine.chat_session import ChatSession
from llamakit.engine.generation import EventKind
from llamakit.engine.transport import Direction
from llamakit.errors import ToolError, ToolLoopLimitError, UnknownToolError
from llamakit.tools.parser import ToolCall, ToolCallParser, format_response
from llamakit.tools.registry import ToolRegistry
from llamakit.tools.stream import StreamingToolFilter


TURN_END = "<|eot_id|>"
USER_PREFIX = "<|start_header_id|>user<|end_header_id|>\n\n"
USER_SUFFIX = "<|eot_id|><|start_header_id|>assistant<|end_header_id|>\n\n"

_ABANDONED = None

TOOL_PREAMBLE_TEMPLATE = Template(
    "<|start_header_id|>system<|end_header_id|>\n\n"
    "You are a function calling AI model. You are provided with function signatures within "
    "<tools></tools> XML tags. You may call one or more functions to assist with the user query. "
    "Don't make assumptions about what values to plug into functions. For each function call "
    "return a json object with a numeric call id, the function name and arguments within "
    "<tool_call></tool_call> XML tags as follows:\n"
    "<tool_call>\n"
    '{"id": <call-id>, "name": <function-name>, "arguments": <args-dict>}\n'
    "</tool_call>\n\n"
    "Results come back within <tool_response></tool_response> XML tags.\n\n"
    "<tools> {{ tools | join('\n') }} </tools>\n\n"
    "{% if prompt %}{{ prompt }}\n{% endif %}"
    "<|eot_id|><|start_header_id|>assistant<|end_header_id|>\n\n"
)


def render_tool_preamble(tools: ToolRegistry, prompt: str = "") -> str:
    schemas = [json.dumps(s) for s in tools.schemas()]
    return TOOL_PREAMBLE_TEMPLATE.render(tools=schemas, prompt=prompt)


class ToolSession:
    """
    Chat session with tool dispatch.

    strict_tool_calls=False answers malformed envelopes and unknown tools
    with error envelopes so the model can correct itself; True raises.
    """

    def __init__(
        self,
        config: SessionConfig,
        tools: ToolRegistry,
        backend: Optional[ComputeBackend] = None,
        max_tool_rounds: int = 8,
        strict_tool_calls: bool = False,
        metrics: Optional[SessionMetrics] = None,
        session_id: Optional[str] = None,
    ):
        if backend is None:
            backend = create_backend(config)
        self.tools = tools
        self.parser = ToolCallParser()
        self.max_tool_rounds = max_tool_rounds
        self.strict_tool_calls = strict_tool_calls
        self._inflight: Optional[asyncio.Future] = None  # output receive of the current async turn

        preamble = render_tool_preamble(tools, config.prompt)
        antiprompts = list(config.antiprompts)
        if TURN_END not in antiprompts:
            antiprompts.append(TURN_END)
        tool_config = config.replace(
            prompt=preamble,
            interactive=True,
            conversation=False,
            antiprompts=antiprompts,
            input_prefix=USER_PREFIX,
            input_suffix=USER_SUFFIX,
            n_keep=len(backend.tokenize(preamble, True, True)),
            escape_sequences=False,   # response envelopes carry JSON escapes
            special=True,
        )

        self.session = ChatSession(tool_config, backend, flush=False, metrics=metrics, session_id=session_id)
        self.log = self.session.log.bind(component="tools")
        self.greeting: Optional[str] = None
        if self.session.greeting is not None:
            self.greeting = self._resolve(self.session.greeting)

    @property
    def metrics(self) -> SessionMetrics:
        return self.session.metrics

    # =====================================================================
    # Blocking
    # =====================================================================

    def infer(self, message: str) -> str:
        """Send a user message; dispatch tool calls until the model answers in text."""
        with self.session.turn_lock:
            self.session.send(message)
            return self._resolve(self.session.receive())

    async def ainfer(self, message: str) -> str:
        """Async variant of infer(); async tool handlers run on the caller's event loop."""
        async with self._turn():
            # INPUT is empty while the turn lock is held: send does not block
            self.session.send(message)
            output = await self._areceive()
            rounds = 0
            while True:
                calls = self.parser.parse(output)
                if not calls:
                    return self._strip_turn_end(output)
                rounds = self._next_round(rounds, output)
                responses = await self.dispatch(calls)
                self.session.send("\n".join(responses))
                output = await self._areceive()

    def _resolve(self, output: str) -> str:
        rounds = 0
        while True:
            calls = self.parser.parse(output)
            if not calls:
                return self._strip_turn_end(output)
            rounds = self._next_round(rounds, output)
            responses = self._run_dispatch(calls)
            self.session.send("\n".join(responses))
            output = self.session.receive()

    def _next_round(self, rounds: int, output: str) -> int:
        rounds += 1
        if rounds > self.max_tool_rounds:
            raise ToolLoopLimitError(self.max_tool_rounds, output)
        return rounds

    @contextlib.asynccontextmanager
    async def _turn(self):
        """Hold the session's turn lock from a coroutine."""
        lock = self.session.turn_lock
        acquiring = asyncio.ensure_future(asyncio.to_thread(lock.acquire))
        try:
            await asyncio.shield(acquiring)
        except asyncio.CancelledError:
            # the worker still takes the lock: hand it back once it has
            acquiring.add_done_callback(lambda _: lock.release())
            raise
        self._inflight = None
        try:
            yield
        finally:
            inflight, self._inflight = self._inflight, None
            if inflight is not None and not inflight.done():
                # the next turn starts once the orphaned receive has its line
                inflight.add_done_callback(lambda _: lock.release())
            else:
                lock.release()

    async def _areceive(self) -> str:
        """Next output line. A cancelled caller still takes the line off the transport."""
        pending = asyncio.get_running_loop().run_in_executor(None, self.session.receive)
        pending.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight = pending
        return await asyncio.shield(pending)

    # =====================================================================
    # Dispatch
    # =====================================================================

    def _run_dispatch(self, calls: List[ToolCall]) -> List[str]:
        """Run dispatch() to completion from synchronous code."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.dispatch(calls))
        # called from inside an event loop: use a private loop on a helper thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, self.dispatch(calls)).result()

    async def dispatch(self, calls: List[ToolCall]) -> List[str]:
        """Invoke every call concurrently; response envelopes in call order."""
        return list(await asyncio.gather(*(self._call_tool(c) for c in calls)))

    async def _call_tool(self, call: ToolCall) -> str:
        if call.error is not None:
            self.session.metrics.tool_errors.inc()
            if self.strict_tool_calls:
                raise call.error
            self.log.warning(f"invalid tool call: {call.error.message}", call_id=call.id)
            return format_response(call.id, error=call.error.message)

        spec = self.tools.get(call.name)
        if spec is None:
            self.session.metrics.tool_errors.inc()
            if self.strict_tool_calls:
                raise UnknownToolError(call.name)
            self.log.warning(f"unknown tool '{call.name}'", call_id=call.id)
            return format_response(call.id, error=f'no tool named "{call.name}"')

        self.session.metrics.tool_calls.inc()
        self.log.debug(f"calling tool '{call.name}'", call_id=call.id, arguments=call.arguments)
        try:
            result = await spec.invoke(call.arguments)
        except ToolError as e:
            self.session.metrics.tool_errors.inc()
            self.log.warning(f"tool '{call.name}' rejected arguments: {e.message}", error=e, call_id=call.id)
            return format_response(call.id, error=e.message)
        except Exception as e:
            # reported back to the model as a ToolError envelope
            self.session.metrics.tool_errors.inc()
            self.log.warning(f"tool '{call.name}' failed: {e}", error=e, call_id=call.id)
            return format_response(call.id, error=str(e) or type(e).__name__)
        return format_response(call.id, result=result)

    # =====================================================================
    # Streaming
    # =====================================================================

    def inference_stream(self, message: str) -> Iterator[str]:
        """
        Yield the reply as text fragments. Tool-call envelopes are never
        yielded: they are dispatched and the stream continues with the
        model's next turn.

        Closing the iterator early abandons the turn: nothing further is
        dispatched and its output line is discarded.
        """
        session = self.session
        with session.turn_lock:
            events = session.subscribe()
            filt = StreamingToolFilter(end_marker=TURN_END)
            drained = True
            rounds = 0
            try:
                session.send(message)
                drained = False
                while True:
                    event = events.get()
                    if event.kind == EventKind.INSERT:
                        yield from filt.feed(event.text)
                        continue
                    if event.kind == EventKind.CLOSED:
                        raise session._closed_error()

                    # RESET: the turn's line is already on the transport
                    output = session.receive()
                    drained = True
                    fragments, calls, rounds = self._end_of_turn(filt, output, rounds)
                    yield from fragments
                    if not calls:
                        return
                    responses = self._run_dispatch(calls)
                    filt.reset()
                    session.send("\n".join(responses))
                    drained = False
            finally:
                self._abandon(events, drained)

    async def ainference_stream(self, message: str) -> AsyncIterator[str]:
        """
        Async variant of inference_stream. Events are read one at a time on a
        worker thread; cancelling the consumer abandons the turn the same way
        closing the sync iterator does.
        """
        session = self.session
        async with self._turn():
            events = session.subscribe()
            filt = StreamingToolFilter(end_marker=TURN_END)
            drained = True
            rounds = 0
            try:
                session.send(message)
                drained = False
                while True:
                    event = await asyncio.to_thread(events.get)
                    if event.kind == EventKind.INSERT:
                        for fragment in filt.feed(event.text):
                            yield fragment
                        continue
                    if event.kind == EventKind.CLOSED:
                        raise session._closed_error()

                    output = session.receive()
                    drained = True
                    fragments, calls, rounds = self._end_of_turn(filt, output, rounds)
                    for fragment in fragments:
                        yield fragment
                    if not calls:
                        return
                    responses = await self.dispatch(calls)
                    filt.reset()
                    session.send("\n".join(responses))
                    drained = False
            finally:
                # wakes a worker still blocked in events.get()
                events.put_nowait(_ABANDONED)
                self._abandon(events, drained)

    def _end_of_turn(self, filt: StreamingToolFilter, output: str, rounds: int):
        """(fragments still held, calls to dispatch, rounds so far) for a finished turn."""
        fragments, pending = filt.finish()
        calls = self.parser.parse(pending) if pending is not None else []
        if calls:
            rounds = self._next_round(rounds, output)
        return fragments, calls, rounds

    def _abandon(self, events, drained: bool):
        self.session.unsubscribe(events)
        if not drained:
            self.session.transport.discard_next(Direction.OUTPUT)
            self.log.debug("stream abandoned, turn output discarded")

    # =====================================================================
    # Lifecycle
    # =====================================================================

    def stop(self, timeout: float = 5.0):
        self.session.stop(timeout)

    def __enter__(self) -> "ToolSession":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    @staticmethod
    def _strip_turn_end(text: str) -> str:
        return text.replace(TURN_END, "").strip()
