"""
llamakit :: Chat Session

Runs a GenerationLoop on its own daemon thread and exposes the caller side:

  infer(message)     blocking: one input line in, one output line back
  stream(message)    lazy: sampled pieces as they are produced
  ainfer(message)    awaitable wrapper around infer()
  stop()             idempotent, safe from any thread

Errors raised on the loop thread are re-raised to whichever caller is
waiting when the transport closes.

INL - 2025
"""

import asyncio
import threading
from typing import Iterator, Optional

from llamakit.core.backend import ComputeBackend
from llamakit.core.config import SessionConfig
from llamakit.core.metrics import SessionMetrics
from llamakit.core.registry import create_backend
from llamakit.engine.generation import EventKind, GenerationLoop
from llamakit.engine.transport import CLOSED, Direction
from llamakit.errors import LlamaKitError, SessionClosedError


class ChatSession:
    """
    One interactive session: a generation thread plus its line transport.

    With flush=True the greeting a non-interactive-first session produces
    is consumed and dropped; with flush=False it is kept in self.greeting.
    """

    def __init__(
        self,
        config: SessionConfig,
        backend: Optional[ComputeBackend] = None,
        flush: bool = True,
        metrics: Optional[SessionMetrics] = None,
        session_id: Optional[str] = None,
    ):
        if backend is None:
            backend = create_backend(config)
        self.config = config
        self.loop = GenerationLoop(backend, config, metrics=metrics, session_id=session_id)
        self.transport = self.loop.transport
        self.log = self.loop.log
        self.turn_lock = threading.Lock()
        self._stopped = False

        self._thread = threading.Thread(
            target=self.loop.run, name=f"llamakit-{self.loop.session_id}", daemon=True,
        )
        self._thread.start()

        self.greeting: Optional[str] = None
        if self.loop.awaits_greeting:
            line = self._receive_output()
            if not flush:
                self.greeting = line

    @property
    def session_id(self) -> str:
        return self.loop.session_id

    @property
    def metrics(self) -> SessionMetrics:
        return self.loop.metrics

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    # =====================================================================
    # Blocking
    # =====================================================================

    def infer(self, message: str) -> str:
        """Send one input line, wait for the model's reply line."""
        with self.turn_lock:
            self.send(message)
            return self._receive_output()

    async def ainfer(self, message: str) -> str:
        return await asyncio.to_thread(self.infer, message)

    def send(self, message: str):
        if self.transport.send(Direction.INPUT, message) is CLOSED:
            raise self._closed_error()

    def receive(self) -> str:
        return self._receive_output()

    # =====================================================================
    # Streaming
    # =====================================================================

    def stream(self, message: str) -> Iterator[str]:
        """
        Yield sampled pieces of the reply to `message` as they arrive.

        Abandoning the iterator early discards the turn's output line so
        the next caller never receives it.
        """
        with self.turn_lock:
            events = self.loop.subscribe()
            drained = True
            try:
                self.send(message)
                drained = False
                while True:
                    event = events.get()
                    if event.kind == EventKind.INSERT:
                        yield event.text
                    elif event.kind == EventKind.RESET:
                        self._receive_output()
                        drained = True
                        return
                    else:
                        raise self._closed_error()
            finally:
                self.loop.unsubscribe(events)
                if not drained:
                    self.transport.discard_next(Direction.OUTPUT)

    def subscribe(self):
        return self.loop.subscribe()

    def unsubscribe(self, events):
        self.loop.unsubscribe(events)

    # =====================================================================
    # Lifecycle
    # =====================================================================

    def stop(self, timeout: float = 5.0):
        """Stop generation and join the loop thread (bounded wait)."""
        if self._stopped:
            return
        self._stopped = True
        self.loop.stop()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                self.log.warning(f"generation thread still running after {timeout}s")

    def wait(self, timeout: Optional[float] = None):
        """Block until the loop ends on its own (non-interactive sessions)."""
        self._thread.join(timeout)

    def transcript(self):
        return self.transport.transcript()

    def get_stats(self) -> dict:
        stats = self.loop.get_stats()
        stats["running"] = self.is_running
        return stats

    def __enter__(self) -> "ChatSession":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    # =====================================================================
    # Internals
    # =====================================================================

    def _receive_output(self) -> str:
        line = self.transport.receive(Direction.OUTPUT)
        if line is CLOSED:
            raise self._closed_error()
        return line

    def _closed_error(self) -> LlamaKitError:
        if self.loop.error is not None:
            return self.loop.error
        return SessionClosedError()
