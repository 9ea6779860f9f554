"""
llamakit :: Generation Loop

Turn-based generation state machine for one session.

Each step():
  1. decode the queued batch (after truncation, window management and
     session-cache prefix reuse)
  2. either consume pending prompt tokens or sample one new token
  3. publish sampled pieces as output events
  4. check anti-prompts / end-of-generation, and if a pause is due,
     flush the turn's output line and block on the next input line

Window management (chosen once by grp_attn_n):
  - shift:        discard half of the non-kept tokens when the window fills
  - self-extend:  compress older positions by grp_attn_n, window by window

The loop owns every piece of mutable state; callers only see the
LineTransport and the output event queues.

INL - 2025
"""

import os
import queue
import threading
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional

from llamakit.core.backend import ComputeBackend, DecodeStatus
from llamakit.core.chat_template import ChatTemplate
from llamakit.core.config import SessionConfig
from llamakit.core.logging import SessionLogger, get_logger
from llamakit.core.metrics import SessionMetrics
from llamakit.core.sampling import TokenSampler
from llamakit.core.session_cache import PromptTranscript
from llamakit.core.text import common_prefix_len, process_escapes
from llamakit.engine.transport import CLOSED, Direction, LineTransport
from llamakit.errors import (
    ConfigurationError,
    ContextOverflowError,
    DecodeError,
    LlamaKitError,
    ResourceError,
    SessionCacheError,
)

logger = get_logger("llamakit.engine")

# tokens of history scanned for anti-prompts
ANTIPROMPT_LOOKBACK = 32


class LoopState(IntEnum):
    AWAITING_INPUT = 0
    CONSUMING_PROMPT = 1
    GENERATING = 2
    CHECKING_STOP = 3
    STOPPED = 4


class EventKind(IntEnum):
    INSERT = 0   # a sampled piece was appended to the turn's output
    RESET = 1    # the turn's output was flushed as one line
    CLOSED = 2   # the loop has ended


@dataclass(frozen=True)
class OutputEvent:
    kind: EventKind
    text: str = ""


class GenerationLoop:
    """
    Interactive generation over a ComputeBackend.

    Construction validates the configuration, loads the session cache and
    tokenizes the prompt; run() (usually on a dedicated thread) drives the
    state machine until the budget ends, the model stops, or stop() is called.
    """

    def __init__(
        self,
        backend: ComputeBackend,
        config: SessionConfig,
        transport: Optional[LineTransport] = None,
        metrics: Optional[SessionMetrics] = None,
        session_id: Optional[str] = None,
    ):
        err = config.validate()
        if err:
            raise ConfigurationError(err)

        self.backend = backend
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.log = SessionLogger(self.session_id, logger)
        self.metrics = metrics or SessionMetrics(self.session_id)
        self.transport = transport or LineTransport()

        self.n_ctx = backend.n_ctx
        if config.n_ctx and config.n_ctx != self.n_ctx:
            self.log.warning(f"n_ctx {config.n_ctx} requested, backend provides {self.n_ctx}")

        self.interactive = config.interactive_mode
        self.interactive_first = config.interactive_first or config.conversation
        self.conversation = config.conversation

        # ── group attention (self-extend) ──
        self.ga_n = config.grp_attn_n
        self.ga_w = config.grp_attn_w
        self.ga_i = 0
        if self.ga_n > 1:
            n_ctx_train = backend.n_ctx_train
            if n_ctx_train % self.ga_w != 0:
                raise ConfigurationError(
                    f"n_ctx_train ({n_ctx_train}) must be a multiple of grp_attn_w ({self.ga_w})"
                )
            if self.n_ctx < n_ctx_train * self.ga_n:
                raise ConfigurationError(
                    f"n_ctx ({self.n_ctx}) must be >= n_ctx_train * grp_attn_n ({n_ctx_train * self.ga_n})"
                )
            self.log.info("self-extend enabled", ga_n=self.ga_n, ga_w=self.ga_w, n_ctx_train=n_ctx_train)

        # ── chat template ──
        self.chat_template: Optional[ChatTemplate] = None
        self.chat_msgs: List[Dict[str, str]] = []
        if self.conversation:
            self.chat_template = ChatTemplate(config.chat_template) if config.chat_template else ChatTemplate()
            if config.input_prefix or config.input_suffix:
                self.log.warning("input_prefix / input_suffix are ignored in conversation mode")

        # ── session cache ──
        self.path_session = config.path_session
        self.session_tokens: List[int] = []
        if self.path_session:
            self.session_tokens = self._load_session(self.path_session)

        # ── prompt ──
        self.prompt_transcript = PromptTranscript(config.prompt_file) if config.prompt_file else None
        replay = self.prompt_transcript.read() if self.prompt_transcript else ""

        prompt = config.prompt
        if self.chat_template is not None and prompt:
            prompt = self._chat_add_and_format("system", prompt)
        if replay:
            # resuming: prior turns are already part of the prompt
            prompt += replay
            self.interactive = True
            self.interactive_first = True
            self.log.info("replaying prompt transcript", path=config.prompt_file, chars=len(replay))

        add_bos = backend.add_bos_token()
        if not self.interactive_first or prompt or not self.session_tokens:
            embd_inp = backend.tokenize(prompt, True, True)
        else:
            self.log.debug("using prompt from session file")
            embd_inp = list(self.session_tokens)

        if not embd_inp:
            if add_bos and backend.token_bos() is not None:
                embd_inp = [backend.token_bos()]
                self.log.warning("empty prompt, starting from BOS")
            else:
                raise ConfigurationError("input is empty")

        if len(embd_inp) > self.n_ctx - 4:
            raise ConfigurationError(f"prompt is too long ({len(embd_inp)} tokens, max {self.n_ctx - 4})")

        # ── match against the session cache ──
        n_matching = 0
        if self.session_tokens:
            n_matching = common_prefix_len(self.session_tokens, embd_inp)
            if not prompt and n_matching == len(embd_inp):
                self.log.info("using full prompt from session file")
            elif n_matching >= len(embd_inp):
                self.log.info("session file has exact match for prompt")
            elif n_matching < len(embd_inp) // 2:
                self.log.warning(
                    f"session file has low similarity to prompt ({n_matching} / {len(embd_inp)} tokens); "
                    "will mostly be reevaluated"
                )
            else:
                self.log.info(f"session file matches {n_matching} / {len(embd_inp)} tokens of prompt")
            # drop cached cells past the match
            backend.kv_seq_rm(n_matching, -1)

        # full match: re-evaluate the last prompt token so there are logits to sample from
        if self.session_tokens and n_matching == len(embd_inp) and len(self.session_tokens) >= len(embd_inp):
            self.session_tokens = self.session_tokens[:len(embd_inp) - 1]
            backend.kv_seq_rm(len(embd_inp) - 1, -1)
        self.n_matching_session_tokens = n_matching

        n_keep = config.n_keep
        if n_keep < 0 or n_keep > len(embd_inp):
            n_keep = len(embd_inp)
        elif add_bos:
            n_keep = min(n_keep + 1, len(embd_inp))
        self.n_keep = n_keep

        if config.verbose_prompt:
            self.log.info(f"prompt: {prompt!r}", n_tokens=len(embd_inp), n_keep=n_keep)

        # ── anti-prompts ──
        self.antiprompts = list(config.antiprompts)
        self.antiprompt_ids = [backend.tokenize(ap, False, True) for ap in self.antiprompts]

        # ── sampler ──
        try:
            processors = config.sampling.constraints().build_processors(backend)
            self.sampler = TokenSampler(config.sampling, processors)
        except (RuntimeError, ValueError, TypeError) as e:
            raise ResourceError("failed to initialize sampler", e) from e
        self.log.info(f"sampler: {self.sampler.describe()}")

        self.need_to_save_session = bool(self.path_session) and n_matching < len(embd_inp)

        # ── loop state ──
        self.embd_inp: List[int] = embd_inp
        self.embd: List[int] = []
        self.context_tokens: List[int] = []
        self.n_past = 0
        self.n_remain = config.n_predict
        self.n_consumed = 0
        self.n_session_consumed = 0
        self.is_antiprompt = False
        self.is_interacting = self.interactive_first
        self.input_echo = True
        self.need_insert_eot = False
        self.state = LoopState.CONSUMING_PROMPT
        self.error: Optional[LlamaKitError] = None

        self._embd_sampled = False
        self._last_sampled = False
        self._output: List[str] = []
        self._assistant: List[str] = []
        self._reply_pending = not self.interactive_first
        self._stop_requested = False
        self._subscribers: List[queue.Queue] = []
        self._sub_lock = threading.Lock()

        self.log.info(
            "session ready",
            n_ctx=self.n_ctx, n_batch=config.n_batch, n_predict=config.n_predict,
            n_keep=self.n_keep, prompt_tokens=len(embd_inp), interactive=self.interactive,
        )

    # =====================================================================
    # Public API
    # =====================================================================

    @property
    def awaits_greeting(self) -> bool:
        """True when the first output line is produced without any input."""
        return not self.interactive_first

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue()
        with self._sub_lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue):
        with self._sub_lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def stop(self):
        """Stop the loop from any thread; unblocks a pending input wait."""
        self._stop_requested = True
        self.interactive = False
        self.transport.close()

    def run(self):
        """Drive the loop until it stops. Errors are kept in self.error."""
        try:
            while self.step():
                pass
        except LlamaKitError as e:
            self.error = e
            self.log.error(f"generation loop failed: {e}", error=e)
        except Exception as e:
            self.error = LlamaKitError.wrap(e)
            self.log.exception(f"generation loop crashed: {e}")
        finally:
            self._finish()

    def step(self) -> bool:
        """One cycle of the state machine. Returns False once the loop is done."""
        if self._stop_requested:
            return False
        if not ((self.n_remain != 0 and not self.is_antiprompt) or self.interactive):
            return False

        if self.embd:
            self._decode_pending()
        self.embd = []

        if len(self.embd_inp) <= self.n_consumed and not self.is_interacting:
            self._generate_token()
        else:
            self._consume_input()

        if self.input_echo:
            self._display()

        if len(self.embd_inp) <= self.n_consumed:
            self.state = LoopState.CHECKING_STOP
            self._check_antiprompt()

            if self.n_past > 0 and self.is_interacting:
                if not self._await_input():
                    return False

            if self.n_past > 0 and self.is_interacting:
                self.sampler.reset()
                self.is_interacting = False

        if self._embd_sampled and self.embd and self.backend.is_eog(self.embd[-1]) and not self.interactive:
            self.log.info("end of text")
            return False

        # interactive: budget exhausted -> back to the user
        if self.interactive and self.n_remain <= 0 and self.config.n_predict >= 0:
            self.n_remain = self.config.n_predict
            self.is_interacting = True
            self.need_insert_eot = self.chat_template is not None

        return True

    def get_stats(self) -> dict:
        return {
            "session_id": self.session_id,
            "state": self.state.name,
            "n_ctx": self.n_ctx,
            "n_past": self.n_past,
            "n_keep": self.n_keep,
            "n_remain": self.n_remain,
            "context_tokens": len(self.context_tokens),
            "session_tokens": len(self.session_tokens),
            "n_matching_session_tokens": self.n_matching_session_tokens,
            "ga_i": self.ga_i,
            "seed": self.sampler.seed,
        }

    # =====================================================================
    # Decode phase
    # =====================================================================

    def _decode_pending(self):
        max_embd = self.n_ctx - 4
        if len(self.embd) > max_embd:
            skipped = len(self.embd) - max_embd
            self.embd = self.embd[:max_embd]
            self.log.warning(f"input too long, skipped {skipped} token{'s' if skipped > 1 else ''}")

        if self.ga_n == 1:
            self._shift_context()
        else:
            self._self_extend()

        self._reuse_session_prefix()

        n_batch = self.config.n_batch
        for i in range(0, len(self.embd), n_batch):
            chunk = self.embd[i:i + n_batch]
            status = self.backend.decode(chunk, self.n_past)
            if status != DecodeStatus.OK:
                reason = "no KV slot" if status == DecodeStatus.NO_KV_SLOT else "decode failed"
                raise DecodeError(int(status), len(chunk), f"failed to eval {len(chunk)} tokens: {reason}")
            self.n_past += len(chunk)
            self.context_tokens.extend(chunk)
            self.metrics.tokens_decoded.inc(len(chunk))
        self.metrics.context_used.set(len(self.context_tokens))

        if self.embd and self.path_session:
            self.session_tokens.extend(self.embd)
            self.n_session_consumed = len(self.session_tokens)

    def _shift_context(self):
        """Discard half of the tokens after n_keep once the window is full."""
        if self.n_past + len(self.embd) < self.n_ctx:
            return
        if not self.config.ctx_shift:
            raise ContextOverflowError(self.n_past, self.n_ctx, "context shifting is disabled")
        if self.config.n_predict == -2:
            raise ContextOverflowError(self.n_past, self.n_ctx, "n_predict is -2 (stop when full)")

        n_left = self.n_past - self.n_keep
        n_discard = n_left // 2
        if n_discard <= 0:
            raise ContextOverflowError(self.n_past, self.n_ctx, f"n_keep ({self.n_keep}) leaves nothing to discard")
        self.log.debug(
            "context full, swapping",
            n_past=self.n_past, n_left=n_left, n_ctx=self.n_ctx, n_keep=self.n_keep, n_discard=n_discard,
        )

        self.backend.kv_seq_rm(self.n_keep, self.n_keep + n_discard)
        self.backend.kv_seq_add(self.n_keep + n_discard, self.n_past, -n_discard)
        self.n_past -= n_discard
        del self.context_tokens[self.n_keep:self.n_keep + n_discard]

        # the cached prefix no longer matches the window
        self.path_session = ""
        self.metrics.context_shifts.inc()

    def _self_extend(self):
        """Compress positions of completed windows by ga_n."""
        ga_n, ga_w = self.ga_n, self.ga_w
        while self.n_past >= self.ga_i + ga_w:
            ib = (ga_n * self.ga_i) // ga_w
            bd = (ga_w // ga_n) * (ga_n - 1)
            dd = (ga_w // ga_n) - ib * bd - ga_w

            self.log.debug(
                "self-extend shift",
                ga_i=self.ga_i, n_past=self.n_past, ib=ib, bd=bd, dd=dd,
            )

            self.backend.kv_seq_add(self.ga_i, self.n_past, ib * bd)
            self.backend.kv_seq_div(self.ga_i + ib * bd, self.ga_i + ib * bd + ga_w, ga_n)
            self.backend.kv_seq_add(self.ga_i + ib * bd + ga_w, self.n_past + ib * bd, dd)

            self.n_past -= bd
            self.ga_i += ga_w // ga_n
            self.metrics.self_extend.inc()

    def _reuse_session_prefix(self):
        """Skip batch tokens already evaluated in the loaded session."""
        if self.n_session_consumed >= len(self.session_tokens):
            return
        i = 0
        while i < len(self.embd):
            if self.embd[i] != self.session_tokens[self.n_session_consumed]:
                self.session_tokens = self.session_tokens[:self.n_session_consumed]
                break
            self.n_past += 1
            self.n_session_consumed += 1
            i += 1
            if self.n_session_consumed >= len(self.session_tokens):
                break
        if i > 0:
            self.context_tokens.extend(self.embd[:i])
            self.embd = self.embd[i:]
            self.metrics.session_tokens_reused.inc(i)

    # =====================================================================
    # Consume / generate
    # =====================================================================

    def _generate_token(self):
        self.state = LoopState.GENERATING
        if self.need_to_save_session and self.path_session and not self.config.prompt_cache_ro:
            self.need_to_save_session = False
            self.backend.save_state_file(self.path_session, self.session_tokens)
            self.log.info("saved session", path=self.path_session, n_tokens=len(self.session_tokens))

        token = self.sampler.sample(self.backend)
        self.sampler.accept(token, True)
        self.metrics.tokens_sampled.inc()

        self.embd.append(token)
        self.input_echo = True
        self.n_remain -= 1
        self._embd_sampled = True
        self._last_sampled = True

    def _consume_input(self):
        self.state = LoopState.CONSUMING_PROMPT
        while len(self.embd_inp) > self.n_consumed:
            token = self.embd_inp[self.n_consumed]
            self.embd.append(token)
            self.sampler.accept(token, False)
            self.n_consumed += 1
            if len(self.embd) >= self.config.n_batch:
                break
        self._embd_sampled = False
        if self.embd:
            self._last_sampled = False

    def _display(self):
        if not self._embd_sampled:
            return
        for token in self.embd:
            piece = self.backend.token_to_piece(token, self.config.special)
            if self.chat_template is not None and not self.backend.is_eog(token):
                self._assistant.append(self.backend.token_to_piece(token, False))
            if piece:
                self._output.append(piece)
                self._publish(OutputEvent(EventKind.INSERT, piece))

    # =====================================================================
    # Stop checks and input
    # =====================================================================

    def _check_antiprompt(self):
        if self.antiprompts:
            last_output = self.sampler.previous_string(self.backend, ANTIPROMPT_LOOKBACK)
            self.is_antiprompt = False
            # not interactive: the reverse prompt may be followed by a few characters
            extra_padding = 0 if self.interactive else 2
            for ap in self.antiprompts:
                search_start = max(0, len(last_output) - (len(ap) + extra_padding))
                if last_output.find(ap, search_start) != -1:
                    self.is_antiprompt = True
                    break

            if not self.is_antiprompt:
                last = self.sampler.last()
                for ids in self.antiprompt_ids:
                    if len(ids) == 1 and last == ids[0]:
                        self.is_antiprompt = True
                        break

            if self.is_antiprompt:
                self.log.debug("found antiprompt", tail=last_output[-32:])
                if self.interactive:
                    self.is_interacting = True
                    if self._last_sampled:
                        self.need_insert_eot = self.chat_template is not None

        # end of generation in interactive mode: queue the first anti-prompt and pause
        last = self.sampler.last()
        if self._last_sampled and last is not None and self.backend.is_eog(last) and self.interactive:
            if self.antiprompt_ids and self.antiprompt_ids[0] != [last]:
                self.embd_inp.extend(self.antiprompt_ids[0])
                self.is_antiprompt = True
            self.is_interacting = True
            self.need_insert_eot = False
            self._last_sampled = False

    def _await_input(self) -> bool:
        """Flush the turn and block for the next input line. False if the transport closed."""
        if self.chat_template is not None and self._assistant:
            self._chat_add_and_format("assistant", "".join(self._assistant))
            self._assistant = []

        if self.config.input_prefix_bos and self.backend.token_bos() is not None:
            self.embd_inp.append(self.backend.token_bos())

        self._flush_output()

        self.state = LoopState.AWAITING_INPUT
        line = self.transport.receive(Direction.INPUT)
        if line is CLOSED:
            self.log.debug("transport closed while awaiting input")
            return False

        self.metrics.on_turn_start()
        buffer = process_escapes(line) if self.config.escape_sequences else line

        if buffer:
            format_chat = self.chat_template is not None
            if format_chat:
                user_inp = self._chat_add_and_format("user", buffer)
                line_pfx, line_sfx = [], []
                replay_text = user_inp
            else:
                user_inp = buffer
                line_pfx = self.backend.tokenize(self.config.input_prefix, False, True)
                line_sfx = self.backend.tokenize(self.config.input_suffix, False, True)
                replay_text = self.config.input_prefix + buffer + self.config.input_suffix
            line_inp = self.backend.tokenize(user_inp, False, format_chat)

            if self.need_insert_eot and format_chat:
                eot = self.backend.token_eot()
                self.embd_inp.append(eot if eot is not None else self.backend.token_eos())
                self.need_insert_eot = False

            self.embd_inp.extend(line_pfx)
            self.embd_inp.extend(line_inp)
            self.embd_inp.extend(line_sfx)
            self.n_remain -= len(line_inp)

            if self.prompt_transcript is not None:
                self.prompt_transcript.append(replay_text)
        else:
            self.log.debug("empty line, passing control back")

        self._reply_pending = True
        self.is_antiprompt = False
        self.input_echo = False
        return True

    def _flush_output(self):
        text = "".join(self._output)
        self._output = []
        if not (self._reply_pending or text):
            return
        self._reply_pending = False
        if self.prompt_transcript is not None:
            self.prompt_transcript.append(text)
        self.transport.send(Direction.OUTPUT, text)
        self._publish(OutputEvent(EventKind.RESET, text))
        self.metrics.on_turn_end()

    def _finish(self):
        try:
            if not self._stop_requested and self.error is None:
                self._flush_output()
            if self.path_session and self.config.prompt_cache_all and not self.config.prompt_cache_ro:
                self.backend.save_state_file(self.path_session, self.session_tokens)
                self.log.info("saved final session", path=self.path_session, n_tokens=len(self.session_tokens))
        finally:
            self.state = LoopState.STOPPED
            self.transport.close()
            self._publish(OutputEvent(EventKind.CLOSED))
        self.log.info("session stopped", n_past=self.n_past, elapsed_ms=round(self.log.elapsed_ms(), 1))

    # =====================================================================
    # Helpers
    # =====================================================================

    def _publish(self, event: OutputEvent):
        with self._sub_lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put_nowait(event)

    def _chat_add_and_format(self, role: str, content: str) -> str:
        message = {"role": role, "content": content}
        formatted = self.chat_template.format_single(self.chat_msgs, message, role == "user")
        self.chat_msgs.append(message)
        return formatted

    def _load_session(self, path: str) -> List[int]:
        if not os.path.exists(path):
            self.log.info("session file does not exist, will create", path=path)
            return []
        if os.path.getsize(path) == 0:
            self.log.info("session file is empty, new session", path=path)
            return []
        try:
            tokens = self.backend.load_state_file(path, self.n_ctx)
        except SessionCacheError:
            raise
        except (OSError, ValueError) as e:
            raise SessionCacheError(path, "failed to load", e) from e
        self.log.info(f"loaded a session with prompt size of {len(tokens)} tokens", path=path)
        return tokens
