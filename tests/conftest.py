"""
llamakit :: Test fixtures

A character-level tokenizer and two tiny torch "models" that make the
TorchBackend deterministic under greedy sampling:

  - CyclingModel:   always predicts a printable character (never ends a turn)
  - ScriptedModel:  replays a reply per turn, chosen by a respond(prefix)
                    callback, then emits <|eot_id|>

INL - 2025
"""

import os
import sys
from typing import Callable, Dict, List

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llamakit.core.backend import TorchBackend
from llamakit.core.config import SessionConfig
from llamakit.core.sampling import SamplingParams


SPECIAL_TOKENS = ["<s>", "</s>", "<|eot_id|>", "<|start_header_id|>", "<|end_header_id|>"]
ASSISTANT_HEADER = "<|start_header_id|>assistant<|end_header_id|>\n\n"
USER_HEADER = "<|start_header_id|>user<|end_header_id|>\n\n"


class CharTokenizer:
    """One token per character, plus Llama-3 style special tokens."""

    def __init__(self):
        self.pieces: List[str] = SPECIAL_TOKENS + ["\n", "\t"] + [chr(c) for c in range(32, 127)]
        self.ids: Dict[str, int] = {p: i for i, p in enumerate(self.pieces)}
        self.bos_token_id = self.ids["<s>"]
        self.eos_token_id = self.ids["</s>"]
        self.eot_token_id = self.ids["<|eot_id|>"]
        self.add_bos = True
        self._unk = self.ids["?"]

    @property
    def vocab_size(self) -> int:
        return len(self.pieces)

    def encode(self, text: str, add_special: bool = False, parse_special: bool = True) -> List[int]:
        ids = [self.bos_token_id] if add_special and self.add_bos else []
        i = 0
        while i < len(text):
            if parse_special:
                special = next((s for s in SPECIAL_TOKENS if text.startswith(s, i)), None)
                if special is not None:
                    ids.append(self.ids[special])
                    i += len(special)
                    continue
            ids.append(self.ids.get(text[i], self._unk))
            i += 1
        return ids

    def decode(self, token_ids) -> str:
        return "".join(self.token_to_piece(t, True) for t in token_ids)

    def token_to_piece(self, token_id: int, special: bool = True) -> str:
        if token_id < len(SPECIAL_TOKENS):
            return self.pieces[token_id] if special else ""
        return self.pieces[token_id]

    def is_eog(self, token_id: int) -> bool:
        return token_id in (self.eos_token_id, self.eot_token_id)


def last_user_message(prefix: str) -> str:
    """Content of the most recent user turn in a rendered prompt ('' if none)."""
    if USER_HEADER not in prefix:
        return ""
    return prefix.rsplit(USER_HEADER, 1)[-1].replace("<|eot_id|>", "").strip()


class CyclingModel(torch.nn.Module):
    """Predicts 'a'..'z' by the number of resident tokens."""

    def __init__(self, tokenizer: CharTokenizer):
        super().__init__()
        self.tokenizer = tokenizer
        self.base = tokenizer.ids["a"]

    def forward(self, token_ids: torch.Tensor, positions: torch.Tensor) -> torch.Tensor:
        n = token_ids.shape[0]
        logits = torch.zeros(n, self.tokenizer.vocab_size)
        logits[-1, self.base + n % 26] = 10.0
        return logits


class ScriptedModel(torch.nn.Module):
    """
    Replays respond(prefix) after the last `marker`, then ends the turn.

    prefix is the rendered text before the marker; tokens already produced
    after the marker select the next one.
    """

    def __init__(self, tokenizer: CharTokenizer, respond: Callable[[str], str], marker: str = ASSISTANT_HEADER):
        super().__init__()
        self.tokenizer = tokenizer
        self.respond = respond
        self.marker_ids = tokenizer.encode(marker, False, True)

    def _find_marker(self, ids: List[int]) -> int:
        m = len(self.marker_ids)
        for start in range(len(ids) - m, -1, -1):
            if ids[start:start + m] == self.marker_ids:
                return start
        return -1

    def forward(self, token_ids: torch.Tensor, positions: torch.Tensor) -> torch.Tensor:
        ids = token_ids.tolist()
        logits = torch.zeros(len(ids), self.tokenizer.vocab_size)
        eot = self.tokenizer.eot_token_id
        start = self._find_marker(ids)
        if start < 0:
            logits[-1, eot] = 10.0
            return logits
        generated = ids[start + len(self.marker_ids):]
        prefix = self.tokenizer.decode(ids[:start])
        target = self.tokenizer.encode(self.respond(prefix), False, False) + [eot]
        nxt = target[len(generated)] if len(generated) < len(target) else eot
        logits[-1, nxt] = 10.0
        return logits


@pytest.fixture
def tokenizer():
    return CharTokenizer()


@pytest.fixture
def make_backend(tokenizer):
    """Factory: make_backend(model=None | "cycle" | respond-callable, **backend kwargs)."""

    def make(model=None, n_ctx: int = 4096, marker: str = ASSISTANT_HEADER, **kwargs) -> TorchBackend:
        if model == "cycle":
            model = CyclingModel(tokenizer)
        elif callable(model) and not isinstance(model, torch.nn.Module):
            model = ScriptedModel(tokenizer, model, marker=marker)
        return TorchBackend(model, tokenizer, n_ctx=n_ctx, **kwargs)

    return make


@pytest.fixture
def greedy():
    return SamplingParams(temperature=0.0, seed=1)


@pytest.fixture
def make_config(greedy):
    def make(**overrides) -> SessionConfig:
        overrides.setdefault("sampling", greedy)
        return SessionConfig(**overrides)

    return make
