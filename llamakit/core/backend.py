"""
llamakit :: Compute Backend

The interface the generation loop drives, plus a reference
implementation on top of a plain torch module.

  ComputeBackend: tokenize / detokenize, decode a batch, read logits,
                  edit attention-cache positions, save / load session state,
                  embed one batch

  TorchBackend:   keeps a KVCellTable of resident tokens and re-runs
                  model(token_ids=..., positions=...) over them on every
                  decode. model=None gives seeded random logits (dummy mode).
                  Embeddings come from model.embed(token_ids=..., positions=...),
                  which returns hidden states of shape (n, n_embd).

Decode status follows the compute engine convention:
  0 = ok, 1 = no KV slot for the batch (warning), < 0 = fatal.

INL - 2025
"""

from abc import ABC, abstractmethod
from enum import IntEnum
from typing import List, Optional

import torch

from llamakit.core.kv_cache import KVCellTable
from llamakit.core.logging import get_logger
from llamakit.core.session_cache import read_session_file, write_session_file
from llamakit.errors import DecodeError, ResourceError

logger = get_logger("llamakit.backend")


class DecodeStatus(IntEnum):
    OK = 0
    NO_KV_SLOT = 1
    FAILED = -1


class ComputeBackend(ABC):
    """Compute engine collaborator for one session (one context, one sequence)."""

    n_decoded: int = 0  # tokens evaluated since creation

    @property
    @abstractmethod
    def n_ctx(self) -> int: ...

    @property
    @abstractmethod
    def n_ctx_train(self) -> int: ...

    # -- vocabulary

    @abstractmethod
    def tokenize(self, text: str, add_special: bool, parse_special: bool) -> List[int]: ...

    @abstractmethod
    def token_to_piece(self, token: int, special: bool = True) -> str: ...

    @abstractmethod
    def token_bos(self) -> Optional[int]: ...

    @abstractmethod
    def token_eos(self) -> Optional[int]: ...

    @abstractmethod
    def token_eot(self) -> Optional[int]: ...

    @abstractmethod
    def is_eog(self, token: int) -> bool: ...

    @abstractmethod
    def add_bos_token(self) -> bool: ...

    # -- evaluation

    @abstractmethod
    def decode(self, tokens: List[int], pos0: int) -> int:
        """Evaluate tokens at positions pos0, pos0+1, ... Returns a DecodeStatus value."""

    @abstractmethod
    def get_logits(self, idx: int = -1) -> torch.Tensor:
        """Logits row for batch index idx of the last decode."""

    # -- attention cache

    @abstractmethod
    def kv_seq_rm(self, p0: int, p1: int) -> bool: ...

    @abstractmethod
    def kv_seq_add(self, p0: int, p1: int, delta: int): ...

    @abstractmethod
    def kv_seq_div(self, p0: int, p1: int, d: int): ...

    # -- session state

    @abstractmethod
    def save_state_file(self, path: str, tokens: List[int]) -> bool: ...

    @abstractmethod
    def load_state_file(self, path: str, capacity: int) -> List[int]:
        """Restore attention state; returns the token list stored with it."""

    # -- embeddings

    @abstractmethod
    def embed(self, tokens: List[int], pooling: str = "cls") -> torch.Tensor:
        """
        Evaluate tokens as one batch on a cleared cache and pool the hidden
        states: "none" gives (n, n_embd), the other modes (1, n_embd).
        """

    def detokenize(self, tokens: List[int], special: bool = True) -> str:
        return "".join(self.token_to_piece(t, special) for t in tokens)


def pool_hidden(hidden: torch.Tensor, pooling: str) -> torch.Tensor:
    if pooling == "none":
        return hidden
    if pooling == "cls":
        return hidden[:1]
    if pooling == "last":
        return hidden[-1:]
    if pooling == "mean":
        return hidden.mean(dim=0, keepdim=True)
    raise ValueError(f"unknown pooling type {pooling!r}")


class TorchBackend(ComputeBackend):
    """
    Reference backend over a torch module.

    The module is called as model(token_ids=LongTensor[n], positions=LongTensor[n])
    and must return logits of shape (n, vocab_size). Cells are passed in
    insertion order; positions carry the shift / self-extend remapping.
    """

    def __init__(
        self,
        model: Optional[torch.nn.Module],
        tokenizer,
        n_ctx: int = 4096,
        n_ctx_train: Optional[int] = None,
        device: str = "cpu",
        seed: int = 0,
        vocab_size: Optional[int] = None,
        n_embd: int = 64,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self._n_ctx = n_ctx
        self._n_ctx_train = n_ctx_train or n_ctx
        self.device = device
        self.vocab_size = vocab_size or tokenizer.vocab_size
        self.cells = KVCellTable(n_ctx)
        self.n_decoded = 0
        self._logits: Optional[torch.Tensor] = None
        self._dummy_gen = torch.Generator().manual_seed(seed)
        self._seed = seed
        self.n_embd = n_embd  # dummy mode only; a model reports its own width
        self._dummy_table: Optional[torch.Tensor] = None
        if model is not None:
            self.model.eval()

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def n_ctx_train(self) -> int:
        return self._n_ctx_train

    # -- vocabulary

    def tokenize(self, text: str, add_special: bool, parse_special: bool) -> List[int]:
        return self.tokenizer.encode(text, add_special=add_special, parse_special=parse_special)

    def token_to_piece(self, token: int, special: bool = True) -> str:
        return self.tokenizer.token_to_piece(token, special)

    def token_bos(self) -> Optional[int]:
        return self.tokenizer.bos_token_id

    def token_eos(self) -> Optional[int]:
        return self.tokenizer.eos_token_id

    def token_eot(self) -> Optional[int]:
        return self.tokenizer.eot_token_id

    def is_eog(self, token: int) -> bool:
        return self.tokenizer.is_eog(token)

    def add_bos_token(self) -> bool:
        return self.tokenizer.add_bos

    # -- evaluation

    def decode(self, tokens: List[int], pos0: int) -> int:
        if not tokens:
            return DecodeStatus.OK
        if not self.cells.place(tokens, pos0):
            logger.warning(f"no KV slot for {len(tokens)} tokens ({self.cells.num_free} free)")
            return DecodeStatus.NO_KV_SLOT
        try:
            logits = self._forward()
        except (RuntimeError, ValueError, IndexError) as e:
            logger.error(f"model forward failed: {e}")
            return DecodeStatus.FAILED
        self._logits = logits[-len(tokens):]
        self.n_decoded += len(tokens)
        return DecodeStatus.OK

    def _forward(self) -> torch.Tensor:
        toks, pos = self.cells.ordered()
        if self.model is None:
            # Dummy logits (no model loaded)
            return torch.randn(len(toks), self.vocab_size, generator=self._dummy_gen)
        token_ids = torch.from_numpy(toks).long().to(self.device)
        positions = torch.from_numpy(pos).long().to(self.device)
        with torch.no_grad():
            logits = self.model(token_ids=token_ids, positions=positions)
        return logits.float().cpu()

    def get_logits(self, idx: int = -1) -> torch.Tensor:
        if self._logits is None:
            raise RuntimeError("no logits available: decode a batch first")
        return self._logits[idx]

    # -- attention cache

    def kv_seq_rm(self, p0: int, p1: int) -> bool:
        return self.cells.seq_rm(p0, p1)

    def kv_seq_add(self, p0: int, p1: int, delta: int):
        self.cells.seq_add(p0, p1, delta)

    def kv_seq_div(self, p0: int, p1: int, d: int):
        self.cells.seq_div(p0, p1, d)

    # -- session state

    def save_state_file(self, path: str, tokens: List[int]) -> bool:
        write_session_file(path, tokens)
        return True

    def load_state_file(self, path: str, capacity: int) -> List[int]:
        tokens = read_session_file(path, capacity)
        self.cells.clear()
        self.cells.place(tokens, 0)
        return tokens

    # -- embeddings

    def embed(self, tokens: List[int], pooling: str = "cls") -> torch.Tensor:
        if not tokens:
            raise ValueError("cannot embed an empty batch")
        # embedding batches never share the cache with generation
        self.cells.clear()
        self._logits = None
        hidden = self._embed_forward(tokens)
        self.n_decoded += len(tokens)
        return pool_hidden(hidden, pooling)

    def _embed_forward(self, tokens: List[int]) -> torch.Tensor:
        if self.model is None:
            if self._dummy_table is None:
                gen = torch.Generator().manual_seed(self._seed)
                self._dummy_table = torch.randn(self.vocab_size, self.n_embd, generator=gen)
            return self._dummy_table[torch.tensor(tokens, dtype=torch.long)]

        embed = getattr(self.model, "embed", None)
        if embed is None:
            raise ResourceError("model does not produce embeddings: no embed(token_ids, positions) method")
        token_ids = torch.tensor(tokens, dtype=torch.long, device=self.device)
        positions = torch.arange(len(tokens), dtype=torch.long, device=self.device)
        try:
            with torch.no_grad():
                hidden = embed(token_ids=token_ids, positions=positions)
        except (RuntimeError, ValueError, IndexError) as e:
            logger.error(f"model embed failed: {e}")
            raise DecodeError(int(DecodeStatus.FAILED), len(tokens), f"failed to embed {len(tokens)} tokens: {e}") from e
        return hidden.float().cpu()
