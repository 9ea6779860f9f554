"""
llamakit :: Embedding Session

Text embeddings for retrieval. Queries and documents get distinct task
prefixes so they land in the same space from opposite sides:

  embeddings("what is RoPE?", is_query=True)   -> "search_query: what is RoPE?"
  embeddings(chunk)                            -> "search_document: <chunk>"

The whole input is decoded as a single batch (n_batch = n_ctx) on a
cleared attention cache, pooled by config.pooling and normalized by
config.embd_normalize:

  -1  none
   0  max-abs, scaled to the int16 range
   1  taxicab (L1)
   2  euclidean (L2)
  >2  p-norm

Calls are serialized; the backend holds one context.

INL - 2025
"""

import asyncio
import threading
import time
import uuid
from typing import List, Optional, Union

import torch

from llamakit.core.backend import ComputeBackend
from llamakit.core.config import SessionConfig
from llamakit.core.logging import SessionLogger, get_logger
from llamakit.core.metrics import SessionMetrics
from llamakit.core.registry import create_backend
from llamakit.errors import ConfigurationError, ContextOverflowError

logger = get_logger("llamakit.embedding")

QUERY_PREFIX = "search_query: "
DOCUMENT_PREFIX = "search_document: "

Embedding = Union[List[float], List[List[float]]]


def normalize_embedding(vec: torch.Tensor, embd_norm: int = 2) -> torch.Tensor:
    """Scale each row of vec; an all-zero row stays zero."""
    if embd_norm < 0:
        return vec.clone()
    if embd_norm == 0:
        total = vec.abs().amax(dim=-1, keepdim=True) / 32760.0
    else:
        total = torch.linalg.vector_norm(vec, ord=embd_norm, dim=-1, keepdim=True)
    scale = torch.where(total > 0, 1.0 / total, torch.zeros_like(total))
    return vec * scale


class EmbeddingSession:
    """One embedding context. pooling="none" yields one vector per token."""

    def __init__(
        self,
        config: SessionConfig,
        backend: Optional[ComputeBackend] = None,
        metrics: Optional[SessionMetrics] = None,
        session_id: Optional[str] = None,
    ):
        err = config.validate()
        if err:
            raise ConfigurationError(err)
        if backend is None:
            backend = create_backend(config)

        self.backend = backend
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.log = SessionLogger(self.session_id, logger, {"component": "embedding"})
        self.metrics = metrics or SessionMetrics(self.session_id)

        self.n_ctx = backend.n_ctx
        self.n_batch = self.n_ctx
        self.pooling = config.pooling
        self.embd_normalize = config.embd_normalize
        self._lock = threading.Lock()

        if self.n_ctx > backend.n_ctx_train:
            self.log.warning(
                f"model was trained on only {backend.n_ctx_train} context tokens ({self.n_ctx} specified)"
            )
        self.log.info("embedding session ready", n_ctx=self.n_ctx, pooling=self.pooling,
                      embd_normalize=self.embd_normalize)

    def tokenize(self, text: str, is_query: bool = False) -> List[int]:
        prefixed = (QUERY_PREFIX if is_query else DOCUMENT_PREFIX) + text
        return self.backend.tokenize(prefixed, add_special=True, parse_special=True)

    def embeddings(self, text: str, is_query: bool = False) -> Embedding:
        """
        Embed one text.

        Returns a single vector, or one vector per token when pooling is
        "none". Raises ContextOverflowError when the prefixed input does
        not fit in one batch.
        """
        tokens = self.tokenize(text, is_query)
        if len(tokens) > self.n_batch:
            raise ContextOverflowError(
                len(tokens), self.n_ctx, f"input of {len(tokens)} tokens exceeds batch size {self.n_batch}",
            )
        if self.config.verbose_prompt:
            self.log.info("embedding input", n_tokens=len(tokens), text=self.backend.detokenize(tokens))

        start = time.perf_counter()
        with self._lock:
            pooled = self.backend.embed(tokens, self.pooling)
        self.metrics.tokens_decoded.inc(len(tokens))
        out = normalize_embedding(pooled, self.embd_normalize)
        self.log.debug("embedded", n_tokens=len(tokens), is_query=is_query,
                       ms=round((time.perf_counter() - start) * 1000, 2))

        if self.pooling == "none":
            return out.tolist()
        return out[0].tolist()

    def embed_query(self, text: str) -> Embedding:
        return self.embeddings(text, is_query=True)

    def embed_documents(self, texts: List[str]) -> List[Embedding]:
        return [self.embeddings(t, is_query=False) for t in texts]

    async def aembeddings(self, text: str, is_query: bool = False) -> Embedding:
        return await asyncio.to_thread(self.embeddings, text, is_query)
