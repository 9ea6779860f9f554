"""
llamakit :: KV Cell Table

Cell-based attention cache bookkeeping with integer positions.

All metadata is integer:
  - pos:   i32 position of the cell (-1 = free)
  - token: i32 token id held by the cell
  - order: int64 monotonic insertion tick (stable logical order)

Position edits follow the compute engine's sequence operations:
  - seq_rm(p0, p1):        free cells with p0 <= pos < p1
  - seq_add(p0, p1, d):    shift positions in [p0, p1) by d; cells that
                           end up at a negative position are freed
  - seq_div(p0, p1, d):    integer-divide positions in [p0, p1) by d

A negative p0 means "from 0", a negative p1 means "to infinity".

INL - 2025
"""

import numpy as np
from typing import List, Optional, Tuple


class KVCellTable:
    """
    Fixed-capacity table of attention cells for a single sequence.

    Free cells are reused lowest-index first, so logical order is kept by
    the insertion tick, not by the cell index.
    """

    def __init__(self, n_ctx: int):
        self.n_ctx = n_ctx
        self.pos = np.full(n_ctx, -1, dtype=np.int32)
        self.token = np.zeros(n_ctx, dtype=np.int32)
        self.order = np.zeros(n_ctx, dtype=np.int64)
        self._tick: int = 0

    # ---------------------------------------------------------------- queries

    @property
    def num_used(self) -> int:
        return int((self.pos >= 0).sum())

    @property
    def num_free(self) -> int:
        return self.n_ctx - self.num_used

    def max_pos(self) -> int:
        """Largest occupied position, -1 when empty."""
        used = self.pos[self.pos >= 0]
        return int(used.max()) if used.size else -1

    def ordered(self) -> Tuple[np.ndarray, np.ndarray]:
        """(tokens, positions) of occupied cells in insertion order."""
        used = np.nonzero(self.pos >= 0)[0]
        used = used[np.argsort(self.order[used], kind="stable")]
        return self.token[used].copy(), self.pos[used].copy()

    # ---------------------------------------------------------------- placement

    def find_slots(self, n: int) -> Optional[np.ndarray]:
        """Indices of n free cells, or None if the table cannot hold them."""
        free = np.nonzero(self.pos < 0)[0]
        if free.size < n:
            return None
        return free[:n]

    def place(self, tokens: List[int], pos0: int) -> bool:
        """Place tokens at consecutive positions starting at pos0."""
        slots = self.find_slots(len(tokens))
        if slots is None:
            return False
        n = len(tokens)
        self.token[slots] = np.asarray(tokens, dtype=np.int32)
        self.pos[slots] = np.arange(pos0, pos0 + n, dtype=np.int32)
        self.order[slots] = np.arange(self._tick, self._tick + n, dtype=np.int64)
        self._tick += n
        return True

    def clear(self):
        self.pos[:] = -1
        self._tick = 0

    # ---------------------------------------------------------------- sequence ops

    def _range_mask(self, p0: int, p1: int) -> np.ndarray:
        if p0 < 0:
            p0 = 0
        if p1 < 0:
            p1 = np.iinfo(np.int32).max
        return (self.pos >= p0) & (self.pos < p1)

    def seq_rm(self, p0: int, p1: int) -> bool:
        mask = self._range_mask(p0, p1)
        self.pos[mask] = -1
        return True

    def seq_add(self, p0: int, p1: int, delta: int):
        if delta == 0 or p0 == p1:
            return
        mask = self._range_mask(p0, p1)
        self.pos[mask] += delta
        # shifted below zero -> evicted
        self.pos[mask & (self.pos < 0)] = -1

    def seq_div(self, p0: int, p1: int, d: int):
        if d == 1 or p0 == p1:
            return
        mask = self._range_mask(p0, p1)
        self.pos[mask] //= d

    def get_stats(self) -> dict:
        return {
            "n_ctx": self.n_ctx,
            "used_cells": self.num_used,
            "free_cells": self.num_free,
            "max_pos": self.max_pos(),
        }
