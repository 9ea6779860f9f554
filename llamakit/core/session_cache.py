"""
llamakit :: Session Cache

Two small on-disk artifacts that let a session resume cheaply:

  Session file (binary, little-endian):
    magic    u32  "LKSC"
    version  u32
    n_tokens u32
    tokens   i32[n_tokens]

  Prompt transcript (plain text): every prompt line and output line
  exchanged, appended turn by turn and replayed into the preamble of
  the next session.

Concurrent sessions sharing one path are not supported; nothing is locked.

INL - 2025
"""

import os
from typing import List

import numpy as np

from llamakit.errors import SessionCacheError


SESSION_MAGIC = 0x43534B4C  # b"LKSC" little-endian
SESSION_VERSION = 1
_HEADER = np.dtype("<u4")


def write_session_file(path: str, tokens: List[int]):
    header = np.array([SESSION_MAGIC, SESSION_VERSION, len(tokens)], dtype=_HEADER)
    body = np.asarray(tokens, dtype="<i4")
    tmp = path + ".tmp"
    with open(tmp, "wb") as f:
        f.write(header.tobytes())
        f.write(body.tobytes())
    os.replace(tmp, path)


def read_session_file(path: str, capacity: int) -> List[int]:
    """
    Read the token list of a session file.

    Raises SessionCacheError on a bad header, a truncated body, or more
    tokens than `capacity`.
    """
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise SessionCacheError(path, "cannot read", e) from e

    if len(raw) < 12:
        raise SessionCacheError(path, "truncated header")
    magic, version, n_tokens = np.frombuffer(raw[:12], dtype=_HEADER)
    if magic != SESSION_MAGIC:
        raise SessionCacheError(path, f"bad magic 0x{int(magic):08x}")
    if version != SESSION_VERSION:
        raise SessionCacheError(path, f"unsupported version {int(version)}")
    if n_tokens > capacity:
        raise SessionCacheError(path, f"token count {int(n_tokens)} exceeds capacity {capacity}")
    body = raw[12:]
    if len(body) != int(n_tokens) * 4:
        raise SessionCacheError(path, f"expected {int(n_tokens)} tokens, file holds {len(body) // 4}")
    return np.frombuffer(body, dtype="<i4").astype(np.int64).tolist()


class PromptTranscript:
    """Append-only text transcript replayed on the next session start."""

    def __init__(self, path: str):
        self.path = path

    def read(self) -> str:
        if not os.path.exists(self.path):
            return ""
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()

    def append(self, text: str):
        if not text:
            return
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)
