"""
llamakit :: Line Transport

Blocking one-slot channels between the caller and the generation thread.

  INPUT:   caller -> loop (user lines, tool responses)
  OUTPUT:  loop -> caller (one line per completed turn)

send() blocks while the direction's slot is full; receive() blocks while
it is empty. close() wakes everyone: pending and future receives return
CLOSED, sends are refused. Every line ever sent is kept in a transcript.

INL - 2025
"""

import threading
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Union


class Direction(IntEnum):
    INPUT = 0
    OUTPUT = 1


class _Closed:
    """Sentinel returned by a closed transport."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CLOSED"

    def __bool__(self) -> bool:
        return False


CLOSED = _Closed()


@dataclass(frozen=True)
class TranscriptEntry:
    direction: Direction
    line: str


class LineTransport:
    """
    Bidirectional line channel, one slot per direction.

    Exactly one producer and one consumer per direction at a time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cond: Dict[Direction, threading.Condition] = {
            d: threading.Condition(self._lock) for d in Direction
        }
        self._slot: Dict[Direction, deque] = {d: deque() for d in Direction}
        self._discard: Dict[Direction, int] = {d: 0 for d in Direction}
        self._transcript: List[TranscriptEntry] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, direction: Direction, line: str) -> Optional[_Closed]:
        """Block until the slot is free, then enqueue. Returns CLOSED if refused."""
        cond = self._cond[direction]
        with cond:
            while self._slot[direction] and not self._closed:
                cond.wait()
            if self._closed:
                return CLOSED
            self._transcript.append(TranscriptEntry(direction, line))
            if self._discard[direction]:
                self._discard[direction] -= 1
                cond.notify()
                return None
            self._slot[direction].append(line)
            cond.notify()
        return None

    def receive(self, direction: Direction, timeout: Optional[float] = None) -> Union[str, _Closed]:
        """Block until a line arrives or the transport closes."""
        cond = self._cond[direction]
        with cond:
            if not cond.wait_for(lambda: self._slot[direction] or self._closed, timeout):
                raise TimeoutError(f"no {direction.name.lower()} line within {timeout}s")
            if self._slot[direction]:
                line = self._slot[direction].popleft()
                cond.notify()
                return line
            return CLOSED

    def discard_next(self, direction: Direction):
        """Drop the unread line of this direction, or the next one sent."""
        cond = self._cond[direction]
        with cond:
            if self._slot[direction]:
                self._slot[direction].popleft()
                cond.notify()
            else:
                self._discard[direction] += 1

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for cond in self._cond.values():
                cond.notify_all()

    def transcript(self) -> List[TranscriptEntry]:
        with self._lock:
            return list(self._transcript)
