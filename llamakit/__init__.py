"""
llamakit: Interactive inference sessions on top of a tensor compute engine.

The layering:

  Transport:   one-slot line channels (caller <-> generation thread)
  Generation:  turn-based state machine, window shift / self-extend,
               session-token cache
  Tools:       tool-call envelopes intercepted and dispatched, blocking
               and streaming
  Embeddings:  single-batch query / document embeddings

INL - 2025
"""

__version__ = "0.1.0"
