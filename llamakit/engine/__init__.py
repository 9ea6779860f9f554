"""
llamakit :: Engine

  - transport: blocking one-slot line channels
  - generation: the generation state machine
  - chat_session: thread host + caller API
  - embedding: single-batch text embeddings
"""

from llamakit.engine.transport import LineTransport, Direction, CLOSED
from llamakit.engine.generation import GenerationLoop, LoopState, EventKind, OutputEvent
from llamakit.engine.chat_session import ChatSession
from llamakit.engine.embedding import EmbeddingSession, normalize_embedding
