"""
llamakit :: Core

Generic infrastructure shared by every session.
  - config: session configuration
  - backend: compute engine interface + torch reference backend
  - kv_cache: attention cell bookkeeping (shift / self-extend edits)
  - sampling: token sampling and sampler state
  - tokenizer: text <-> token id conversion
  - registry: backend registration
"""

from llamakit.core.config import SessionConfig
from llamakit.core.backend import ComputeBackend, TorchBackend, DecodeStatus
from llamakit.core.kv_cache import KVCellTable
from llamakit.core.sampling import SamplingParams, TokenSampler, sample_token
from llamakit.core.tokenizer import HFTokenizer, load_tokenizer
from llamakit.core.registry import register_backend, get_backend_entry, list_backends, create_backend
