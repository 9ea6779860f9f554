"""
llamakit :: Session Configuration

Everything a session needs, fixed at construction. Loaded from a JSON
file or a dict; nested "sampling" maps onto SamplingParams.

Group attention (self-extend) is enabled with grp_attn_n > 1; it needs
n_ctx >= n_ctx_train * grp_attn_n.
n_predict: -1 = unlimited, -2 = stop once the context is full.
n_keep:    -1 = keep the whole prompt on a window shift.

INL - 2025
"""

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llamakit.core.sampling import SamplingParams


@dataclass
class SessionConfig:
    # Model / backend
    model_path: Optional[str] = None
    backend: Optional[str] = None       # registry name or "module:factory"

    # Prompt
    prompt: str = ""
    prompt_file: Optional[str] = None   # transcript replayed at startup
    verbose_prompt: bool = False

    # Context window
    n_ctx: int = 4096                   # 0 = backend default
    n_ctx_train: int = 0                # context the model was trained on; 0 = n_ctx
    n_batch: int = 512
    n_predict: int = -1
    n_keep: int = 0
    ctx_shift: bool = True
    grp_attn_n: int = 1
    grp_attn_w: int = 512

    # Session cache
    path_session: str = ""
    prompt_cache_ro: bool = False
    prompt_cache_all: bool = False

    # Interaction
    interactive: bool = False
    interactive_first: bool = False
    conversation: bool = False
    antiprompts: List[str] = field(default_factory=list)
    input_prefix: str = ""
    input_suffix: str = ""
    input_prefix_bos: bool = False
    chat_template: Optional[str] = None
    escape_sequences: bool = True
    special: bool = False               # render special tokens in output

    # Embeddings
    pooling: str = "cls"                # none | mean | cls | last
    embd_normalize: int = 2             # -1 none, 0 max-abs, 1 taxicab, 2 euclidean, >2 p-norm

    sampling: SamplingParams = field(default_factory=SamplingParams)

    def validate(self) -> Optional[str]:
        """Return an error message or None if valid."""
        if self.n_ctx < 0:
            return f"n_ctx must be >= 0 (got {self.n_ctx})"
        if self.n_ctx != 0 and self.n_ctx < 8:
            return f"n_ctx must be >= 8 (got {self.n_ctx})"
        if self.n_ctx_train < 0:
            return f"n_ctx_train must be >= 0 (got {self.n_ctx_train})"
        if self.n_batch < 1:
            return f"n_batch must be >= 1 (got {self.n_batch})"
        if self.n_predict < -2:
            return f"n_predict must be >= -2 (got {self.n_predict})"
        if self.grp_attn_n < 1:
            return f"grp_attn_n must be positive (got {self.grp_attn_n})"
        if self.grp_attn_n > 1:
            if self.grp_attn_w <= 0:
                return f"grp_attn_w must be positive (got {self.grp_attn_w})"
            if self.grp_attn_w % self.grp_attn_n != 0:
                return f"grp_attn_w ({self.grp_attn_w}) must be a multiple of grp_attn_n ({self.grp_attn_n})"
        if self.pooling not in ("none", "mean", "cls", "last"):
            return f"unknown pooling type {self.pooling!r}"
        if self.prompt_cache_ro and not self.path_session:
            return "prompt_cache_ro requires path_session"
        s = self.sampling
        if s.temperature < 0:
            return f"temperature must be >= 0 (got {s.temperature})"
        if s.top_p <= 0 or s.top_p > 1:
            return f"top_p must be in (0, 1] (got {s.top_p})"
        return None

    @property
    def interactive_mode(self) -> bool:
        """Conversation implies interactive-first, which implies interactive."""
        return self.interactive or self.interactive_first or self.conversation

    def replace(self, **changes) -> "SessionConfig":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        data = dict(data)
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
        sampling = data.pop("sampling", None)
        if isinstance(sampling, dict):
            sp_known = {f.name for f in dataclasses.fields(SamplingParams)}
            bad = set(sampling) - sp_known
            if bad:
                raise ValueError(f"unknown sampling keys: {', '.join(sorted(bad))}")
            bias = sampling.get("logit_bias")
            if bias:
                sampling["logit_bias"] = {int(k): float(v) for k, v in bias.items()}
            data["sampling"] = SamplingParams(**sampling)
        elif sampling is not None:
            data["sampling"] = sampling
        return cls(**data)

    @classmethod
    def from_json(cls, path: str) -> "SessionConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
