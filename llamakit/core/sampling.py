"""
llamakit :: Sampling

Sampling strategies for token generation, plus the per-session sampler
state the generation loop drives:

  - sample(): pick the next token from the last decoded logits
  - accept(): record a token (prompt or generated) in the history ring,
              feed generated ones to the grammar processors
  - reset():  clear grammar state between turns
  - last() / previous_string(): anti-prompt detection support

Strategies:
  - greedy (argmax)
  - temperature scaling
  - top-k filtering
  - top-p (nucleus) filtering
  - repetition penalty

INL - 2025
"""

import random
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional, List

import torch

from llamakit.core.logits_processor import LogitsProcessor, OutputConstraints, apply_logits_processors


@dataclass
class SamplingParams:
    """Sampling parameters."""
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    repetition_penalty: float = 1.0
    penalty_last_n: int = 64
    n_prev: int = 64            # size of the accepted-token history ring
    seed: Optional[int] = None  # None = random seed, reported by the sampler

    # Structured output
    choices: Optional[List[str]] = None
    logit_bias: Optional[Dict[int, float]] = None

    def constraints(self) -> OutputConstraints:
        return OutputConstraints(choices=self.choices, logit_bias=self.logit_bias)


def sample_token(
    logits: torch.Tensor,
    params: SamplingParams,
    past_tokens: Optional[List[int]] = None,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Sample a single token from logits.

    Args:
        logits: (vocab_size,) float tensor
        params: sampling parameters
        past_tokens: recent tokens (for repetition penalty)
        generator: seeded RNG, so a fixed seed reproduces the output

    Returns:
        token_id: int
    """
    logits = logits.float().clone()

    # Repetition penalty
    if params.repetition_penalty != 1.0 and past_tokens:
        token_set = torch.tensor(past_tokens, dtype=torch.long, device=logits.device)
        token_set = token_set[token_set < logits.shape[0]].unique()
        penalty_logits = logits[token_set]
        # Penalize: reduce positive, amplify negative
        penalty_logits = torch.where(
            penalty_logits > 0,
            penalty_logits / params.repetition_penalty,
            penalty_logits * params.repetition_penalty,
        )
        logits[token_set] = penalty_logits

    # Temperature
    if params.temperature <= 0.0:
        # Greedy
        return int(logits.argmax().item())

    if params.temperature != 1.0:
        logits = logits / params.temperature

    # Top-k filtering
    if params.top_k > 0 and params.top_k < logits.shape[0]:
        top_k_values, _ = logits.topk(params.top_k)
        threshold = top_k_values[-1]
        logits[logits < threshold] = float("-inf")

    # Top-p (nucleus) filtering
    if params.top_p < 1.0:
        sorted_logits, sorted_indices = logits.sort(descending=True)
        probs = torch.softmax(sorted_logits, dim=-1)
        cumulative_probs = probs.cumsum(dim=-1)

        # Remove tokens with cumulative probability above threshold
        mask = cumulative_probs - probs > params.top_p
        sorted_logits[mask] = float("-inf")

        # Unsort
        logits = torch.empty_like(sorted_logits).scatter_(0, sorted_indices, sorted_logits)

    # Sample
    probs = torch.softmax(logits, dim=-1)
    return int(torch.multinomial(probs, num_samples=1, generator=generator).item())


class TokenSampler:
    """
    Sampler state for one session.

    Holds the accepted-token history ring, the grammar processors and the
    seeded RNG. Only the generation loop thread touches it.
    """

    def __init__(
        self,
        params: SamplingParams,
        processors: Optional[List[LogitsProcessor]] = None,
    ):
        self.params = params
        self.processors = processors or []
        self.seed = params.seed if params.seed is not None else random.randint(0, 2**31 - 1)
        self.generator = torch.Generator()
        self.generator.manual_seed(self.seed)
        self.prev: deque = deque(maxlen=max(params.n_prev, 32))
        self.grammar_ids: List[int] = []

    def sample(self, backend, idx: int = -1) -> int:
        """Sample the next token from the backend's logits at batch index idx."""
        logits = backend.get_logits(idx)
        if self.processors:
            logits = apply_logits_processors(logits.clone(), self.processors, self.grammar_ids)
        past = list(self.prev)[-self.params.penalty_last_n:] if self.params.penalty_last_n > 0 else None
        return sample_token(logits, self.params, past, self.generator)

    def accept(self, token: int, apply_grammar: bool):
        """Record a token. Prompt tokens are accepted without grammar."""
        self.prev.append(token)
        if apply_grammar:
            self.grammar_ids.append(token)
            for proc in self.processors:
                proc.accept(token)

    def reset(self):
        """Reset grammar state (new turn). The history ring is kept."""
        self.grammar_ids = []
        for proc in self.processors:
            proc.reset()

    def last(self) -> Optional[int]:
        return self.prev[-1] if self.prev else None

    def previous_string(self, backend, n: int) -> str:
        """Text of the last n accepted tokens."""
        tokens = list(self.prev)[-n:]
        return "".join(backend.token_to_piece(t, True) for t in tokens)

    def describe(self) -> str:
        p = self.params
        return (
            f"temp={p.temperature:.3f} top_k={p.top_k} top_p={p.top_p:.3f} "
            f"repeat_penalty={p.repetition_penalty:.3f} last_n={p.penalty_last_n} seed={self.seed}"
        )
