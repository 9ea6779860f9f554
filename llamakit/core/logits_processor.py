"""
llamakit :: Logits Processors

The grammar hook of the sampler. A processor masks or biases logits
before sampling and follows the generated tokens through accept().
Prompt tokens are never fed to processors; reset() runs between turns.

  - Choice mode: limit a turn's output to predefined strings
  - Logit bias: static per-token additive bias

INL - 2025
"""

import torch
from typing import List, Optional, Set, Dict
from dataclasses import dataclass


class LogitsProcessor:
    """Base class for logits processors."""

    def __call__(self, logits: torch.Tensor, generated_ids: List[int]) -> torch.Tensor:
        return logits

    def accept(self, token_id: int):
        pass

    def reset(self):
        pass


class ChoiceLogitsProcessor(LogitsProcessor):
    """
    Constrain output to one of predefined choices.

    At each step, mask all tokens that don't continue a valid choice.
    Once a choice is complete only the end-of-generation token is allowed.
    """

    def __init__(self, choices: List[str], backend):
        self.choices = choices
        self.eos_id = backend.token_eos()
        self._choice_ids: List[List[int]] = [
            backend.tokenize(c, False, False) for c in choices
        ]

    def _allowed(self, generated_ids: List[int]) -> Set[int]:
        pos = len(generated_ids)
        allowed: Set[int] = set()
        for choice_seq in self._choice_ids:
            if choice_seq[:pos] != generated_ids[:pos]:
                continue
            if pos < len(choice_seq):
                allowed.add(choice_seq[pos])
            elif pos == len(choice_seq):
                allowed.add(self.eos_id)
        return allowed

    def __call__(self, logits: torch.Tensor, generated_ids: List[int]) -> torch.Tensor:
        """Mask tokens that don't match any allowed choice prefix."""
        if not self._choice_ids:
            return logits

        allowed = self._allowed(generated_ids)
        if allowed:
            mask = torch.full_like(logits, float("-inf"))
            for tid in allowed:
                if tid < logits.shape[-1]:
                    mask[tid] = 0.0
            logits = logits + mask

        return logits


class LogitBiasProcessor(LogitsProcessor):
    """Add a fixed bias to selected tokens (-inf bans a token)."""

    def __init__(self, bias: Dict[int, float]):
        self.bias = bias

    def __call__(self, logits: torch.Tensor, generated_ids: List[int]) -> torch.Tensor:
        for tid, b in self.bias.items():
            if tid < logits.shape[-1]:
                logits[tid] = logits[tid] + b
        return logits


@dataclass
class OutputConstraints:
    """Bundle of output constraints for a session."""
    choices: Optional[List[str]] = None
    logit_bias: Optional[Dict[int, float]] = None

    def build_processors(self, backend) -> List[LogitsProcessor]:
        """Build the chain of logits processors."""
        processors: List[LogitsProcessor] = []
        if self.logit_bias:
            processors.append(LogitBiasProcessor(self.logit_bias))
        if self.choices:
            processors.append(ChoiceLogitsProcessor(self.choices, backend))
        return processors


def apply_logits_processors(
    logits: torch.Tensor,
    processors: List[LogitsProcessor],
    generated_ids: List[int],
) -> torch.Tensor:
    """Apply a chain of logits processors."""
    for proc in processors:
        logits = proc(logits, generated_ids)
    return logits
