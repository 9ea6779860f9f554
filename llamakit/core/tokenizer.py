"""
llamakit :: Tokenizer

Wraps HuggingFace tokenizers for text <-> token id conversion,
with the special-token queries the generation loop needs
(BOS / EOS / end-of-turn, end-of-generation test, per-token pieces).

INL - 2025
"""

import os
from typing import Optional, List, Set

from tokenizers import Tokenizer


class HFTokenizer:
    """
    Tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int])

    Special tokens registered on the HF tokenizer are always matched as
    whole tokens; parse_special only controls whether BOS is inserted.
    """

    def __init__(
        self,
        tokenizer_path: Optional[str] = None,
        tokenizer: Optional[Tokenizer] = None,
        bos_token: str = "<s>",
        eos_token: str = "</s>",
        eot_token: Optional[str] = None,
        add_bos: bool = True,
    ):
        if tokenizer is None:
            if tokenizer_path is None:
                raise ValueError("tokenizer_path or tokenizer is required")
            tokenizer = Tokenizer.from_file(tokenizer_path)
        self.tokenizer = tokenizer
        self.bos_token_id = tokenizer.token_to_id(bos_token)
        self.eos_token_id = tokenizer.token_to_id(eos_token)
        self.eot_token_id = tokenizer.token_to_id(eot_token) if eot_token else None
        self.add_bos = add_bos and self.bos_token_id is not None
        self._special: Set[int] = {
            tid for tid in (self.bos_token_id, self.eos_token_id, self.eot_token_id) if tid is not None
        }
        for tid, tok in tokenizer.get_added_tokens_decoder().items():
            if tok.special:
                self._special.add(tid)

    def encode(self, text: str, add_special: bool = False, parse_special: bool = True) -> List[int]:
        """Text -> token IDs."""
        ids = self.tokenizer.encode(text, add_special_tokens=False).ids if text else []
        if add_special and self.add_bos:
            ids = [self.bos_token_id] + ids
        return ids

    def decode(self, token_ids: List[int]) -> str:
        """Token IDs -> text."""
        return self.tokenizer.decode(token_ids, skip_special_tokens=False)

    def token_to_piece(self, token_id: int, special: bool = True) -> str:
        """Text of a single token. Special tokens render as '' unless special=True."""
        if token_id in self._special:
            return self.tokenizer.id_to_token(token_id) if special else ""
        return self.tokenizer.decode([token_id], skip_special_tokens=False)

    def is_special(self, token_id: int) -> bool:
        return token_id in self._special

    def is_eog(self, token_id: int) -> bool:
        return token_id is not None and token_id in (self.eos_token_id, self.eot_token_id)

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()


def load_tokenizer(path: str, **kwargs) -> Optional[HFTokenizer]:
    """
    Load a tokenizer from a tokenizer.json file or a directory holding one.

    Looks in the directory itself, then its parent.
    """
    if os.path.isfile(path):
        return HFTokenizer(path, **kwargs)

    for candidate in (os.path.join(path, "tokenizer.json"),
                      os.path.join(os.path.dirname(path), "tokenizer.json")):
        if os.path.exists(candidate):
            return HFTokenizer(candidate, **kwargs)

    return None
