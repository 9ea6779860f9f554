"""
llamakit :: Generation Loop Benchmark

Measures loop overhead with the dummy TorchBackend (random logits), so the
numbers are the cost of the session machinery rather than of a model:
  - Prompt processing tok/s
  - Generation tok/s with and without window shifts
  - Self-extend remapping cost
  - Session-cache reuse (second run of the same prompt)

INL - 2025
"""

import os
import tempfile
import time
from typing import List

from tokenizers import Tokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace

from llamakit.core.backend import TorchBackend
from llamakit.core.config import SessionConfig
from llamakit.core.sampling import SamplingParams
from llamakit.core.tokenizer import HFTokenizer
from llamakit.engine.generation import GenerationLoop


SPECIALS = ["<s>", "</s>", "<|eot_id|>"]


def build_tokenizer(n_words: int = 2000) -> HFTokenizer:
    """Word-level vocabulary w0..wN plus the special tokens."""
    vocab = {tok: i for i, tok in enumerate(SPECIALS + ["[UNK]"])}
    for i in range(n_words):
        vocab[f"w{i}"] = len(vocab)
    tok = Tokenizer(WordLevel(vocab, unk_token="[UNK]"))
    tok.pre_tokenizer = Whitespace()
    tok.add_special_tokens(SPECIALS)
    return HFTokenizer(tokenizer=tok, eot_token="<|eot_id|>")


def make_prompt(n_tokens: int) -> str:
    return " ".join(f"w{i % 2000}" for i in range(n_tokens))


def run_loop(tokenizer: HFTokenizer, n_ctx: int, n_ctx_train: int = 0, **config_kw) -> dict:
    """Run one non-interactive loop to completion and time it."""
    no_stop = {tokenizer.eos_token_id: float("-inf"), tokenizer.eot_token_id: float("-inf")}
    config = SessionConfig(
        n_ctx=n_ctx,
        sampling=SamplingParams(temperature=0.8, seed=0, logit_bias=no_stop),
        **config_kw,
    )
    backend = TorchBackend(None, tokenizer, n_ctx=n_ctx, n_ctx_train=n_ctx_train or None)

    start = time.perf_counter()
    loop = GenerationLoop(backend, config)
    loop.run()
    elapsed = time.perf_counter() - start
    if loop.error is not None:
        raise loop.error

    m = loop.metrics
    return {
        "n_ctx": n_ctx,
        "prompt_tokens": len(loop.embd_inp),
        "decoded": int(m.value("llamakit_tokens_decoded_total")),
        "sampled": int(m.value("llamakit_tokens_sampled_total")),
        "reused": int(m.value("llamakit_session_tokens_reused_total")),
        "shifts": int(m.value("llamakit_context_shifts_total")),
        "self_extend": int(m.value("llamakit_self_extend_total")),
        "elapsed_s": round(elapsed, 3),
        "tok_per_sec": int((m.value("llamakit_tokens_decoded_total") + m.value("llamakit_tokens_sampled_total")) / elapsed),
    }


def bench_prompt(tokenizer: HFTokenizer, prompt_lengths: List[int] = [64, 256, 1024]) -> List[dict]:
    """Prompt processing: one sampled token per run."""
    return [
        run_loop(tokenizer, n_ctx=2048, prompt=make_prompt(n), n_predict=1)
        for n in prompt_lengths
    ]


def bench_shift(tokenizer: HFTokenizer, n_predict: int = 512, contexts: List[int] = [4096, 256, 128]) -> List[dict]:
    """Generation with the window shifting more often as the context shrinks."""
    return [
        run_loop(tokenizer, n_ctx=n_ctx, prompt=make_prompt(32), n_predict=n_predict, n_keep=8)
        for n_ctx in contexts
    ]


def bench_self_extend(tokenizer: HFTokenizer, n_predict: int = 384) -> dict:
    return run_loop(
        tokenizer, n_ctx=1024, n_ctx_train=256, prompt=make_prompt(32),
        n_predict=n_predict, grp_attn_n=4, grp_attn_w=64,
    )


def bench_session_cache(tokenizer: HFTokenizer, prompt_tokens: int = 1024) -> List[dict]:
    """Same prompt twice against one session file."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "session.bin")
        kw = dict(prompt=make_prompt(prompt_tokens), n_predict=16, path_session=path)
        return [run_loop(tokenizer, n_ctx=2048, **kw), run_loop(tokenizer, n_ctx=2048, **kw)]


if __name__ == "__main__":
    print("=" * 60)
    print("llamakit :: Generation Loop Benchmark")
    print("=" * 60)

    tokenizer = build_tokenizer()
    print(f"Vocab: {tokenizer.vocab_size:,}")

    print("\n--- Prompt processing ---")
    print(f"{'Prompt':>8} {'decoded':>10} {'elapsed':>10} {'tok/s':>12}")
    print("-" * 45)
    for r in bench_prompt(tokenizer):
        print(f"{r['prompt_tokens']:>8} {r['decoded']:>10} {r['elapsed_s']:>10} {r['tok_per_sec']:>12,}")

    print("\n--- Generation / window shift ---")
    print(f"{'n_ctx':>8} {'sampled':>10} {'shifts':>8} {'elapsed':>10} {'tok/s':>12}")
    print("-" * 52)
    for r in bench_shift(tokenizer):
        print(f"{r['n_ctx']:>8} {r['sampled']:>10} {r['shifts']:>8} {r['elapsed_s']:>10} {r['tok_per_sec']:>12,}")

    print("\n--- Self-extend ---")
    r = bench_self_extend(tokenizer)
    print(f"  Sampled:      {r['sampled']}")
    print(f"  Remaps:       {r['self_extend']}")
    print(f"  Elapsed:      {r['elapsed_s']}s")
    print(f"  tok/s:        {r['tok_per_sec']:,}")

    print("\n--- Session cache ---")
    first, second = bench_session_cache(tokenizer)
    print(f"  First run:   decoded {first['decoded']:>6}  {first['elapsed_s']}s")
    print(f"  Second run:  decoded {second['decoded']:>6}  reused {second['reused']}  {second['elapsed_s']}s")

    print("\nDone.")
