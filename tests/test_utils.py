"""
llamakit :: Test Utilities

Tests for:
  - Sampling (greedy, seeded, processors, sampler history)
  - Escape processing
  - Session configuration (validation, from_dict)
  - Chat template single-message formatting
  - HF tokenizer wrapper
  - Tool registry schemas and argument binding
  - Tool-call parser and response envelopes
  - Metrics, logging, errors, backend registry

Run:
    python -m pytest tests/test_utils.py -v

INL - 2025
"""

import json
import logging
from enum import Enum
from typing import List, Literal, Optional

import torch
import pytest
from pydantic import BaseModel
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llamakit.core.chat_template import ChatTemplate
from llamakit.core.config import SessionConfig
from llamakit.core.logging import HumanFormatter, JSONFormatter, SessionLogger
from llamakit.core.logits_processor import ChoiceLogitsProcessor, LogitBiasProcessor
from llamakit.core.metrics import SessionMetrics
from llamakit.core.registry import create_backend, list_backends, resolve_factory
from llamakit.core.sampling import SamplingParams, TokenSampler, sample_token
from llamakit.core.text import common_prefix_len, process_escapes
from llamakit.errors import (
    ConfigurationError, LlamaKitError, ToolArgumentError, ToolCallParseError,
)
from llamakit.tools.parser import ToolCallParser, format_response
from llamakit.tools.registry import ToolRegistryBuilder, schema_from_callable, tool


# =========================================================================
# Sampling
# =========================================================================

class TestSampling:
    def test_greedy(self):
        logits = torch.tensor([0.1, 0.3, 0.9, 0.2])
        params = SamplingParams(temperature=0.0)
        assert sample_token(logits, params) == 2

    def test_seeded_generator_reproduces(self):
        logits = torch.randn(200)
        params = SamplingParams(temperature=1.0, top_k=0, top_p=1.0)
        a = [sample_token(logits, params, generator=torch.Generator().manual_seed(3)) for _ in range(5)]
        b = [sample_token(logits, params, generator=torch.Generator().manual_seed(3)) for _ in range(5)]
        assert a == b

    def test_repetition_penalty(self):
        logits = torch.tensor([1.0, 2.0, 1.9])
        params = SamplingParams(temperature=0.0, repetition_penalty=2.0)
        assert sample_token(logits, params, past_tokens=[1]) == 2

    def test_sampler_history(self):
        sampler = TokenSampler(SamplingParams(seed=5, n_prev=4))
        assert sampler.seed == 5
        assert sampler.last() is None
        for t in range(40):
            sampler.accept(t, apply_grammar=False)
        assert sampler.last() == 39
        assert len(sampler.prev) == 32  # ring never shorter than the anti-prompt lookback
        assert sampler.grammar_ids == []

    def test_sampler_random_seed(self):
        assert isinstance(TokenSampler(SamplingParams()).seed, int)

    def test_logit_bias(self):
        proc = LogitBiasProcessor({0: float("-inf")})
        out = proc(torch.tensor([5.0, 1.0]), [])
        assert sample_token(out, SamplingParams(temperature=0.0)) == 1


class _Vocab:
    """Minimal backend surface for processors: one token per character."""

    def tokenize(self, text, add_special, parse_special):
        return [ord(c) - 96 for c in text]

    def token_eos(self):
        return 0


class TestChoice:
    def test_constrains_to_choices(self):
        proc = ChoiceLogitsProcessor(["ab", "ac"], _Vocab())
        logits = torch.zeros(8)
        out = proc(logits.clone(), [])
        assert torch.isfinite(out).nonzero().flatten().tolist() == [1]
        out = proc(logits.clone(), [1])
        assert sorted(torch.isfinite(out).nonzero().flatten().tolist()) == [2, 3]
        out = proc(logits.clone(), [1, 3])
        assert torch.isfinite(out).nonzero().flatten().tolist() == [0]

    def test_sampler_feeds_generated_tokens_only(self):
        params = SamplingParams(temperature=0.0, choices=["ab"])
        sampler = TokenSampler(params, params.constraints().build_processors(_Vocab()))
        sampler.accept(7, apply_grammar=False)   # prompt token
        sampler.accept(1, apply_grammar=True)
        assert sampler.grammar_ids == [1]
        sampler.reset()
        assert sampler.grammar_ids == []
        assert sampler.last() == 1


# =========================================================================
# Text
# =========================================================================

class TestEscapes:
    @pytest.mark.parametrize("raw,expected", [
        ("a\\nb", "a\nb"),
        ("tab\\there", "tab\there"),
        ("quote\\\"s\\'", "quote\"s'"),
        ("back\\\\slash", "back\\slash"),
        ("hex\\x41\\x4a", "hexAJ"),
        ("bad\\xZZ", "bad\\xZZ"),
        ("unknown\\q", "unknown\\q"),
        ("trailing\\", "trailing\\"),
    ])
    def test_process_escapes(self, raw, expected):
        assert process_escapes(raw) == expected

    def test_common_prefix_len(self):
        assert common_prefix_len([1, 2, 3], [1, 2, 4]) == 2
        assert common_prefix_len([], [1]) == 0
        assert common_prefix_len([1, 2], [1, 2, 3]) == 2


# =========================================================================
# Config
# =========================================================================

class TestSessionConfig:
    def test_defaults_are_valid(self):
        assert SessionConfig().validate() is None

    @pytest.mark.parametrize("changes,fragment", [
        ({"n_ctx": 4}, "n_ctx"),
        ({"n_batch": 0}, "n_batch"),
        ({"n_predict": -3}, "n_predict"),
        ({"grp_attn_n": 0}, "grp_attn_n"),
        ({"grp_attn_n": 4, "grp_attn_w": 6}, "multiple"),
        ({"prompt_cache_ro": True}, "path_session"),
        ({"sampling": SamplingParams(top_p=0.0)}, "top_p"),
        ({"sampling": SamplingParams(temperature=-1.0)}, "temperature"),
    ])
    def test_validate(self, changes, fragment):
        assert fragment in SessionConfig(**changes).validate()

    def test_interactive_mode(self):
        assert not SessionConfig().interactive_mode
        assert SessionConfig(conversation=True).interactive_mode
        assert SessionConfig(interactive_first=True).interactive_mode

    def test_from_dict(self):
        config = SessionConfig.from_dict({
            "prompt": "hi",
            "n_ctx": 512,
            "antiprompts": ["User:"],
            "sampling": {"temperature": 0.2, "seed": 9, "logit_bias": {"5": -1.5}},
        })
        assert config.n_ctx == 512
        assert config.sampling.seed == 9
        assert config.sampling.logit_bias == {5: -1.5}

    def test_from_dict_rejects_unknown(self):
        with pytest.raises(ValueError, match="n_ctxx"):
            SessionConfig.from_dict({"n_ctxx": 1})
        with pytest.raises(ValueError, match="temp"):
            SessionConfig.from_dict({"sampling": {"temp": 1}})

    def test_from_json(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text(json.dumps({"prompt": "x", "conversation": True}))
        config = SessionConfig.from_json(str(path))
        assert config.conversation
        assert config.to_dict()["prompt"] == "x"

    def test_replace(self):
        base = SessionConfig(prompt="a")
        changed = base.replace(prompt="b")
        assert base.prompt == "a" and changed.prompt == "b"


# =========================================================================
# Chat template
# =========================================================================

class TestChatTemplate:
    def test_apply(self):
        tmpl = ChatTemplate()
        text = tmpl.apply([{"role": "user", "content": "hi"}])
        assert text == (
            "<|start_header_id|>user<|end_header_id|>\n\nhi<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\n\n"
        )

    def test_format_single_is_delta(self):
        tmpl = ChatTemplate()
        history = [{"role": "system", "content": "be nice"}]
        delta = tmpl.format_single(history, {"role": "user", "content": "hello"}, True)
        assert delta.startswith("<|start_header_id|>user")
        assert "be nice" not in delta
        assert delta.endswith("<|start_header_id|>assistant<|end_header_id|>\n\n")

    def test_custom_template(self, tmp_path):
        path = tmp_path / "t.jinja"
        path.write_text("{% for m in messages %}[{{ m['role'] }}] {{ m['content'] }}\n{% endfor %}")
        tmpl = ChatTemplate.from_file(str(path))
        assert tmpl.format_single([{"role": "user", "content": "a"}], {"role": "assistant", "content": "b"}, False) \
            == "[assistant] b\n"


# =========================================================================
# Tokenizer
# =========================================================================

class TestHFTokenizer:
    @pytest.fixture
    def hf(self):
        from tokenizers import Tokenizer
        from tokenizers.models import WordLevel
        from tokenizers.pre_tokenizers import Whitespace
        from llamakit.core.tokenizer import HFTokenizer

        vocab = {"<s>": 0, "</s>": 1, "<|eot_id|>": 2, "hello": 3, "world": 4, "[UNK]": 5}
        tok = Tokenizer(WordLevel(vocab, unk_token="[UNK]"))
        tok.pre_tokenizer = Whitespace()
        tok.add_special_tokens(["<s>", "</s>", "<|eot_id|>"])
        return HFTokenizer(tokenizer=tok, eot_token="<|eot_id|>")

    def test_encode(self, hf):
        assert hf.encode("hello world") == [3, 4]
        assert hf.encode("hello world", add_special=True) == [0, 3, 4]
        assert hf.encode("") == []

    def test_special_pieces(self, hf):
        assert hf.token_to_piece(2, special=True) == "<|eot_id|>"
        assert hf.token_to_piece(2, special=False) == ""
        assert hf.token_to_piece(3) == "hello"
        assert hf.is_special(0)

    def test_end_of_generation(self, hf):
        assert hf.is_eog(1)
        assert hf.is_eog(2)
        assert not hf.is_eog(3)
        assert hf.vocab_size == 6


# =========================================================================
# Tool registry
# =========================================================================

def get_weather(city: str, days: int = 1) -> dict:
    """Weather forecast for a city.

    Args:
        city: city name
        days: number of days
    """
    return {"city": city, "days": days}


class Unit(str, Enum):
    CELSIUS = "celsius"
    FAHRENHEIT = "fahrenheit"


class Place(BaseModel):
    city: str
    country: str = "NO"


def forecast(
    cities: List[str],
    unit: Unit,
    mode: Literal["daily", "hourly"] = "daily",
    near: Optional[Place] = None,
) -> dict:
    """Forecast for several cities.

    Args:
        cities: cities to look up
    """
    return {"cities": cities, "unit": unit, "mode": mode, "near": near}


class TestToolRegistry:
    def test_schema_from_docstring(self):
        schema = schema_from_callable(get_weather).to_dict()
        assert schema["name"] == "get_weather"
        assert schema["description"] == "Weather forecast for a city."
        props = schema["parameters"]["properties"]
        assert props["city"] == {"type": "string", "description": "city name"}
        assert props["days"]["type"] == "integer"
        assert schema["parameters"]["required"] == ["city"]

    def test_sphinx_docstring(self):
        def lookup(key: str):
            """Look up a key.

            :param key: the key
            """
        assert schema_from_callable(lookup).parameters[0].description == "the key"

    def test_varargs_rejected(self):
        def bad(*args):
            pass
        with pytest.raises(ConfigurationError):
            schema_from_callable(bad)

    def test_duplicate_name(self):
        builder = ToolRegistryBuilder().add(get_weather)
        with pytest.raises(ConfigurationError, match="duplicate"):
            builder.add(get_weather)

    def test_add_object(self):
        class Calculator:
            @tool
            def double(self, x: int) -> int:
                """Double a number."""
                return 2 * x

            @tool(name="triple_it", description="Triple")
            def triple(self, x: int) -> int:
                return 3 * x

            def helper(self):
                pass

        registry = ToolRegistryBuilder().add_object(Calculator()).build()
        assert list(registry) == ["double", "triple_it"]
        assert registry["triple_it"].schema.description == "Triple"
        assert [p.name for p in registry["double"].schema.parameters] == ["x"]

    def test_bind(self):
        spec = ToolRegistryBuilder().add(get_weather).build()["get_weather"]
        assert spec.bind({"city": "Paris"}) == {"city": "Paris"}
        assert spec.bind({"city": "Paris", "days": 3.0}) == {"city": "Paris", "days": 3}
        with pytest.raises(ToolArgumentError, match="missing required argument 'city'"):
            spec.bind({})
        with pytest.raises(ToolArgumentError, match="unexpected argument 'country'"):
            spec.bind({"city": "Paris", "country": "FR"})
        with pytest.raises(ToolArgumentError, match="argument 'days': .*valid integer"):
            spec.bind({"city": "Paris", "days": "many"})
        with pytest.raises(ToolArgumentError, match="object"):
            spec.bind(["Paris"])

    def test_structured_schema(self):
        props = schema_from_callable(forecast).to_dict()["parameters"]["properties"]
        assert props["cities"]["type"] == "array"
        assert props["cities"]["items"] == {"type": "string"}
        assert props["cities"]["description"] == "cities to look up"
        assert props["unit"]["enum"] == ["celsius", "fahrenheit"]
        assert props["mode"]["enum"] == ["daily", "hourly"]
        near = next(s for s in props["near"]["anyOf"] if s.get("type") == "object")
        assert near["properties"]["city"] == {"type": "string"}
        assert "title" not in props["cities"]

    def test_schema_is_self_contained(self):
        schema = schema_from_callable(forecast).to_dict()["parameters"]
        assert "$defs" not in schema
        assert "$ref" not in json.dumps(schema)

    def test_bind_converts_to_annotations(self):
        spec = ToolRegistryBuilder().add(forecast).build()["forecast"]
        bound = spec.bind({"cities": ["Oslo"], "unit": "celsius", "near": {"city": "Bergen"}})
        assert bound["unit"] is Unit.CELSIUS
        assert isinstance(bound["near"], Place)
        assert bound["near"].country == "NO"
        assert "mode" not in bound
        with pytest.raises(ToolArgumentError, match="argument 'unit'"):
            spec.bind({"cities": [], "unit": "kelvin"})
        with pytest.raises(ToolArgumentError, match="argument 'cities.0'"):
            spec.bind({"cities": [{"x": 1}], "unit": "celsius"})

    def test_unsupported_annotation_rejected(self):
        class Opaque:
            pass

        def bad(thing: Opaque):
            pass
        with pytest.raises(ConfigurationError, match="unsupported signature"):
            schema_from_callable(bad)

    @pytest.mark.asyncio
    async def test_invoke_sync_and_async(self):
        async def shout(text: str) -> str:
            return text.upper()

        registry = ToolRegistryBuilder().add(get_weather).add(shout).build()
        assert await registry["get_weather"].invoke({"city": "Oslo"}) == {"city": "Oslo", "days": 1}
        assert await registry["shout"].invoke({"text": "hey"}) == "HEY"
        assert registry["shout"].is_async


# =========================================================================
# Tool-call parser
# =========================================================================

class TestToolCallParser:
    def setup_method(self):
        self.parser = ToolCallParser()

    def test_single_call(self):
        text = 'ok <tool_call>\n{"id": 4, "name": "sum", "arguments": {"a": 1}}\n</tool_call>'
        calls = self.parser.parse(text)
        assert len(calls) == 1
        assert (calls[0].id, calls[0].name, calls[0].arguments) == (4, "sum", {"a": 1})

    def test_multiple_calls_in_order(self):
        text = (
            '<tool_call>{"id": 2, "name": "b"}</tool_call> and '
            '<tool_call>{"id": 1, "name": "a", "arguments": null}</tool_call>'
        )
        calls = self.parser.parse(text)
        assert [c.name for c in calls] == ["b", "a"]
        assert calls[1].arguments == {}

    def test_missing_id_defaults_to_position(self):
        calls = self.parser.parse('<tool_call>{"name": "a"}</tool_call><tool_call>{"name": "b"}</tool_call>')
        assert [c.id for c in calls] == [1, 2]

    @pytest.mark.parametrize("body,fragment", [
        ("{oops", "not valid JSON"),
        ("[1, 2]", "JSON object"),
        ('{"id": 1}', "missing tool name"),
        ('{"id": "x", "name": "a"}', "integer"),
        ('{"id": true, "name": "a"}', "integer"),
        ('{"name": "a", "arguments": [1]}', "arguments"),
    ])
    def test_invalid_bodies(self, body, fragment):
        calls = self.parser.parse(f"<tool_call>{body}</tool_call>")
        assert len(calls) == 1
        assert isinstance(calls[0].error, ToolCallParseError)
        assert fragment in calls[0].error.message

    def test_no_calls(self):
        assert self.parser.parse("plain text") == []
        assert self.parser.parse("<tool_call> unterminated") == []

    def test_format_response(self):
        out = format_response(3, result={"temp": 21})
        assert out == '<tool_response>\n{"id": 3, "result": {"temp": 21}}\n</tool_response>'
        err = format_response(3, error="boom")
        assert json.loads(err.splitlines()[1]) == {"id": 3, "result": "ToolError: boom"}


# =========================================================================
# Metrics / logging / errors / registry
# =========================================================================

class TestMetrics:
    def test_sessions_do_not_collide(self):
        a, b = SessionMetrics("a"), SessionMetrics("b")
        a.tool_calls.inc()
        a.tokens_decoded.inc(5)
        assert a.value("llamakit_tool_calls_total") == 1
        assert a.value("llamakit_tokens_decoded_total") == 5
        assert b.value("llamakit_tool_calls_total") == 0

    def test_turn_duration(self):
        m = SessionMetrics("t")
        m.on_turn_end()  # no turn started: ignored
        m.on_turn_start()
        m.on_turn_end()
        assert m.value("llamakit_turn_duration_seconds_count") == 1


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("llamakit.engine", logging.INFO, __file__, 1, "session ready", None, None)
        for k, v in extra.items():
            setattr(record, k, v)
        return record

    def test_json_formatter(self):
        line = JSONFormatter().format(self._record(session_id="abc", extra_data={"n_ctx": 64}))
        entry = json.loads(line)
        assert entry["msg"] == "session ready"
        assert entry["session"] == "abc"
        assert entry["fields"] == {"n_ctx": 64}
        assert "error" not in entry

    def test_json_formatter_error(self):
        err = ConfigurationError("bad n_ctx")
        entry = json.loads(JSONFormatter().format(self._record(error=err)))
        assert entry["session"] is None
        assert "fields" not in entry
        assert entry["error"] == {
            "type": "ConfigurationError", "code": "CONFIG_INVALID",
            "phase": "construction", "recoverable": True,
        }

    def test_human_formatter(self):
        record = self._record(session_id="abc", extra_data={"component": "tools", "n_ctx": 64, "path": "a b"})
        line = HumanFormatter(color=False).format(record)
        assert line.endswith(" abc tools | session ready | n_ctx=64 path='a b'")
        assert "\033[" not in line

    def test_session_logger(self, caplog):
        log = SessionLogger("s1", logging.getLogger("llamakit.test"))
        with caplog.at_level(logging.INFO, logger="llamakit.test"):
            log.info("hello", turn=2)
            log.debug("hidden")
        assert len(caplog.records) == 1
        assert caplog.records[0].session_id == "s1"
        assert caplog.records[0].extra_data == {"turn": 2}

    def test_bind_and_error(self, caplog):
        log = SessionLogger("s1", logging.getLogger("llamakit.test")).bind(component="tools")
        err = ToolArgumentError("sum", "boom")
        with caplog.at_level(logging.INFO, logger="llamakit.test"):
            log.warning("tool failed", error=err, call_id=3)
            try:
                raise ValueError("crash")
            except ValueError:
                log.exception("loop crashed")
        warning, crash = caplog.records
        assert warning.extra_data == {"component": "tools", "call_id": 3}
        assert warning.error is err
        assert isinstance(crash.error, ValueError)
        assert crash.exc_info[1] is crash.error
        assert "traceback" in json.loads(JSONFormatter().format(crash))


class TestErrors:
    def test_wrap(self):
        err = LlamaKitError.wrap(KeyError("x"))
        assert err.code == "UNKNOWN"
        assert isinstance(err.cause, KeyError)
        same = ConfigurationError("bad")
        assert LlamaKitError.wrap(same) is same

    def test_recoverable(self):
        assert ConfigurationError("bad").recoverable
        assert ConfigurationError("bad").phase == "construction"
        assert not LlamaKitError("X", "y").recoverable


class TestBackendRegistry:
    def test_builtins(self):
        names = [e.name for e in list_backends()]
        assert "torch" in names and "dummy" in names

    def test_model_path_required(self):
        with pytest.raises(ConfigurationError, match="model_path"):
            create_backend(SessionConfig())

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            resolve_factory("nope")

    def test_dotted_factory(self):
        assert resolve_factory("llamakit.core.registry:dummy_backend").__name__ == "dummy_backend"
