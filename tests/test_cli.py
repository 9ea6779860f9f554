"""
llamakit :: Test CLI

Tests for the non-interactive subcommands and config assembly.

Run:
    python -m pytest tests/test_cli.py -v

INL - 2025
"""

import argparse
import logging

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llamakit.cli import _build_config, main
from llamakit.core.session_cache import write_session_file


class TestCLI:
    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_backends(self, capsys):
        main(["backends"])
        out = capsys.readouterr().out
        assert "torch" in out
        assert "dummy" in out

    def test_cache(self, capsys, tmp_path):
        path = str(tmp_path / "s.bin")
        write_session_file(path, [1, 2, 3])
        main(["cache", path])
        out = capsys.readouterr().out
        assert "Tokens:   3" in out
        assert "[1, 2, 3]" in out

    def test_cache_head_is_truncated(self, capsys, tmp_path):
        path = str(tmp_path / "s.bin")
        write_session_file(path, list(range(10)))
        main(["cache", path, "--show", "2"])
        assert "[0, 1] ..." in capsys.readouterr().out

    def test_cache_invalid_file(self, capsys, tmp_path):
        path = tmp_path / "s.bin"
        path.write_bytes(b"junk")
        with pytest.raises(SystemExit) as exc:
            main(["cache", str(path)])
        assert exc.value.code == 1
        assert "error" in capsys.readouterr().err

    def test_chat_without_model(self, capsys):
        try:
            with pytest.raises(SystemExit) as exc:
                main(["chat"])
        finally:
            logging.getLogger("llamakit").handlers.clear()
        assert exc.value.code == 2
        assert "model_path" in capsys.readouterr().err


class TestBuildConfig:
    def _args(self, **kw):
        defaults = dict(
            config=None, model="m.pt", backend=None, prompt=None, n_ctx=None,
            session=None, conversation=False, greeting=False, seed=None,
        )
        defaults.update(kw)
        return argparse.Namespace(**defaults)

    def test_chat_is_interactive(self):
        config = _build_config(self._args())
        assert config.model_path == "m.pt"
        assert config.interactive and config.interactive_first

    def test_greeting_and_overrides(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text('{"n_ctx": 256, "sampling": {"temperature": 0.1}}')
        config = _build_config(self._args(config=str(path), greeting=True, seed=3, session="s.bin"))
        assert not config.interactive_first
        assert config.n_ctx == 256
        assert config.sampling.temperature == 0.1
        assert config.sampling.seed == 3
        assert config.path_session == "s.bin"
