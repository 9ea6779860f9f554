"""
llamakit :: CLI

Usage:
    llamakit chat --model <path> [--backend torch] [--config session.json] [--stream]
                  [--tools my_pkg.tools:registry] [--metrics-port 9090]
    llamakit cache <session-file> [--tokenizer tokenizer.json] [--show 64]
    llamakit backends

Chat REPL:
    one line per turn; an empty line lets the model continue; Ctrl-D exits

INL - 2025
"""

import argparse
import dataclasses
import importlib
import sys


def _load_tools(path: str):
    """Resolve 'module:attr' to a ToolRegistry (or an object with @tool methods)."""
    from llamakit.tools.registry import ToolRegistry, ToolRegistryBuilder

    module_name, _, attr = path.partition(":")
    obj = getattr(importlib.import_module(module_name), attr)
    if isinstance(obj, ToolRegistry):
        return obj
    return ToolRegistryBuilder().add_object(obj).build()


def _build_config(args):
    from llamakit.core.config import SessionConfig

    config = SessionConfig.from_json(args.config) if args.config else SessionConfig()
    overrides = {}
    if args.model:
        overrides["model_path"] = args.model
    if args.backend:
        overrides["backend"] = args.backend
    if args.prompt is not None:
        overrides["prompt"] = args.prompt
    if args.n_ctx is not None:
        overrides["n_ctx"] = args.n_ctx
    if args.session:
        overrides["path_session"] = args.session
    if args.conversation:
        overrides["conversation"] = True
    overrides["interactive"] = True
    if not args.greeting:
        overrides["interactive_first"] = True
    if args.seed is not None:
        overrides["sampling"] = dataclasses.replace(config.sampling, seed=args.seed)
    return config.replace(**overrides)


def cmd_chat(args):
    """Interactive chat REPL."""
    from llamakit.core.logging import setup_logging
    from llamakit.errors import LlamaKitError

    setup_logging(level=args.log_level, json_output=args.log_json, log_file=args.log_file)
    config = _build_config(args)

    try:
        if args.tools:
            from llamakit.tools.session import ToolSession
            session = ToolSession(config, _load_tools(args.tools), max_tool_rounds=args.max_tool_rounds)
            stream = session.inference_stream
            chat = session.session
        else:
            from llamakit.engine.chat_session import ChatSession
            session = ChatSession(config, flush=False)
            stream = session.stream
            chat = session
    except LlamaKitError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.metrics_port:
        chat.metrics.serve(args.metrics_port)
        print(f"  metrics: http://0.0.0.0:{args.metrics_port}/metrics")

    if session.greeting:
        print(session.greeting)

    try:
        while True:
            try:
                line = input("> ")
            except EOFError:
                print()
                break
            try:
                if args.stream:
                    for fragment in stream(line):
                        print(fragment, end="", flush=True)
                    print()
                else:
                    print(session.infer(line))
            except LlamaKitError as e:
                print(f"error: {e}", file=sys.stderr)
                break
    except KeyboardInterrupt:
        print()
    finally:
        session.stop()


def cmd_cache(args):
    """Inspect a session cache file."""
    from llamakit.core.session_cache import read_session_file
    from llamakit.errors import SessionCacheError

    try:
        tokens = read_session_file(args.path, capacity=args.capacity)
    except SessionCacheError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Session:  {args.path}")
    print(f"Tokens:   {len(tokens)}")
    if not tokens:
        return
    head = tokens[:args.show]
    if args.tokenizer:
        from llamakit.core.tokenizer import HFTokenizer
        tok = HFTokenizer(args.tokenizer)
        print(f"Text:     {tok.decode(head)!r}{' ...' if len(tokens) > args.show else ''}")
    else:
        print(f"Head:     {head}{' ...' if len(tokens) > args.show else ''}")


def cmd_backends(args):
    """List registered backends."""
    from llamakit.core.registry import list_backends

    entries = list_backends()
    print(f"{'Name':<12} {'Factory':<45} {'Description'}")
    print("-" * 80)
    for e in entries:
        print(f"{e.name:<12} {e.factory:<45} {e.description}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="llamakit",
        description="Interactive inference sessions with tool calling",
    )
    sub = parser.add_subparsers(dest="command")

    # chat
    p_chat = sub.add_parser("chat", help="Interactive chat session")
    p_chat.add_argument("--model", default=None, help="Model path")
    p_chat.add_argument("--backend", default=None, help="Backend name or module:factory")
    p_chat.add_argument("--config", default=None, help="Session config (JSON)")
    p_chat.add_argument("--prompt", default=None, help="System / initial prompt")
    p_chat.add_argument("--n-ctx", type=int, default=None)
    p_chat.add_argument("--session", default=None, help="Session cache file")
    p_chat.add_argument("--seed", type=int, default=None)
    p_chat.add_argument("--conversation", action="store_true", help="Apply the chat template")
    p_chat.add_argument("--greeting", action="store_true", help="Let the model speak first")
    p_chat.add_argument("--stream", action="store_true", help="Stream replies")
    p_chat.add_argument("--tools", default=None, help="module:attr of a ToolRegistry or @tool object")
    p_chat.add_argument("--max-tool-rounds", type=int, default=8)
    p_chat.add_argument("--metrics-port", type=int, default=0)
    p_chat.add_argument("--log-level", default="WARNING")
    p_chat.add_argument("--log-json", action="store_true")
    p_chat.add_argument("--log-file", default=None)
    p_chat.set_defaults(func=cmd_chat)

    # cache
    p_cache = sub.add_parser("cache", help="Inspect a session cache file")
    p_cache.add_argument("path")
    p_cache.add_argument("--tokenizer", default=None, help="tokenizer.json to render tokens")
    p_cache.add_argument("--show", type=int, default=64)
    p_cache.add_argument("--capacity", type=int, default=1 << 20)
    p_cache.set_defaults(func=cmd_cache)

    # backends
    p_backends = sub.add_parser("backends", help="List registered backends")
    p_backends.set_defaults(func=cmd_backends)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
