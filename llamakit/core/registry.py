"""
llamakit :: Backend Registry

Maps backend names to factories. A factory is a dotted path
"package.module:callable" taking the SessionConfig and returning a
ComputeBackend. Unregistered "module:callable" strings resolve directly.

Built in:
  - torch:  TorchScript module at model_path + tokenizer.json beside it
  - dummy:  random logits, tokenizer.json at model_path (benchmarks, smoke tests)

To add a backend:
    register_backend("my-engine", "my_pkg.engine:make_backend")

INL - 2025
"""

import importlib
import os
from dataclasses import dataclass
from typing import Callable, Dict, List

from llamakit.errors import ConfigurationError, ResourceError


@dataclass
class BackendEntry:
    """A registered backend."""
    name: str
    factory: str         # "package.module:callable"
    description: str = ""


# =========================================================================
# Global registry
# =========================================================================

_REGISTRY: Dict[str, BackendEntry] = {}


def register_backend(name: str, factory: str, description: str = ""):
    """
    Register a backend factory.

    Args:
        name: unique backend name
        factory: dotted path "module:callable"
        description: human-readable description
    """
    if ":" not in factory:
        raise ValueError(f"factory must look like 'module:callable' (got {factory!r})")
    _REGISTRY[name] = BackendEntry(name=name, factory=factory, description=description)


def get_backend_entry(name: str) -> BackendEntry:
    if name not in _REGISTRY:
        available = ", ".join(_REGISTRY.keys())
        raise ConfigurationError(f"Unknown backend: {name}. Available: {available}")
    return _REGISTRY[name]


def list_backends() -> List[BackendEntry]:
    return list(_REGISTRY.values())


def resolve_factory(name_or_path: str) -> Callable:
    """Resolve a registered name or a 'module:callable' path to the callable."""
    path = name_or_path if ":" in name_or_path else get_backend_entry(name_or_path).factory
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"cannot import backend module {module_name!r}", e) from e
    factory = getattr(module, attr, None)
    if factory is None:
        raise ConfigurationError(f"backend factory {path!r} not found")
    return factory


def create_backend(config):
    """Build the backend a SessionConfig asks for."""
    if not config.model_path:
        raise ConfigurationError("model_path must be defined")
    factory = resolve_factory(config.backend or "torch")
    return factory(config)


# =========================================================================
# Built-in factories
# =========================================================================

def _tokenizer_for(model_path: str):
    from llamakit.core.tokenizer import load_tokenizer

    tokenizer = load_tokenizer(model_path, eot_token="<|eot_id|>")
    if tokenizer is None:
        raise ResourceError(f"no tokenizer.json found for {model_path}")
    return tokenizer


def _torch_backend(model, tokenizer, config):
    from llamakit.core.backend import TorchBackend

    return TorchBackend(
        model, tokenizer,
        n_ctx=config.n_ctx or 4096,
        n_ctx_train=config.n_ctx_train or None,
        seed=config.sampling.seed or 0,
    )


def torch_backend(config):
    """TorchScript model file + tokenizer.json in the same directory."""
    import torch

    if not os.path.isfile(config.model_path):
        raise ResourceError(f"model file not found: {config.model_path}")
    try:
        model = torch.jit.load(config.model_path, map_location="cpu")
    except (RuntimeError, ValueError) as e:
        raise ResourceError(f"cannot load model {config.model_path}", e) from e
    tokenizer = _tokenizer_for(os.path.dirname(config.model_path) or ".")
    return _torch_backend(model, tokenizer, config)


def dummy_backend(config):
    """Random logits over the tokenizer's vocabulary."""
    tokenizer = _tokenizer_for(config.model_path)
    return _torch_backend(None, tokenizer, config)


register_backend("torch", "llamakit.core.registry:torch_backend", "TorchScript module + tokenizer.json")
register_backend("dummy", "llamakit.core.registry:dummy_backend", "Random logits (benchmarks)")
