"""Step embutido: python.

Chama uma função Python indicada por `module:function`, como
`fn(inputs)` ou `fn(inputs, ctx)` conforme a assinatura. A função é
importada em build time; erros de import viram `DefinitionError`.

A função deve observar `ctx.cancelled` / `ctx.wait()` quando for longa.
"""

from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from conduit.core.pipeline.context import StepContext


def _import_target(target: str) -> Callable[..., Any]:
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"'function' must look like 'module:function', got {target!r}")
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"cannot import module '{module_name}': {e}") from e
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise ValueError(f"'{target}' not found") from e
    if not callable(obj):
        raise ValueError(f"'{target}' is not callable")
    return obj


def _wants_ctx(fn: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2 or any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params)


@dataclass
class PythonCallStep:
    target: str
    func: Callable[..., Any] = field(repr=False)
    idempotent: bool = True

    kind = "python"

    @classmethod
    def from_config(cls, config: Dict[str, Any], *, name: str, **_: Any) -> "PythonCallStep":
        target = config.get("function")
        if not isinstance(target, str):
            raise ValueError("'function' is required")
        return cls(
            target=target,
            func=_import_target(target),
            idempotent=bool(config.get("idempotent", True)),
        )

    def run(self, ctx: StepContext, inputs: Dict[str, Any]) -> Any:
        if _wants_ctx(self.func):
            return self.func(inputs, ctx)
        return self.func(inputs)
