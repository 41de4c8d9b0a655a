# src/conduit/core/pipeline/registry.py
"""
Registro de kinds de Step.

O `StepKindRegistry` mapeia o discriminador `kind` de um StepSpec para a
fábrica que instancia o Step correspondente. O Plan Builder consulta o
registro uma única vez por StepSpec, em tempo de construção.

Decisões arquiteturais:
    - Cada registro é uma instância; não existe registro global mutável
    - A ordem de registro é preservada (útil para listagem e mensagens)
    - Erros de fábrica são convertidos em `DefinitionError`

Invariantes:
    - Cada kind é registrado no máximo uma vez (salvo `replace=True`)
    - `create` nunca devolve um objeto que não satisfaça o protocolo `Step`

Limites explícitos:
    - Não planeja execução
    - Não executa Steps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from conduit.core.exceptions import (
    BuildError,
    DefinitionError,
    DuplicateStepKindError,
    UnknownStepKindError,
)

from .step import Step

# factory(config, *, name, registry, base_dir) -> Step
StepFactory = Callable[..., Step]


@dataclass
class StepKindRegistry:
    """Registro canônico de kinds de Step."""

    _factories: Dict[str, StepFactory] = field(default_factory=dict, init=False, repr=False)
    _order: List[str] = field(default_factory=list, init=False, repr=False)

    def register(self, kind: str, factory: StepFactory, *, replace: bool = False) -> None:
        if not isinstance(kind, str) or not kind.strip():
            raise ValueError("kind must be a non-empty string")
        if not callable(factory):
            raise TypeError(f"factory for kind '{kind}' must be callable")

        if kind in self._factories and not replace:
            raise DuplicateStepKindError(f"Duplicate step kind: {kind}")

        if kind not in self._factories:
            self._order.append(kind)
        self._factories[kind] = factory

    def __contains__(self, kind: object) -> bool:
        return kind in self._factories

    def kinds(self) -> List[str]:
        return list(self._order)

    def create(
        self,
        kind: str,
        config: Dict[str, Any],
        *,
        name: str,
        base_dir: Optional[Path] = None,
    ) -> Step:
        """
        Instancia o Step de `kind` para o StepSpec `name`.

        Raises:
            UnknownStepKindError: Se o kind não estiver registrado.
            DefinitionError: Se a fábrica rejeitar a configuração.
        """
        factory = self._factories.get(kind)
        if factory is None:
            raise UnknownStepKindError(
                f"Step '{name}' uses unknown kind '{kind}'",
                details={"step": name, "kind": kind, "known_kinds": self.kinds()},
                hint="Registre o kind no StepKindRegistry antes de construir o Plan.",
            )

        try:
            step = factory(dict(config), name=name, registry=self, base_dir=base_dir)
        except BuildError:
            raise
        except (TypeError, ValueError, KeyError) as e:
            raise DefinitionError(
                f"Step '{name}' has invalid '{kind}' configuration: {e}",
                details={"step": name, "kind": kind},
            ) from e

        if not isinstance(step, Step):
            raise DefinitionError(
                f"Factory for kind '{kind}' did not return a Step",
                details={"step": name, "kind": kind, "received": type(step).__name__},
            )
        return step


def default_registry() -> StepKindRegistry:
    """Registro novo contendo os kinds embutidos (command, http, pipeline, python)."""
    from conduit.steps import register_builtin_kinds

    registry = StepKindRegistry()
    register_builtin_kinds(registry)
    return registry
