# src/conduit/core/pipeline/step.py
"""
Contrato canônico de Step do Conduit.

Um Step é a menor unidade executável do pipeline. Cada kind (command,
http, pipeline, python, ou qualquer kind registrado por terceiros) é um
implementador independente deste protocolo; não há hierarquia de herança.

Responsabilidades de um Step:
    - executar sua lógica a partir das entradas já resolvidas
    - observar cancelamento via `ctx.token` e retornar prontamente
    - retornar uma saída estruturada utilizável como entrada de outro Step

Princípios fundamentais:
    - Steps não conhecem o Executor nem o planner
    - Steps nunca escrevem no mapa de resultados; apenas retornam valores
    - Falhas são sinalizadas levantando exceção (preferencialmente
      `StepExecutionError` e subclasses)
    - Conformidade é garantida por duck typing (@runtime_checkable)

Invariantes:
    - `idempotent = False` implica uma única tentativa, salvo `retry` explícito
    - `run` pode ser chamado mais de uma vez (retry) na mesma run
"""

from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable

from .context import StepContext


@runtime_checkable
class Step(Protocol):
    """
    Contrato mínimo de um Step.

    Atributos obrigatórios:
        - kind: discriminador registrado no StepKindRegistry
        - idempotent: se o Step pode ser reexecutado com segurança

    Limites explícitos:
        - Não define retry nem timeout (responsabilidade do Executor)
        - Não registra eventos no journal diretamente
    """
    kind: str
    idempotent: bool

    def run(self, ctx: StepContext, inputs: Dict[str, Any]) -> Any:
        """Executa uma tentativa e retorna a saída estruturada."""
        ...
