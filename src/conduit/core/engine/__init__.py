# src/conduit/core/engine/__init__.py
"""
Engine do Conduit.

Componentes principais:
    - planner  → `build_plan`: validação estrutural, detecção de ciclos e
                 estratificação topológica (Plan)
    - executor → `Executor`: execução nível a nível com concorrência limitada,
                 retry, timeout, propagação de falhas e cancelamento

Princípios fundamentais:
    - Planejamento e execução são responsabilidades separadas
    - A estratificação é calculada uma vez, no build
    - O mesmo Executor atende `run`, servidor e sub-pipelines

Invariantes:
    - Steps só executam após suas dependências
    - O resultado reflete explicitamente o estado final de cada Step
"""

from .executor import Executor
from .planner import Plan, build_plan

__all__ = ["Executor", "Plan", "build_plan"]
