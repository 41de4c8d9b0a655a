"""
Kinds de Step embutidos no Conduit.

- command  → processo externo (`CommandStep`)
- http     → requisição HTTP via httpx (`HttpStep`)
- pipeline → sub-pipeline executado por um Executor aninhado (`SubPipelineStep`)
- python   → função Python `module:function` (`PythonCallStep`)

Cada kind é um implementador independente do protocolo `Step`; o
vínculo kind → fábrica existe apenas no StepKindRegistry.
"""

from conduit.core.pipeline.registry import StepKindRegistry

from .command import CommandStep
from .http import HttpStep
from .python_call import PythonCallStep
from .subpipeline import SubPipelineStep

BUILTIN_KINDS = {
    CommandStep.kind: CommandStep.from_config,
    HttpStep.kind: HttpStep.from_config,
    SubPipelineStep.kind: SubPipelineStep.from_config,
    PythonCallStep.kind: PythonCallStep.from_config,
}


def register_builtin_kinds(registry: StepKindRegistry, *, replace: bool = False) -> StepKindRegistry:
    for kind, factory in BUILTIN_KINDS.items():
        registry.register(kind, factory, replace=replace)
    return registry


__all__ = [
    "BUILTIN_KINDS",
    "CommandStep",
    "HttpStep",
    "PythonCallStep",
    "SubPipelineStep",
    "register_builtin_kinds",
]
