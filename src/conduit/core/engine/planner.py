# src/conduit/core/engine/planner.py
"""
Plan Builder — da definição validada ao Plan executável.

O planner opera exclusivamente em nível estrutural, analisando:
    - unicidade de nomes
    - referências (Steps e parâmetros) e dependências explícitas
    - formação de ciclos
    - kinds registrados (cada Step é instanciado uma única vez aqui)

A saída é um `Plan` imutável com uma estratificação topológica
(`layers`) calculada uma única vez, que é a entrada de escalonamento
do Executor.

Decisões arquiteturais:
    - Ordenação topológica determinística (Kahn por níveis)
    - Cada nível é ordenado lexicograficamente por nome
    - Em presença de ciclo, uma DFS sobre o subgrafo remanescente extrai
      o ciclo, que é reportado em `CyclicDependencyError.cycle`
    - `pre`/`post` viram Steps `command`: todo Step raiz depende de `pre`;
      `post` depende de todos os demais

Invariantes:
    - Toda dependência de um Step está em um nível estritamente anterior
    - Todo Step aparece exatamente uma vez em `layers`
    - A mesma definição produz sempre o mesmo Plan

Limites explícitos:
    - Não executa Steps
    - Não interage com ExecutionContext
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from conduit.core.exceptions import (
    CyclicDependencyError,
    DuplicateStepError,
    UnknownReferenceError,
)
from conduit.core.pipeline.definition import PipelineDefinition, StepSpec, parse_definition
from conduit.core.pipeline.registry import StepKindRegistry, default_registry
from conduit.core.pipeline.step import Step

PRE_HOOK = "pre"
POST_HOOK = "post"


@dataclass(frozen=True)
class Plan:
    """
    DAG validado de StepSpecs com estratificação pré-calculada.

    Campos:
        - definition: definição de origem
        - specs: StepSpecs por nome (ordem de declaração, hooks incluídos)
        - steps: instâncias de Step por nome (criadas em build time)
        - layers: níveis topológicos, cada um ordenado por nome
        - dependencies / dependents: adjacência do grafo
        - digest: SHA-256 do JSON canônico da definição

    Nunca é mutado após o build; pode ser executado várias vezes.
    """
    definition: PipelineDefinition
    specs: Dict[str, StepSpec]
    steps: Dict[str, Step] = field(repr=False)
    layers: Tuple[Tuple[str, ...], ...]
    dependencies: Dict[str, Tuple[str, ...]]
    dependents: Dict[str, Tuple[str, ...]]
    digest: str

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self.definition.params)

    @property
    def required_params(self) -> Tuple[str, ...]:
        return self.definition.required_params

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.definition.environment)

    @property
    def workdir(self) -> Optional[str]:
        return self.definition.workdir

    @property
    def timeout(self) -> Optional[float]:
        return self.definition.timeout

    @property
    def order(self) -> List[str]:
        return [name for level in self.layers for name in level]

    def level_of(self, name: str) -> int:
        for i, level in enumerate(self.layers):
            if name in level:
                return i
        raise KeyError(name)

    def transitive_dependents(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.dependents.get(name, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents.get(current, ()))
        return seen


def _with_hooks(definition: PipelineDefinition) -> List[StepSpec]:
    specs = list(definition.steps)
    names = {s.name for s in specs}

    for hook in (PRE_HOOK, POST_HOOK):
        if getattr(definition, hook) and hook in names:
            raise DuplicateStepError(
                f"Step name '{hook}' is reserved when the pipeline declares a '{hook}' hook",
                details={"steps": [hook]},
            )

    if definition.pre:
        # raízes passam a depender do hook pre
        specs = [
            replace(s, depends_on=s.depends_on + (PRE_HOOK,)) if not s.dependencies else s
            for s in specs
        ]
        specs.insert(0, StepSpec(name=PRE_HOOK, kind="command", config={"command": definition.pre}))

    if definition.post:
        specs.append(
            StepSpec(
                name=POST_HOOK,
                kind="command",
                config={"command": definition.post},
                depends_on=tuple(sorted(s.name for s in specs)),
            )
        )
    return specs


def _validate_references(specs: Mapping[str, StepSpec], definition: PipelineDefinition) -> None:
    for spec in specs.values():
        for dep in spec.depends_on:
            if dep not in specs:
                raise UnknownReferenceError(
                    f"Step '{spec.name}' depends on unknown step '{dep}'",
                    details={"step": spec.name, "reference": dep},
                )
        for ref in spec.references:
            if ref.source == "steps" and ref.name not in specs:
                raise UnknownReferenceError(
                    f"Step '{spec.name}' references unknown step in {ref}",
                    details={"step": spec.name, "reference": str(ref)},
                )
            if ref.source == "params" and ref.name not in definition.params:
                raise UnknownReferenceError(
                    f"Step '{spec.name}' references undeclared parameter in {ref}",
                    details={"step": spec.name, "reference": str(ref)},
                    hint="Declare o parâmetro em 'params' no topo da definição.",
                )


def _find_cycle(remaining: Set[str], deps: Mapping[str, Tuple[str, ...]]) -> List[str]:
    """DFS com pilha de recursão sobre o subgrafo que o Kahn não conseguiu esvaziar."""
    visited: Set[str] = set()

    for start in sorted(remaining):
        if start in visited:
            continue
        path: List[str] = []
        on_path: Dict[str, int] = {}
        stack: List[Tuple[str, int]] = [(start, 0)]
        while stack:
            node, idx = stack.pop()
            if idx == 0:
                visited.add(node)
                on_path[node] = len(path)
                path.append(node)
            children = [d for d in deps[node] if d in remaining]
            if idx < len(children):
                stack.append((node, idx + 1))
                child = children[idx]
                if child in on_path:
                    # arestas apontam para dependências; inverte para a ordem de execução
                    return list(reversed(path[on_path[child]:]))
                if child not in visited:
                    stack.append((child, 0))
            else:
                path.pop()
                del on_path[node]
    return sorted(remaining)


def _layering(names: List[str], deps: Mapping[str, Tuple[str, ...]]) -> Tuple[Tuple[str, ...], ...]:
    incoming = {n: len(deps[n]) for n in names}
    dependents: Dict[str, List[str]] = {n: [] for n in names}
    for n in names:
        for d in deps[n]:
            dependents[d].append(n)

    layers: List[Tuple[str, ...]] = []
    ready = sorted(n for n, c in incoming.items() if c == 0)
    placed = 0
    while ready:
        layers.append(tuple(ready))
        placed += len(ready)
        nxt: List[str] = []
        for n in ready:
            for child in dependents[n]:
                incoming[child] -= 1
                if incoming[child] == 0:
                    nxt.append(child)
        ready = sorted(nxt)

    if placed != len(names):
        remaining = {n for n, c in incoming.items() if c > 0}
        cycle = _find_cycle(remaining, deps)
        raise CyclicDependencyError(cycle)
    return tuple(layers)


def build_plan(
    definition: Union[PipelineDefinition, Dict[str, Any]],
    registry: Optional[StepKindRegistry] = None,
) -> Plan:
    """
    Valida a definição e produz um Plan executável.

    Ordem das validações: nomes → referências → ciclos → kinds.

    Raises:
        DefinitionError: Estrutura inválida ou configuração de kind rejeitada.
        DuplicateStepError: Nomes de Step repetidos.
        UnknownReferenceError: Referência ou dependência inexistente.
        CyclicDependencyError: Ciclo no grafo (`error.cycle`).
        UnknownStepKindError: Kind não registrado.
    """
    if not isinstance(definition, PipelineDefinition):
        definition = parse_definition(definition)
    registry = registry if registry is not None else default_registry()

    specs = {s.name: s for s in _with_hooks(definition)}
    _validate_references(specs, definition)

    deps = {name: spec.dependencies for name, spec in specs.items()}
    for name, d in deps.items():
        if name in d:
            raise CyclicDependencyError([name])

    layers = _layering(list(specs), deps)

    dependents: Dict[str, List[str]] = {n: [] for n in specs}
    for name, d in deps.items():
        for dep in d:
            dependents[dep].append(name)

    steps = {
        name: registry.create(spec.kind, spec.config, name=name, base_dir=definition.base_dir)
        for name, spec in specs.items()
    }

    return Plan(
        definition=definition,
        specs=specs,
        steps=steps,
        layers=layers,
        dependencies=deps,
        dependents={k: tuple(sorted(v)) for k, v in dependents.items()},
        digest=definition.digest(),
    )
