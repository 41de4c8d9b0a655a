# src/conduit/core/pipeline/definition.py
"""
Definição declarativa de pipeline: parsing, StepSpec e expressões de referência.

Este módulo converte um documento (YAML/JSON já carregado como dict) em
uma `PipelineDefinition` validada estruturalmente. Ele não resolve
dependências entre Steps nem detecta ciclos; isso é responsabilidade do
planner.

Formato do documento:

    name: build
    params: {greeting: hello, target: null}   # null → obrigatório
    environment: {CI: "true"}
    workdir: .
    timeout: 600
    pre: echo start
    post: echo done
    steps:
      - name: fetch
        kind: command
        with: {command: "echo $PIPELINE_INPUT_WHO"}
        inputs: {who: "${params.greeting}"}
        retry: {max_attempts: 3, backoff: 0.5}

Expressões de referência:
    - `${steps.<name>.output}` / `${steps.<name>.output.<path>}`
    - `${params.<name>}` / `${params.<name>.<path>}`

Uma string que é exatamente uma expressão resolve para o valor
estruturado; expressões embutidas em texto são interpoladas.

Invariantes:
    - StepSpec e PipelineDefinition são imutáveis após o parsing
    - Nomes de Step são únicos (`DuplicateStepError`)
    - Chaves desconhecidas são rejeitadas (`DefinitionError`)
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from conduit.core.config import ConfigError, load_document
from conduit.core.exceptions import DefinitionError, DuplicateStepError, UnresolvedInputError

from .types import RetryPolicy

NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]*$")
REF_RE = re.compile(r"\$\{\s*(steps|params)\.([A-Za-z0-9_\-]+)((?:\.[A-Za-z0-9_\-]+)*)\s*\}")

PIPELINE_KEYS = {"name", "description", "params", "environment", "workdir", "timeout", "pre", "post", "steps"}
STEP_KEYS = {
    "name",
    "kind",
    "with",
    "config",
    "inputs",
    "depends_on",
    "timeout",
    "retry",
    "continue_on_failure",
    "default",
    "fail_fast",
    "enabled",
    "environment",
}


# ---------------------------------------------------------------------------
# Referências
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Reference:
    """Uma expressão `${...}` já decomposta."""

    source: str  # "steps" | "params"
    name: str
    path: Tuple[str, ...] = ()
    expression: str = ""

    def __str__(self) -> str:
        return self.expression or "${%s.%s}" % (self.source, ".".join((self.name,) + self.path))


def _parse_match(m: "re.Match[str]") -> Reference:
    source, name, rest = m.group(1), m.group(2), m.group(3)
    path = tuple(p for p in rest.split(".") if p)
    if source == "steps":
        if not path or path[0] != "output":
            raise DefinitionError(
                f"Invalid step reference '{m.group(0)}': expected ${{steps.<name>.output[.path]}}",
                details={"expression": m.group(0)},
            )
        path = path[1:]
    return Reference(source=source, name=name, path=path, expression=m.group(0))


def find_references(value: Any) -> List[Reference]:
    """Lista (em ordem de ocorrência) as referências contidas em `value`."""
    found: List[Reference] = []
    for text in _iter_strings(value):
        for m in REF_RE.finditer(text):
            found.append(_parse_match(m))
    return found


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_strings(v)


def walk_path(value: Any, path: Sequence[str]) -> Any:
    """
    Percorre `path` sobre mapas (por chave) e sequências (por índice inteiro).

    Raises:
        KeyError: Se algum segmento não existir.
    """
    current = value
    for i, segment in enumerate(path):
        if isinstance(current, dict):
            if segment not in current:
                raise KeyError(".".join(path[: i + 1]))
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise KeyError(".".join(path[: i + 1])) from None
        else:
            raise KeyError(".".join(path[: i + 1]))
    return current


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Substitui recursivamente as referências em `value` usando `lookup`.

    `lookup` deve levantar `UnresolvedInputError` quando a referência não
    puder ser satisfeita.
    """
    if isinstance(value, str):
        exact = REF_RE.fullmatch(value.strip())
        if exact is not None:
            return lookup(_parse_match(exact))
        if "${" not in value:
            return value
        return REF_RE.sub(lambda m: stringify(lookup(_parse_match(m))), value)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, lookup) for v in value]
    return value


def lookup_path(ref: Reference, value: Any) -> Any:
    """Aplica `ref.path` sobre `value`, convertendo falhas em `UnresolvedInputError`."""
    try:
        return walk_path(value, ref.path)
    except KeyError as e:
        raise UnresolvedInputError(
            f"Reference {ref} could not be resolved: missing '{e.args[0]}'",
            details={"reference": str(ref), "missing": e.args[0]},
        ) from None


# ---------------------------------------------------------------------------
# StepSpec / PipelineDefinition
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StepSpec:
    """
    Declaração imutável de um Step.

    `timeout` e `retry` valem None quando não declarados; nesse caso o
    Executor aplica os defaults configurados (e, para kinds não
    idempotentes, uma única tentativa). `retry` guarda apenas as chaves
    declaradas; as demais vêm de `step_defaults.retry`.
    """
    name: str
    kind: str
    config: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    timeout: Optional[float] = None
    retry: Optional[Dict[str, Any]] = None
    continue_on_failure: bool = False
    default: Any = None
    fail_fast: bool = False
    enabled: bool = True
    environment: Dict[str, str] = field(default_factory=dict)

    @property
    def references(self) -> List[Reference]:
        return find_references(self.inputs)

    @property
    def inferred_dependencies(self) -> Tuple[str, ...]:
        return tuple(sorted({r.name for r in self.references if r.source == "steps"}))

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Dependências explícitas e inferidas, sem repetição, em ordem lexicográfica."""
        return tuple(sorted(set(self.depends_on) | set(self.inferred_dependencies)))


@dataclass(frozen=True)
class PipelineDefinition:
    """Documento de pipeline validado estruturalmente."""

    name: str
    steps: Tuple[StepSpec, ...]
    params: Dict[str, Any] = field(default_factory=dict)
    required_params: Tuple[str, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)
    workdir: Optional[str] = None
    timeout: Optional[float] = None
    pre: Optional[str] = None
    post: Optional[str] = None
    base_dir: Optional[Path] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.raw, default=str))

    def digest(self) -> str:
        canonical = json.dumps(self.raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _fail(message: str, **details: Any) -> DefinitionError:
    return DefinitionError(message, details=details)


def _opt_seconds(value: Any, where: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _fail(f"{where}: timeout must be a number of seconds", where=where)
    if value <= 0:
        raise _fail(f"{where}: timeout must be > 0", where=where)
    return float(value)


def _bool(value: Any, where: str, key: str) -> bool:
    if not isinstance(value, bool):
        raise _fail(f"{where}: '{key}' must be a boolean", where=where, key=key)
    return value


def _str_map(value: Any, where: str, key: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _fail(f"{where}: '{key}' must be a mapping", where=where, key=key)
    return {str(k): stringify(v) for k, v in value.items()}


def _parse_retry(value: Any, where: str) -> Optional[Dict[str, Any]]:
    """Valida um `retry` parcial; as chaves omitidas são completadas pelo Executor."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise _fail(f"{where}: 'retry' must be a mapping or an integer", where=where)
    if isinstance(value, int):
        value = {"max_attempts": value}
    if not isinstance(value, dict):
        raise _fail(f"{where}: 'retry' must be a mapping or an integer", where=where)
    unknown = set(value) - {"max_attempts", "backoff", "multiplier", "max_backoff"}
    if unknown:
        raise _fail(f"{where}: unknown retry keys {sorted(unknown)}", where=where)
    try:
        RetryPolicy.from_dict(value)
    except (TypeError, ValueError) as e:
        raise _fail(f"{where}: invalid retry policy: {e}", where=where) from e
    return dict(value)


def _parse_params(value: Any) -> Tuple[Dict[str, Any], Tuple[str, ...]]:
    if value is None:
        return {}, ()
    if isinstance(value, list):
        names = [str(v) for v in value]
        return {n: None for n in names}, tuple(sorted(names))
    if not isinstance(value, dict):
        raise _fail("'params' must be a mapping or a list of names")
    params = {str(k): v for k, v in value.items()}
    required = tuple(sorted(k for k, v in params.items() if v is None))
    return params, required


def _parse_step(index: int, data: Any) -> StepSpec:
    where = f"steps[{index}]"
    if not isinstance(data, dict):
        raise _fail(f"{where}: step must be a mapping", where=where)

    unknown = set(data) - STEP_KEYS
    if unknown:
        raise _fail(f"{where}: unknown keys {sorted(unknown)}", where=where, keys=sorted(unknown))

    name = data.get("name")
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise _fail(f"{where}: 'name' must match {NAME_RE.pattern}", where=where, name=name)
    where = f"step '{name}'"

    kind = data.get("kind")
    if not isinstance(kind, str) or not kind.strip():
        raise _fail(f"{where}: 'kind' is required", where=where)

    if "with" in data and "config" in data:
        raise _fail(f"{where}: use either 'with' or 'config', not both", where=where)
    config = data.get("with", data.get("config")) or {}
    if not isinstance(config, dict):
        raise _fail(f"{where}: 'with' must be a mapping", where=where)

    inputs = data.get("inputs") or {}
    if not isinstance(inputs, dict):
        raise _fail(f"{where}: 'inputs' must be a mapping", where=where)

    depends_on = data.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise _fail(f"{where}: 'depends_on' must be a list of step names", where=where)

    # referências malformadas falham aqui, antes do planner
    find_references(inputs)

    return StepSpec(
        name=name,
        kind=kind,
        config=dict(config),
        inputs=dict(inputs),
        depends_on=tuple(dict.fromkeys(depends_on)),
        timeout=_opt_seconds(data.get("timeout"), where),
        retry=_parse_retry(data.get("retry"), where),
        continue_on_failure=_bool(data.get("continue_on_failure", False), where, "continue_on_failure"),
        default=data.get("default"),
        fail_fast=_bool(data.get("fail_fast", False), where, "fail_fast"),
        enabled=_bool(data.get("enabled", True), where, "enabled"),
        environment=_str_map(data.get("environment"), where, "environment"),
    )


def parse_definition(data: Dict[str, Any], *, base_dir: Optional[Union[str, Path]] = None) -> PipelineDefinition:
    """
    Valida a estrutura de um documento de pipeline.

    Raises:
        DefinitionError: Estrutura, tipos ou valores inválidos.
        DuplicateStepError: Dois Steps com o mesmo nome.
    """
    if not isinstance(data, dict):
        raise _fail(f"Pipeline definition must be a mapping, got {type(data).__name__}")

    unknown = set(data) - PIPELINE_KEYS
    if unknown:
        raise _fail(f"Unknown pipeline keys {sorted(unknown)}", keys=sorted(unknown))

    name = data.get("name") or "pipeline"
    if not isinstance(name, str):
        raise _fail("'name' must be a string")

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise _fail("'steps' must be a non-empty list")

    steps = tuple(_parse_step(i, s) for i, s in enumerate(raw_steps))

    seen: Dict[str, int] = {}
    for spec in steps:
        seen[spec.name] = seen.get(spec.name, 0) + 1
    duplicates = sorted(n for n, c in seen.items() if c > 1)
    if duplicates:
        raise DuplicateStepError(
            f"Duplicate step name(s): {', '.join(duplicates)}",
            details={"steps": duplicates},
        )

    for key in ("pre", "post"):
        hook = data.get(key)
        if hook is not None and (not isinstance(hook, str) or not hook.strip()):
            raise _fail(f"'{key}' must be a non-empty command string")

    workdir = data.get("workdir")
    if workdir is not None and not isinstance(workdir, str):
        raise _fail("'workdir' must be a string")

    params, required = _parse_params(data.get("params"))

    return PipelineDefinition(
        name=name,
        steps=steps,
        params=params,
        required_params=required,
        environment=_str_map(data.get("environment"), "pipeline", "environment"),
        workdir=workdir,
        timeout=_opt_seconds(data.get("timeout"), "pipeline"),
        pre=data.get("pre"),
        post=data.get("post"),
        base_dir=Path(base_dir) if base_dir is not None else None,
        raw=json.loads(json.dumps(data, default=str)),
    )


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    """Lê um arquivo YAML/JSON de definição; `base_dir` passa a ser o diretório do arquivo."""
    path = Path(path)
    try:
        data = load_document(path)
    except ConfigError as e:
        raise DefinitionError(str(e), details={"path": str(path)}) from e
    return parse_definition(data, base_dir=path.resolve().parent)
