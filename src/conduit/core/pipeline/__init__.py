# src/conduit/core/pipeline/__init__.py
"""
# Pipeline Core — Conduit

Este pacote define os **contratos canônicos** e as **estruturas fundamentais**
que compõem um pipeline no Conduit.

## Componentes

- **types**
  - `StepStatus`, `RunStatus`: estados de Step e de run
  - `RetryPolicy`: tentativas e backoff exponencial
  - `StepResult`, `AggregateResult`: resultados imutáveis e serializáveis

- **step**
  - `Step` (Protocol): `kind`, `idempotent`, `run(ctx, inputs)`

- **registry**
  - `StepKindRegistry`: kind → fábrica de Step

- **definition**
  - `StepSpec`, `PipelineDefinition`, `parse_definition`, `load_definition`
  - expressões `${steps.<name>.output...}` / `${params.<name>}`

- **context**
  - `CancelToken`, `ExecutionContext`, `StepContext`

## Princípios Fundamentais

- Steps **não conhecem** o Executor nem o planner
- Steps **retornam** saídas; apenas o Executor escreve resultados
- Dependências são explícitas (`depends_on`) ou inferidas de referências

Os submódulos são importados diretamente (ex.:
`from conduit.core.pipeline.types import StepStatus`).
"""
