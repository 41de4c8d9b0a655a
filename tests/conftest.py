# tests/conftest.py
"""
Fixtures compartilhados para testes do Conduit.

Este módulo define fixtures reutilizáveis que fornecem:
- configurações mínimas e determinísticas (EngineSettings/Settings)
- um StepKindRegistry com os kinds embutidos e o kind de teste `fn`
- helpers para construir Plans e contextos a partir de dicionários
- Steps de teste guiados por funções Python (`FnStep`)

Decisões arquiteturais:
    - O kind `fn` recebe a função em `with.fn`; nenhuma lógica de domínio
      vive nas fixtures
    - Timeouts e períodos de graça são curtos para manter a suíte rápida
    - Steps de teste usam duck typing em vez de herança

Invariantes:
    - Nenhuma fixture executa pipeline real
    - Nenhuma fixture depende de variáveis de ambiente do processo
    - Cada teste recebe um registry novo (sem estado global)

Limites explícitos:
    - Não substituir testes de integração dos kinds embutidos
"""

import threading

import pytest


class FnStep:
    """
    Step de teste que delega a `fn(ctx, inputs)`.

    `calls` conta as tentativas, permitindo verificar retries e a
    ausência de execução.
    """

    kind = "fn"

    def __init__(self, fn, idempotent=True):
        self.fn = fn
        self.idempotent = idempotent
        self.calls = 0
        self._lock = threading.Lock()

    def run(self, ctx, inputs):
        with self._lock:
            self.calls += 1
        return self.fn(ctx, inputs)


def _fn_factory(config, *, name, **_):
    fn = config.get("fn")
    if fn is None:
        return FnStep(lambda ctx, inputs: dict(inputs) or name, idempotent=config.get("idempotent", True))
    if not callable(fn):
        raise ValueError("'fn' must be callable")
    return FnStep(fn, idempotent=config.get("idempotent", True))


@pytest.fixture
def registry():
    """Registry com os kinds embutidos mais o kind de teste `fn`."""
    from conduit.core.pipeline.registry import default_registry

    reg = default_registry()
    reg.register("fn", _fn_factory)
    return reg


@pytest.fixture
def engine_settings():
    """EngineSettings com período de graça curto e retries desligados por padrão."""
    from conduit.core.config.loader import EngineSettings

    return EngineSettings(max_concurrency=4, grace_period=0.3, fail_fast=False, log_level="DEBUG")


@pytest.fixture
def settings(engine_settings):
    """Settings completos, sem arquivo nem variáveis de ambiente."""
    from conduit.core.config.loader import ClientSettings, ServerSettings, Settings

    return Settings(
        engine=engine_settings,
        server=ServerSettings(addr="127.0.0.1:8838", max_concurrent_runs=2, max_records=50, workdir=None),
        client=ClientSettings(max_reconnects=3, reconnect_backoff=0.0, timeout=5.0),
        config_hash="test",
    )


@pytest.fixture
def make_plan(registry):
    """Fábrica: dict de definição → Plan construído com o registry de teste."""
    from conduit.core.engine.planner import build_plan

    def _make(definition):
        return build_plan(definition, registry)

    return _make


@pytest.fixture
def execute(engine_settings):
    """
    Fábrica: executa um Plan e devolve `(AggregateResult, ExecutionContext)`.

    Parâmetros nomeados extras são repassados ao Executor.
    """
    from conduit.core.engine.executor import Executor
    from conduit.core.pipeline.context import ExecutionContext

    def _execute(plan, params=None, ctx=None, **executor_kwargs):
        ctx = ctx or ExecutionContext.create(plan, params, run_id="run-test-001", meta={"source": "pytest"})
        result = Executor(engine_settings, **executor_kwargs).execute(plan, ctx)
        return result, ctx

    return _execute


@pytest.fixture
def fn_step():
    """Atalho para declarar um StepSpec do kind `fn` em dicionários de definição."""

    def _spec(name, fn=None, **extra):
        spec = {"name": name, "kind": "fn", "with": {}}
        if fn is not None:
            spec["with"]["fn"] = fn
        if "idempotent" in extra:
            spec["with"]["idempotent"] = extra.pop("idempotent")
        spec.update(extra)
        return spec

    return _spec
