# tests/core/engine/test_executor.py
"""
Testes do Executor.

Este módulo valida a execução nível a nível de um Plan:

- concorrência dentro de um nível e barreira entre níveis
- propagação de falhas (Skipped transitivo, continue_on_failure + default)
- retry com backoff e a regra de uma tentativa para Steps não idempotentes
- timeout por tentativa, cancelamento e deadline da run
- fail-fast (no StepSpec e em `engine.fail_fast`)
- status agregado e journal da run

Decisões arquiteturais:
    - Steps de teste são funções (`kind: fn`) e observam `ctx.wait`
    - Timeouts e grace periods são curtos para manter a suíte rápida

Invariantes:
    - Exceções de Step nunca escapam do Executor
    - Resultados são registrados uma única vez por Step
    - O último evento do journal é sempre `run_result`
"""

import threading
import time

import pytest

from conduit.core import errors
from conduit.core.config.loader import EngineSettings
from conduit.core.engine.executor import Executor
from conduit.core.exceptions import StepCancelledError, StepExecutionError
from conduit.core.pipeline.context import ExecutionContext
from conduit.core.pipeline.types import RunStatus, StepStatus


def _ok(value=None):
    return lambda ctx, inputs: value if value is not None else dict(inputs)


def _boom(ctx, inputs):
    raise RuntimeError("boom")


def _statuses(result):
    return {name: r.status for name, r in result.steps.items()}


class NotRetryable(StepExecutionError):
    retryable = False


# -----------------------------
# Cenários de referência
# -----------------------------

def test_dependents_run_concurrently_after_their_dependency(make_plan, execute, fn_step):
    """
    A (sem dependências), B e C dependem de A.

    A termina antes de B e C começarem; B e C rodam ao mesmo tempo
    (ambos esperam na mesma barreira) e a run termina Succeeded.
    """
    barrier = threading.Barrier(2, timeout=5)

    def meet(ctx, inputs):
        barrier.wait()
        return ctx.step

    plan = make_plan({
        "steps": [
            fn_step("A", _ok("a")),
            fn_step("B", meet, depends_on=["A"]),
            fn_step("C", meet, depends_on=["A"]),
        ]
    })

    result, _ = execute(plan)

    assert result.status == RunStatus.SUCCEEDED
    assert _statuses(result) == {n: StepStatus.SUCCEEDED for n in "ABC"}
    a = result.steps["A"]
    for name in ("B", "C"):
        assert a.finished_at <= result.steps[name].started_at
    assert result.steps["B"].output == "B"


def test_failed_step_with_retries_skips_dependents(make_plan, execute, fn_step):
    """
    A falha com política de 2 tentativas; B depende de A.

    A esgota as tentativas e termina Failed, B termina Skipped e a run Failed.
    """
    plan = make_plan({
        "steps": [
            fn_step("A", _boom, retry={"max_attempts": 2}),
            fn_step("B", _ok(), depends_on=["A"]),
        ]
    })

    result, _ = execute(plan)

    assert result.status == RunStatus.FAILED
    assert result.steps["A"].status == StepStatus.FAILED
    assert result.steps["A"].attempts == 2
    assert plan.steps["A"].calls == 2
    assert result.steps["B"].status == StepStatus.SKIPPED
    assert result.steps["B"].error["details"]["dependency"] == "A"
    assert plan.steps["B"].calls == 0


# -----------------------------
# Propagação de falhas
# -----------------------------

def test_skip_is_transitive_and_independent_branches_run(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _boom),
            fn_step("b", _ok(), depends_on=["a"]),
            fn_step("c", _ok(), depends_on=["b"]),
            fn_step("d", _ok("d")),
        ]
    })

    result, _ = execute(plan)

    assert _statuses(result) == {
        "a": StepStatus.FAILED,
        "d": StepStatus.SUCCEEDED,
        "b": StepStatus.SKIPPED,
        "c": StepStatus.SKIPPED,
    }
    assert result.status == RunStatus.FAILED


def test_continue_on_failure_feeds_default_to_dependents(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _boom, continue_on_failure=True, default={"v": 7}),
            fn_step("b", _ok(), inputs={"got": "${steps.a.output.v}"}),
        ]
    })

    result, _ = execute(plan)

    assert result.steps["a"].status == StepStatus.FAILED
    assert result.steps["b"].status == StepStatus.SUCCEEDED
    assert result.steps["b"].output == {"got": 7}
    assert result.status == RunStatus.SUCCEEDED


def test_continue_on_failure_without_default_yields_none(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _boom, continue_on_failure=True),
            fn_step("b", _ok(), inputs={"got": "${steps.a.output}"}),
        ]
    })

    result, _ = execute(plan)

    assert result.steps["b"].output == {"got": None}


def test_unresolved_input_fails_without_attempt(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _ok({"x": 1})),
            fn_step("b", _ok(), inputs={"y": "${steps.a.output.y}"}, retry=3),
        ]
    })

    result, _ = execute(plan)

    b = result.steps["b"]
    assert b.status == StepStatus.FAILED
    assert b.attempts == 0
    assert b.error["type"] == errors.UNRESOLVED_INPUT
    assert plan.steps["b"].calls == 0


def test_inputs_resolve_params_and_outputs(make_plan, execute, fn_step):
    plan = make_plan({
        "params": {"who": "world", "n": None},
        "steps": [
            fn_step("a", _ok({"items": [10, 20]})),
            fn_step("b", _ok(), inputs={
                "who": "${params.who}",
                "n": "${params.n}",
                "second": "${steps.a.output.items.1}",
                "text": "hi ${params.who} #${steps.a.output.items.0}",
            }),
        ],
    })

    result, _ = execute(plan, params={"n": 3})

    assert result.steps["b"].output == {"who": "world", "n": 3, "second": 20, "text": "hi world #10"}


def test_dependents_receive_their_own_copy_of_outputs(make_plan, execute, fn_step):
    """
    Um Step que altera suas entradas não altera o output registrado do
    produtor nem o que outros dependentes recebem.
    """

    def mutate(ctx, inputs):
        inputs["cfg"]["n"] = 99
        inputs["cfg"]["items"].append("b")
        return inputs["cfg"]["n"]

    plan = make_plan({
        "steps": [
            fn_step("a", _ok({"n": 1, "items": ["a"]})),
            fn_step("b", mutate, inputs={"cfg": "${steps.a.output}"}),
            fn_step("c", _ok(), inputs={"cfg": "${steps.a.output}"}, depends_on=["b"]),
        ],
    })

    result, ctx = execute(plan)

    assert result.steps["b"].output == 99
    assert result.steps["a"].output == {"n": 1, "items": ["a"]}
    assert result.steps["c"].output == {"cfg": {"n": 1, "items": ["a"]}}
    assert ctx.result("a").output == {"n": 1, "items": ["a"]}


def test_disabled_step_is_skipped_with_dependents(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _ok(), enabled=False),
            fn_step("b", _ok(), depends_on=["a"]),
            fn_step("c", _ok("c")),
        ]
    })

    result, _ = execute(plan)

    assert result.steps["a"].status == StepStatus.SKIPPED
    assert result.steps["b"].status == StepStatus.SKIPPED
    assert result.steps["c"].status == StepStatus.SUCCEEDED
    assert result.status == RunStatus.SUCCEEDED
    assert plan.steps["a"].calls == 0


def test_step_exception_becomes_payload_without_traceback(make_plan, execute, fn_step):
    plan = make_plan({"steps": [fn_step("a", _boom)]})

    result, _ = execute(plan)

    error = result.steps["a"].error
    assert error["type"] == errors.ENGINE_EXECUTION_ERROR
    assert error["message"] == "boom"
    assert error["details"]["exc_type"] == "RuntimeError"
    assert "Traceback" not in str(error)


# -----------------------------
# Fail-fast
# -----------------------------

def test_fail_fast_step_stops_scheduling(make_plan, execute, fn_step):
    """
    Com um único worker, `bad` (fail_fast) falha e `ok`, ainda não iniciado
    no mesmo nível, é Skipped; o nível seguinte também é Skipped.
    """
    plan = make_plan({
        "steps": [
            fn_step("bad", _boom, fail_fast=True),
            fn_step("ok", _ok()),
            fn_step("later", _ok(), depends_on=["ok"]),
        ]
    })

    result, _ = execute(plan, max_concurrency=1)

    assert result.steps["bad"].status == StepStatus.FAILED
    assert result.steps["ok"].status == StepStatus.SKIPPED
    assert result.steps["later"].status == StepStatus.SKIPPED
    assert result.steps["later"].error["type"] == errors.FAIL_FAST_ABORT
    assert result.status == RunStatus.FAILED
    assert result.error["type"] == errors.FAIL_FAST_ABORT
    assert plan.steps["ok"].calls == 0


def test_engine_level_fail_fast(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _boom),
            fn_step("z", _ok(), depends_on=["y"]),
            fn_step("y", _ok()),
        ]
    })

    result, _ = execute(plan, fail_fast=True, max_concurrency=1)

    assert result.steps["a"].status == StepStatus.FAILED
    assert result.steps["z"].status == StepStatus.SKIPPED
    assert result.error["details"]["step"] == "a"


def test_without_fail_fast_independent_steps_continue(make_plan, execute, fn_step):
    plan = make_plan({"steps": [fn_step("a", _boom), fn_step("b", _ok("b"))]})

    result, _ = execute(plan, max_concurrency=1)

    assert result.steps["b"].status == StepStatus.SUCCEEDED
    assert result.error is None


# -----------------------------
# Retry
# -----------------------------

def test_retry_with_backoff_until_success(make_plan, execute, fn_step):
    attempts = []

    def flaky(ctx, inputs):
        attempts.append((ctx.attempt, time.monotonic()))
        if ctx.attempt < 3:
            raise StepExecutionError("transient")
        return "done"

    plan = make_plan({"steps": [fn_step("a", flaky, retry={"max_attempts": 3, "backoff": 0.05, "multiplier": 2})]})

    result, _ = execute(plan)

    a = result.steps["a"]
    assert a.status == StepStatus.SUCCEEDED
    assert a.attempts == 3
    assert a.output == "done"
    assert [n for n, _ in attempts] == [1, 2, 3]
    assert attempts[1][1] - attempts[0][1] >= 0.05
    assert attempts[2][1] - attempts[1][1] >= 0.1


def test_non_idempotent_step_gets_single_attempt_by_default(make_plan, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("once", _boom, idempotent=False),
            fn_step("many", _boom),
            fn_step("explicit", _boom, idempotent=False, retry=2),
        ]
    })
    settings = EngineSettings(retry_max_attempts=3, grace_period=0.3)
    ctx = ExecutionContext.create(plan)

    result = Executor(settings).execute(plan, ctx)

    assert result.steps["once"].attempts == 1
    assert result.steps["many"].attempts == 3
    assert result.steps["explicit"].attempts == 2


def test_non_retryable_error_is_not_retried(make_plan, execute, fn_step):
    def fatal(ctx, inputs):
        raise NotRetryable("bad request")

    plan = make_plan({"steps": [fn_step("a", fatal, retry=5)]})

    result, _ = execute(plan)

    assert result.steps["a"].attempts == 1
    assert result.steps["a"].error["retryable"] is False


def test_partial_retry_is_completed_from_configured_defaults(make_plan, fn_step):
    """
    `retry: {max_attempts: 3}` herda backoff e multiplier de `step_defaults.retry`.
    """
    moments = []

    def flaky(ctx, inputs):
        moments.append(time.monotonic())
        raise StepExecutionError("transient")

    plan = make_plan({"steps": [fn_step("a", flaky, retry={"max_attempts": 3})]})
    settings = EngineSettings(retry_backoff=0.05, retry_multiplier=3, grace_period=0.3)
    ctx = ExecutionContext.create(plan)

    result = Executor(settings).execute(plan, ctx)

    assert result.steps["a"].attempts == 3
    delays = [e["delay"] for e in ctx.events if e["step_id"] == "a" and "delay" in e]
    assert delays == pytest.approx([0.05, 0.15])
    assert moments[1] - moments[0] >= 0.05
    assert moments[2] - moments[1] >= 0.15


def test_explicit_zero_concurrency_is_rejected(engine_settings):
    with pytest.raises(ValueError):
        Executor(engine_settings, max_concurrency=0)


# -----------------------------
# Timeout, cancelamento e deadline
# -----------------------------

def test_cooperative_step_timeout(make_plan, execute, fn_step):
    def patient(ctx, inputs):
        ctx.wait(5)
        return "late"

    plan = make_plan({"steps": [fn_step("a", patient, timeout=0.2)]})

    start = time.monotonic()
    result, _ = execute(plan)

    assert time.monotonic() - start < 2
    assert result.steps["a"].status == StepStatus.FAILED
    assert result.steps["a"].error["type"] == errors.STEP_TIMEOUT
    assert result.status == RunStatus.FAILED


def test_uncooperative_step_is_abandoned_after_grace_on_timeout(make_plan, execute, fn_step):
    def stubborn(ctx, inputs):
        time.sleep(1.5)

    plan = make_plan({"steps": [fn_step("a", stubborn, timeout=0.1)]})

    start = time.monotonic()
    result, _ = execute(plan)

    assert time.monotonic() - start < 1.2
    assert result.steps["a"].error["type"] == errors.STEP_TIMEOUT


def test_cancel_before_start(make_plan, execute, fn_step):
    """Cancelar antes de iniciar: todos os Steps Cancelled, nenhum Succeeded, nenhuma tentativa."""
    plan = make_plan({"steps": [fn_step("a", _ok()), fn_step("b", _ok(), depends_on=["a"])]})
    ctx = ExecutionContext.create(plan)
    ctx.cancel()

    result, _ = execute(plan, ctx=ctx)

    assert result.status == RunStatus.CANCELLED
    assert set(_statuses(result).values()) == {StepStatus.CANCELLED}
    assert all(r.attempts == 0 for r in result.steps.values())
    assert result.counts()["succeeded"] == 0
    assert plan.steps["a"].calls == 0
    assert result.error["type"] == errors.RUN_CANCELLED


def test_cancel_during_run(make_plan, execute, fn_step):
    def cooperative(ctx, inputs):
        while not ctx.wait(0.02):
            pass
        raise StepCancelledError("stopped")

    plan = make_plan({
        "steps": [
            fn_step("quick", _ok("q")),
            fn_step("long", cooperative),
            fn_step("after", _ok(), depends_on=["long"]),
        ]
    })
    ctx = ExecutionContext.create(plan)
    threading.Timer(0.2, ctx.cancel).start()

    result, _ = execute(plan, ctx=ctx)

    assert result.status == RunStatus.CANCELLED
    assert result.steps["quick"].status == StepStatus.SUCCEEDED
    assert result.steps["long"].status == StepStatus.CANCELLED
    assert result.steps["after"].status == StepStatus.CANCELLED
    assert plan.steps["after"].calls == 0


def test_uncooperative_step_is_abandoned_after_grace_on_cancel(make_plan, execute, fn_step):
    def stubborn(ctx, inputs):
        time.sleep(1.5)

    plan = make_plan({"steps": [fn_step("a", stubborn)]})
    ctx = ExecutionContext.create(plan)
    threading.Timer(0.1, ctx.cancel).start()

    start = time.monotonic()
    result, _ = execute(plan, ctx=ctx)

    assert time.monotonic() - start < 1.2
    assert result.steps["a"].status == StepStatus.CANCELLED
    assert result.steps["a"].error["details"]["abandoned"] is True


def test_run_deadline(make_plan, execute, fn_step):
    def cooperative(ctx, inputs):
        if ctx.wait(5):
            raise StepCancelledError("deadline")

    plan = make_plan({"timeout": 0.2, "steps": [fn_step("a", cooperative), fn_step("b", _ok(), depends_on=["a"])]})

    result, _ = execute(plan)

    assert result.status == RunStatus.CANCELLED
    assert result.error["type"] == errors.DEADLINE_EXCEEDED
    assert result.steps["a"].status == StepStatus.CANCELLED
    assert result.steps["b"].status == StepStatus.CANCELLED


def test_backoff_is_interrupted_by_cancel(make_plan, execute, fn_step):
    plan = make_plan({"steps": [fn_step("a", _boom, retry={"max_attempts": 5, "backoff": 10})]})
    ctx = ExecutionContext.create(plan)
    threading.Timer(0.2, ctx.cancel).start()

    start = time.monotonic()
    result, _ = execute(plan, ctx=ctx)

    assert time.monotonic() - start < 2
    assert result.steps["a"].status == StepStatus.CANCELLED
    assert result.status == RunStatus.CANCELLED


# -----------------------------
# Concorrência, idempotência e journal
# -----------------------------

def test_max_concurrency_bounds_parallel_steps(make_plan, execute, fn_step):
    lock = threading.Lock()
    active = [0]
    peak = [0]

    def tracked(ctx, inputs):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.05)
        with lock:
            active[0] -= 1

    plan = make_plan({"steps": [fn_step(f"s{i}", tracked) for i in range(6)]})

    result, _ = execute(plan, max_concurrency=2)

    assert result.status == RunStatus.SUCCEEDED
    assert peak[0] <= 2


def test_repeated_execution_yields_same_statuses(make_plan, execute, fn_step):
    plan = make_plan({
        "steps": [
            fn_step("a", _ok("a")),
            fn_step("b", _boom, depends_on=["a"]),
            fn_step("c", _ok(), depends_on=["b"]),
        ]
    })

    first, _ = execute(plan, ctx=ExecutionContext.create(plan))
    second, _ = execute(plan, ctx=ExecutionContext.create(plan))

    assert first.status == second.status
    assert _statuses(first) == _statuses(second)


def test_journal_records_run(make_plan, execute, fn_step):
    plan = make_plan({"steps": [fn_step("a", _ok("a")), fn_step("b", _ok(), depends_on=["a"], enabled=False)]})

    result, ctx = execute(plan)

    events = ctx.journal.events
    assert [e["seq"] for e in events] == list(range(1, len(events) + 1))
    assert events[0]["event_type"] == "run_started"
    assert events[-1]["event_type"] == "run_result"
    assert events[-1]["payload"]["status"] == "succeeded"
    started = [e["step_id"] for e in events if e["event_type"] == "step_started"]
    finished = [e["step_id"] for e in events if e["event_type"] == "step_result"]
    assert started == ["a"]
    assert finished == ["a", "b"]
    assert ctx.journal.steps["b"]["status"] == "skipped"
    assert ctx.finished
    assert result.to_dict() == events[-1]["payload"]
