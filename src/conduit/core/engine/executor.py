# src/conduit/core/engine/executor.py
"""
Executor do Conduit.

Executa um Plan nível a nível sobre um ExecutionContext e consolida um
AggregateResult. É o mesmo Executor usado por `conduit run`, pelo
servidor e pelo kind `pipeline` (sub-pipelines).

Políticas:
    - Dentro de um nível, até `max_concurrency` Steps em um ThreadPoolExecutor;
      barreira estrita entre níveis
    - Cada tentativa roda em uma thread daemon própria, limitada pelo timeout
      do Step; timeout → token da tentativa cancelado, período de graça,
      `StepTimeoutError` (reexecutável)
    - Retry com backoff exponencial via tenacity; a espera entre tentativas
      é interrompível por cancelamento
    - Cada tentativa recebe uma cópia profunda das entradas resolvidas
    - Step Failed/Skipped/Cancelled sem `continue_on_failure` → dependentes
      Skipped (transitivamente); com `continue_on_failure` os dependentes
      leem `default`
    - `fail_fast` (no StepSpec ou em `engine.fail_fast`): a primeira falha
      terminal interrompe o escalonamento; o que não começou vira Skipped
    - Cancelamento: o que não começou vira Cancelled sem tentativa; Steps
      em andamento recebem `grace_period` e então são abandonados

Invariantes:
    - Apenas o Executor escreve resultados no contexto, após o Step retornar
    - O laço de orquestração só espera por futures; nunca executa Step
    - Exceções de Step nunca escapam; viram `ErrorPayload` sem traceback

Limites explícitos:
    - Não valida estrutura (responsabilidade do planner)
    - Não persiste resultados (o journal vive no contexto)
"""

from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, Dict, List, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from conduit.core import errors
from conduit.core.config.loader import EngineSettings
from conduit.core.errors import ErrorPayload
from conduit.core.exceptions import (
    ConduitException,
    StepCancelledError,
    StepTimeoutError,
    UnresolvedInputError,
)
from conduit.core.pipeline.context import (
    DEADLINE_EXCEEDED,
    ExecutionContext,
    StepContext,
)
from conduit.core.pipeline.definition import Reference, lookup_path, resolve_value
from conduit.core.pipeline.step import Step
from conduit.core.pipeline.types import (
    AggregateResult,
    RetryPolicy,
    RunStatus,
    StepResult,
    StepStatus,
    utcnow,
)

from .planner import Plan

logger = logging.getLogger(__name__)

_POLL = 0.05


@dataclass
class _Outcome:
    output: Any = None
    error: Optional[BaseException] = None
    cancelled: bool = False
    abandoned: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class _AttemptFailed(Exception):
    def __init__(self, payload: ErrorPayload):
        super().__init__(payload.message)
        self.payload = payload


class _BackoffInterrupted(Exception):
    pass


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, _AttemptFailed) and exc.payload.retryable


class Executor:
    """
    Executor canônico: `Executor(settings).execute(plan, ctx)`.

    Parâmetros nomeados sobrescrevem os campos correspondentes de `settings`.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        max_concurrency: Optional[int] = None,
        grace_period: Optional[float] = None,
        fail_fast: Optional[bool] = None,
    ):
        self.settings = settings or EngineSettings()
        self.max_concurrency = int(self.settings.max_concurrency if max_concurrency is None else max_concurrency)
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.grace_period = float(self.settings.grace_period if grace_period is None else grace_period)
        self.fail_fast = bool(self.settings.fail_fast if fail_fast is None else fail_fast)
        self.default_retry = RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            backoff=self.settings.retry_backoff,
            multiplier=self.settings.retry_multiplier,
            max_backoff=self.settings.retry_max_backoff,
        )

    # ------------------------------------------------------------------
    # Execução da run
    # ------------------------------------------------------------------
    def execute(self, plan: Plan, ctx: ExecutionContext) -> AggregateResult:
        started_at = utcnow()
        ctx.start_clock()
        ctx.run_started()
        ctx.log(step_id="-", level="INFO", message=f"run started: {plan.name} ({len(plan.specs)} steps)")

        abort = threading.Event()
        abort_step: List[str] = []

        for level in plan.layers:
            runnable: List[str] = []
            for name in level:
                if self._settle_without_running(plan, ctx, name, abort, abort_step):
                    continue
                runnable.append(name)

            if runnable:
                workers = min(self.max_concurrency, len(runnable))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"conduit-{ctx.run_id[:8]}") as pool:
                    futures = [
                        pool.submit(self._run_step, plan, ctx, name, abort, abort_step)
                        for name in runnable
                    ]
                    wait(futures)
                for f in futures:
                    # _run_step não levanta; uma exceção aqui é bug do Executor
                    f.result()

        return self._finish(plan, ctx, started_at, abort_step)

    def _finish(
        self,
        plan: Plan,
        ctx: ExecutionContext,
        started_at,
        abort_step: List[str],
    ) -> AggregateResult:
        results = ctx.results()
        error: Optional[Dict[str, Any]] = None

        cancelled = ctx.cancelled and any(r.status == StepStatus.CANCELLED for r in results.values())
        required_failed = [
            name
            for name, r in results.items()
            if r.status == StepStatus.FAILED and not plan.specs[name].continue_on_failure
        ]

        if cancelled:
            status = RunStatus.CANCELLED
            reason = ctx.token.reason or "cancelled"
            error = ErrorPayload(
                type=errors.DEADLINE_EXCEEDED if reason == DEADLINE_EXCEEDED else errors.RUN_CANCELLED,
                message=f"run cancelled: {reason}",
                details={"reason": reason},
            ).to_dict()
        elif abort_step:
            status = RunStatus.FAILED
            error = errors.fail_fast_abort(step=abort_step[0]).to_dict()
        elif required_failed:
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED

        aggregate = AggregateResult(
            run_id=ctx.run_id,
            pipeline=plan.name,
            status=status,
            steps={name: results[name] for name in plan.order if name in results},
            started_at=started_at,
            finished_at=utcnow(),
            error=error,
        )
        ctx.run_finished(aggregate)
        ctx.log(step_id="-", level="INFO", message=f"run finished: {status.value}", counts=aggregate.counts())
        return aggregate

    # ------------------------------------------------------------------
    # Steps que não chegam a executar
    # ------------------------------------------------------------------
    def _settle_without_running(
        self,
        plan: Plan,
        ctx: ExecutionContext,
        name: str,
        abort: threading.Event,
        abort_step: List[str],
    ) -> bool:
        """Registra Cancelled/Skipped quando o Step não deve ser tentado. True se registrou."""
        spec = plan.specs[name]

        if ctx.cancelled:
            self._record(ctx, plan, name, StepStatus.CANCELLED, summary="cancelled before start",
                         error=errors.step_cancelled(step=name, reason=ctx.token.reason or "cancelled").to_dict())
            return True

        if abort.is_set():
            self._record(ctx, plan, name, StepStatus.SKIPPED, summary="skipped after fail-fast abort",
                         error=errors.fail_fast_abort(step=abort_step[0]).to_dict())
            return True

        if not spec.enabled:
            self._record(ctx, plan, name, StepStatus.SKIPPED, summary="skipped by definition (enabled: false)")
            return True

        for dep in plan.dependencies[name]:
            dep_result = ctx.result(dep)
            if dep_result is None or dep_result.succeeded or plan.specs[dep].continue_on_failure:
                continue
            self._record(
                ctx, plan, name, StepStatus.SKIPPED,
                summary=f"skipped: dependency '{dep}' {dep_result.status.value}",
                error=errors.skipped_by_dependency(step=name, dependency=dep, status=dep_result.status.value).to_dict(),
            )
            return True
        return False

    def _record(
        self,
        ctx: ExecutionContext,
        plan: Plan,
        name: str,
        status: StepStatus,
        *,
        summary: str,
        output: Any = None,
        error: Optional[Dict[str, Any]] = None,
        started_at=None,
        attempts: int = 0,
    ) -> StepResult:
        now = utcnow()
        result = StepResult(
            step_id=name,
            kind=plan.specs[name].kind,
            status=status,
            output=output,
            error=error,
            started_at=started_at or now,
            finished_at=now,
            attempts=attempts,
            summary=summary,
        )
        ctx.record_result(result)
        level = "INFO" if status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED) else "ERROR"
        ctx.log(step_id=name, level=level, message=f"{status.value}: {summary}", attempts=attempts)
        return result

    # ------------------------------------------------------------------
    # Execução de um Step (roda em thread do pool)
    # ------------------------------------------------------------------
    def _run_step(
        self,
        plan: Plan,
        ctx: ExecutionContext,
        name: str,
        abort: threading.Event,
        abort_step: List[str],
    ) -> None:
        # reavalia: o cancelamento/abort pode ter ocorrido enquanto o Step aguardava vaga no pool
        if self._settle_without_running(plan, ctx, name, abort, abort_step):
            return

        spec = plan.specs[name]
        step = plan.steps[name]
        started_at = utcnow()
        ctx.step_started(name, spec.kind)

        try:
            inputs = self._resolve_inputs(plan, ctx, name)
        except UnresolvedInputError as e:
            self._fail(plan, ctx, name, e.to_payload(), started_at, attempts=0, abort=abort, abort_step=abort_step)
            return

        policy = self._policy_for(plan, name, step)
        timeout = spec.timeout if spec.timeout is not None else self.settings.default_timeout
        retrying = Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.backoff, exp_base=policy.multiplier, max=policy.max_backoff),
            retry=retry_if_exception(_retryable),
            sleep=partial(self._backoff, ctx),
            before_sleep=partial(self._log_retry, ctx, name),
            reraise=True,
        )

        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    outcome = self._attempt(ctx, plan, name, step, inputs, attempts, timeout)

                    if outcome.cancelled:
                        self._record(
                            ctx, plan, name, StepStatus.CANCELLED,
                            summary="abandoned after grace period" if outcome.abandoned else "cancelled",
                            error=errors.step_cancelled(
                                step=name, reason=ctx.token.reason or "cancelled", abandoned=outcome.abandoned
                            ).to_dict(),
                            started_at=started_at,
                            attempts=attempts,
                        )
                        return
                    if not outcome.ok:
                        raise _AttemptFailed(self._exception_to_error(name, outcome.error))

                    self._record(ctx, plan, name, StepStatus.SUCCEEDED, summary="ok", output=outcome.output,
                                 started_at=started_at, attempts=attempts)
                    return
        except _AttemptFailed as failed:
            self._fail(plan, ctx, name, failed.payload, started_at, attempts=attempts, abort=abort, abort_step=abort_step)
        except _BackoffInterrupted:
            self._record(
                ctx, plan, name, StepStatus.CANCELLED, summary="cancelled during retry backoff",
                error=errors.step_cancelled(step=name, reason=ctx.token.reason or "cancelled").to_dict(),
                started_at=started_at, attempts=attempts,
            )

    @staticmethod
    def _backoff(ctx: ExecutionContext, seconds: float) -> None:
        """`sleep` do tenacity, interrompível pelo token da run."""
        if (seconds > 0 and ctx.token.wait(seconds)) or ctx.cancelled:
            raise _BackoffInterrupted()

    @staticmethod
    def _log_retry(ctx: ExecutionContext, name: str, state: RetryCallState) -> None:
        failed = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        ctx.log(step_id=name, level="WARNING", message=f"attempt {state.attempt_number} failed: {failed}; retrying",
                attempt=state.attempt_number, delay=delay)

    def _fail(
        self,
        plan: Plan,
        ctx: ExecutionContext,
        name: str,
        payload: ErrorPayload,
        started_at,
        *,
        attempts: int,
        abort: threading.Event,
        abort_step: List[str],
    ) -> None:
        self._record(ctx, plan, name, StepStatus.FAILED, summary=payload.message, error=payload.to_dict(),
                     started_at=started_at, attempts=attempts)
        if plan.specs[name].fail_fast or self.fail_fast:
            if not plan.specs[name].continue_on_failure and not abort.is_set():
                abort_step.append(name)
                abort.set()
                ctx.log(step_id=name, level="ERROR", message="fail-fast: aborting remaining steps")

    def _policy_for(self, plan: Plan, name: str, step: Step) -> RetryPolicy:
        spec = plan.specs[name]
        base = self.default_retry
        if not getattr(step, "idempotent", True):
            # kinds não idempotentes só repetem com max_attempts explícito
            base = replace(base, max_attempts=1)
        if spec.retry is None:
            return base
        return RetryPolicy.from_dict(spec.retry, base=base)

    def _attempt(
        self,
        ctx: ExecutionContext,
        plan: Plan,
        name: str,
        step: Step,
        inputs: Dict[str, Any],
        attempt: int,
        timeout: float,
    ) -> _Outcome:
        spec = plan.specs[name]
        token = ctx.token.child(timeout=timeout)
        env = dict(ctx.environment)
        env.update(spec.environment)
        sctx = StepContext(
            step=name,
            run=ctx,
            token=token,
            attempt=attempt,
            environment=env,
            workdir=ctx.workdir,
            settings=self.settings,
        )

        done = threading.Event()
        box: Dict[str, Any] = {}

        def target() -> None:
            try:
                box["output"] = step.run(sctx, copy.deepcopy(inputs))
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        thread = threading.Thread(target=target, name=f"conduit-step-{name}-{attempt}", daemon=True)
        thread.start()

        while not done.wait(_POLL):
            if token.cancelled:
                break

        if not done.is_set():
            # sinaliza explicitamente para Steps que observam apenas o token da tentativa
            token.cancel(token.reason or "cancelled")
            done.wait(self.grace_period)

        run_cancelled = ctx.cancelled
        if not done.is_set():
            logger.warning("step %s abandoned after %.1fs grace period (run_id=%s)", name, self.grace_period, ctx.run_id)
            if run_cancelled:
                return _Outcome(cancelled=True, abandoned=True)
            return _Outcome(error=self._timeout_error(name, timeout))

        if "error" in box:
            err = box["error"]
            if run_cancelled:
                return _Outcome(cancelled=True)
            if token.reason == "timeout" and isinstance(err, (StepCancelledError, StepTimeoutError)):
                return _Outcome(error=self._timeout_error(name, timeout))
            return _Outcome(error=err)

        if token.reason == "timeout" and not run_cancelled:
            return _Outcome(error=self._timeout_error(name, timeout))
        return _Outcome(output=box.get("output"))

    @staticmethod
    def _timeout_error(name: str, timeout: float) -> StepTimeoutError:
        return StepTimeoutError(
            f"step '{name}' timed out after {timeout:g}s",
            details={"step": name, "timeout": timeout},
            hint="Aumente o timeout do Step ou o default em step_defaults.timeout.",
        )

    # ------------------------------------------------------------------
    # Entradas
    # ------------------------------------------------------------------
    def _resolve_inputs(self, plan: Plan, ctx: ExecutionContext, name: str) -> Dict[str, Any]:
        def lookup(ref: Reference) -> Any:
            if ref.source == "params":
                if ref.name not in ctx.params:
                    raise UnresolvedInputError(
                        f"Parameter '{ref.name}' has no value",
                        details={"step": name, "reference": str(ref)},
                    )
                return lookup_path(ref, ctx.params[ref.name])

            result = ctx.result(ref.name)
            if result is not None and result.succeeded:
                return lookup_path(ref, result.output)

            producer = plan.specs[ref.name]
            if result is not None and producer.continue_on_failure:
                if producer.default is None:
                    return None
                return lookup_path(ref, producer.default)

            raise UnresolvedInputError(
                f"Step '{ref.name}' did not produce a usable output",
                details={"step": name, "reference": str(ref),
                         "producer_status": result.status.value if result is not None else None},
            )

        resolved = resolve_value(plan.specs[name].inputs, lookup)
        return dict(resolved)

    # ------------------------------------------------------------------
    # Exceção → ErrorPayload
    # ------------------------------------------------------------------
    @staticmethod
    def _exception_to_error(name: str, exc: Optional[BaseException]) -> ErrorPayload:
        if isinstance(exc, ConduitException):
            payload = exc.to_payload()
            details = dict(payload.details)
            details.setdefault("step", name)
            return ErrorPayload(
                type=payload.type,
                message=payload.message or "step failed",
                details=details,
                hint=payload.hint,
                retryable=payload.retryable,
            )
        return errors.engine_execution_error(
            step=name,
            exc_type=type(exc).__name__ if exc is not None else None,
            exc_message=str(exc) if exc is not None else None,
        )
