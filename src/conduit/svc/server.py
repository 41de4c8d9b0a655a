"""
PipelineServer — execução de runs submetidas remotamente.

Responsabilidades:
    - construir Plan e contexto de forma síncrona em `submit` (erros de
      build sobem antes de qualquer enfileiramento)
    - executar runs em um pool limitado por `max_concurrent_runs`
    - servir o journal de cada run como stream retomável (`after=seq`)
    - cancelar runs em fila ou em execução
    - manter histórico limitado (`max_records`, removendo as finalizadas
      mais antigas) e, opcionalmente, persistir journals em `workdir`

Máquina de estados por run:
    queued → running → succeeded | failed | cancelled
    queued → cancelled (sem executar Steps)

Decisões arquiteturais:
    - Estado com escopo de instância; apenas o registro de runs é travado
    - A trava do servidor nunca é mantida enquanto métodos do contexto são
      chamados (o contexto tem sua própria trava e notifica assinantes)
    - O mesmo Executor de `conduit run` executa as runs
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from conduit.core import errors
from conduit.core.errors import ErrorPayload
from conduit.core.config.loader import Settings, load_settings
from conduit.core.engine.executor import Executor
from conduit.core.engine.planner import Plan, build_plan
from conduit.core.exceptions import DefinitionError
from conduit.core.pipeline.context import ExecutionContext
from conduit.core.pipeline.definition import PipelineDefinition, parse_definition
from conduit.core.pipeline.registry import StepKindRegistry, default_registry
from conduit.core.pipeline.types import AggregateResult, RunStatus, StepResult, StepStatus, to_iso, utcnow
from conduit.core.traceability.journal import save_journal

from .protocol import RunRequest

logger = logging.getLogger(__name__)

_WAIT = 1.0


class UnknownRunError(KeyError):
    """O servidor não possui registro da run."""

    def __init__(self, run_id: str):
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"unknown run '{self.run_id}'"


@dataclass
class RunRecord:
    run_id: str
    plan: Plan = field(repr=False)
    ctx: ExecutionContext = field(repr=False)
    status: RunStatus = RunStatus.QUEUED
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[AggregateResult] = None
    version: int = 0
    cond: threading.Condition = field(default_factory=threading.Condition, repr=False)

    def notify(self, _event: Optional[Dict[str, Any]] = None) -> None:
        with self.cond:
            self.version += 1
            self.cond.notify_all()

    def summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "run_id": self.run_id,
            "pipeline": self.plan.name,
            "status": self.status.value,
            "submitted_at": to_iso(self.submitted_at),
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
        }
        if self.result is not None:
            out["counts"] = self.result.counts()
            out["error"] = self.result.error
        return out


class PipelineServer:
    """
    Servidor de runs em processo.

    A camada HTTP (`conduit.svc.app`) é um adaptador fino sobre esta classe,
    que também pode ser usada diretamente em testes.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[StepKindRegistry] = None,
    ):
        self.settings = settings or load_settings()
        self.registry = registry if registry is not None else default_registry()
        self._lock = threading.Lock()
        self._runs: "OrderedDict[str, RunRecord]" = OrderedDict()
        self._pipelines: Dict[str, PipelineDefinition] = {}
        self._closed = False
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.server.max_concurrent_runs,
            thread_name_prefix="conduit-run",
        )

    # ------------------------------------------------------------------
    # Pipelines registrados
    # ------------------------------------------------------------------
    def register_pipeline(self, name: str, definition: Union[PipelineDefinition, Dict[str, Any]]) -> PipelineDefinition:
        """Valida (constrói o Plan) e registra uma definição sob `name`."""
        if not isinstance(definition, PipelineDefinition):
            definition = parse_definition(definition)
        build_plan(definition, self.registry)
        with self._lock:
            self._pipelines[name] = definition
        logger.info("pipeline registered: %s", name)
        return definition

    def pipelines(self) -> List[str]:
        with self._lock:
            return sorted(self._pipelines)

    # ------------------------------------------------------------------
    # Submissão
    # ------------------------------------------------------------------
    def submit(self, request: Union[RunRequest, Dict[str, Any]]) -> str:
        """
        Constrói o Plan e o contexto e enfileira a run.

        Raises:
            BuildError: Definição inválida ou parâmetros ausentes (nada é enfileirado).
            RuntimeError: Servidor encerrado.
        """
        if not isinstance(request, RunRequest):
            request = RunRequest.model_validate(request)

        if request.pipeline is not None:
            with self._lock:
                definition = self._pipelines.get(request.pipeline)
            if definition is None:
                raise DefinitionError(
                    f"Unknown pipeline '{request.pipeline}'",
                    details={"pipeline": request.pipeline, "registered": self.pipelines()},
                    hint="Registre o pipeline com PUT /api/v1/pipelines/{name}.",
                )
        else:
            definition = parse_definition(request.definition)

        plan = build_plan(definition, self.registry)
        ctx = ExecutionContext.create(plan, request.params, config_hash=self.settings.config_hash)
        record = RunRecord(run_id=ctx.run_id, plan=plan, ctx=ctx)
        ctx.subscribe(record.notify)

        with self._lock:
            if self._closed:
                raise RuntimeError("server is shut down")
            # sob o lock: um shutdown concorrente não deixa a run órfã em fila
            self._pool.submit(self._execute, record)
            self._runs[record.run_id] = record
        logger.info("run queued: %s (%s)", record.run_id, plan.name)
        self._evict()
        return record.run_id

    def _execute(self, record: RunRecord) -> None:
        with self._lock:
            if record.status != RunStatus.QUEUED:
                return
            record.status = RunStatus.RUNNING
            record.started_at = utcnow()
        try:
            result = Executor(self.settings.engine).execute(record.plan, record.ctx)
        except Exception:
            logger.exception("run %s crashed in executor", record.run_id)
            result = self._abort(record)
        self._complete(record, result)

    def _abort(self, record: RunRecord) -> AggregateResult:
        result = AggregateResult(
            run_id=record.run_id,
            pipeline=record.plan.name,
            status=RunStatus.FAILED,
            steps=record.ctx.results(),
            started_at=record.started_at,
            finished_at=utcnow(),
            error=errors.engine_execution_error(exc_message="executor crashed", retryable=False).to_dict(),
        )
        if not record.ctx.finished:
            record.ctx.run_finished(result)
        return result

    def _complete(self, record: RunRecord, result: AggregateResult) -> None:
        with self._lock:
            record.result = result
            record.status = result.status
            record.finished_at = result.finished_at or utcnow()
        self._finalize(record, result)

    def _finalize(self, record: RunRecord, result: AggregateResult) -> None:
        record.notify()
        logger.info("run finished: %s %s", record.run_id, result.status.value)

        workdir = self.settings.server.workdir
        if workdir:
            path = Path(workdir) / "runs" / f"{record.run_id}.json"
            try:
                save_journal(record.ctx.journal, path)
            except OSError:
                logger.exception("could not persist journal of run %s to %s", record.run_id, path)
        self._evict()

    def _evict(self) -> None:
        limit = self.settings.server.max_records
        with self._lock:
            excess = len(self._runs) - limit
            if excess <= 0:
                return
            finished = [rid for rid, r in self._runs.items() if r.status.terminal]
            for rid in finished[:excess]:
                del self._runs[rid]
        logger.debug("evicted %d finished run(s)", min(excess, len(finished)))

    # ------------------------------------------------------------------
    # Consulta
    # ------------------------------------------------------------------
    def _record(self, run_id: str) -> RunRecord:
        with self._lock:
            record = self._runs.get(run_id)
        if record is None:
            raise UnknownRunError(run_id)
        return record

    def get(self, run_id: str) -> Dict[str, Any]:
        record = self._record(run_id)
        with self._lock:
            out = record.summary()
        if record.result is not None:
            out["result"] = record.result.to_dict()
        return out

    def result(self, run_id: str) -> Optional[AggregateResult]:
        return self._record(run_id).result

    def list_runs(self, status: Optional[Union[RunStatus, str]] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Runs mais recentes primeiro, opcionalmente filtradas por status."""
        wanted = RunStatus(status) if status is not None else None
        with self._lock:
            records = list(self._runs.values())
            out = [r.summary() for r in reversed(records) if wanted is None or r.status == wanted]
        return out[: max(0, int(limit))]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            by_status = {s.value: 0 for s in RunStatus}
            for r in self._runs.values():
                by_status[r.status.value] += 1
            return {
                "runs": len(self._runs),
                "by_status": by_status,
                "pipelines": sorted(self._pipelines),
                "max_concurrent_runs": self.settings.server.max_concurrent_runs,
                "max_records": self.settings.server.max_records,
            }

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------
    def stream(self, run_id: str, after: int = 0) -> Iterator[Dict[str, Any]]:
        """
        Itera os eventos do journal com `seq > after`.

        Bloqueia até surgirem novos eventos; termina após o evento
        `run_result`. Retomar com o último `seq` visto nunca repete eventos.
        """
        record = self._record(run_id)
        seq = max(0, int(after))
        while True:
            with record.cond:
                version = record.version
            events = record.ctx.events_after(seq)
            for event in events:
                seq = event["seq"]
                yield event
            if record.ctx.finished and not record.ctx.events_after(seq):
                return
            if not events:
                with record.cond:
                    if record.version == version:
                        record.cond.wait(_WAIT)

    # ------------------------------------------------------------------
    # Cancelamento & ciclo de vida
    # ------------------------------------------------------------------
    def cancel(self, run_id: str) -> bool:
        """
        Solicita o cancelamento de uma run.

        Runs em fila passam direto a Cancelled (queued → cancelled): nenhum
        Step é tentado e o journal recebe um `step_result` Cancelled por
        Step seguido do `run_result`.

        Returns:
            False se a run já estava finalizada.
        """
        record = self._record(run_id)
        with self._lock:
            if record.status.terminal:
                return False
            queued = record.status == RunStatus.QUEUED
            if queued:
                result = self._cancelled_in_queue(record)
                record.result = result
                record.status = result.status
                record.finished_at = result.finished_at

        record.ctx.cancel()
        if queued:
            for step in result.steps.values():
                record.ctx.record_result(step)
            record.ctx.run_finished(result)
            self._finalize(record, result)
        logger.info("run cancel requested: %s", run_id)
        return True

    @staticmethod
    def _cancelled_in_queue(record: RunRecord) -> AggregateResult:
        now = utcnow()
        steps = {
            name: StepResult(
                step_id=name,
                kind=record.plan.specs[name].kind,
                status=StepStatus.CANCELLED,
                error=errors.step_cancelled(step=name, reason="cancelled").to_dict(),
                started_at=now,
                finished_at=now,
                attempts=0,
                summary="cancelled while queued",
            )
            for name in record.plan.order
        }
        return AggregateResult(
            run_id=record.run_id,
            pipeline=record.plan.name,
            status=RunStatus.CANCELLED,
            steps=steps,
            started_at=now,
            finished_at=now,
            error=ErrorPayload(
                type=errors.RUN_CANCELLED,
                message="run cancelled: cancelled while queued",
                details={"reason": "cancelled"},
            ).to_dict(),
        )

    def shutdown(self, drain: bool = True) -> None:
        """Encerra o pool; sem `drain`, cancela as runs não finalizadas antes."""
        with self._lock:
            self._closed = True
            pending = [r.run_id for r in self._runs.values() if not r.status.terminal]
        if not drain:
            for run_id in pending:
                try:
                    self.cancel(run_id)
                except UnknownRunError:
                    continue
        self._pool.shutdown(wait=True)
        logger.info("server shut down (drain=%s)", drain)
