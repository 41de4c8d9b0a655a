# src/conduit/core/pipeline/context.py
"""
Contexto de execução de uma run do Conduit.

Este módulo define:
    - CancelToken      → sinal de cancelamento cooperativo com deadline e hierarquia
    - ExecutionContext → estado mutável de uma run (resultados, parâmetros, journal)
    - StepContext      → visão restrita entregue a `Step.run`

Princípios fundamentais:
    - Isolamento por run (cada run possui seu próprio contexto)
    - Mapa de resultados write-once, escrito apenas pelo Executor
    - Uma única trava protege resultados, journal e assinantes
    - Cancelamento cooperativo: Steps observam `token` e retornam

Invariantes:
    - Um StepResult é registrado no máximo uma vez por Step
    - `params` é somente leitura após a aplicação de defaults
    - Eventos do journal chegam aos assinantes na ordem de `seq`
    - Logs sempre incluem `run_id` e `step_id`

Limites explícitos:
    - Não executa Steps
    - Não decide políticas de execução
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

from conduit import __version__
from conduit.core.exceptions import MissingParameterError
from conduit.core.traceability import journal as tj

from .types import AggregateResult, StepResult, utcnow

if TYPE_CHECKING:
    from conduit.core.config.loader import EngineSettings
    from conduit.core.engine.planner import Plan

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], None]

CANCELLED = "cancelled"
DEADLINE_EXCEEDED = "deadline exceeded"
TIMEOUT = "timeout"

_POLL = 0.05


def _level(name: str) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else logging.INFO


class CancelToken:
    """
    Sinal de cancelamento cooperativo.

    Um token é cancelado quando:
        - `cancel()` é chamado nele
        - seu deadline (monotônico) é atingido
        - qualquer ancestral é cancelado

    `reason` informa o motivo do primeiro cancelamento observado.
    """

    def __init__(
        self,
        *,
        parent: Optional["CancelToken"] = None,
        timeout: Optional[float] = None,
        deadline_reason: str = DEADLINE_EXCEEDED,
    ):
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._deadline_reason = deadline_reason

    def cancel(self, reason: str = CANCELLED) -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    def arm_deadline(self, timeout: float) -> None:
        """Arma (ou antecipa) o deadline deste token para `timeout` segundos a partir de agora."""
        deadline = time.monotonic() + timeout
        with self._lock:
            if self._deadline is None or deadline < self._deadline:
                self._deadline = deadline

    def child(self, *, timeout: Optional[float] = None, deadline_reason: str = TIMEOUT) -> "CancelToken":
        return CancelToken(parent=self, timeout=timeout, deadline_reason=deadline_reason)

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            parent_reason = self._parent.reason
            if parent_reason is not None:
                return parent_reason
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return self._deadline_reason
        return None

    def remaining(self) -> Optional[float]:
        """Segundos até o deadline efetivo (próprio ou herdado); None se não houver."""
        candidates = []
        if self._deadline is not None:
            candidates.append(max(0.0, self._deadline - time.monotonic()))
        if self._parent is not None:
            inherited = self._parent.remaining()
            if inherited is not None:
                candidates.append(inherited)
        return min(candidates) if candidates else None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Bloqueia até o cancelamento ou até `timeout` segundos.

        Returns:
            True se o token foi cancelado.
        """
        end = time.monotonic() + timeout if timeout is not None else None
        while not self.cancelled:
            if end is not None:
                left = end - time.monotonic()
                if left <= 0:
                    return False
                self._event.wait(min(_POLL, left))
            else:
                self._event.wait(_POLL)
        return True


@dataclass
class ExecutionContext:
    """
    Estado mutável de uma run.

    O ExecutionContext consolida:
        - identidade da run (run_id, pipeline, created_at)
        - parâmetros resolvidos (somente leitura)
        - mapa de resultados write-once
        - token de cancelamento da run (cancel explícito + deadline)
        - eventos de log estruturados e warnings por Step
        - journal com `seq` e callbacks de assinantes

    Decisões arquiteturais:
        - Apenas o Executor chama `record_result`
        - Steps recebem um `StepContext`, nunca o mapa de resultados
        - Callbacks de assinantes são chamados sob a trava, na ordem de `seq`;
          devem ser rápidos e não bloqueantes
    """
    run_id: str
    params: Mapping[str, Any]
    token: CancelToken
    created_at: datetime
    pipeline: str = "pipeline"
    environment: Dict[str, str] = field(default_factory=dict)
    workdir: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    journal: Optional[tj.RunJournal] = None
    timeout: Optional[float] = None

    _results: Dict[str, StepResult] = field(default_factory=dict, init=False, repr=False)
    _subscribers: List[EventCallback] = field(default_factory=list, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    events: List[Dict[str, Any]] = field(default_factory=list, init=False)
    warnings: Dict[str, List[str]] = field(default_factory=dict, init=False)

    @classmethod
    def create(
        cls,
        plan: "Plan",
        params: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        token: Optional[CancelToken] = None,
        config_hash: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> "ExecutionContext":
        """
        Cria o contexto de uma run para `plan`.

        Aplica defaults de parâmetros e verifica obrigatórios. O deadline
        da run (`timeout` do pipeline) só é armado quando a execução começa.

        Raises:
            MissingParameterError: Se um parâmetro obrigatório não foi informado.
        """
        resolved = resolve_params(plan, params)
        run_id = run_id or uuid.uuid4().hex
        created_at = utcnow()

        # token próprio: cancelar a run nunca cancela o token do chamador
        token = token.child(deadline_reason=DEADLINE_EXCEEDED) if token is not None else CancelToken()

        journal = tj.create_journal(
            run_id=run_id,
            pipeline=plan.name,
            started_at=created_at,
            conduit_version=__version__,
            definition_digest=plan.digest,
            config_hash=config_hash,
        )
        return cls(
            run_id=run_id,
            params=MappingProxyType(dict(resolved)),
            token=token,
            created_at=created_at,
            pipeline=plan.name,
            environment=dict(plan.environment),
            workdir=plan.workdir,
            meta=dict(meta or {}),
            timeout=plan.timeout,
            journal=journal,
        )

    # -----------------------------
    # Cancelamento
    # -----------------------------
    def cancel(self, reason: str = CANCELLED) -> None:
        self.token.cancel(reason)
        self.log(step_id="-", level="WARNING", message=f"run cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def start_clock(self) -> None:
        """Arma o deadline da run (`timeout` do pipeline); chamado pelo Executor ao iniciar."""
        if self.timeout is not None:
            self.token.arm_deadline(self.timeout)

    # -----------------------------
    # Resultados (write-once)
    # -----------------------------
    def record_result(self, result: StepResult) -> None:
        with self._lock:
            if result.step_id in self._results:
                raise ValueError(f"Result for step '{result.step_id}' already recorded")
            self._results[result.step_id] = result
            if self.journal is not None:
                self._publish(tj.step_finished(self.journal, result=result))

    def result(self, step_id: str) -> Optional[StepResult]:
        with self._lock:
            return self._results.get(step_id)

    def results(self) -> Dict[str, StepResult]:
        with self._lock:
            return dict(self._results)

    # -----------------------------
    # Journal & assinantes
    # -----------------------------
    def subscribe(self, callback: EventCallback) -> None:
        """Registra um callback e reentrega os eventos já existentes, em ordem."""
        with self._lock:
            self._subscribers.append(callback)
            if self.journal is not None:
                for ev in self.journal.events_after(0):
                    callback(ev)

    def events_after(self, seq: int) -> List[Dict[str, Any]]:
        with self._lock:
            if self.journal is None:
                return []
            return self.journal.events_after(seq)

    @property
    def finished(self) -> bool:
        with self._lock:
            return self.journal is not None and self.journal.finished

    def step_started(self, step_id: str, kind: str) -> None:
        with self._lock:
            if self.journal is not None:
                self._publish(tj.step_started(self.journal, step_id=step_id, kind=kind))

    def run_started(self) -> None:
        with self._lock:
            if self.journal is not None:
                self._publish(tj.run_started(self.journal))

    def run_finished(self, result: AggregateResult) -> None:
        with self._lock:
            if self.journal is not None:
                self._publish(tj.run_finished(self.journal, result=result))

    def _publish(self, event: Dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(dict(event))
            except Exception:
                logger.exception("event subscriber failed (run_id=%s)", self.run_id)

    # -----------------------------
    # Logging & warnings
    # -----------------------------
    def log(self, *, step_id: str, level: str, message: str, **extra: Any) -> None:
        event = {
            "run_id": self.run_id,
            "step_id": step_id,
            "level": level,
            "message": message,
            "timestamp": utcnow().isoformat(),
        }
        event.update(extra)
        with self._lock:
            self.events.append(event)
        logger.log(_level(level), "[%s] %s: %s", self.run_id, step_id, message)

    def add_warning(self, *, step_id: str, message: str) -> None:
        with self._lock:
            self.warnings.setdefault(step_id, []).append(message)
        self.log(step_id=step_id, level="WARNING", message=message)


def resolve_params(plan: "Plan", given: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Aplica defaults declarados e verifica parâmetros obrigatórios.

    Parâmetros informados e não declarados são preservados.
    """
    given = dict(given or {})
    resolved = {k: v for k, v in plan.params.items() if v is not None}
    resolved.update(given)
    missing = sorted(p for p in plan.required_params if resolved.get(p) is None)
    if missing:
        raise MissingParameterError(
            f"Missing required parameter(s): {', '.join(missing)}",
            details={"missing": missing, "pipeline": plan.name},
            hint="Informe os valores com --param NOME=VALOR.",
        )
    return resolved


@dataclass
class StepContext:
    """
    Visão de uma tentativa de Step sobre a run.

    Expõe apenas leitura da run e o token da tentativa (filho do token
    da run, com o deadline do timeout do Step).
    """
    step: str
    run: ExecutionContext
    token: CancelToken
    attempt: int = 1
    environment: Dict[str, str] = field(default_factory=dict)
    workdir: Optional[str] = None
    settings: Optional["EngineSettings"] = None

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def params(self) -> Mapping[str, Any]:
        return self.run.params

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def wait(self, seconds: float) -> bool:
        """Espera interrompível; True se a tentativa foi cancelada."""
        return self.token.wait(seconds)

    def remaining(self) -> Optional[float]:
        return self.token.remaining()

    def log(self, level: str, message: str, **extra: Any) -> None:
        self.run.log(step_id=self.step, level=level, message=message, attempt=self.attempt, **extra)

    def add_warning(self, message: str) -> None:
        self.run.add_warning(step_id=self.step, message=message)
