# src/conduit/core/pipeline/types.py
"""
Tipos canônicos do pipeline do Conduit.

Este módulo define as estruturas e enums fundamentais que padronizam
a comunicação entre Steps, Executor, servidor e cliente.

Componentes principais:
    - StepStatus      → estados finais de um Step
    - RunStatus       → estados de uma run (inclui estados transitórios do servidor)
    - RetryPolicy     → política de reexecução com backoff exponencial
    - StepResult      → resultado imutável de um Step
    - AggregateResult → resultado agregado de uma run

Princípios fundamentais:
    - Tipos são estáveis e serializáveis (`to_dict` / `from_dict`)
    - Timestamps são sempre timezone-aware em UTC
    - Nenhuma lógica de execução vive neste módulo

Limites explícitos:
    - Não executa Steps
    - Não planeja pipelines
    - Não decide políticas de execução
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serializa um timestamp em ISO 8601 UTC (None é preservado)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class StepStatus(str, Enum):
    """
    Estados finais possíveis de um Step.

    Estados definidos:
        - SUCCEEDED: `run` retornou uma saída
        - FAILED: tentativas esgotadas ou erro não reexecutável
        - SKIPPED: não executado (dependência falhou, fail-fast, `enabled: false`)
        - CANCELLED: cancelamento explícito ou deadline excedido

    Estados transitórios (ex.: running) não pertencem a este enum; eles
    existem apenas no journal.
    """
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """
    Estados de uma run.

    `QUEUED` e `RUNNING` são usados apenas pelo servidor; um
    `AggregateResult` sempre carrega um dos três estados terminais.
    """
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Política de reexecução de um Step.

    A espera antes da tentativa `n + 1` é
    `min(max_backoff, backoff * multiplier ** (n - 1))`.
    """
    max_attempts: int = 1
    backoff: float = 0.0
    multiplier: float = 2.0
    max_backoff: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be >= 1")
        if self.backoff < 0 or self.max_backoff < 0:
            raise ValueError("retry.backoff must be >= 0")
        if self.multiplier < 1:
            raise ValueError("retry.multiplier must be >= 1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff": self.backoff,
            "multiplier": self.multiplier,
            "max_backoff": self.max_backoff,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, base: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        """Constrói a política a partir de um mapa parcial, completando com `base`."""
        base = base or cls()
        return cls(
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            backoff=float(data.get("backoff", base.backoff)),
            multiplier=float(data.get("multiplier", base.multiplier)),
            max_backoff=float(data.get("max_backoff", base.max_backoff)),
        )


@dataclass(frozen=True)
class StepResult:
    """
    Resultado imutável de um Step.

    Criado exclusivamente pelo Executor quando o Step termina; nunca é
    alterado depois disso.

    Campos:
        - step_id: nome do Step no Plan
        - kind: discriminador do Step (ex.: command, http)
        - status: estado final
        - output: saída estruturada (None quando não houve sucesso)
        - error: `ErrorPayload.to_dict()` quando FAILED, CANCELLED ou SKIPPED
        - started_at / finished_at: intervalo da execução (UTC)
        - attempts: número de tentativas efetivamente iniciadas
        - summary: resumo textual curto
    """
    step_id: str
    kind: str
    status: StepStatus
    output: Any = None
    error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    summary: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0, int((self.finished_at - self.started_at).total_seconds() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "kind": self.kind,
            "status": self.status.value,
            "output": self.output,
            "error": dict(self.error) if self.error is not None else None,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "attempts": self.attempts,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            step_id=str(data["step_id"]),
            kind=str(data.get("kind", "")),
            status=StepStatus(data["status"]),
            output=data.get("output"),
            error=dict(data["error"]) if data.get("error") is not None else None,
            started_at=from_iso(data.get("started_at")),
            finished_at=from_iso(data.get("finished_at")),
            attempts=int(data.get("attempts", 0)),
            summary=str(data.get("summary", "")),
        )


@dataclass(frozen=True)
class AggregateResult:
    """Resultado agregado de uma run (local ou remota)."""

    run_id: str
    pipeline: str
    status: RunStatus
    steps: Dict[str, StepResult] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in StepStatus}
        for r in self.steps.values():
            out[r.status.value] += 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "steps": {k: v.to_dict() for k, v in self.steps.items()},
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "error": dict(self.error) if self.error is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateResult":
        return cls(
            run_id=str(data["run_id"]),
            pipeline=str(data.get("pipeline", "")),
            status=RunStatus(data["status"]),
            steps={k: StepResult.from_dict(v) for k, v in (data.get("steps") or {}).items()},
            started_at=from_iso(data.get("started_at")),
            finished_at=from_iso(data.get("finished_at")),
            error=dict(data["error"]) if data.get("error") is not None else None,
        )
