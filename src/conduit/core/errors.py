"""
Conduit — Estruturas canônicas de erro.

Erros que atravessam a fronteira de um Step (StepResult, journal, stream
remoto) são sempre convertidos em `ErrorPayload`: um objeto pequeno,
serializável e sem stack trace.

Regras:
- `type` é um código estável do catálogo abaixo (não é texto livre)
- `message` é curta e humana
- `details` contém apenas dados serializáveis
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ErrorPayload:
    """
    Payload canônico de erro do Conduit.

    Campos:
    - type: código estável do erro
    - message: mensagem curta e objetiva
    - details: dados estruturados relevantes para diagnóstico
    - hint: ação sugerida ao operador
    - retryable: indica se a política de retry pode reexecutar o Step
    """

    type: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    hint: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorPayload":
        return cls(
            type=str(data.get("type", ENGINE_EXECUTION_ERROR)),
            message=str(data.get("message", "")),
            details=dict(data.get("details") or {}),
            hint=data.get("hint"),
            retryable=bool(data.get("retryable", False)),
        )


# ---------------------------------------------------------------------------
# Catálogo canônico de tipos de erro
# ---------------------------------------------------------------------------

# Construção (build-time)
DEFINITION_INVALID = "DEFINITION_INVALID"
DUPLICATE_STEP = "DUPLICATE_STEP"
UNKNOWN_REFERENCE = "UNKNOWN_REFERENCE"
CYCLIC_DEPENDENCY = "CYCLIC_DEPENDENCY"
UNKNOWN_STEP_KIND = "UNKNOWN_STEP_KIND"
MISSING_PARAMETER = "MISSING_PARAMETER"

# Execução de Step
STEP_FAILED = "STEP_FAILED"
STEP_TIMEOUT = "STEP_TIMEOUT"
UNRESOLVED_INPUT = "UNRESOLVED_INPUT"
COMMAND_FAILED = "COMMAND_FAILED"
HTTP_STEP_FAILED = "HTTP_STEP_FAILED"
SUBPIPELINE_FAILED = "SUBPIPELINE_FAILED"

# Contexto
RUN_CANCELLED = "RUN_CANCELLED"
DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
FAIL_FAST_ABORT = "FAIL_FAST_ABORT"

# Engine
ENGINE_EXECUTION_ERROR = "ENGINE_EXECUTION_ERROR"

# Transporte (cliente remoto)
REMOTE_TRANSPORT = "REMOTE_TRANSPORT"
RUN_NOT_FOUND = "RUN_NOT_FOUND"


# ---------------------------------------------------------------------------
# Helpers de fábrica
# ---------------------------------------------------------------------------

def step_cancelled(*, step: str, reason: str, abandoned: bool = False) -> ErrorPayload:
    return ErrorPayload(
        type=DEADLINE_EXCEEDED if reason == "deadline exceeded" else RUN_CANCELLED,
        message=f"step cancelled: {reason}",
        details={"step": step, "reason": reason, "abandoned": abandoned},
        hint=None,
        retryable=False,
    )


def skipped_by_dependency(*, step: str, dependency: str, status: str) -> ErrorPayload:
    return ErrorPayload(
        type=STEP_FAILED,
        message=f"dependency '{dependency}' ended {status}",
        details={"step": step, "dependency": dependency, "dependency_status": status},
        hint="Corrija o Step de origem ou declare continue_on_failure nele.",
        retryable=False,
    )


def fail_fast_abort(*, step: str) -> ErrorPayload:
    return ErrorPayload(
        type=FAIL_FAST_ABORT,
        message=f"run aborted after failure of '{step}'",
        details={"step": step},
        hint="O Step está marcado como fail_fast; nenhum Step restante foi iniciado.",
        retryable=False,
    )


def engine_execution_error(
    *,
    step: Optional[str] = None,
    exc_type: Optional[str] = None,
    exc_message: Optional[str] = None,
    retryable: bool = True,
) -> ErrorPayload:
    return ErrorPayload(
        type=ENGINE_EXECUTION_ERROR,
        message=exc_message or "Falha inesperada durante a execução do Step",
        details={"step": step, "exc_type": exc_type},
        hint="Verifique o log da run para diagnosticar a falha.",
        retryable=retryable,
    )
