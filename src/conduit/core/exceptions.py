"""
Conduit — Exceções canônicas.

Taxonomia:
- BuildError          → erros de construção do Plan (fatais, nunca reexecutados)
- StepExecutionError  → erros de runtime de um Step (sujeitos à política de retry)
- StepCancelledError  → cancelamento explícito ou deadline excedido
- RemoteTransportError → perda do servidor vista pelo cliente remoto

Cada exceção carrega dados estruturados em `details` e sabe se converter
em `ErrorPayload` via `to_payload()`, de modo que o Executor nunca expõe
stack traces em resultados.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from . import errors as codes
from .errors import ErrorPayload


class ConduitException(Exception):
    """Base class para exceções internas do Conduit."""

    code: str = codes.ENGINE_EXECUTION_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.hint = hint

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> ErrorPayload:
        return ErrorPayload(
            type=self.code,
            message=self.message,
            details=dict(self.details),
            hint=self.hint,
            retryable=self.retryable,
        )


# ---------------------------------------------------------------------------
# Construção (build-time)
# ---------------------------------------------------------------------------

class BuildError(ConduitException):
    """Falha estrutural detectada antes de qualquer Step executar."""

    code = codes.DEFINITION_INVALID


class DefinitionError(BuildError):
    """Documento de definição inválido (estrutura, tipos ou valores)."""


class DuplicateStepError(BuildError):
    """Dois ou mais StepSpecs compartilham o mesmo `name`."""

    code = codes.DUPLICATE_STEP


class UnknownReferenceError(BuildError):
    """Referência a Step ou parâmetro inexistente no Plan."""

    code = codes.UNKNOWN_REFERENCE


class CyclicDependencyError(BuildError):
    """O grafo de dependências contém um ciclo; `cycle` lista os Steps envolvidos."""

    code = codes.CYCLIC_DEPENDENCY

    def __init__(self, cycle: List[str], **kwargs: Any):
        self.cycle = list(cycle)
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("cycle", self.cycle)
        super().__init__(
            "Cycle detected in step dependency graph: " + " -> ".join(self.cycle + self.cycle[:1]),
            details=details,
            **kwargs,
        )


class UnknownStepKindError(BuildError):
    """O `kind` declarado não está registrado no StepKindRegistry."""

    code = codes.UNKNOWN_STEP_KIND


class DuplicateStepKindError(ValueError):
    """Tentativa de registrar duas vezes o mesmo kind sem `replace=True`."""


class MissingParameterError(BuildError):
    """Parâmetro obrigatório do pipeline não foi informado na run."""

    code = codes.MISSING_PARAMETER


# ---------------------------------------------------------------------------
# Runtime de Step
# ---------------------------------------------------------------------------

class StepExecutionError(ConduitException):
    """Falha de runtime de um Step. Reexecutável por padrão."""

    code = codes.STEP_FAILED
    retryable = True


class UnresolvedInputError(StepExecutionError):
    """Uma entrada declarada não pôde ser resolvida a partir das saídas disponíveis."""

    code = codes.UNRESOLVED_INPUT
    retryable = False


class StepTimeoutError(StepExecutionError):
    """A tentativa excedeu o timeout declarado no StepSpec."""

    code = codes.STEP_TIMEOUT


class CommandFailedError(StepExecutionError):
    """Comando externo terminou com exit code diferente de zero."""

    code = codes.COMMAND_FAILED


class HttpStepError(StepExecutionError):
    """Requisição HTTP falhou ou retornou status >= 400."""

    code = codes.HTTP_STEP_FAILED


class SubPipelineFailedError(StepExecutionError):
    """Sub-pipeline terminou com status diferente de succeeded."""

    code = codes.SUBPIPELINE_FAILED
    retryable = False


# ---------------------------------------------------------------------------
# Contexto
# ---------------------------------------------------------------------------

class StepCancelledError(ConduitException):
    """O Step observou cancelamento (explícito ou por deadline) e retornou."""

    code = codes.RUN_CANCELLED


# ---------------------------------------------------------------------------
# Transporte (lado cliente)
# ---------------------------------------------------------------------------

class RemoteTransportError(ConduitException):
    """O servidor ficou inacessível ou o stream não pôde ser retomado."""

    code = codes.REMOTE_TRANSPORT
    retryable = True


class RunNotFoundError(RemoteTransportError):
    """O servidor não conhece a run (por exemplo, após reinício)."""

    code = codes.RUN_NOT_FOUND
    retryable = False
