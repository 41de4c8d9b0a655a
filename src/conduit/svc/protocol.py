"""
Protocolo de fio entre `conduit server` e `conduit client`.

Requisição:
    POST /api/v1/runs com `RunRequest` (definição inline OU nome de
    pipeline registrado, mais `params`) → `RunAccepted`.

Stream:
    GET /api/v1/runs/{id}/events?after=N devolve NDJSON: um evento do
    journal por linha, com `seq > N`, terminando no evento `run_result`.

Erros:
    Falhas de build viram HTTP 422 com `ErrorResponse`; `exception`
    carrega o nome da classe para que o cliente relance a mesma subclasse
    de `BuildError`.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from conduit.core.exceptions import ConduitException

API_PREFIX = "/api/v1"
NDJSON = "application/x-ndjson"


class RunRequest(BaseModel):
    definition: Optional[Dict[str, Any]] = None
    pipeline: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "RunRequest":
        if (self.definition is None) == (self.pipeline is None):
            raise ValueError("exactly one of 'definition' or 'pipeline' is required")
        return self


class RunAccepted(BaseModel):
    run_id: str
    pipeline: str
    status: str


class ErrorResponse(BaseModel):
    exception: str
    type: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    hint: Optional[str] = None
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: ConduitException) -> "ErrorResponse":
        payload = exc.to_payload()
        return cls(
            exception=type(exc).__name__,
            type=payload.type,
            message=payload.message,
            details=payload.details,
            hint=payload.hint,
            retryable=payload.retryable,
        )


def encode_event(event: Dict[str, Any]) -> bytes:
    return (json.dumps(event, ensure_ascii=False, default=str) + "\n").encode("utf-8")


def encode_stream(events: Iterable[Dict[str, Any]]) -> Iterator[bytes]:
    for event in events:
        yield encode_event(event)


def decode_line(line: str) -> Optional[Dict[str, Any]]:
    """Decodifica uma linha NDJSON; linhas vazias viram None."""
    line = line.strip()
    if not line:
        return None
    return json.loads(line)


def split_addr(addr: str) -> Tuple[str, int]:
    """'host:port' → (host, port); host vazio vira 127.0.0.1."""
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"address must look like 'host:port', got {addr!r}")
    return host or "127.0.0.1", int(port)


def base_url(addr: str) -> str:
    if addr.startswith(("http://", "https://")):
        return addr.rstrip("/")
    host, port = split_addr(addr)
    return f"http://{host}:{port}"
