"""
RemoteClient — cliente fino do PipelineServer (httpx).

Responsabilidades:
    - submeter runs e relançar erros de build como as mesmas subclasses
      de `BuildError` levantadas no servidor
    - consumir o stream NDJSON de eventos, retomando a partir do último
      `seq` visto quando a conexão cai (sem duplicatas)
    - limitar reconexões (`client.max_reconnects`) com backoff exponencial

Perda do servidor (run desconhecida após reconexão, ou reconexões
esgotadas) levanta `RemoteTransportError`, distinto de uma run Failed.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, Optional, Union

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from conduit.core import exceptions as exc_module
from conduit.core.config.loader import ClientSettings
from conduit.core.exceptions import (
    BuildError,
    CyclicDependencyError,
    DefinitionError,
    RemoteTransportError,
    RunNotFoundError,
)
from conduit.core.pipeline.types import AggregateResult
from conduit.core.traceability.journal import RUN_RESULT

from .protocol import API_PREFIX, base_url, decode_line

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], None]

_MAX_RECONNECT_BACKOFF = 30.0


class _StreamClosed(Exception):
    """O servidor fechou o stream antes de `run_result`."""


def _build_error_from(body: Dict[str, Any]) -> BuildError:
    """Reconstrói a exceção de build a partir de um `ErrorResponse`."""
    name = body.get("exception")
    cls = getattr(exc_module, str(name), None) if name else None
    details = dict(body.get("details") or {})
    hint = body.get("hint")
    if isinstance(cls, type) and issubclass(cls, CyclicDependencyError):
        return cls(list(details.get("cycle") or []), details=details, hint=hint)
    if isinstance(cls, type) and issubclass(cls, BuildError):
        return cls(str(body.get("message", "")), details=details, hint=hint)
    return DefinitionError(str(body.get("message") or body.get("detail") or "invalid request"), details=details, hint=hint)


class RemoteClient:
    def __init__(
        self,
        addr: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        settings: Optional[ClientSettings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or ClientSettings()
        auth = (username, password or "") if username is not None else None
        self._http = httpx.Client(
            base_url=base_url(addr) + API_PREFIX,
            auth=auth,
            timeout=self.settings.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RemoteClient":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Requisições simples
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteTransportError(
                f"{method} {path} failed: {e}",
                details={"path": path, "exc_type": type(e).__name__},
            ) from e
        if response.status_code == 401:
            raise RemoteTransportError("server rejected credentials", details={"path": path},
                                       hint="Informe --username e --password.")
        return response

    def submit(self, definition: Union[Dict[str, Any], str], params: Optional[Dict[str, Any]] = None) -> str:
        """
        Submete uma run: `definition` é um mapa (inline) ou o nome de um pipeline registrado.

        Raises:
            BuildError: A subclasse levantada pelo servidor.
            RemoteTransportError: Servidor inacessível ou resposta inesperada.
        """
        body: Dict[str, Any] = {"params": dict(params or {})}
        if isinstance(definition, str):
            body["pipeline"] = definition
        else:
            body["definition"] = definition

        response = self._request("POST", "/runs", json=body)
        if response.status_code == 422:
            raise _build_error_from(response.json())
        if response.status_code != 202:
            raise RemoteTransportError(
                f"unexpected status {response.status_code} on submit",
                details={"status_code": response.status_code, "body": response.text[:2000]},
            )
        run_id = response.json()["run_id"]
        logger.info("run submitted: %s", run_id)
        return run_id

    def get(self, run_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"/runs/{run_id}")
        if response.status_code == 404:
            raise RunNotFoundError(f"run '{run_id}' not found", details={"run_id": run_id})
        response.raise_for_status()
        return response.json()

    def cancel(self, run_id: str) -> bool:
        response = self._request("POST", f"/runs/{run_id}/cancel")
        if response.status_code == 404:
            raise RunNotFoundError(f"run '{run_id}' not found", details={"run_id": run_id})
        response.raise_for_status()
        return bool(response.json().get("cancelled"))

    def register_pipeline(self, name: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request("PUT", f"/pipelines/{name}", json=definition)
        if response.status_code == 422:
            raise _build_error_from(response.json())
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # Stream retomável
    # ------------------------------------------------------------------
    def stream(self, run_id: str, after: int = 0) -> Iterator[Dict[str, Any]]:
        """
        Itera os eventos da run até `run_result`, retomando após quedas.

        Cada evento é entregue uma única vez, em ordem de `seq`. Uma
        reconexão que traz eventos novos renova o limite de reconexões.

        Raises:
            RunNotFoundError: O servidor não conhece a run.
            RemoteTransportError: Reconexões esgotadas.
        """
        last_seq = int(after)
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_reconnects + 1),
            wait=wait_exponential(multiplier=self.settings.reconnect_backoff, max=_MAX_RECONNECT_BACKOFF),
            retry=retry_if_exception_type((httpx.HTTPError, _StreamClosed)),
            before_sleep=lambda state: logger.warning(
                "stream of run %s interrupted (%s); reconnecting in %.2fs after seq %d",
                run_id, state.outcome.exception(), state.next_action.sleep, last_seq,
            ),
            reraise=True,
        )

        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    with self._http.stream(
                        "GET",
                        f"/runs/{run_id}/events",
                        params={"after": last_seq},
                        timeout=httpx.Timeout(self.settings.timeout, read=None),
                    ) as response:
                        self._check_stream(response, run_id, last_seq, attempts - 1)
                        for line in response.iter_lines():
                            event = decode_line(line)
                            if event is None or int(event["seq"]) <= last_seq:
                                continue
                            last_seq = int(event["seq"])
                            # eventos novos renovam o limite de reconexões
                            attempt.retry_state.attempt_number = 1
                            yield event
                            if event["event_type"] == RUN_RESULT:
                                return
                    raise _StreamClosed("stream closed before run_result")
        except (httpx.HTTPError, _StreamClosed) as e:
            raise RemoteTransportError(
                f"lost connection to server while streaming run '{run_id}'",
                details={"run_id": run_id, "last_seq": last_seq, "reconnects": attempts - 1,
                         "exc_type": type(e).__name__},
            ) from e

    @staticmethod
    def _check_stream(response: httpx.Response, run_id: str, after: int, reconnects: int) -> None:
        if response.status_code == 404:
            raise RunNotFoundError(
                f"run '{run_id}' is unknown to the server",
                details={"run_id": run_id, "last_seq": after, "reconnects": reconnects},
                hint="O servidor pode ter reiniciado; submeta a run novamente.",
            )
        if response.status_code == 401:
            raise RemoteTransportError("server rejected credentials", details={"run_id": run_id})
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"status {response.status_code}", request=response.request, response=response
            )

    def run_remote(
        self,
        definition: Union[Dict[str, Any], str],
        params: Optional[Dict[str, Any]] = None,
        on_event: Optional[EventCallback] = None,
    ) -> AggregateResult:
        """Submete, acompanha o stream e devolve o AggregateResult do `run_result`."""
        run_id = self.submit(definition, params)
        for event in self.stream(run_id):
            if on_event is not None:
                on_event(event)
            if event["event_type"] == RUN_RESULT:
                return AggregateResult.from_dict(event["payload"])
        raise RemoteTransportError(f"stream of run '{run_id}' ended without a result", details={"run_id": run_id})
