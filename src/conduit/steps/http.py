"""Step embutido: http.

Responsabilidades:
- enviar uma requisição HTTP via `httpx`
- usar as entradas resolvidas como corpo JSON em métodos não-GET (salvo `body` explícito)
- falhar (`HttpStepError`) em erro de transporte ou status >= 400

Saída: `{"status_code": int, "headers": dict, "body": json | str}`.

Idempotência: GET, HEAD, OPTIONS, PUT e DELETE são idempotentes; POST e PATCH não.
Status 4xx (exceto 408 e 429) não é reexecutável.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from conduit.core.exceptions import HttpStepError
from conduit.core.pipeline.context import StepContext
from conduit.core.pipeline.definition import stringify

IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}
_NO_BODY = {"GET", "HEAD", "OPTIONS"}
_RETRYABLE_4XX = {408, 429}


@dataclass
class HttpStep:
    """Requisição HTTP declarativa."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: float = 30.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    kind = "http"

    @property
    def idempotent(self) -> bool:
        return self.method in IDEMPOTENT_METHODS

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        *,
        name: str,
        transport: Optional[httpx.BaseTransport] = None,
        **_: Any,
    ) -> "HttpStep":
        url = config.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ValueError("'url' is required")
        method = str(config.get("method", "GET")).upper()
        return cls(
            url=url,
            method=method,
            headers={str(k): stringify(v) for k, v in (config.get("headers") or {}).items()},
            query={str(k): stringify(v) for k, v in (config.get("query") or {}).items()},
            body=config.get("body"),
            timeout=float(config.get("timeout", 30.0)),
            transport=transport,
        )

    def run(self, ctx: StepContext, inputs: Dict[str, Any]) -> Dict[str, Any]:
        body = self.body
        if body is None and self.method not in _NO_BODY and inputs:
            body = inputs

        timeout = self.timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = max(0.001, min(timeout, remaining))

        ctx.log("INFO", f"{self.method} {self.url}")
        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                response = client.request(
                    self.method,
                    self.url,
                    headers=self.headers or None,
                    params=self.query or None,
                    json=body,
                )
        except httpx.HTTPError as e:
            raise HttpStepError(
                f"{self.method} {self.url} failed: {e}",
                details={"url": self.url, "method": self.method, "exc_type": type(e).__name__},
            ) from e

        output = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": _decode(response),
        }
        if response.status_code >= 400:
            err = HttpStepError(
                f"{self.method} {self.url} returned {response.status_code}",
                details={"url": self.url, "status_code": response.status_code, "body": response.text[:2000]},
            )
            if response.status_code < 500 and response.status_code not in _RETRYABLE_4XX:
                err.retryable = False
            raise err
        return output


def _decode(response: httpx.Response) -> Any:
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text
