"""
Superfície HTTP do PipelineServer (FastAPI).

Rotas (prefixo /api/v1):
    POST /runs                    → submete uma run (422 em erro de build)
    GET  /runs                    → lista runs (?status=&limit=)
    GET  /runs/{id}               → estado e resultado da run
    GET  /runs/{id}/events        → stream NDJSON do journal (?after=N)
    POST /runs/{id}/cancel        → solicita cancelamento
    PUT  /pipelines/{name}        → registra uma definição nomeada
    GET  /stats                   → contadores do servidor
    GET  /healthz                 → liveness (sem autenticação)

Autenticação HTTP basic opcional quando `username`/`password` são informados.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from conduit import __version__
from conduit.core.exceptions import BuildError
from conduit.core.pipeline.types import RunStatus

from .protocol import API_PREFIX, NDJSON, ErrorResponse, RunAccepted, RunRequest, encode_stream
from .server import PipelineServer, UnknownRunError

logger = logging.getLogger(__name__)


def create_app(
    server: Optional[PipelineServer] = None,
    *,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> FastAPI:
    server = server or PipelineServer()
    security = HTTPBasic(auto_error=False)

    def authorize(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> None:
        if username is None and password is None:
            return
        ok = credentials is not None and (
            secrets.compare_digest(credentials.username.encode(), (username or "").encode())
            and secrets.compare_digest(credentials.password.encode(), (password or "").encode())
        )
        if not ok:
            raise HTTPException(status_code=401, detail="unauthorized", headers={"WWW-Authenticate": "Basic"})

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("conduit server %s ready", __version__)
        yield
        server.shutdown(drain=False)

    app = FastAPI(title="Conduit Pipeline Server", version=__version__, lifespan=lifespan)
    app.state.server = server
    router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(authorize)])

    @app.exception_handler(BuildError)
    async def _build_error(_request: Request, exc: BuildError) -> JSONResponse:
        return JSONResponse(status_code=422, content=ErrorResponse.from_exception(exc).model_dump())

    @app.exception_handler(UnknownRunError)
    async def _unknown_run(_request: Request, exc: UnknownRunError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @router.post("/runs", response_model=RunAccepted, status_code=202)
    def submit_run(request: RunRequest) -> RunAccepted:
        run_id = server.submit(request)
        info = server.get(run_id)
        return RunAccepted(run_id=run_id, pipeline=info["pipeline"], status=info["status"])

    @router.get("/runs")
    def list_runs(status: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        if status is not None:
            try:
                RunStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"unknown status '{status}'")
        items = server.list_runs(status=status, limit=limit)
        return {"count": len(items), "items": items}

    @router.get("/runs/{run_id}")
    def get_run(run_id: str) -> Dict[str, Any]:
        return server.get(run_id)

    @router.get("/runs/{run_id}/events")
    def run_events(run_id: str, after: int = 0) -> StreamingResponse:
        server.get(run_id)
        return StreamingResponse(encode_stream(server.stream(run_id, after=after)), media_type=NDJSON)

    @router.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str) -> Dict[str, Any]:
        return {"run_id": run_id, "cancelled": server.cancel(run_id)}

    @router.put("/pipelines/{name}")
    def register_pipeline(name: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        registered = server.register_pipeline(name, definition)
        return {"name": name, "pipeline": registered.name, "steps": [s.name for s in registered.steps]}

    @router.get("/stats")
    def stats() -> Dict[str, Any]:
        return server.stats()

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok", "version": __version__}

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    from .protocol import split_addr

    _server = PipelineServer()
    _host, _port = split_addr(_server.settings.server.addr)
    uvicorn.run(create_app(_server), host=_host, port=_port)
