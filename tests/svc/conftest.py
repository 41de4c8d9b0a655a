# tests/svc/conftest.py
"""
Fixtures do servidor de pipelines.

- `server`: PipelineServer com o registry de teste, encerrado sem drenar
- `api`: TestClient do app FastAPI sobre `server` (lifespan ativo)
- `wait_run`: espera uma run atingir estado terminal
"""

import time

import pytest
from fastapi.testclient import TestClient

from conduit.core.pipeline.types import RunStatus
from conduit.svc.app import create_app
from conduit.svc.server import PipelineServer


@pytest.fixture
def server(settings, registry):
    srv = PipelineServer(settings, registry)
    yield srv
    srv.shutdown(drain=False)


@pytest.fixture
def api(server):
    with TestClient(create_app(server)) as client:
        yield client


@pytest.fixture
def wait_run():
    def _wait(get, run_id, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            info = get(run_id)
            if RunStatus(info["status"]).terminal:
                return info
            time.sleep(0.01)
        raise AssertionError(f"run {run_id} did not finish")

    return _wait
