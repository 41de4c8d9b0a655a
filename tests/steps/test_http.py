# tests/steps/test_http.py
"""
Testes do kind `http`.

Nenhuma chamada de rede real: o kind é registrado novamente com um
`httpx.MockTransport` que responde conforme o caminho requisitado.
"""

import json
from functools import partial

import httpx
import pytest

from conduit.core import errors
from conduit.core.pipeline.types import RunStatus, StepStatus
from conduit.steps.http import HttpStep


@pytest.fixture
def seen():
    return []


@pytest.fixture
def http_plan(registry, make_plan, seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/items":
            return httpx.Response(200, json={"items": [1, 2, 3], "q": request.url.params.get("q")})
        if request.url.path == "/echo":
            return httpx.Response(201, json=json.loads(request.content or b"null"))
        if request.url.path == "/text":
            return httpx.Response(200, text="plain")
        if request.url.path == "/missing":
            return httpx.Response(404, text="not here")
        if request.url.path == "/busy":
            return httpx.Response(503, text="try later")
        raise httpx.ConnectError("unreachable", request=request)

    registry.register("http", partial(HttpStep.from_config, transport=httpx.MockTransport(handler)), replace=True)
    return make_plan


def _http(name, url, **extra):
    with_ = {"url": url}
    with_.update(extra.pop("with_", {}))
    spec = {"name": name, "kind": "http", "with": with_}
    spec.update(extra)
    return spec


def test_get_json(http_plan, execute, seen):
    plan = http_plan({
        "steps": [
            _http("list", "http://api.test/items", with_={"query": {"q": "abc"}, "headers": {"X-Trace": 1}}),
            {"name": "count", "kind": "fn", "with": {}, "inputs": {"first": "${steps.list.output.body.items.0}"}},
        ]
    })

    result, _ = execute(plan)

    out = result.steps["list"].output
    assert out["status_code"] == 200
    assert out["body"] == {"items": [1, 2, 3], "q": "abc"}
    assert result.steps["count"].output == {"first": 1}
    assert seen[0].headers["X-Trace"] == "1"


def test_post_sends_inputs_as_json(http_plan, execute, seen):
    plan = http_plan({
        "params": {"who": "world"},
        "steps": [_http("send", "http://api.test/echo", with_={"method": "post"}, inputs={"hello": "${params.who}"})],
    })

    result, _ = execute(plan)

    assert seen[0].method == "POST"
    assert result.steps["send"].output["status_code"] == 201
    assert result.steps["send"].output["body"] == {"hello": "world"}


def test_explicit_body_wins_over_inputs(http_plan, execute):
    plan = http_plan({"steps": [_http("send", "http://api.test/echo", with_={"method": "PUT", "body": [1]},
                                      inputs={"ignored": True})]})

    result, _ = execute(plan)

    assert result.steps["send"].output["body"] == [1]


def test_text_body(http_plan, execute):
    plan = http_plan({"steps": [_http("t", "http://api.test/text")]})

    result, _ = execute(plan)

    assert result.steps["t"].output["body"] == "plain"


def test_client_error_is_not_retried(http_plan, execute, seen):
    plan = http_plan({"steps": [_http("missing", "http://api.test/missing", retry=3)]})

    result, _ = execute(plan)

    step = result.steps["missing"]
    assert step.status == StepStatus.FAILED
    assert step.attempts == 1
    assert step.error["type"] == errors.HTTP_STEP_FAILED
    assert step.error["details"]["status_code"] == 404
    assert step.error["retryable"] is False
    assert len(seen) == 1


def test_server_error_is_retried(http_plan, execute, seen):
    plan = http_plan({"steps": [_http("busy", "http://api.test/busy", retry=2)]})

    result, _ = execute(plan)

    assert result.steps["busy"].attempts == 2
    assert len(seen) == 2
    assert result.status == RunStatus.FAILED


def test_transport_error(http_plan, execute):
    plan = http_plan({"steps": [_http("down", "http://api.test/down")]})

    result, _ = execute(plan)

    assert result.steps["down"].error["details"]["exc_type"] == "ConnectError"


def test_idempotency_follows_method():
    assert HttpStep.from_config({"url": "http://x"}, name="a").idempotent
    assert not HttpStep.from_config({"url": "http://x", "method": "POST"}, name="a").idempotent
    with pytest.raises(ValueError):
        HttpStep.from_config({}, name="a")
