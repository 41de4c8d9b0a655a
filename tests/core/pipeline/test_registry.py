# tests/core/pipeline/test_registry.py
"""
Testes do StepKindRegistry.

Garantem que:
- cada kind é registrado uma única vez (salvo `replace=True`)
- kinds desconhecidos viram `UnknownStepKindError` com os kinds conhecidos
- erros de configuração da fábrica viram `DefinitionError`
- o registry padrão contém os kinds embutidos
"""

import pytest

from conduit.core.exceptions import DefinitionError, DuplicateStepKindError, UnknownStepKindError
from conduit.core.pipeline.registry import StepKindRegistry, default_registry
from conduit.core.pipeline.step import Step


class _Echo:
    kind = "echo"
    idempotent = True

    def __init__(self, text):
        self.text = text

    def run(self, ctx, inputs):
        return self.text


def _echo_factory(config, *, name, **_):
    return _Echo(config["text"])


def test_register_and_create():
    reg = StepKindRegistry()
    reg.register("echo", _echo_factory)

    step = reg.create("echo", {"text": "hi"}, name="greet")

    assert "echo" in reg
    assert reg.kinds() == ["echo"]
    assert isinstance(step, Step)
    assert step.text == "hi"


def test_duplicate_kind_rejected_unless_replace():
    reg = StepKindRegistry()
    reg.register("echo", _echo_factory)

    with pytest.raises(DuplicateStepKindError):
        reg.register("echo", _echo_factory)

    reg.register("echo", lambda config, **_: _Echo("other"), replace=True)
    assert reg.create("echo", {}, name="x").text == "other"
    assert reg.kinds() == ["echo"]


def test_unknown_kind_lists_known_kinds():
    reg = StepKindRegistry()
    reg.register("echo", _echo_factory)

    with pytest.raises(UnknownStepKindError) as exc:
        reg.create("nope", {}, name="x")

    assert exc.value.details["known_kinds"] == ["echo"]
    assert exc.value.details["step"] == "x"


def test_factory_config_errors_become_definition_errors():
    """KeyError/ValueError/TypeError da fábrica viram DefinitionError com o Step no details."""
    reg = StepKindRegistry()
    reg.register("echo", _echo_factory)

    with pytest.raises(DefinitionError) as exc:
        reg.create("echo", {}, name="x")
    assert exc.value.details == {"step": "x", "kind": "echo"}


def test_factory_must_return_a_step():
    reg = StepKindRegistry()
    reg.register("bad", lambda config, **_: object())
    with pytest.raises(DefinitionError):
        reg.create("bad", {}, name="x")


def test_default_registry_has_builtin_kinds():
    reg = default_registry()
    for kind in ("command", "http", "pipeline", "python"):
        assert kind in reg


def test_default_registry_is_a_fresh_instance():
    a = default_registry()
    b = default_registry()
    a.register("echo", _echo_factory)
    assert "echo" not in b
