"""Step embutido: pipeline (sub-pipeline).

Responsabilidades:
- construir o Plan do sub-pipeline em build time (definição inline ou arquivo)
- executá-lo com um Executor aninhado cujo token é filho do token do Step
- usar as entradas resolvidas como parâmetros do sub-pipeline

Saída: `{"status": str, "outputs": {step: output}}`.

Configuração (`with`):
- definition: mapa com a definição inline, ou
- file: caminho YAML/JSON (relativo ao arquivo do pipeline pai)

Limites explícitos:
- Referências circulares entre arquivos são rejeitadas em build time
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from conduit.core.engine.executor import Executor
from conduit.core.engine.planner import Plan, build_plan
from conduit.core.exceptions import DefinitionError, StepCancelledError, SubPipelineFailedError
from conduit.core.pipeline.context import ExecutionContext, StepContext
from conduit.core.pipeline.definition import load_definition, parse_definition
from conduit.core.pipeline.types import RunStatus, StepStatus

_building = threading.local()


@dataclass
class SubPipelineStep:
    """Executa um Plan aninhado como um único Step."""

    plan: Plan = field(repr=False)
    idempotent: bool = True

    kind = "pipeline"

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        *,
        name: str,
        registry=None,
        base_dir: Optional[Path] = None,
        **_: Any,
    ) -> "SubPipelineStep":
        inline = config.get("definition")
        file = config.get("file")
        if (inline is None) == (file is None):
            raise ValueError("exactly one of 'definition' or 'file' is required")

        stack: List[str] = getattr(_building, "stack", None) or []
        if file is not None:
            path = Path(file)
            if not path.is_absolute() and base_dir is not None:
                path = Path(base_dir) / path
            key = str(path.resolve())
            if key in stack:
                raise DefinitionError(
                    f"Step '{name}' includes '{file}' recursively",
                    details={"step": name, "chain": stack + [key]},
                )
            definition = load_definition(path)
        else:
            if not isinstance(inline, dict):
                raise ValueError("'definition' must be a mapping")
            key = f"inline:{name}"
            definition = parse_definition(inline, base_dir=base_dir)

        _building.stack = stack + [key]
        try:
            plan = build_plan(definition, registry)
        finally:
            _building.stack = stack

        idempotent = all(getattr(s, "idempotent", True) for s in plan.steps.values())
        return cls(plan=plan, idempotent=idempotent)

    def run(self, ctx: StepContext, inputs: Dict[str, Any]) -> Dict[str, Any]:
        sub = ExecutionContext.create(
            self.plan,
            params=inputs,
            run_id=f"{ctx.run_id}.{ctx.step}",
            token=ctx.token,
            meta={"parent_run": ctx.run_id, "parent_step": ctx.step},
        )
        sub.environment = {**ctx.environment, **sub.environment}
        sub.workdir = sub.workdir or ctx.workdir

        result = Executor(ctx.settings).execute(self.plan, sub)
        outputs = {name: r.output for name, r in result.steps.items() if r.succeeded}
        ctx.log("INFO", f"sub-pipeline {self.plan.name} finished: {result.status.value}", counts=result.counts())

        if result.status == RunStatus.CANCELLED:
            raise StepCancelledError(
                f"sub-pipeline {self.plan.name} cancelled",
                details={"pipeline": self.plan.name},
            )
        if result.status == RunStatus.FAILED:
            failed = sorted(n for n, r in result.steps.items() if r.status == StepStatus.FAILED)
            raise SubPipelineFailedError(
                f"sub-pipeline {self.plan.name} failed",
                details={"pipeline": self.plan.name, "failed_steps": failed, "error": result.error},
            )
        return {"status": result.status.value, "outputs": outputs}
