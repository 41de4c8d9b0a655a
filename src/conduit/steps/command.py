"""Step embutido: command.

Responsabilidades:
- executar um comando externo via `subprocess` (string → shell, lista → argv)
- exportar as entradas resolvidas como `PIPELINE_INPUT_<NOME>`
- exportar variáveis `PIPELINE_*` da run e o ambiente do pipeline/Step
- repassar cancelamento ao processo: `terminate()`, e `kill()` após `kill_after`

Saída: `{"exit_code": int, "stdout": str, "stderr": str}`.

Limites explícitos:
- NÃO é idempotente (uma tentativa, salvo `retry` explícito no StepSpec)
- NÃO interpreta a saída do processo
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from conduit.core.exceptions import CommandFailedError, StepCancelledError
from conduit.core.pipeline.context import StepContext
from conduit.core.pipeline.definition import stringify

_POLL = 0.05
_ENV_NAME = re.compile(r"[^A-Za-z0-9_]")
_TAIL = 2000
_POSIX = os.name == "posix"


def input_env_name(name: str) -> str:
    return "PIPELINE_INPUT_" + _ENV_NAME.sub("_", name).upper()


@dataclass
class CommandStep:
    """Executa um comando externo e devolve exit code, stdout e stderr."""

    command: Union[str, List[str]]
    cwd: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    kill_after: float = 5.0
    ok_exit_codes: Sequence[int] = (0,)

    kind = "command"
    idempotent = False

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        *,
        name: str,
        base_dir: Optional[Path] = None,
        **_: Any,
    ) -> "CommandStep":
        command = config.get("command", config.get("run"))
        if isinstance(command, list):
            if not command or not all(isinstance(c, str) for c in command):
                raise ValueError("'command' list must contain strings")
        elif not isinstance(command, str) or not command.strip():
            raise ValueError("'command' is required")

        cwd = config.get("cwd")
        if cwd is not None and base_dir is not None and not Path(cwd).is_absolute():
            cwd = str(Path(base_dir) / cwd)

        return cls(
            command=command,
            cwd=cwd,
            environment={str(k): stringify(v) for k, v in (config.get("environment") or {}).items()},
            kill_after=float(config.get("kill_after", 5.0)),
            ok_exit_codes=tuple(int(c) for c in config.get("ok_exit_codes", (0,))),
        )

    def _env(self, ctx: StepContext, inputs: Dict[str, Any]) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "PIPELINE_RUN_ID": ctx.run_id,
                "PIPELINE_NAME": ctx.run.pipeline,
                "PIPELINE_STEP": ctx.step,
                "PIPELINE_ATTEMPT": str(ctx.attempt),
            }
        )
        if ctx.workdir:
            env["PIPELINE_WORKDIR"] = ctx.workdir
        env.update(ctx.environment)
        env.update(self.environment)
        for key, value in inputs.items():
            env[input_env_name(key)] = stringify(value)
        return env

    def run(self, ctx: StepContext, inputs: Dict[str, Any]) -> Dict[str, Any]:
        shell = isinstance(self.command, str)
        proc = subprocess.Popen(
            self.command,
            shell=shell,
            cwd=self.cwd or ctx.workdir or None,
            env=self._env(ctx, inputs),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            start_new_session=_POSIX,
        )
        ctx.log("INFO", "process started", pid=proc.pid)

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled:
                    self._stop(ctx, proc)
                    raise StepCancelledError(
                        f"command interrupted: {ctx.token.reason}",
                        details={"pid": proc.pid, "reason": ctx.token.reason},
                    )

        result = {"exit_code": proc.returncode, "stdout": stdout, "stderr": stderr}
        if proc.returncode not in self.ok_exit_codes:
            raise CommandFailedError(
                f"command exited with code {proc.returncode}",
                details={"exit_code": proc.returncode, "stderr": stderr[-_TAIL:]},
                hint="Veja stderr no resultado do Step.",
            )
        return result

    def _stop(self, ctx: StepContext, proc: subprocess.Popen) -> None:
        _signal(proc, force=False)
        try:
            proc.communicate(timeout=self.kill_after)
        except subprocess.TimeoutExpired:
            ctx.log("WARNING", "process ignored SIGTERM; killing", pid=proc.pid)
            _signal(proc, force=True)
            proc.communicate()


def _signal(proc: subprocess.Popen, *, force: bool) -> None:
    """Sinaliza o grupo de processos inteiro (POSIX) para alcançar filhos do shell."""
    if not _POSIX:
        if force:
            proc.kill()
        else:
            proc.terminate()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
    except ProcessLookupError:
        pass
