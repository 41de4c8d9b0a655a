"""
CLI do Conduit (click).

Comandos:
    conduit run DEFINITION      → executa localmente
    conduit server              → inicia o PipelineServer (FastAPI + uvicorn)
    conduit client ADDR DEF     → submete ao servidor e acompanha o stream

Códigos de saída:
    0 succeeded · 1 failed · 3 erro de validação/build · 4 cancelled ·
    5 falha de transporte (apenas client)
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import click
import yaml

from conduit import __version__
from conduit.core.config.errors import ConfigError
from conduit.core.config.loader import Settings, load_document, load_settings
from conduit.core.engine.executor import Executor
from conduit.core.engine.planner import build_plan
from conduit.core.exceptions import BuildError, RemoteTransportError
from conduit.core.pipeline.context import ExecutionContext
from conduit.core.pipeline.definition import load_definition
from conduit.core.pipeline.types import AggregateResult, RunStatus, StepResult
from conduit.core.traceability.journal import RUN_RESULT, STEP_RESULT

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_BUILD_ERROR = 3
EXIT_CANCELLED = 4
EXIT_TRANSPORT = 5

_EXIT_BY_STATUS = {
    RunStatus.SUCCEEDED: EXIT_SUCCEEDED,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.CANCELLED: EXIT_CANCELLED,
}

_COLORS = {"succeeded": "green", "failed": "red", "skipped": "yellow", "cancelled": "magenta"}


def parse_params(values: Sequence[str]) -> Dict[str, Any]:
    """`K=V` → {K: V}; V é interpretado como YAML escalar (números, booleanos)."""
    params: Dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise click.BadParameter(f"expected K=V, got {item!r}", param_hint="--param")
        try:
            value = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError:
            value = raw
        params[key] = value
    return params


def _settings(config_path: Optional[str]) -> Settings:
    try:
        return load_settings(config_path)
    except ConfigError as e:
        click.echo(f"config error: {e}", err=True)
        sys.exit(EXIT_BUILD_ERROR)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _build_error(e: BuildError) -> None:
    click.secho(f"error: {e.message}", fg="red", err=True)
    if e.details:
        click.echo(f"  details: {e.details}", err=True)
    if e.hint:
        click.echo(f"  hint: {e.hint}", err=True)
    sys.exit(EXIT_BUILD_ERROR)


def _status_line(result: StepResult) -> str:
    duration = f"{result.duration_ms}ms" if result.duration_ms is not None else "-"
    status = click.style(f"{result.status.value:<10}", fg=_COLORS.get(result.status.value))
    return f"{status} {result.step_id:<24} attempts={result.attempts} {duration:>8}  {result.summary}"


def _print_event(event: Dict[str, Any]) -> None:
    if event.get("event_type") == STEP_RESULT:
        click.echo(_status_line(StepResult.from_dict(event["payload"])))


def _print_summary(result: AggregateResult) -> None:
    counts = ", ".join(f"{n} {s}" for s, n in result.counts().items() if n)
    click.echo("-" * 60)
    click.secho(
        f"run {result.run_id} ({result.pipeline}): {result.status.value} [{counts or 'no steps'}]",
        fg=_COLORS.get(result.status.value),
        bold=True,
    )
    if result.error:
        click.echo(f"  {result.error.get('type')}: {result.error.get('message')}")
    for name, step in result.steps.items():
        if step.status.value == "failed" and step.error:
            click.echo(f"  {name}: {step.error.get('type')}: {step.error.get('message')}")


@click.group()
@click.version_option(__version__, prog_name="conduit")
def main() -> None:
    """Conduit: motor de execução de pipelines de Steps."""


@main.command("run")
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
@click.option("--param", "-p", "params", multiple=True, metavar="K=V", help="Parâmetro do pipeline.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Arquivo de configuração (YAML/JSON).")
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None, help="Steps simultâneos por nível.")
@click.option("--fail-fast", is_flag=True, default=False, help="Interrompe na primeira falha.")
@click.option("--log-level", default=None, help="Nível de log (DEBUG, INFO, WARNING...).")
def run_cmd(
    definition: str,
    params: Sequence[str],
    config_path: Optional[str],
    max_concurrency: Optional[int],
    fail_fast: bool,
    log_level: Optional[str],
) -> None:
    """Executa DEFINITION localmente."""
    settings = _settings(config_path)
    _configure_logging(log_level or settings.engine.log_level)

    try:
        plan = build_plan(load_definition(definition))
        ctx = ExecutionContext.create(plan, parse_params(params), config_hash=settings.config_hash)
    except BuildError as e:
        _build_error(e)
        return

    ctx.subscribe(_print_event)
    executor = Executor(settings.engine, max_concurrency=max_concurrency, fail_fast=fail_fast or None)

    box: Dict[str, AggregateResult] = {}
    worker = threading.Thread(target=lambda: box.setdefault("result", executor.execute(plan, ctx)), daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        click.echo("interrupted: cancelling run...", err=True)
        ctx.cancel("interrupted")
        worker.join()

    result = box.get("result")
    if result is None:
        click.echo("run ended without a result", err=True)
        sys.exit(EXIT_FAILED)
    _print_summary(result)
    sys.exit(_EXIT_BY_STATUS[result.status])


@main.command("server")
@click.option("--addr", default=None, help="HOST:PORT para escutar.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None, help="Steps simultâneos por run.")
@click.option("--max-runs", type=click.IntRange(min=1), default=None, help="Runs simultâneas.")
@click.option("--username", default=None, help="Usuário de autenticação HTTP basic.")
@click.option("--password", default=None, help="Senha de autenticação HTTP basic.")
@click.option("--workdir", type=click.Path(file_okay=False), default=None, help="Diretório para journals.")
def server_cmd(
    addr: Optional[str],
    config_path: Optional[str],
    max_concurrency: Optional[int],
    max_runs: Optional[int],
    username: Optional[str],
    password: Optional[str],
    workdir: Optional[str],
) -> None:
    """Inicia o servidor de pipelines."""
    import uvicorn

    from conduit.svc.app import create_app
    from conduit.svc.protocol import split_addr
    from conduit.svc.server import PipelineServer

    if (username is None) != (password is None):
        raise click.UsageError("--username and --password must be given together")

    settings = _settings(config_path)
    engine = settings.engine
    if max_concurrency is not None:
        engine = engine.model_copy(update={"max_concurrency": max_concurrency})
    server_settings = settings.server
    overrides = {k: v for k, v in {"addr": addr, "max_concurrent_runs": max_runs, "workdir": workdir}.items()
                 if v is not None}
    if overrides:
        server_settings = server_settings.model_copy(update=overrides)
    settings = settings.model_copy(update={"engine": engine, "server": server_settings})

    _configure_logging(settings.engine.log_level)
    try:
        host, port = split_addr(settings.server.addr)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--addr")

    app = create_app(PipelineServer(settings), username=username, password=password)
    click.echo(f"conduit server {__version__} listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=settings.engine.log_level.lower())


@main.command("client")
@click.argument("addr")
@click.argument("definition")
@click.option("--param", "-p", "params", multiple=True, metavar="K=V", help="Parâmetro do pipeline.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--username", default=None)
@click.option("--password", default=None)
def client_cmd(
    addr: str,
    definition: str,
    params: Sequence[str],
    config_path: Optional[str],
    username: Optional[str],
    password: Optional[str],
) -> None:
    """
    Submete DEFINITION ao servidor em ADDR e acompanha a run.

    DEFINITION é um arquivo YAML/JSON ou o nome de um pipeline registrado.
    """
    from conduit.svc.client import RemoteClient

    settings = _settings(config_path)
    _configure_logging(settings.engine.log_level)

    source: Any = definition
    if Path(definition).is_file():
        try:
            source = load_document(definition)
        except ConfigError as e:
            click.echo(f"error: {e}", err=True)
            sys.exit(EXIT_BUILD_ERROR)

    with RemoteClient(addr, username=username, password=password, settings=settings.client) as client:
        try:
            run_id = client.submit(source, parse_params(params))
        except BuildError as e:
            _build_error(e)
            return
        except RemoteTransportError as e:
            click.secho(f"transport error: {e.message}", fg="red", err=True)
            sys.exit(EXIT_TRANSPORT)

        click.echo(f"run {run_id} submitted to {addr}")
        result: Optional[AggregateResult] = None
        try:
            for event in client.stream(run_id):
                _print_event(event)
                if event["event_type"] == RUN_RESULT:
                    result = AggregateResult.from_dict(event["payload"])
        except RemoteTransportError as e:
            click.secho(f"transport error: {e.message}", fg="red", err=True)
            sys.exit(EXIT_TRANSPORT)
        except KeyboardInterrupt:
            click.echo("interrupted: cancelling remote run...", err=True)
            try:
                client.cancel(run_id)
            except RemoteTransportError as e:
                click.echo(f"cancel failed: {e.message}", err=True)
                sys.exit(EXIT_TRANSPORT)
            sys.exit(EXIT_CANCELLED)

    if result is None:
        click.echo("stream ended without a result", err=True)
        sys.exit(EXIT_TRANSPORT)
    _print_summary(result)
    sys.exit(_EXIT_BY_STATUS[result.status])


if __name__ == "__main__":
    main()
