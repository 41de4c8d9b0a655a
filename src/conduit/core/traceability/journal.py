# src/conduit/core/traceability/journal.py
"""
Run journal — registro ordenado e numerado dos eventos de uma run.

O journal consolida, de forma determinística:
    - metadados da run (run_id, pipeline, started_at, versão)
    - hashes de entrada (digest da definição, hash da configuração)
    - estado incremental dos Steps
    - Event Log ordenado, com número de sequência (`seq`) monotônico

O `seq` é a base do streaming remoto: o servidor entrega eventos com
`seq > after` e o cliente retoma a partir do último `seq` visto, sem
duplicar eventos.

Tipos de evento emitidos pelo Executor:
    - run_started
    - step_started   (payload: kind)
    - step_result    (payload: StepResult.to_dict())
    - run_result     (payload: AggregateResult.to_dict()); sempre o último

Invariantes:
    - `seq` começa em 1 e cresce de 1 em 1
    - Eventos nunca são reordenados ou removidos
    - A estrutura é serializável e reconstruível (round-trip JSON)

Limites explícitos:
    - Não executa pipeline
    - Não é thread-safe por si só; o ExecutionContext serializa as escritas
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from conduit.core.pipeline.types import AggregateResult, StepResult, to_iso, utcnow

STEP_STARTED = "step_started"
STEP_RESULT = "step_result"
RUN_STARTED = "run_started"
RUN_RESULT = "run_result"


@dataclass
class RunJournal:
    """
    Journal de uma run.

    Campos principais:
        - run: metadados da execução
        - inputs: digest da definição e hash de configuração
        - steps: estado incremental por Step
        - events: Event Log ordenado por `seq`
    """

    run: Dict[str, Any]
    inputs: Dict[str, Any]
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def last_seq(self) -> int:
        return int(self.events[-1]["seq"]) if self.events else 0

    @property
    def finished(self) -> bool:
        return bool(self.events) and self.events[-1]["event_type"] == RUN_RESULT

    def events_after(self, seq: int) -> List[Dict[str, Any]]:
        """Eventos com `seq > seq`, na ordem do log."""
        # seq é denso e começa em 1, então o índice é direto
        start = max(0, int(seq))
        return [dict(e) for e in self.events[start:]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run": dict(self.run),
            "inputs": dict(self.inputs),
            "steps": {k: dict(v) for k, v in self.steps.items()},
            "events": [dict(e) for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunJournal":
        return cls(
            run=dict(data.get("run", {})),
            inputs=dict(data.get("inputs", {})),
            steps={k: dict(v) for k, v in (data.get("steps", {}) or {}).items()},
            events=[dict(e) for e in (data.get("events", []) or [])],
        )


def create_journal(
    *,
    run_id: str,
    pipeline: str,
    started_at: datetime,
    conduit_version: str,
    definition_digest: str,
    config_hash: Optional[str] = None,
) -> RunJournal:
    """Cria o journal inicial. Nenhum evento é emitido implicitamente."""
    return RunJournal(
        run={
            "run_id": run_id,
            "pipeline": pipeline,
            "started_at": to_iso(started_at),
            "conduit_version": conduit_version,
        },
        inputs={
            "definition_digest": definition_digest,
            "config_hash": config_hash,
        },
    )


def add_event(
    journal: RunJournal,
    *,
    event_type: str,
    ts: Optional[datetime] = None,
    step_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Anexa um evento ao log, atribuindo o próximo `seq`, e devolve o evento."""
    ev: Dict[str, Any] = {
        "seq": journal.last_seq + 1,
        "event_type": event_type,
        "timestamp": to_iso(ts or utcnow()),
    }
    if step_id is not None:
        ev["step_id"] = step_id
    if payload is not None:
        ev["payload"] = payload
    journal.events.append(ev)
    return ev


def run_started(journal: RunJournal, *, ts: Optional[datetime] = None) -> Dict[str, Any]:
    return add_event(journal, event_type=RUN_STARTED, ts=ts, payload={"pipeline": journal.run.get("pipeline")})


def step_started(
    journal: RunJournal,
    *,
    step_id: str,
    kind: str,
    ts: Optional[datetime] = None,
) -> Dict[str, Any]:
    ts = ts or utcnow()
    journal.steps.setdefault(step_id, {}).update(
        {
            "step_id": step_id,
            "kind": kind,
            "status": "running",
            "started_at": to_iso(ts),
        }
    )
    return add_event(journal, event_type=STEP_STARTED, ts=ts, step_id=step_id, payload={"kind": kind})


def step_finished(journal: RunJournal, *, result: StepResult) -> Dict[str, Any]:
    """Registra o StepResult final (qualquer status) e emite `step_result`."""
    s = journal.steps.setdefault(result.step_id, {"step_id": result.step_id})
    s.update(
        {
            "kind": result.kind,
            "status": result.status.value,
            "started_at": to_iso(result.started_at),
            "finished_at": to_iso(result.finished_at),
            "duration_ms": result.duration_ms,
            "attempts": result.attempts,
            "summary": result.summary,
        }
    )
    if result.error is not None:
        s["error"] = dict(result.error)
    return add_event(
        journal,
        event_type=STEP_RESULT,
        ts=result.finished_at,
        step_id=result.step_id,
        payload=result.to_dict(),
    )


def run_finished(journal: RunJournal, *, result: AggregateResult) -> Dict[str, Any]:
    journal.run.update({"status": result.status.value, "finished_at": to_iso(result.finished_at)})
    return add_event(journal, event_type=RUN_RESULT, ts=result.finished_at, payload=result.to_dict())


def save_journal(journal: RunJournal, path: Union[str, Path]) -> None:
    """Persiste o journal em JSON determinístico (chaves ordenadas)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(journal.to_dict(), ensure_ascii=False, sort_keys=True, indent=2, default=str),
        encoding="utf-8",
    )


def load_journal(path: Union[str, Path]) -> RunJournal:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return RunJournal.from_dict(data)
