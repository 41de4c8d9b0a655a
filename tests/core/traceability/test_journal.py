# tests/core/traceability/test_journal.py
"""
Testes do RunJournal.

Garantem que:
- `seq` começa em 1 e é denso
- `events_after` devolve exatamente os eventos posteriores a um `seq`
- o estado incremental por Step acompanha started → result
- o journal sobrevive a um round-trip em disco
"""

from pathlib import Path

from conduit.core.pipeline.types import AggregateResult, RunStatus, StepResult, StepStatus, utcnow
from conduit.core.traceability.journal import (
    RUN_RESULT,
    RUN_STARTED,
    STEP_RESULT,
    STEP_STARTED,
    add_event,
    create_journal,
    load_journal,
    run_finished,
    run_started,
    save_journal,
    step_finished,
    step_started,
)


def _journal():
    return create_journal(
        run_id="r1",
        pipeline="demo",
        started_at=utcnow(),
        conduit_version="0.0.0",
        definition_digest="abc",
        config_hash="cfg",
    )


def _fill(journal):
    now = utcnow()
    run_started(journal)
    step_started(journal, step_id="a", kind="fn")
    result = StepResult(step_id="a", kind="fn", status=StepStatus.SUCCEEDED, output={"n": 1},
                        started_at=now, finished_at=utcnow(), attempts=1, summary="ok")
    step_finished(journal, result=result)
    run_finished(journal, result=AggregateResult(
        run_id="r1", pipeline="demo", status=RunStatus.SUCCEEDED, steps={"a": result},
        started_at=now, finished_at=utcnow(),
    ))
    return journal


def test_new_journal_has_no_events():
    j = _journal()
    assert j.events == []
    assert j.last_seq == 0
    assert not j.finished
    assert j.inputs == {"definition_digest": "abc", "config_hash": "cfg"}


def test_seq_is_dense_and_run_result_is_last():
    j = _fill(_journal())

    assert [e["seq"] for e in j.events] == [1, 2, 3, 4]
    assert [e["event_type"] for e in j.events] == [RUN_STARTED, STEP_STARTED, STEP_RESULT, RUN_RESULT]
    assert j.finished
    assert j.run["status"] == "succeeded"


def test_events_after():
    j = _fill(_journal())

    assert [e["seq"] for e in j.events_after(0)] == [1, 2, 3, 4]
    assert [e["seq"] for e in j.events_after(2)] == [3, 4]
    assert j.events_after(4) == []
    assert j.events_after(99) == []


def test_events_after_returns_copies():
    j = _fill(_journal())
    j.events_after(0)[0]["event_type"] = "tampered"
    assert j.events[0]["event_type"] == RUN_STARTED


def test_step_state_tracks_lifecycle():
    j = _journal()
    step_started(j, step_id="a", kind="fn")
    assert j.steps["a"]["status"] == "running"

    _fill(j)
    assert j.steps["a"]["status"] == "succeeded"
    assert j.steps["a"]["attempts"] == 1
    assert j.steps["a"]["duration_ms"] >= 0


def test_add_event_optional_fields():
    j = _journal()
    ev = add_event(j, event_type="custom")
    assert ev == {"seq": 1, "event_type": "custom", "timestamp": ev["timestamp"]}
    assert "step_id" not in ev


def test_save_and_load_round_trip(tmp_path: Path):
    """O journal salvo em disco é reconstruído com os mesmos eventos e o payload final."""
    j = _fill(_journal())
    path = tmp_path / "runs" / "r1.json"

    save_journal(j, path)
    loaded = load_journal(path)

    assert loaded.to_dict() == j.to_dict()
    final = AggregateResult.from_dict(loaded.events[-1]["payload"])
    assert final.status == RunStatus.SUCCEEDED
    assert final.steps["a"].output == {"n": 1}
