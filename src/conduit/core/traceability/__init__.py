# src/conduit/core/traceability/__init__.py
"""
Pacote de rastreabilidade do Conduit: o run journal.

API pública exposta:
    - RunJournal     → estrutura canônica do journal
    - create_journal → criação explícita
    - add_event      → registro de eventos com `seq`
    - step_started / step_finished / run_started / run_finished
    - save_journal / load_journal → persistência JSON

Nenhum evento é emitido implicitamente; a ordem do log é a ordem de chamada.
"""

from .journal import (
    RUN_RESULT,
    RUN_STARTED,
    STEP_RESULT,
    STEP_STARTED,
    RunJournal,
    add_event,
    create_journal,
    load_journal,
    run_finished,
    run_started,
    save_journal,
    step_finished,
    step_started,
)

__all__ = [
    "RUN_RESULT",
    "RUN_STARTED",
    "STEP_RESULT",
    "STEP_STARTED",
    "RunJournal",
    "add_event",
    "create_journal",
    "load_journal",
    "run_finished",
    "run_started",
    "save_journal",
    "step_finished",
    "step_started",
]
