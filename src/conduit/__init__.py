# src/conduit/__init__.py
"""
Conduit — motor de execução de pipelines (workflows) de Steps.

Este pacote raiz define o namespace público do Conduit. Um pipeline é
descrito por um documento declarativo, convertido em um Plan (DAG
validado e estratificado em níveis) e executado pelo Executor, seja
localmente (`conduit run`) ou através de um servidor de longa duração
(`conduit server`) acessado por um cliente fino (`conduit client`).

Arquitetura em alto nível:
    - core.config       → defaults, merge e overrides de configuração
    - core.pipeline     → contrato de Step, tipos, contexto e registry de kinds
    - core.engine       → planejamento (Plan) e execução (Executor)
    - core.traceability → journal de eventos sequenciados por run
    - steps             → kinds embutidos (command, http, pipeline, python)
    - svc               → servidor HTTP, protocolo e cliente remoto

Limites explícitos:
    - Não é um scheduler distribuído (sem bin-packing entre nós)
    - Não persiste filas de execução entre reinícios
    - Não define modelo de sandboxing de Steps
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
