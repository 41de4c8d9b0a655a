# src/conduit/core/__init__.py
"""
Core do Conduit.

Este pacote reúne a implementação canônica, independente de transporte,
do motor de execução:

    - config       → resolução de configuração (defaults, arquivo, ambiente)
    - pipeline     → contrato de Step, tipos de resultado, contexto de execução
    - engine       → construção do Plan e execução coordenada de Steps
    - traceability → journal ordenado de eventos de uma run

Princípios fundamentais:
    - O mesmo Executor atende execução local e remota
    - Erros de construção nunca executam Steps parcialmente
    - Estado mutável é isolado por run

Limites explícitos:
    - Não depende de HTTP, CLI ou de kinds concretos de Step
"""
