"""
Serviço remoto do Conduit.

    - server   → PipelineServer: fila, execução e journal de runs
    - app      → adaptador FastAPI (`create_app`)
    - protocol → modelos pydantic e codificação NDJSON
    - client   → RemoteClient (httpx) com stream retomável
"""
