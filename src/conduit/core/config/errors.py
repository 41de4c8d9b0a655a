# src/conduit/core/config/errors.py
"""
Exceções da camada de configuração do Conduit.

Todas herdam de `ConfigError`, permitindo captura genérica no CLI sem
confundir falhas de configuração com falhas de construção do Plan ou de
execução de Steps.
"""


class ConfigError(Exception):
    """Exceção base para erros de configuração."""


class ConfigNotFoundError(ConfigError):
    """
    Arquivo de configuração (ou documento) explicitamente indicado não existe.

    Um caminho informado pelo operador nunca é ignorado silenciosamente.
    """


class UnsupportedConfigFormatError(ConfigError):
    """
    Extensão de arquivo não suportada.

    Formatos suportados:
        - YAML (.yaml, .yml)
        - JSON (.json)
    """


class InvalidConfigRootTypeError(ConfigError):
    """O conteúdo raiz do documento não é um mapa chave-valor."""


class ConfigTypeConflictError(ConfigError):
    """
    Conflito de tipos durante o deep-merge ou na coerção de override de ambiente.

    Exemplo:
        - base:     {"engine": {"max_concurrency": 4}}
        - override: {"engine": "fast"}
    """


class ConfigParseError(ConfigError):
    """O documento existe mas não é YAML/JSON válido."""
