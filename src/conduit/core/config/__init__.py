# src/conduit/core/config/__init__.py
"""
Camada de configuração do Conduit.

A configuração efetiva é resolvida em camadas, sempre na mesma ordem:

    1. defaults embutidos (`DEFAULT_CONFIG`)
    2. arquivo opcional (YAML ou JSON) via deep-merge
    3. overrides de ambiente (`CONDUIT_*`)

O resultado é um dicionário puro, convertido em `Settings` tipado para o
Executor, o servidor e o cliente. Valores declarados em um StepSpec
sempre têm precedência sobre os defaults configurados.

Limites explícitos:
    - Não interpreta o documento de definição do pipeline
    - Não executa pipeline
"""

from .errors import (
    ConfigError,
    ConfigNotFoundError,
    ConfigParseError,
    ConfigTypeConflictError,
    InvalidConfigRootTypeError,
    UnsupportedConfigFormatError,
)
from .loader import DEFAULT_CONFIG, Settings, load_config, load_document, load_settings
from .merge import deep_merge

__all__ = [
    "ConfigError",
    "ConfigNotFoundError",
    "ConfigParseError",
    "ConfigTypeConflictError",
    "InvalidConfigRootTypeError",
    "UnsupportedConfigFormatError",
    "DEFAULT_CONFIG",
    "Settings",
    "deep_merge",
    "load_config",
    "load_document",
    "load_settings",
]
