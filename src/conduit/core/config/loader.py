# src/conduit/core/config/loader.py
"""
Loader canônico de configuração do Conduit.

Responsabilidades do módulo:
    - Ler documentos YAML/JSON do disco (`load_document`), usado tanto para
      arquivos de configuração quanto para definições de pipeline
    - Resolver a configuração efetiva em camadas (`load_config`)
    - Ler overrides de ambiente `CONDUIT_*` via pydantic-settings (`EnvOverrides`)
    - Validar o dicionário resolvido como `Settings` tipado (`load_settings`)
    - Calcular o hash canônico da configuração efetiva

Invariantes:
    - O resultado de `load_config` é sempre um dict novo
    - `DEFAULT_CONFIG` nunca é mutado
    - A mesma entrada (arquivo + ambiente) produz a mesma configuração e o mesmo hash
    - Todo valor inválido (arquivo ou ambiente) vira `ConfigError`; nunca
      TypeError/ValueError cru

Limites explícitos:
    - Não valida semântica de pipelines
    - Não interage com Executor ou servidor diretamente
"""

from __future__ import annotations

import hashlib
import json
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml  # PyYAML
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import (
    ConfigNotFoundError,
    ConfigParseError,
    ConfigTypeConflictError,
    InvalidConfigRootTypeError,
    UnsupportedConfigFormatError,
)
from .merge import merge_layers

CONFIG_ENV_VAR = "CONDUIT_CONFIG"

DEFAULT_CONFIG: Dict[str, Any] = {
    "engine": {
        "max_concurrency": 4,
        "grace_period": 5.0,
        "fail_fast": False,
        "log_level": "INFO",
    },
    "step_defaults": {
        # 1 dia
        "timeout": 86400.0,
        "retry": {
            "max_attempts": 1,
            "backoff": 0.0,
            "multiplier": 2.0,
            "max_backoff": 60.0,
        },
    },
    "server": {
        "addr": "127.0.0.1:8838",
        "max_concurrent_runs": 2,
        "max_records": 1000,
        "workdir": None,
    },
    "client": {
        "max_reconnects": 5,
        "reconnect_backoff": 0.5,
        "timeout": 30.0,
    },
}


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
    )


def load_document(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Carrega um documento YAML ou JSON e valida que a raiz é um dicionário.

    Arquivos vazios são interpretados como `{}`.

    Raises:
        ConfigNotFoundError: Se o arquivo não existir.
        UnsupportedConfigFormatError: Se a extensão não for suportada.
        ConfigParseError: Se o conteúdo não for YAML/JSON válido.
        InvalidConfigRootTypeError: Se a raiz não for um dicionário.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigNotFoundError(f"Arquivo não encontrado: {path}")

    suffix = path.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise UnsupportedConfigFormatError(f"Formato não suportado: {path.suffix}")

    with path.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f) if suffix == ".json" else yaml.safe_load(f)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigParseError(f"Não foi possível ler {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidConfigRootTypeError(
            f"Documento raiz deve ser dict, recebido: {type(data).__name__}"
        )
    return data


# ---------------------------------------------------------------------------
# Camada de ambiente
# ---------------------------------------------------------------------------

class EnvOverrides(BaseSettings):
    """
    Variáveis `CONDUIT_*` reconhecidas.

    Campos ausentes (ou vazios) valem None e não entram na camada de
    overrides; a coerção de tipos é feita pelo pydantic.
    """

    model_config = SettingsConfigDict(env_prefix="CONDUIT_", env_ignore_empty=True, extra="ignore")

    config: Optional[str] = None
    max_concurrency: Optional[int] = None
    grace_period: Optional[float] = None
    fail_fast: Optional[bool] = None
    log_level: Optional[str] = None
    default_timeout: Optional[float] = None
    retry_max_attempts: Optional[int] = None
    retry_backoff: Optional[float] = None
    server_addr: Optional[str] = None
    max_concurrent_runs: Optional[int] = None
    workdir: Optional[str] = None


# campo de EnvOverrides → caminho na configuração
ENV_PATHS: Dict[str, Tuple[str, ...]] = {
    "max_concurrency": ("engine", "max_concurrency"),
    "grace_period": ("engine", "grace_period"),
    "fail_fast": ("engine", "fail_fast"),
    "log_level": ("engine", "log_level"),
    "default_timeout": ("step_defaults", "timeout"),
    "retry_max_attempts": ("step_defaults", "retry", "max_attempts"),
    "retry_backoff": ("step_defaults", "retry", "backoff"),
    "server_addr": ("server", "addr"),
    "max_concurrent_runs": ("server", "max_concurrent_runs"),
    "workdir": ("server", "workdir"),
}


def read_env() -> EnvOverrides:
    try:
        return EnvOverrides()
    except ValidationError as e:
        raise ConfigTypeConflictError(f"override de ambiente inválido: {_describe(e)}") from e


def env_overrides(env: Optional[EnvOverrides] = None) -> Dict[str, Any]:
    """Converte as variáveis `CONDUIT_*` presentes em uma camada de configuração."""
    if env is None:
        env = read_env()
    layer: Dict[str, Any] = {}
    for name, value in env.model_dump(exclude_none=True).items():
        path = ENV_PATHS.get(name)
        if path is None:
            continue
        node = layer
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return layer


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Resolve a configuração efetiva: defaults → arquivo → ambiente.

    Se `path` não for informado, `CONDUIT_CONFIG` é consultado. Um caminho
    informado explicitamente precisa existir.

    Raises:
        ConfigNotFoundError: Se o arquivo indicado não existir.
        ConfigTypeConflictError: Se houver conflito de tipos entre camadas.
    """
    env = read_env()
    layers = [deepcopy(DEFAULT_CONFIG)]

    path = path or env.config or None
    if path is not None:
        layers.append(load_document(path))

    layers.append(env_overrides(env))
    return merge_layers(layers)


def compute_config_hash(config: Dict[str, Any]) -> str:
    """SHA-256 hexadecimal do JSON canônico (chaves ordenadas, separadores compactos)."""
    if not isinstance(config, dict):
        raise TypeError(f"Config para hashing deve ser dict, recebido: {type(config).__name__}")
    canonical = json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Visão tipada
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_concurrency: int = Field(4, ge=1)
    grace_period: float = Field(5.0, ge=0)
    fail_fast: bool = False
    log_level: str = "INFO"
    default_timeout: float = Field(86400.0, gt=0)
    retry_max_attempts: int = Field(1, ge=1)
    retry_backoff: float = Field(0.0, ge=0)
    retry_multiplier: float = Field(2.0, ge=1)
    retry_max_backoff: float = Field(60.0, ge=0)

    @field_validator("log_level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()


class ServerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    addr: str = "127.0.0.1:8838"
    max_concurrent_runs: int = Field(2, ge=1)
    max_records: int = Field(1000, ge=1)
    workdir: Optional[str] = None


class ClientSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_reconnects: int = Field(5, ge=0)
    reconnect_backoff: float = Field(0.5, ge=0)
    timeout: float = Field(30.0, gt=0)


def _validate(model: type, section: str, data: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigTypeConflictError(f"configuração inválida em {section}: {_describe(e)}") from e


class Settings(BaseModel):
    """Visão tipada da configuração efetiva."""

    model_config = ConfigDict(frozen=True)

    engine: EngineSettings
    server: ServerSettings
    client: ClientSettings
    config_hash: str

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Settings":
        """
        Valida a configuração resolvida.

        `step_defaults.timeout` e `step_defaults.retry.*` são achatados em
        `engine.default_timeout` e `engine.retry_*`.

        Raises:
            ConfigTypeConflictError: Se algum valor não tiver o tipo ou a faixa esperada.
        """
        engine = dict(config.get("engine") or {})
        defaults = config.get("step_defaults") or {}
        if "timeout" in defaults:
            engine["default_timeout"] = defaults["timeout"]
        for key, value in (defaults.get("retry") or {}).items():
            engine[f"retry_{key}"] = value

        return cls(
            engine=_validate(EngineSettings, "engine", engine),
            server=_validate(ServerSettings, "server", config.get("server") or {}),
            client=_validate(ClientSettings, "client", config.get("client") or {}),
            config_hash=compute_config_hash(config),
        )


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Atalho: `load_config` seguido de `Settings.from_config`."""
    return Settings.from_config(load_config(path))
