# src/conduit/core/config/merge.py
"""
Deep-merge de camadas de configuração.

Política:
    - dict + dict → merge recursivo por chave
    - list        → substituição total
    - escalar     → substituição direta
    - None (em qualquer lado) é compatível com qualquer tipo
    - conflito de tipos → `ConfigTypeConflictError`

`int` e `float` são tratados como compatíveis entre si, já que arquivos
YAML frequentemente escrevem `timeout: 30` onde o default é `30.0`.
Nenhum input é mutado.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, Iterable

from .errors import ConfigTypeConflictError

_NUMBER = (int, float)


def _compatible(base_value: Any, override_value: Any) -> bool:
    if base_value is None or override_value is None:
        return True
    if isinstance(base_value, bool) or isinstance(override_value, bool):
        return isinstance(base_value, bool) and isinstance(override_value, bool)
    if isinstance(base_value, _NUMBER) and isinstance(override_value, _NUMBER):
        return True
    return type(base_value) is type(override_value)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any], *, _path: str = "") -> Dict[str, Any]:
    """
    Mescla `override` sobre `base` e retorna um novo dicionário.

    Raises:
        ConfigTypeConflictError: Se uma chave possuir tipos incompatíveis.
    """
    if not isinstance(base, dict) or not isinstance(override, dict):
        raise ConfigTypeConflictError(
            f"Deep-merge requer dicts, recebido: {type(base).__name__} vs {type(override).__name__}"
        )

    result: Dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        where = f"{_path}.{key}" if _path else str(key)
        current = result.get(key)

        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value, _path=where)
        elif isinstance(value, list) or key not in result:
            result[key] = deepcopy(value)
        elif not _compatible(current, value) or isinstance(current, dict) != isinstance(value, dict):
            raise ConfigTypeConflictError(
                f"Conflito de tipo na chave '{where}': "
                f"{type(current).__name__} vs {type(value).__name__}"
            )
        else:
            result[key] = deepcopy(value)
    return result


def merge_layers(layers: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Aplica `deep_merge` em sequência; camadas posteriores vencem."""
    effective: Dict[str, Any] = {}
    for layer in layers:
        effective = deep_merge(effective, layer or {})
    return effective
