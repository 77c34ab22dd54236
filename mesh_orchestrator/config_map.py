"""Configuration maps and the layering rules used to propagate stack outputs.

Every stack receives one flat ``ConfigMap`` keyed ``"{namespace}:{key}"``.
It is built by layering, later layers winning on collision:

1. the shared root configuration,
2. upstream stack outputs, namespaced under the producer's output namespace,
3. stack-local overrides.
"""

import json
from dataclasses import dataclass
from functools import reduce
from typing import Any, Iterable, Mapping, Optional

from mesh_orchestrator.errors import ConfigurationError

SECRET_PLACEHOLDER = "[secret]"


@dataclass(frozen=True)
class ConfigEntry:
    """A single configuration value or stack output."""

    value: str
    secret: bool = False

    def __repr__(self) -> str:
        shown = SECRET_PLACEHOLDER if self.secret else repr(self.value)
        return f"ConfigEntry(value={shown}, secret={self.secret})"


ConfigMap = dict[str, ConfigEntry]


def merge_config(base: Mapping[str, ConfigEntry], overlay: Mapping[str, ConfigEntry]) -> ConfigMap:
    """Merge two config maps, right-biased on key collision.

    Pure and associative: neither argument is modified.
    """
    return {**base, **overlay}


def layer_config(*layers: Mapping[str, ConfigEntry]) -> ConfigMap:
    """Fold any number of config layers left to right with ``merge_config``."""
    return reduce(merge_config, layers, {})


def config_key(namespace: str, key: str) -> str:
    return f"{namespace}:{key}"


def split_key(key: str) -> tuple[str, str]:
    """Split ``"namespace:key"``; keys without a namespace raise ``ValueError``."""
    namespace, sep, name = key.partition(":")
    if not sep or not namespace or not name:
        raise ValueError(f"Config key '{key}' is not of the form 'namespace:key'")
    return namespace, name


def namespace_outputs(namespace: str, outputs: Mapping[str, Optional[ConfigEntry]]) -> ConfigMap:
    """Project a stack's outputs into ``namespace``.

    Outputs without a value are dropped. Secret flags are preserved.
    """
    return {
        config_key(namespace, key): entry
        for key, entry in outputs.items()
        if entry is not None and entry.value is not None
    }


def entry_from_value(value: Any, secret: bool = False) -> ConfigEntry:
    """Build an entry from an arbitrary engine value.

    Non-string values are JSON encoded, mirroring how the engine stores
    structured configuration.
    """
    if isinstance(value, str):
        return ConfigEntry(value=value, secret=secret)
    return ConfigEntry(value=json.dumps(value), secret=secret)


def require_value(config: Mapping[str, ConfigEntry], key: str, source: str = "config") -> str:
    """Return the value under ``key`` or raise ``ConfigurationError``."""
    entry = config.get(key)
    if entry is None or entry.value in (None, ""):
        raise ConfigurationError(f"Missing required {source} value '{key}'")
    return entry.value


def missing_keys(config: Mapping[str, ConfigEntry], required: Iterable[str]) -> list[str]:
    return [key for key in required if key not in config or config[key].value == ""]


def redact(config: Mapping[str, ConfigEntry]) -> dict[str, str]:
    """Plain ``key -> value`` view safe to log or persist."""
    return {
        key: SECRET_PLACEHOLDER if entry.secret else entry.value
        for key, entry in config.items()
    }
