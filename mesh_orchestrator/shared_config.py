"""Shared root configuration of a run.

Loaded once from the root stack, then extended while bring-ups run: each
bring-up publishes its stacks' outputs under namespaces it owns, and mesh
federation publishes ``mesh:clusters``. Writes go through one lock and are
mirrored to the root stack so later runs start from them.
"""

import asyncio
import logging
from typing import Mapping, Optional

from mesh_orchestrator.config_map import (
    ConfigEntry,
    ConfigMap,
    namespace_outputs,
    split_key,
)
from mesh_orchestrator.engine import Engine, StackHandle
from mesh_orchestrator.models import StackDescriptor

logger = logging.getLogger(__name__)


class SharedConfig:
    """Root configuration shared by every stack in a run."""

    def __init__(self, initial: Optional[ConfigMap] = None, handle: Optional[StackHandle] = None):
        self._config: ConfigMap = dict(initial or {})
        self._handle = handle
        self._owners: dict[str, str] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, engine: Engine, descriptor: StackDescriptor) -> "SharedConfig":
        """Select the root stack and read its configuration."""
        handle = await engine.select_or_create_stack(descriptor)
        initial = await handle.get_all_config()
        logger.info("Loaded %d shared config keys from %s", len(initial), descriptor)
        return cls(initial, handle)

    def snapshot(self) -> ConfigMap:
        return dict(self._config)

    def get(self, key: str) -> Optional[ConfigEntry]:
        return self._config.get(key)

    async def publish(self, owner: str, namespace: str, outputs: Mapping[str, ConfigEntry]) -> ConfigMap:
        """Write ``outputs`` under ``namespace`` on behalf of ``owner``.

        A namespace belongs to the first owner that writes it; any other
        owner writing there raises ``ValueError``.

        Returns:
            The namespaced entries that were written
        """
        entries = namespace_outputs(namespace, outputs)
        async with self._lock:
            current = self._owners.setdefault(namespace, owner)
            if current != owner:
                raise ValueError(
                    f"Namespace '{namespace}' is owned by '{current}', not '{owner}'"
                )
            for key, entry in entries.items():
                await self._write(key, entry)
        return entries

    async def set(self, owner: str, key: str, entry: ConfigEntry) -> None:
        """Write a single key, subject to the same ownership rule as ``publish``."""
        namespace, _ = split_key(key)
        async with self._lock:
            current = self._owners.setdefault(namespace, owner)
            if current != owner:
                raise ValueError(
                    f"Namespace '{namespace}' is owned by '{current}', not '{owner}'"
                )
            await self._write(key, entry)

    async def _write(self, key: str, entry: ConfigEntry) -> None:
        self._config[key] = entry
        if self._handle is not None:
            await self._handle.set_config(key, entry)
