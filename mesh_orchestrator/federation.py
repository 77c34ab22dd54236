"""Mesh federation: link every brought-up cluster to every other one.

Runs after all bring-ups have settled. The mesh config is built from the
successful clusters only, stored once under ``mesh:clusters`` and handed to
each cluster's mesh stacks, which link to every entry except their own.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from mesh_orchestrator.config_map import ConfigEntry, ConfigMap, layer_config
from mesh_orchestrator.errors import ConfigurationError
from mesh_orchestrator.executor import StackExecutor
from mesh_orchestrator.models import ClusterDescriptor, MeshClusterEntry
from mesh_orchestrator.shared_config import SharedConfig
from mesh_orchestrator.stacks import StackModule
from mesh_orchestrator.task_group import SettledResults

logger = logging.getLogger(__name__)

MESH_CLUSTERS_KEY = "mesh:clusters"
MESH_OWNER = "mesh"

_mesh_config_adapter = TypeAdapter(list[MeshClusterEntry])


def build_mesh_config(clusters: Iterable[ClusterDescriptor]) -> list[MeshClusterEntry]:
    return [cluster.mesh for cluster in clusters]


def serialize_mesh_config(mesh: Sequence[MeshClusterEntry]) -> ConfigEntry:
    """JSON-encode the mesh config as one secret config value."""
    payload = [entry.model_dump(by_alias=True, exclude_none=True) for entry in mesh]
    return ConfigEntry(value=json.dumps(payload), secret=True)


def parse_mesh_config(value: str) -> list[MeshClusterEntry]:
    try:
        return _mesh_config_adapter.validate_json(value)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {MESH_CLUSTERS_KEY}: {e}") from e


def peer_entries(mesh: Iterable[MeshClusterEntry], local_cluster_name: str) -> list[MeshClusterEntry]:
    """Entries a cluster links to: every one but its own."""
    return [entry for entry in mesh if entry.cluster_name != local_cluster_name]


class MeshFederation:
    """Runs the mesh stacks of every successfully brought-up cluster.

    Args:
        executor: Stack executor shared by the run
        shared: Shared root config; receives ``mesh:clusters``
        modules: Mesh stack modules, run in order for each cluster
        stack_name: Base stack name; the cluster's stacks are ``{stack_name}-{cluster}``
        stacks_dir: Parent directory of the per-module Pulumi projects
    """

    def __init__(
        self,
        executor: StackExecutor,
        shared: Optional[SharedConfig],
        modules: Sequence[StackModule],
        stack_name: str,
        stacks_dir: Path,
    ):
        self.executor = executor
        self.shared = shared
        self.modules = list(modules)
        self.stack_name = stack_name
        self.stacks_dir = stacks_dir

    async def federate(self, clusters: Sequence[ClusterDescriptor]) -> SettledResults[list[str]]:
        """Federate ``clusters``.

        Returns:
            Per cluster, the mesh projects converged, or the error that stopped it
        """
        settled: SettledResults[list[str]] = SettledResults()
        if not clusters:
            logger.info("No clusters to federate")
            return settled

        mesh_entry = serialize_mesh_config(build_mesh_config(clusters))
        if self.shared is not None:
            await self.shared.set(MESH_OWNER, MESH_CLUSTERS_KEY, mesh_entry)

        logger.info(
            f"Federating {len(clusters)} cluster(s): {', '.join(c.cluster_name for c in clusters)}"
        )
        for cluster in clusters:
            try:
                settled.successes[cluster.cluster_name] = await self._federate_cluster(
                    cluster, mesh_entry
                )
            except Exception as e:
                logger.error(f"Mesh federation failed for {cluster.cluster_name}: {e}")
                settled.failures[cluster.cluster_name] = e
        return settled

    async def _federate_cluster(self, cluster: ClusterDescriptor, mesh_entry: ConfigEntry) -> list[str]:
        overlay: ConfigMap = layer_config(
            cluster.local_config,
            {
                "cloud:clusterName": ConfigEntry(cluster.cluster_name),
                MESH_CLUSTERS_KEY: mesh_entry,
            },
        )

        stack_name = f"{self.stack_name}-{cluster.cluster_name}"
        converged = []
        for module in self.modules:
            await self.executor.stack_up(
                module.descriptor(stack_name, self.stacks_dir),
                overlay,
                resource_name=f"{stack_name}-{module.project_name}",
                required_config=module.required_config,
                output_namespace=module.output_namespace,
            )
            converged.append(module.project_name)
        return converged
