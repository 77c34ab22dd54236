"""Bring-up of one cluster, from cloud project to base services.

States advance strictly in order::

    START -> PROJECT_PROVISIONED (providers with a project) -> CLUSTER_PROVISIONED
          -> KUBECONFIG_REGISTERED -> BASE_SERVICES_DEPLOYED -> DONE

Any error aborts the bring-up in its current state; earlier stacks are left
converged and the next run resumes from the engine's recorded state.
"""

import logging
from pathlib import Path
from typing import Optional

from mesh_orchestrator import stacks
from mesh_orchestrator.config_map import ConfigEntry, ConfigMap
from mesh_orchestrator.drivers import ClusterDriver, ClusterStacks, driver_for, optional_output
from mesh_orchestrator.executor import StackExecutor
from mesh_orchestrator.kubeconfig import KubeconfigRegistrar
from mesh_orchestrator.models import (
    BringUpState,
    ClusterDescriptor,
    ClusterSpec,
    MeshClusterEntry,
)
from mesh_orchestrator.shared_config import SharedConfig

logger = logging.getLogger(__name__)


class ClusterBringUp:
    """Brings one cluster up and describes it for mesh federation.

    Args:
        spec: Cluster to bring up
        executor: Stack executor shared by the run
        registrar: Registers the cluster's context in the local kubeconfig
        stack_name: Base stack name; the cluster's stacks are ``{stack_name}-{cluster}``
        stacks_dir: Parent directory of the per-module Pulumi projects
        shared: Shared root config the cluster's outputs are published to
    """

    def __init__(
        self,
        spec: ClusterSpec,
        executor: StackExecutor,
        registrar: KubeconfigRegistrar,
        stack_name: str,
        stacks_dir: Path,
        shared: Optional[SharedConfig] = None,
        driver: Optional[ClusterDriver] = None,
    ):
        self.spec = spec
        self.registrar = registrar
        self.driver = driver or driver_for(spec)
        self.stacks = ClusterStacks(
            cluster_name=spec.name,
            stack_name=f"{stack_name}-{spec.name}",
            stacks_dir=stacks_dir,
            executor=executor,
            shared=shared,
        )
        self.state = BringUpState.START

    @property
    def name(self) -> str:
        return self.spec.name

    def _advance(self, state: BringUpState) -> None:
        logger.info(f"{self.name}: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self) -> ClusterDescriptor:
        """Drive the bring-up to ``DONE``."""
        if self.driver.has_project:
            await self.driver.provision_project(self.stacks)
            self._advance(BringUpState.PROJECT_PROVISIONED)

        provisioned = await self.driver.provision_cluster(self.stacks)
        self._advance(BringUpState.CLUSTER_PROVISIONED)

        exported = await self.registrar.register(
            self.name,
            provisioned.context_name,
            command=provisioned.command,
            kubeconfig=provisioned.kubeconfig_text,
        )
        self._advance(BringUpState.KUBECONFIG_REGISTERED)

        self.stacks.override(
            {
                "kubernetes:context": provisioned.context_name,
                "cloud:contextName": provisioned.context_name,
                "cloud:kubernetesProvider": self.driver.provider.value,
                "cloud:clusterName": self.name,
            }
        )
        trifecta = await self.stacks.up(stacks.K8S_TRIFECTA)
        self._advance(BringUpState.BASE_SERVICES_DEPLOYED)

        kubeconfig = provisioned.kubeconfig or ConfigEntry(value=exported, secret=True)
        descriptor = ClusterDescriptor(
            cluster_name=self.name,
            context_name=provisioned.context_name,
            kubeconfig=ConfigEntry(value=kubeconfig.value, secret=True),
            provider=self.driver.provider,
            local_config=dict(self.stacks.local_config),
            mesh=mesh_entry(self.name, self.spec.tailscale_port, trifecta),
        )
        self._advance(BringUpState.DONE)
        return descriptor


def mesh_entry(cluster_name: str, tailscale_port: Optional[int], trifecta_outputs: ConfigMap) -> MeshClusterEntry:
    """Mesh identity of a cluster from its base services' outputs."""
    return MeshClusterEntry(
        cluster_name=cluster_name,
        tailscale_port=tailscale_port,
        istio_remote_secret_data=optional_output(trifecta_outputs, "istioRemoteSecretData"),
        linkerd_remote_secret_data=optional_output(trifecta_outputs, "linkerdRemoteSecretData"),
        linkerd_gateway_fqdn=optional_output(trifecta_outputs, "linkerdGatewayFqdn"),
    )
