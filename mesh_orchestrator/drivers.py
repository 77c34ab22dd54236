"""Provider cluster drivers.

Each driver converges the provider's project (if any) and cluster stacks and
describes how to obtain credentials for the resulting cluster. Drivers share
one contract; only the stacks, config keys and credential commands differ.
"""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, assert_never


from mesh_orchestrator import stacks
from mesh_orchestrator.config_map import (
    ConfigEntry,
    ConfigMap,
    layer_config,
    namespace_outputs,
    require_value,
)
from mesh_orchestrator.errors import CredentialFetchError
from mesh_orchestrator.executor import StackExecutor
from mesh_orchestrator.kubeconfig import rewrite_kubeconfig
from mesh_orchestrator.models import (
    AksClusterSpec,
    CloudProvider,
    ClusterSpec,
    DigitalOceanClusterSpec,
    GkeClusterSpec,
    LkeClusterSpec,
)
from mesh_orchestrator.shared_config import SharedConfig
from mesh_orchestrator.stacks import StackModule

logger = logging.getLogger(__name__)


class ClusterStacks:
    """Runs the stacks of one cluster in order, accumulating their config.

    Upstream outputs and stack-local overrides are kept apart and layered as
    ``upstream outputs < overrides`` for every stack, so an override always
    wins over an output of an earlier stack under the same key. Outputs are
    also published to the shared root config under ``{cluster}-{namespace}``,
    a key space only this cluster writes.
    """

    def __init__(
        self,
        cluster_name: str,
        stack_name: str,
        stacks_dir: Path,
        executor: StackExecutor,
        shared: Optional[SharedConfig] = None,
    ):
        self.cluster_name = cluster_name
        self.stack_name = stack_name
        self.stacks_dir = stacks_dir
        self.executor = executor
        self.shared = shared
        self.upstream_outputs: ConfigMap = {}
        self.overrides: ConfigMap = {}

    @property
    def local_config(self) -> ConfigMap:
        return layer_config(self.upstream_outputs, self.overrides)

    def override(self, values: dict[str, Optional[str]], secret: bool = False) -> None:
        """Add stack-local overrides; ``None`` values are ignored."""
        entries = {
            key: ConfigEntry(value=value, secret=secret)
            for key, value in values.items()
            if value is not None
        }
        self.overrides = layer_config(self.overrides, entries)

    async def up(self, module: StackModule) -> ConfigMap:
        """Converge ``module`` for this cluster and return its outputs."""
        result = await self.executor.stack_up(
            module.descriptor(self.stack_name, self.stacks_dir),
            self.local_config,
            resource_name=f"{self.stack_name}-{module.project_name}",
            required_config=module.required_config,
            output_namespace=module.output_namespace,
        )
        self.upstream_outputs = layer_config(
            self.upstream_outputs, namespace_outputs(result.output_namespace, result.outputs)
        )
        if self.shared is not None:
            await self.shared.publish(
                self.cluster_name,
                f"{self.cluster_name}-{result.output_namespace}",
                result.outputs,
            )
        return result.outputs


@dataclass
class ProvisionedCluster:
    """A converged cluster and how to get credentials for it."""

    context_name: str
    command: Optional[list[str]] = None
    kubeconfig_text: Optional[str] = None
    kubeconfig: Optional[ConfigEntry] = None


def require_output(outputs: ConfigMap, key: str) -> str:
    return require_value(outputs, key, source="stack output")


def optional_output(outputs: ConfigMap, key: str) -> Optional[str]:
    entry = outputs.get(key)
    return entry.value if entry is not None and entry.value != "" else None


class ClusterDriver(ABC):
    """Provider-specific steps of a cluster bring-up."""

    provider: CloudProvider
    has_project = False

    def __init__(self, spec):
        self.spec = spec

    def cloud_config(self) -> dict[str, Optional[str]]:
        return {
            "cloud:kubernetesProvider": self.provider.value,
            "cloud:clusterName": self.spec.name,
        }

    async def provision_project(self, cluster_stacks: ClusterStacks) -> None:
        """Converge the provider project, for providers that have one."""

    @abstractmethod
    async def provision_cluster(self, cluster_stacks: ClusterStacks) -> ProvisionedCluster:
        """Converge the cluster stack and describe its credentials."""


# =============================================================================
# GKE
# =============================================================================


class GkeDriver(ClusterDriver):
    """GKE cluster inside a dedicated GCP project."""

    provider = CloudProvider.GKE
    has_project = True

    def __init__(self, spec: GkeClusterSpec):
        super().__init__(spec)
        self.project_id: Optional[str] = None

    async def provision_project(self, cluster_stacks: ClusterStacks) -> None:
        spec = self.spec
        cluster_stacks.override(
            {
                **self.cloud_config(),
                "gcp:region": spec.region,
                "google-native:region": spec.region,
                "gcp:zone": spec.location if spec.zone else None,
                "google-native:zone": spec.location if spec.zone else None,
                "infra-gcp-project:optionalBillingAccountId": spec.billing_account_id,
                "infra-gcp-project:optionalFolderId": spec.folder_id,
            }
        )

        outputs = await cluster_stacks.up(stacks.GCP_PROJECT)
        self.project_id = require_output(outputs, "projectId")
        cluster_stacks.override(
            {"gcp:project": self.project_id, "google-native:project": self.project_id}
        )

    async def provision_cluster(self, cluster_stacks: ClusterStacks) -> ProvisionedCluster:
        spec = self.spec
        cluster_stacks.override(
            {
                "infra-gke-cluster:location": spec.location,
                "infra-gke-cluster:locationType": spec.location_type,
            }
        )

        outputs = await cluster_stacks.up(stacks.GKE_CLUSTER)
        name = require_output(outputs, "name")
        location = optional_output(outputs, "location") or spec.location
        location_type = optional_output(outputs, "locationType") or spec.location_type
        project_id = self.project_id or require_output(outputs, "project")

        cluster_stacks.override(
            {
                "cloud:gkeNodeTag": optional_output(outputs, "gkeNodeTag"),
                "cloud:gkeNetwork": optional_output(outputs, "network"),
            }
        )

        return ProvisionedCluster(
            context_name=f"gke_{project_id}_{location}_{name}",
            command=[
                "gcloud",
                "--project",
                project_id,
                "container",
                "clusters",
                "get-credentials",
                name,
                f"--{location_type}",
                location,
            ],
            kubeconfig=outputs.get("kubeconfig"),
        )


# =============================================================================
# AKS
# =============================================================================


class AksDriver(ClusterDriver):
    provider = CloudProvider.AKS

    async def provision_cluster(self, cluster_stacks: ClusterStacks) -> ProvisionedCluster:
        cluster_stacks.override(
            {**self.cloud_config(), "infra-azure-cluster:location": self.spec.location}
        )

        outputs = await cluster_stacks.up(stacks.AZURE_CLUSTER)
        subscription_id = require_output(outputs, "subscriptionId")
        resource_group = require_output(outputs, "resourceGroupName")
        name = require_output(outputs, "clusterName")

        return ProvisionedCluster(
            context_name=name,
            command=[
                "az",
                "aks",
                "get-credentials",
                "--subscription",
                subscription_id,
                "--resource-group",
                resource_group,
                "--name",
                name,
            ],
            kubeconfig=outputs.get("kubeconfig"),
        )


# =============================================================================
# DIGITALOCEAN
# =============================================================================


class DigitalOceanDriver(ClusterDriver):
    provider = CloudProvider.DIGITALOCEAN

    async def provision_cluster(self, cluster_stacks: ClusterStacks) -> ProvisionedCluster:
        cluster_stacks.override(
            {**self.cloud_config(), "infra-do-cluster:region": self.spec.region}
        )

        outputs = await cluster_stacks.up(stacks.DO_CLUSTER)
        name = require_output(outputs, "clusterName")
        region = optional_output(outputs, "region") or self.spec.region

        return ProvisionedCluster(
            context_name=f"do-{region}-{name}",
            command=["doctl", "kubernetes", "cluster", "kubeconfig", "save", name],
            kubeconfig=outputs.get("kubeconfig"),
        )


# =============================================================================
# LINODE
# =============================================================================


class LkeDriver(ClusterDriver):
    """LKE exposes the admin kubeconfig as a base64 stack output; no CLI needed."""

    provider = CloudProvider.LKE

    async def provision_cluster(self, cluster_stacks: ClusterStacks) -> ProvisionedCluster:
        cluster_stacks.override(
            {**self.cloud_config(), "infra-linode-cluster:region": self.spec.region}
        )

        outputs = await cluster_stacks.up(stacks.LINODE_CLUSTER)
        encoded = require_output(outputs, "kubeconfig")
        context_name = optional_output(outputs, "contextName") or f"lke-{self.spec.name}"

        try:
            text = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise CredentialFetchError(self.spec.name, f"kubeconfig output is not base64: {e}") from e

        kubeconfig_text = rewrite_kubeconfig(text, context_name)
        return ProvisionedCluster(
            context_name=context_name,
            kubeconfig_text=kubeconfig_text,
            kubeconfig=ConfigEntry(value=kubeconfig_text, secret=True),
        )


def driver_for(spec: ClusterSpec) -> ClusterDriver:
    """Pick the driver for a cluster spec."""
    match spec:
        case GkeClusterSpec():
            return GkeDriver(spec)
        case AksClusterSpec():
            return AksDriver(spec)
        case DigitalOceanClusterSpec():
            return DigitalOceanDriver(spec)
        case LkeClusterSpec():
            return LkeDriver(spec)
        case _:
            assert_never(spec)
