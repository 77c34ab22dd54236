"""Cluster and mesh configuration schema and loaders for the mesh programs."""

from dataclasses import dataclass
from typing import Optional

import pulumi

from mesh_orchestrator.federation import parse_mesh_config
from mesh_orchestrator.models import MeshClusterEntry

KUBERNETES_PROVIDERS = ("aks", "digitalocean", "gke", "lke")


@dataclass
class CloudConfig:
    """The cluster a mesh program runs against."""

    cluster_name: str
    context_name: str
    kubernetes_provider: Optional[str] = None

    # GKE only
    gke_node_tag: Optional[str] = None
    gke_network: Optional[str] = None


@dataclass
class TailscaleConfig:
    """Configuration of the Tailscale overlay program."""

    tailscale_key: pulumi.Output[str]
    enable_cross_cluster: bool = False


def load_cloud_config() -> CloudConfig:
    """Load the ``cloud:`` namespace written by the orchestrator."""
    config = pulumi.Config("cloud")

    kubernetes_provider = config.get("kubernetesProvider")
    if kubernetes_provider is not None and kubernetes_provider not in KUBERNETES_PROVIDERS:
        raise pulumi.RunError(
            f"cloud:kubernetesProvider must be one of {', '.join(KUBERNETES_PROVIDERS)}, "
            f"got '{kubernetes_provider}'"
        )

    cloud = CloudConfig(
        cluster_name=config.require("clusterName"),
        context_name=config.require("contextName"),
        kubernetes_provider=kubernetes_provider,
    )
    if kubernetes_provider == "gke":
        cloud.gke_node_tag = config.get("gkeNodeTag")
        cloud.gke_network = config.get("gkeNetwork")
    return cloud


def load_mesh_clusters() -> list[MeshClusterEntry]:
    """Load every cluster of the mesh from ``mesh:clusters``.

    The value is a secret; the entries are plain here, so callers must wrap
    credential fields in ``pulumi.Output.secret`` before using them.
    """
    return parse_mesh_config(pulumi.Config("mesh").require("clusters"))


def load_tailscale_config() -> TailscaleConfig:
    config = pulumi.Config()
    return TailscaleConfig(
        tailscale_key=config.require_secret("tailscaleKey"),
        enable_cross_cluster=config.get_bool("enableCrossCluster") or False,
    )
