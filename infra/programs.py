"""Pulumi programs of the mesh stacks, one function per project."""

import pulumi

from infra.components import IstioMesh, LinkerdMesh, Tailscale
from infra.config import load_cloud_config, load_mesh_clusters, load_tailscale_config
from infra.providers import create_k8s_provider


def istio_mesh() -> None:
    cloud = load_cloud_config()
    clusters = load_mesh_clusters()

    mesh = IstioMesh(
        name=cloud.cluster_name,
        cluster_name=cloud.cluster_name,
        clusters=clusters,
        k8s_provider=create_k8s_provider(cloud),
    )

    pulumi.export("istioPeers", sorted(mesh.remote_secrets))


def linkerd_mesh() -> None:
    cloud = load_cloud_config()
    clusters = load_mesh_clusters()

    mesh = LinkerdMesh(
        name=cloud.cluster_name,
        cluster_name=cloud.cluster_name,
        clusters=clusters,
        k8s_provider=create_k8s_provider(cloud),
    )

    pulumi.export("linkerdPeers", sorted(mesh.links))


def tailscale() -> None:
    cloud = load_cloud_config()
    clusters = load_mesh_clusters()
    config = load_tailscale_config()

    node = Tailscale(
        name=cloud.cluster_name,
        cluster_name=cloud.cluster_name,
        clusters=clusters,
        tailscale_key=config.tailscale_key,
        k8s_provider=create_k8s_provider(cloud),
        enable_cross_cluster=config.enable_cross_cluster,
    )

    pulumi.export("tailscaleNamespace", node.namespace)
