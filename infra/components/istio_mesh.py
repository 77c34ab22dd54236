"""Istio multi-cluster federation.

Exposes the local cluster's services through the east-west gateway and
installs a remote secret for every peer, which lets istiod discover the
peer's endpoints.
"""

import pulumi
import pulumi_kubernetes as k8s

from mesh_orchestrator.federation import peer_entries
from mesh_orchestrator.models import MeshClusterEntry

ISTIO_NAMESPACE = "istio-system"


def istio_peers(clusters: list[MeshClusterEntry], local_cluster_name: str) -> list[MeshClusterEntry]:
    """Peers that published an Istio remote secret."""
    return [
        peer
        for peer in peer_entries(clusters, local_cluster_name)
        if peer.istio_remote_secret_data
    ]


class IstioMesh(pulumi.ComponentResource):
    """Cross-network gateway plus one remote secret per peer cluster."""

    def __init__(
        self,
        name: str,
        cluster_name: str,
        clusters: list[MeshClusterEntry],
        k8s_provider: k8s.Provider,
        opts: pulumi.ResourceOptions | None = None,
    ):
        super().__init__("mesh:federation:IstioMesh", name, None, opts)

        k8s_opts = pulumi.ResourceOptions(parent=self, provider=k8s_provider)

        self.gateway = k8s.apiextensions.CustomResource(
            f"{name}-cross-network-gateway",
            api_version="networking.istio.io/v1alpha3",
            kind="Gateway",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name="cross-network-gateway",
                namespace=ISTIO_NAMESPACE,
            ),
            spec={
                "selector": {"istio": "eastwestgateway"},
                "servers": [
                    {
                        "port": {"number": 15443, "name": "tls", "protocol": "TLS"},
                        "tls": {"mode": "AUTO_PASSTHROUGH"},
                        "hosts": ["*.local"],
                    }
                ],
            },
            opts=k8s_opts,
        )

        self.remote_secrets = {}
        for peer in istio_peers(clusters, cluster_name):
            secret_name = f"istio-remote-secret-{peer.cluster_name}"
            self.remote_secrets[peer.cluster_name] = k8s.core.v1.Secret(
                f"{name}-{secret_name}",
                metadata=k8s.meta.v1.ObjectMetaArgs(
                    name=secret_name,
                    namespace=ISTIO_NAMESPACE,
                    labels={"istio/multiCluster": "true"},
                    annotations={"networking.istio.io/cluster": peer.cluster_name},
                ),
                string_data={
                    peer.cluster_name: pulumi.Output.secret(peer.istio_remote_secret_data),
                },
                opts=k8s_opts,
            )

        self.register_outputs({"peers": sorted(self.remote_secrets)})
