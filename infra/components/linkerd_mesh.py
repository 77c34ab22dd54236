"""Linkerd multicluster links.

For every peer that published Linkerd credentials and a gateway address, the
local cluster gets a credentials secret, a ``Link`` and a service mirror
controller with the RBAC it needs.
"""

import pulumi
import pulumi_kubernetes as k8s

from mesh_orchestrator.federation import peer_entries
from mesh_orchestrator.models import MeshClusterEntry

MULTICLUSTER_NAMESPACE = "linkerd-multicluster"
GATEWAY_PORT = 4143
PROBE_PORT = 4192
GATEWAY_IDENTITY = "linkerd-gateway.linkerd-multicluster.serviceaccount.identity.linkerd.cluster.local"
SERVICE_MIRROR_IMAGE = "cr.l5d.io/linkerd/controller:edge-21.12.4"


def linkerd_peers(clusters: list[MeshClusterEntry], local_cluster_name: str) -> list[MeshClusterEntry]:
    """Peers with both Linkerd credentials and a gateway FQDN."""
    return [
        peer
        for peer in peer_entries(clusters, local_cluster_name)
        if peer.linkerd_remote_secret_data and peer.linkerd_gateway_fqdn
    ]


def link_spec(peer: MeshClusterEntry) -> dict:
    """Spec of the ``Link`` resource pointing at ``peer``."""
    return {
        "clusterCredentialsSecret": f"cluster-credentials-{peer.cluster_name}",
        "gatewayAddress": peer.linkerd_gateway_fqdn,
        "gatewayIdentity": GATEWAY_IDENTITY,
        "gatewayPort": str(GATEWAY_PORT),
        "probeSpec": {"path": "/ready", "period": "3s", "port": str(PROBE_PORT)},
        "selector": {
            "matchExpressions": [{"key": "mirror.linkerd.io/exported", "operator": "Exists"}],
        },
        "targetClusterDomain": "cluster.local",
        "targetClusterLinkerdNamespace": "linkerd",
        "targetClusterName": peer.cluster_name,
    }


class LinkerdLink(pulumi.ComponentResource):
    """Link the local cluster to one remote Linkerd cluster."""

    def __init__(
        self,
        name: str,
        peer: MeshClusterEntry,
        k8s_provider: k8s.Provider,
        opts: pulumi.ResourceOptions | None = None,
    ):
        super().__init__("mesh:federation:LinkerdLink", name, None, opts)

        k8s_opts = pulumi.ResourceOptions(parent=self, provider=k8s_provider)
        remote = peer.cluster_name
        credentials = f"cluster-credentials-{remote}"
        mirror = f"linkerd-service-mirror-{remote}"
        labels = {
            "linkerd.io/extension": "multicluster",
            "linkerd.io/control-plane-component": "service-mirror",
            "mirror.linkerd.io/cluster-name": remote,
        }

        self.credentials = k8s.core.v1.Secret(
            f"{name}-credentials",
            metadata=k8s.meta.v1.ObjectMetaArgs(name=credentials, namespace=MULTICLUSTER_NAMESPACE),
            string_data={"kubeconfig": pulumi.Output.secret(peer.linkerd_remote_secret_data)},
            type="mirror.linkerd.io/remote-kubeconfig",
            opts=k8s_opts,
        )

        self.link = k8s.apiextensions.CustomResource(
            f"{name}-link",
            api_version="multicluster.linkerd.io/v1alpha1",
            kind="Link",
            metadata=k8s.meta.v1.ObjectMetaArgs(name=remote, namespace=MULTICLUSTER_NAMESPACE),
            spec=link_spec(peer),
            opts=pulumi.ResourceOptions(
                parent=self, provider=k8s_provider, depends_on=[self.credentials]
            ),
        )

        # RBAC for the service mirror controller
        local_resources = f"linkerd-service-mirror-access-local-resources-{remote}"
        remote_creds = f"linkerd-service-mirror-read-remote-creds-{remote}"

        k8s.rbac.v1.ClusterRole(
            f"{name}-access-local-resources",
            metadata=k8s.meta.v1.ObjectMetaArgs(name=local_resources, labels=labels),
            rules=[
                k8s.rbac.v1.PolicyRuleArgs(
                    api_groups=[""],
                    resources=["endpoints", "services"],
                    verbs=["list", "get", "watch", "create", "delete", "update"],
                ),
                k8s.rbac.v1.PolicyRuleArgs(
                    api_groups=[""],
                    resources=["namespaces"],
                    verbs=["create", "list", "get", "watch"],
                ),
            ],
            opts=k8s_opts,
        )

        k8s.rbac.v1.ClusterRoleBinding(
            f"{name}-access-local-resources",
            metadata=k8s.meta.v1.ObjectMetaArgs(name=local_resources, labels=labels),
            role_ref=k8s.rbac.v1.RoleRefArgs(
                api_group="rbac.authorization.k8s.io",
                kind="ClusterRole",
                name=local_resources,
            ),
            subjects=[
                k8s.rbac.v1.SubjectArgs(
                    kind="ServiceAccount", name=mirror, namespace=MULTICLUSTER_NAMESPACE
                )
            ],
            opts=k8s_opts,
        )

        k8s.rbac.v1.Role(
            f"{name}-read-remote-creds",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name=remote_creds, namespace=MULTICLUSTER_NAMESPACE, labels=labels
            ),
            rules=[
                k8s.rbac.v1.PolicyRuleArgs(
                    api_groups=[""],
                    resources=["secrets"],
                    resource_names=[credentials],
                    verbs=["list", "get", "watch"],
                ),
                k8s.rbac.v1.PolicyRuleArgs(
                    api_groups=["multicluster.linkerd.io"],
                    resources=["links"],
                    verbs=["list", "get", "watch"],
                ),
            ],
            opts=k8s_opts,
        )

        k8s.rbac.v1.RoleBinding(
            f"{name}-read-remote-creds",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name=remote_creds, namespace=MULTICLUSTER_NAMESPACE, labels=labels
            ),
            role_ref=k8s.rbac.v1.RoleRefArgs(
                api_group="rbac.authorization.k8s.io",
                kind="Role",
                name=remote_creds,
            ),
            subjects=[
                k8s.rbac.v1.SubjectArgs(
                    kind="ServiceAccount", name=mirror, namespace=MULTICLUSTER_NAMESPACE
                )
            ],
            opts=k8s_opts,
        )

        service_account = k8s.core.v1.ServiceAccount(
            f"{name}-service-mirror",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name=mirror, namespace=MULTICLUSTER_NAMESPACE, labels=labels
            ),
            opts=k8s_opts,
        )

        # Service mirror controller
        selector = {
            "linkerd.io/control-plane-component": "linkerd-service-mirror",
            "mirror.linkerd.io/cluster-name": remote,
        }
        self.service_mirror = k8s.apps.v1.Deployment(
            f"{name}-service-mirror",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name=mirror,
                namespace=MULTICLUSTER_NAMESPACE,
                labels=labels,
                annotations={"pulumi.com/skipAwait": "true"},
            ),
            spec=k8s.apps.v1.DeploymentSpecArgs(
                replicas=1,
                selector=k8s.meta.v1.LabelSelectorArgs(match_labels=selector),
                template=k8s.core.v1.PodTemplateSpecArgs(
                    metadata=k8s.meta.v1.ObjectMetaArgs(
                        labels=selector,
                        annotations={"linkerd.io/inject": "enabled"},
                    ),
                    spec=k8s.core.v1.PodSpecArgs(
                        service_account_name=service_account.metadata.name,
                        containers=[
                            k8s.core.v1.ContainerArgs(
                                name="service-mirror",
                                image=SERVICE_MIRROR_IMAGE,
                                args=[
                                    "service-mirror",
                                    "-log-level=info",
                                    "-event-requeue-limit=3",
                                    f"-namespace={MULTICLUSTER_NAMESPACE}",
                                    remote,
                                ],
                                security_context=k8s.core.v1.SecurityContextArgs(run_as_user=2103),
                                ports=[
                                    k8s.core.v1.ContainerPortArgs(
                                        container_port=9999, name="admin-http"
                                    )
                                ],
                            )
                        ],
                    ),
                ),
            ),
            opts=pulumi.ResourceOptions(
                parent=self, provider=k8s_provider, depends_on=[self.link]
            ),
        )

        k8s.core.v1.Service(
            f"{name}-probe-gateway",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name=f"probe-gateway-{remote}",
                namespace=MULTICLUSTER_NAMESPACE,
                labels={
                    "mirror.linkerd.io/mirrored-gateway": "true",
                    "mirror.linkerd.io/cluster-name": remote,
                },
                annotations={"pulumi.com/skipAwait": "true"},
            ),
            spec=k8s.core.v1.ServiceSpecArgs(
                ports=[k8s.core.v1.ServicePortArgs(name="mc-probe", port=PROBE_PORT, protocol="TCP")],
            ),
            opts=k8s_opts,
        )

        self.register_outputs({"link": self.link.metadata.name})


class LinkerdMesh(pulumi.ComponentResource):
    """One ``LinkerdLink`` per eligible peer."""

    def __init__(
        self,
        name: str,
        cluster_name: str,
        clusters: list[MeshClusterEntry],
        k8s_provider: k8s.Provider,
        opts: pulumi.ResourceOptions | None = None,
    ):
        super().__init__("mesh:federation:LinkerdMesh", name, None, opts)

        self.links = {
            peer.cluster_name: LinkerdLink(
                f"{name}-{peer.cluster_name}",
                peer=peer,
                k8s_provider=k8s_provider,
                opts=pulumi.ResourceOptions(parent=self),
            )
            for peer in linkerd_peers(clusters, cluster_name)
        }

        self.register_outputs({"peers": sorted(self.links)})
