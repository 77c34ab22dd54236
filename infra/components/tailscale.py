"""Tailscale overlay between clusters.

Runs one Tailscale node per cluster as a StatefulSet. With cross-cluster
routing enabled, the node proxies each peer's Tailscale port to that peer.
"""

import pulumi
import pulumi_kubernetes as k8s

from mesh_orchestrator.federation import peer_entries
from mesh_orchestrator.models import MeshClusterEntry

TAILSCALE_NAMESPACE = "tailscale-system"
TAILSCALE_IMAGE = "ghcr.io/tailscale/tailscale:v1.18.2"
STATE_SECRET_NAME = "tailscale-state"
SCRIPTS_DIR = "/opt/tailscale"
LABELS = {"app.kubernetes.io/name": "tailscale"}

RUN_SCRIPT = """#!/bin/sh
set -e

tailscaled --socket=/tmp/tailscaled.sock --state=kube:${KUBE_SECRET} &
tailscale --socket=/tmp/tailscaled.sock up --authkey="${AUTH_KEY}" ${EXTRA_ARGS}

if [ -s /opt/tailscale/post-up.sh ]; then
  /bin/sh /opt/tailscale/post-up.sh
fi

wait
"""

ADD_PROXY_SCRIPT = """#!/bin/sh
# Usage: add-proxy.sh <peer hostname> <port>
set -e

PEER="$1"
PORT="$2"

until PEER_IP="$(tailscale --socket=/tmp/tailscaled.sock ip -4 "${PEER}")"; do
  echo "Waiting for peer ${PEER}"
  sleep 5
done

echo "Proxying port ${PORT} to ${PEER} (${PEER_IP})"
iptables -t nat -A PREROUTING -p tcp --dport "${PORT}" -j DNAT --to-destination "${PEER_IP}:443" --wait
iptables -t mangle -A PREROUTING -p tcp --dport "${PORT}" -j MARK --set-mark 1 --wait
"""


def post_up_script(clusters: list[MeshClusterEntry], local_cluster_name: str) -> str:
    """Script run after the node joins: one proxy per peer with a Tailscale port."""
    rules = "".join(
        f'{SCRIPTS_DIR}/add-proxy.sh "{peer.cluster_name}" "{peer.tailscale_port}" &\n'
        for peer in peer_entries(clusters, local_cluster_name)
        if peer.tailscale_port is not None
    )
    return (
        "#!/bin/sh\n"
        f"{rules}\n"
        'echo "Adding iptables rule for source NAT to remote Kubernetes clusters"\n'
        "iptables -A POSTROUTING -t nat --match mark --mark 1 -j SNAT "
        '--to-source "$(tailscale --socket=/tmp/tailscaled.sock ip -4)" --wait\n'
    )


class Tailscale(pulumi.ComponentResource):
    """Tailscale node for one cluster."""

    def __init__(
        self,
        name: str,
        cluster_name: str,
        clusters: list[MeshClusterEntry],
        tailscale_key: pulumi.Output[str],
        k8s_provider: k8s.Provider,
        enable_cross_cluster: bool = False,
        opts: pulumi.ResourceOptions | None = None,
    ):
        super().__init__("mesh:federation:Tailscale", name, None, opts)

        k8s_opts = pulumi.ResourceOptions(parent=self, provider=k8s_provider)

        self.ns = k8s.core.v1.Namespace(
            f"{name}-ns",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name=TAILSCALE_NAMESPACE,
                labels={"config.linkerd.io/admission-webhooks": "disabled"},
            ),
            opts=k8s_opts,
        )
        self.namespace = self.ns.metadata.name

        auth = k8s.core.v1.Secret(
            f"{name}-auth",
            metadata=k8s.meta.v1.ObjectMetaArgs(namespace=self.namespace),
            string_data={"AUTH_KEY": tailscale_key},
            opts=k8s_opts,
        )

        scripts = k8s.core.v1.ConfigMap(
            f"{name}-scripts",
            metadata=k8s.meta.v1.ObjectMetaArgs(namespace=self.namespace),
            data={
                "run.sh": RUN_SCRIPT,
                "add-proxy.sh": ADD_PROXY_SCRIPT,
                "post-up.sh": post_up_script(clusters, cluster_name) if enable_cross_cluster else "",
            },
            opts=k8s_opts,
        )

        # RBAC: the node keeps its state in a secret
        service_account = k8s.core.v1.ServiceAccount(
            f"{name}-sa",
            metadata=k8s.meta.v1.ObjectMetaArgs(namespace=self.namespace),
            opts=k8s_opts,
        )
        role = k8s.rbac.v1.Role(
            f"{name}-role",
            metadata=k8s.meta.v1.ObjectMetaArgs(namespace=self.namespace),
            rules=[
                k8s.rbac.v1.PolicyRuleArgs(api_groups=[""], resources=["secrets"], verbs=["create"]),
                k8s.rbac.v1.PolicyRuleArgs(
                    api_groups=[""],
                    resources=["secrets"],
                    resource_names=[STATE_SECRET_NAME],
                    verbs=["get", "update"],
                ),
            ],
            opts=k8s_opts,
        )
        k8s.rbac.v1.RoleBinding(
            f"{name}-rolebinding",
            metadata=k8s.meta.v1.ObjectMetaArgs(namespace=self.namespace),
            subjects=[
                k8s.rbac.v1.SubjectArgs(kind="ServiceAccount", name=service_account.metadata.name)
            ],
            role_ref=k8s.rbac.v1.RoleRefArgs(
                api_group="rbac.authorization.k8s.io", kind="Role", name=role.metadata.name
            ),
            opts=k8s_opts,
        )

        service = k8s.core.v1.Service(
            f"{name}-svc",
            metadata=k8s.meta.v1.ObjectMetaArgs(
                name="tailscale",
                namespace=self.namespace,
                labels=LABELS,
                annotations={"pulumi.com/skipAwait": "true"},
            ),
            spec=k8s.core.v1.ServiceSpecArgs(cluster_ip="None", selector=LABELS, ports=[]),
            opts=k8s_opts,
        )

        self.stateful_set = k8s.apps.v1.StatefulSet(
            f"{name}-node",
            metadata=k8s.meta.v1.ObjectMetaArgs(namespace=self.namespace),
            spec=k8s.apps.v1.StatefulSetSpecArgs(
                selector=k8s.meta.v1.LabelSelectorArgs(match_labels=LABELS),
                service_name=service.metadata.name,
                replicas=1,
                template=k8s.core.v1.PodTemplateSpecArgs(
                    metadata=k8s.meta.v1.ObjectMetaArgs(labels=LABELS),
                    spec=k8s.core.v1.PodSpecArgs(
                        service_account_name=service_account.metadata.name,
                        init_containers=[
                            k8s.core.v1.ContainerArgs(
                                name="sysctler",
                                image="busybox",
                                security_context=k8s.core.v1.SecurityContextArgs(privileged=True),
                                command=["/bin/sh"],
                                args=["-c", "sysctl -w net.ipv4.ip_forward=1"],
                            )
                        ],
                        containers=[
                            k8s.core.v1.ContainerArgs(
                                name="tailscale",
                                image=TAILSCALE_IMAGE,
                                image_pull_policy="Always",
                                command=["/bin/sh"],
                                args=[f"{SCRIPTS_DIR}/run.sh"],
                                env=[
                                    k8s.core.v1.EnvVarArgs(name="KUBE_SECRET", value=STATE_SECRET_NAME),
                                    k8s.core.v1.EnvVarArgs(
                                        name="AUTH_KEY",
                                        value_from=k8s.core.v1.EnvVarSourceArgs(
                                            secret_key_ref=k8s.core.v1.SecretKeySelectorArgs(
                                                name=auth.metadata.name, key="AUTH_KEY"
                                            )
                                        ),
                                    ),
                                    k8s.core.v1.EnvVarArgs(
                                        name="EXTRA_ARGS", value=f"--hostname {cluster_name}"
                                    ),
                                ],
                                security_context=k8s.core.v1.SecurityContextArgs(
                                    capabilities=k8s.core.v1.CapabilitiesArgs(add=["NET_ADMIN"])
                                ),
                                volume_mounts=[
                                    k8s.core.v1.VolumeMountArgs(mount_path=SCRIPTS_DIR, name="scripts")
                                ],
                            )
                        ],
                        volumes=[
                            k8s.core.v1.VolumeArgs(
                                name="scripts",
                                config_map=k8s.core.v1.ConfigMapVolumeSourceArgs(
                                    name=scripts.metadata.name, default_mode=0o555
                                ),
                            )
                        ],
                    ),
                ),
            ),
            opts=k8s_opts,
        )

        self.register_outputs({"namespace": self.namespace})
