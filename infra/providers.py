"""Kubernetes provider for the cluster a mesh program targets."""

import pulumi_kubernetes as k8s

from infra.config import CloudConfig


def create_k8s_provider(config: CloudConfig) -> k8s.Provider:
    """Create Kubernetes provider bound to the cluster's local kubeconfig context.

    The orchestrator registers ``context_name`` in the local kubeconfig before
    any mesh program runs.
    """
    return k8s.Provider(
        f"{config.cluster_name}-k8s",
        context=config.context_name,
    )
