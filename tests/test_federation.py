"""Unit tests for mesh config and federation."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from mesh_orchestrator.config_map import ConfigEntry
from mesh_orchestrator.errors import ConfigurationError
from mesh_orchestrator.executor import StackExecutor
from mesh_orchestrator.federation import (
    MESH_CLUSTERS_KEY,
    MeshFederation,
    parse_mesh_config,
    peer_entries,
    serialize_mesh_config,
)
from mesh_orchestrator.models import CloudProvider, ClusterDescriptor, MeshClusterEntry
from mesh_orchestrator.shared_config import SharedConfig
from mesh_orchestrator.stacks import ISTIO_MESH, LINKERD_MESH
from tests.conftest import FakeEngine


def _cluster(name: str, port: int) -> ClusterDescriptor:
    return ClusterDescriptor(
        cluster_name=name,
        context_name=f"ctx-{name}",
        kubeconfig=ConfigEntry("kubeconfig", secret=True),
        provider=CloudProvider.GKE,
        local_config={"cloud:contextName": ConfigEntry(f"ctx-{name}")},
        mesh=MeshClusterEntry(
            cluster_name=name,
            tailscale_port=port,
            istio_remote_secret_data=f"istio-{name}",
        ),
    )


def test_serialized_mesh_config_is_secret_camel_case_json() -> None:
    entry = serialize_mesh_config([_cluster("a", 63000).mesh])

    assert entry.secret
    assert json.loads(entry.value) == [
        {"clusterName": "a", "tailscalePort": 63000, "istioRemoteSecretData": "istio-a"}
    ]
    assert parse_mesh_config(entry.value) == [_cluster("a", 63000).mesh]


def test_parse_mesh_config_rejects_garbage() -> None:
    with pytest.raises(ConfigurationError):
        parse_mesh_config('[{"tailscalePort": 1}]')


def test_peer_entries_excludes_self() -> None:
    mesh = [_cluster(n, 63000 + i).mesh for i, n in enumerate(["a", "b", "c"])]

    assert [p.cluster_name for p in peer_entries(mesh, "b")] == ["a", "c"]
    assert [p.cluster_name for p in peer_entries(mesh, "z")] == ["a", "b", "c"]


def test_federation_runs_every_mesh_stack_per_cluster() -> None:
    engine = FakeEngine()
    shared = SharedConfig()
    executor = StackExecutor(engine, shared=shared, dry_run=False)
    federation = MeshFederation(executor, shared, [ISTIO_MESH, LINKERD_MESH], "dev", Path("stacks"))
    clusters = [_cluster("a", 63000), _cluster("b", 63001)]

    settled = asyncio.run(federation.federate(clusters))

    assert settled.failures == {}
    assert settled.successes == {
        "a": ["infra-k8s-istio-mesh", "infra-k8s-linkerd-mesh"],
        "b": ["infra-k8s-istio-mesh", "infra-k8s-linkerd-mesh"],
    }
    assert shared.get(MESH_CLUSTERS_KEY).secret

    config = engine.handle("infra-k8s-istio-mesh/dev-b").config
    assert config["cloud:clusterName"].value == "b"
    assert config[MESH_CLUSTERS_KEY].secret
    names = [e.cluster_name for e in parse_mesh_config(config[MESH_CLUSTERS_KEY].value)]
    assert names == ["a", "b"]


def test_federation_failure_is_isolated_per_cluster() -> None:
    engine = FakeEngine(fail=["infra-k8s-istio-mesh/dev-a"])
    executor = StackExecutor(engine, dry_run=False)
    federation = MeshFederation(executor, None, [ISTIO_MESH, LINKERD_MESH], "dev", Path("stacks"))

    settled = asyncio.run(federation.federate([_cluster("a", 63000), _cluster("b", 63001)]))

    assert list(settled.failures) == ["a"]
    assert settled.successes == {"b": ["infra-k8s-istio-mesh", "infra-k8s-linkerd-mesh"]}
    # The failed cluster's chain stops at the failing stack
    assert engine.ops("infra-k8s-linkerd-mesh/dev-a") == []


def test_federation_with_no_clusters_does_nothing() -> None:
    engine = FakeEngine()
    shared = SharedConfig()
    federation = MeshFederation(StackExecutor(engine), shared, [ISTIO_MESH], "dev", Path("stacks"))

    settled = asyncio.run(federation.federate([]))

    assert settled.successes == {}
    assert shared.get(MESH_CLUSTERS_KEY) is None
    assert engine.calls == []
