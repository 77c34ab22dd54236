"""End-to-end tests of a run against fake engine and CLIs."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from mesh_orchestrator.config_map import ConfigEntry
from mesh_orchestrator.errors import BringUpFailedError, ConfigurationError, ConvergenceError
from mesh_orchestrator.federation import MESH_CLUSTERS_KEY, parse_mesh_config, peer_entries
from mesh_orchestrator.models import (
    CloudProvider,
    ClusterPlan,
    DigitalOceanClusterSpec,
    GkeClusterSpec,
    LkeClusterSpec,
)
from mesh_orchestrator.orchestrator import Orchestrator, load_cluster_plan
from mesh_orchestrator.settings import Settings
from tests.conftest import FakeCommandRunner, FakeEngine
from tests.test_bring_up import trifecta_outputs


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "stack_name": "dev",
        "dry_run": False,
        "kubeconfig_path": tmp_path / "kube" / "config",
        "stacks_dir": tmp_path / "stacks",
        "clusters_file": tmp_path / "clusters.yaml",
        "mesh_projects": "infra-k8s-istio-mesh",
    }
    values.update(overrides)
    return Settings(**values)


def _engine(**kwargs) -> FakeEngine:
    return FakeEngine(
        outputs={
            "infra-gcp-project": {"projectId": "proj-1"},
            "infra-gke-cluster": {"name": "blowfish-gke", "location": "us-west1-a", "locationType": "zone"},
            "infra-do-cluster": {"clusterName": "loon-doks", "region": "sfo3"},
            "infra-k8s-trifecta": trifecta_outputs,
        },
        **kwargs,
    )


def _runner() -> FakeCommandRunner:
    return FakeCommandRunner(
        contexts={
            "blowfish-gke": "gke_proj-1_us-west1-a_blowfish-gke",
            "loon-doks": "do-sfo3-loon-doks",
            "loon2-doks": "do-sfo3-loon2-doks",
        }
    )


PLAN = ClusterPlan(
    clusters=[
        GkeClusterSpec(name="blowfish", region="us-west1", zone="a", tailscale_port=63000),
        DigitalOceanClusterSpec(name="loon", region="sfo3", tailscale_port=63001),
    ]
)


def test_run_brings_up_and_federates_every_cluster(tmp_path: Path) -> None:
    engine = _engine()
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=PLAN, run_command=_runner())

    report = asyncio.run(orchestrator.run())

    assert list(report.clusters) == ["blowfish", "loon"]
    assert report.federated == {
        "blowfish": ["infra-k8s-istio-mesh"],
        "loon": ["infra-k8s-istio-mesh"],
    }
    # Root stack received both clusters' outputs and the mesh config
    root = engine.handle("infra/dev").config
    assert root["blowfish-infra-gke-cluster:name"].value == "blowfish-gke"
    assert root["loon-infra-do-cluster:clusterName"].value == "loon-doks"
    mesh = json.loads(root[MESH_CLUSTERS_KEY].value)
    assert [c["clusterName"] for c in mesh] == ["blowfish", "loon"]
    assert root[MESH_CLUSTERS_KEY].secret


def test_three_stack_chain_propagates_outputs(tmp_path: Path) -> None:
    engine = _engine()
    plan = ClusterPlan(clusters=[GkeClusterSpec(name="blowfish", region="us-west1", zone="a")])
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=plan, run_command=_runner())

    asyncio.run(orchestrator.run())

    project = engine.handle("infra-gcp-project/dev-blowfish")
    cluster = engine.handle("infra-gke-cluster/dev-blowfish")
    trifecta = engine.handle("infra-k8s-trifecta/dev-blowfish")
    assert cluster.config["infra-gcp-project:projectId"].value == "proj-1"
    assert trifecta.config["infra-gcp-project:projectId"].value == "proj-1"
    assert trifecta.config["infra-gke-cluster:name"].value == "blowfish-gke"
    assert trifecta.config["kubernetes:context"].value == "gke_proj-1_us-west1-a_blowfish-gke"
    for handle in (project, cluster, trifecta):
        ops = engine.ops(handle.descriptor.identity)
        assert ops.index("refresh") < ops.index("up")


def test_failed_bring_up_does_not_block_others(tmp_path: Path) -> None:
    engine = _engine(fail=["infra-do-cluster/dev-loon"])
    plan = ClusterPlan(
        clusters=[
            GkeClusterSpec(name="blowfish", region="us-west1", zone="a"),
            DigitalOceanClusterSpec(name="loon", region="sfo3"),
            DigitalOceanClusterSpec(name="loon2", region="sfo3"),
        ]
    )
    engine.outputs["infra-do-cluster"] = lambda d, cfg: {
        "clusterName": f"{cfg['cloud:clusterName'].value}-doks",
        "region": "sfo3",
    }
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=plan, run_command=_runner())

    with pytest.raises(BringUpFailedError) as excinfo:
        asyncio.run(orchestrator.run())

    error = excinfo.value
    assert list(error.failures) == ["loon"]
    assert isinstance(error.failures["loon"], ConvergenceError)
    assert sorted(error.successes) == ["blowfish", "loon2"]

    # Federation ran for the survivors only, with a mesh config that omits the failure
    assert "up" in engine.ops("infra-k8s-istio-mesh/dev-blowfish")
    assert "up" in engine.ops("infra-k8s-istio-mesh/dev-loon2")
    assert engine.ops("infra-k8s-istio-mesh/dev-loon") == []
    mesh = json.loads(engine.handle("infra/dev").config[MESH_CLUSTERS_KEY].value)
    assert [c["clusterName"] for c in mesh] == ["blowfish", "loon2"]


def test_bring_ups_run_concurrently(tmp_path: Path) -> None:
    engine = _engine(delay=0.05)
    plan = ClusterPlan(
        clusters=[
            DigitalOceanClusterSpec(name="loon", region="sfo3"),
            DigitalOceanClusterSpec(name="loon2", region="sfo3"),
        ]
    )
    engine.outputs["infra-do-cluster"] = lambda d, cfg: {
        "clusterName": f"{cfg['cloud:clusterName'].value}-doks",
    }
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=plan, run_command=_runner())

    asyncio.run(orchestrator.run())

    ups = [ident for ident, op in engine.calls if op == "up"]
    # Both cluster stacks start before either bring-up reaches base services
    assert sorted(ups[:2]) == ["infra-do-cluster/dev-loon", "infra-do-cluster/dev-loon2"]


def test_skipped_providers_yield_no_bring_up(tmp_path: Path) -> None:
    engine = _engine()
    orchestrator = Orchestrator(
        _settings(tmp_path),
        engine=engine,
        plan=PLAN,
        run_command=_runner(),
        skipped_providers=[CloudProvider.DIGITALOCEAN],
    )

    report = asyncio.run(orchestrator.run())

    assert report.skipped == ["loon"]
    assert list(report.clusters) == ["blowfish"]
    assert not any(ident.endswith("dev-loon") for ident, _ in engine.calls)


def test_dry_run_never_updates(tmp_path: Path) -> None:
    engine = _engine(
        deployed={
            "infra-gcp-project": {"projectId": "proj-1"},
            "infra-gke-cluster": {"name": "blowfish-gke", "location": "us-west1-a", "locationType": "zone"},
            "infra-k8s-trifecta": {"istioRemoteSecretData": "istio-blowfish"},
        }
    )
    plan = ClusterPlan(clusters=[GkeClusterSpec(name="blowfish", region="us-west1", zone="a")])
    orchestrator = Orchestrator(
        _settings(tmp_path), engine=engine, plan=plan, run_command=_runner(), dry_run=True
    )

    report = asyncio.run(orchestrator.run())

    assert not any(op == "up" for _, op in engine.calls)
    assert report.clusters["blowfish"].mesh.istio_remote_secret_data == "istio-blowfish"
    assert report.federated == {"blowfish": ["infra-k8s-istio-mesh"]}


def test_dry_run_without_deployed_outputs_fails_cleanly(tmp_path: Path) -> None:
    engine = _engine()
    plan = ClusterPlan(clusters=[LkeClusterSpec(name="weevil", region="us-west")])
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=plan, dry_run=True)

    with pytest.raises(BringUpFailedError) as excinfo:
        asyncio.run(orchestrator.run())

    assert isinstance(excinfo.value.failures["weevil"], ConfigurationError)
    assert not any(op == "up" for _, op in engine.calls)


def test_unknown_mesh_project_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        Orchestrator(_settings(tmp_path, mesh_projects="infra-k8s-consul-mesh"), engine=FakeEngine())


def test_load_cluster_plan(tmp_path: Path) -> None:
    path = tmp_path / "clusters.yaml"
    path.write_text(
        "clusters:\n"
        "  - {name: healthy-blowfish, provider: gke, region: us-west1, zone: a, tailscale_port: 63000}\n"
        "  - {name: absolute-weevil, provider: lke, region: us-west}\n"
    )

    plan = load_cluster_plan(path)

    assert [c.provider for c in plan.clusters] == ["gke", "lke"]
    assert plan.clusters[0].location == "us-west1-a"


@pytest.mark.parametrize(
    "text",
    [
        "clusters:\n  - {name: a-cluster, provider: eks, region: x}\n",
        "clusters:\n  - {name: dup, provider: lke, region: x}\n  - {name: dup, provider: lke, region: y}\n",
        "clusters:\n  - {name: one, provider: lke, region: x, tailscale_port: 63000}\n"
        "  - {name: two, provider: lke, region: y, tailscale_port: 63000}\n",
        "clusters: [unclosed\n",
    ],
)
def test_invalid_cluster_plan_raises(tmp_path: Path, text: str) -> None:
    path = tmp_path / "clusters.yaml"
    path.write_text(text)

    with pytest.raises(ConfigurationError):
        load_cluster_plan(path)


def test_missing_cluster_plan_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_cluster_plan(tmp_path / "missing.yaml")


def test_root_config_seeds_every_stack(tmp_path: Path) -> None:
    engine = _engine(initial_config={"infra/dev": {"gcp:billing": ConfigEntry("shared")}})
    plan = ClusterPlan(clusters=[GkeClusterSpec(name="blowfish", region="us-west1", zone="a")])
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=plan, run_command=_runner())

    asyncio.run(orchestrator.run())

    assert engine.handle("infra-k8s-trifecta/dev-blowfish").config["gcp:billing"].value == "shared"


def test_mesh_stacks_receive_cluster_kubeconfig_and_peers(tmp_path: Path) -> None:
    engine = _engine()
    engine.outputs["infra-gke-cluster"] = {
        "name": "blowfish-gke",
        "location": "us-west1-a",
        "locationType": "zone",
        "kubeconfig": ConfigEntry("kubeconfig-blowfish", secret=True),
    }
    engine.outputs["infra-do-cluster"] = {
        "clusterName": "loon-doks",
        "region": "sfo3",
        "kubeconfig": ConfigEntry("kubeconfig-loon", secret=True),
    }
    orchestrator = Orchestrator(_settings(tmp_path), engine=engine, plan=PLAN, run_command=_runner())

    asyncio.run(orchestrator.run())

    blowfish = engine.handle("infra-k8s-istio-mesh/dev-blowfish").config
    loon = engine.handle("infra-k8s-istio-mesh/dev-loon").config
    assert blowfish["infra-gke-cluster:kubeconfig"].value == "kubeconfig-blowfish"
    assert blowfish["infra-gke-cluster:kubeconfig"].secret
    assert loon["infra-do-cluster:kubeconfig"].value == "kubeconfig-loon"
    assert loon["infra-do-cluster:kubeconfig"].secret
    assert loon[MESH_CLUSTERS_KEY] == blowfish[MESH_CLUSTERS_KEY]
    assert blowfish["cloud:clusterName"].value == "blowfish"

    mesh = parse_mesh_config(blowfish[MESH_CLUSTERS_KEY].value)
    assert [entry.cluster_name for entry in mesh] == ["blowfish", "loon"]
    assert blowfish[MESH_CLUSTERS_KEY].secret
    assert [entry.cluster_name for entry in peer_entries(mesh, "blowfish")] == ["loon"]
    assert [entry.cluster_name for entry in peer_entries(mesh, "loon")] == ["blowfish"]
    assert mesh[1].istio_remote_secret_data == "istio-loon"


def test_identities_from_another_base_stack_name_do_not_conflict(tmp_path: Path) -> None:
    plan = ClusterPlan(clusters=[GkeClusterSpec(name="blowfish", region="us-west1", zone="a")])
    first = Orchestrator(_settings(tmp_path), engine=_engine(), plan=plan, run_command=_runner())
    asyncio.run(first.run())
    recorded = first.cache.identities
    assert recorded["dev-blowfish-infra-gcp-project"] == "infra-gcp-project/dev-blowfish"

    engine = _engine()
    second = Orchestrator(
        _settings(tmp_path, stack_name="prod"),
        engine=engine,
        plan=plan,
        run_command=_runner(),
        known_identities=recorded,
    )

    report = asyncio.run(second.run())

    assert list(report.clusters) == ["blowfish"]
    assert "up" in engine.ops("infra-gcp-project/prod-blowfish")
    assert engine.handle("infra/prod").config[MESH_CLUSTERS_KEY].secret
