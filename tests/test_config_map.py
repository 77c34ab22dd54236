"""Unit tests for config layering and namespacing."""

from __future__ import annotations

import pytest

from mesh_orchestrator.config_map import (
    SECRET_PLACEHOLDER,
    ConfigEntry,
    entry_from_value,
    layer_config,
    merge_config,
    missing_keys,
    namespace_outputs,
    redact,
    require_value,
    split_key,
)
from mesh_orchestrator.errors import ConfigurationError


def _map(**values: str) -> dict[str, ConfigEntry]:
    return {key.replace("__", ":"): ConfigEntry(value) for key, value in values.items()}


def test_merge_is_right_biased() -> None:
    base = _map(gcp__region="us-west1", gcp__project="a")
    overlay = _map(gcp__project="b")

    merged = merge_config(base, overlay)

    assert merged["gcp:project"].value == "b"
    assert merged["gcp:region"].value == "us-west1"


def test_merge_does_not_mutate_inputs() -> None:
    base = _map(cloud__clusterName="one")
    overlay = _map(cloud__clusterName="two")

    merge_config(base, overlay)

    assert base["cloud:clusterName"].value == "one"
    assert overlay["cloud:clusterName"].value == "two"


def test_merge_is_associative() -> None:
    a = _map(k__x="a", k__y="a")
    b = _map(k__y="b", k__z="b")
    c = _map(k__z="c", k__x="c")

    assert merge_config(merge_config(a, b), c) == merge_config(a, merge_config(b, c))


def test_layer_config_root_upstream_local_precedence() -> None:
    root = _map(kubernetes__context="root", gcp__region="us-east1")
    upstream = namespace_outputs("infra-gke-cluster", _map(kubeconfig="upstream"))
    local = _map(kubernetes__context="local")

    config = layer_config(root, upstream, local)

    assert config["kubernetes:context"].value == "local"
    assert config["gcp:region"].value == "us-east1"
    assert config["infra-gke-cluster:kubeconfig"].value == "upstream"


def test_namespace_outputs_keeps_secret_flag_and_drops_missing() -> None:
    outputs = {"kubeconfig": ConfigEntry("apiVersion: v1", secret=True), "empty": None}

    namespaced = namespace_outputs("infra-linode-cluster", outputs)

    assert list(namespaced) == ["infra-linode-cluster:kubeconfig"]
    assert namespaced["infra-linode-cluster:kubeconfig"].secret


def test_secret_entries_are_masked() -> None:
    entry = ConfigEntry("hunter2", secret=True)

    assert "hunter2" not in repr(entry)
    assert redact({"tailscale:key": entry, "gcp:region": ConfigEntry("us-west1")}) == {
        "tailscale:key": SECRET_PLACEHOLDER,
        "gcp:region": "us-west1",
    }


def test_entry_from_value_json_encodes_structures() -> None:
    assert entry_from_value(["a", "b"]).value == '["a", "b"]'
    assert entry_from_value("plain").value == "plain"
    assert entry_from_value(3, secret=True) == ConfigEntry("3", secret=True)


def test_split_key_requires_namespace() -> None:
    assert split_key("mesh:clusters") == ("mesh", "clusters")
    with pytest.raises(ValueError):
        split_key("clusters")


def test_require_value_and_missing_keys() -> None:
    config = _map(gcp__project="p", gcp__region="")

    assert require_value(config, "gcp:project") == "p"
    assert missing_keys(config, ["gcp:project", "gcp:region", "gcp:zone"]) == ["gcp:region", "gcp:zone"]
    with pytest.raises(ConfigurationError):
        require_value(config, "gcp:region")
