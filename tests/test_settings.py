"""Unit tests for settings parsing."""

from __future__ import annotations

import pytest

from mesh_orchestrator.models import CloudProvider
from mesh_orchestrator.settings import DEFAULT_SKIPPED_PROVIDERS, Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in ("STACK_NAME", "DRY_RUN", "SKIP", "MESH_PROJECTS"):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


def test_defaults() -> None:
    settings = Settings()

    assert settings.stack_name == "dev"
    assert settings.dry_run is True
    assert settings.skipped_providers == frozenset()
    assert settings.mesh_project_names == ["infra-k8s-istio-mesh", "infra-k8s-linkerd-mesh"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [("false", False), ("true", True), ("False", True), ("0", True), ("", True), ("no", True)],
)
def test_only_literal_false_disables_dry_run(monkeypatch: pytest.MonkeyPatch, value: str, expected: bool) -> None:
    monkeypatch.setenv("DRY_RUN", value)

    assert Settings().dry_run is expected


def test_skip_lists_providers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SKIP", "lke, gke")

    assert Settings().skipped_providers == {CloudProvider.LKE, CloudProvider.GKE}


def test_skip_with_any_other_value_skips_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SKIP", "1")

    assert Settings().skipped_providers == DEFAULT_SKIPPED_PROVIDERS


def test_stack_name_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STACK_NAME", "prod")
    monkeypatch.setenv("MESH_PROJECTS", "infra-k8s-tailscale")

    settings = Settings()

    assert settings.stack_name == "prod"
    assert settings.mesh_project_names == ["infra-k8s-tailscale"]
