"""Orchestrator settings loaded from environment variables or .env file."""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mesh_orchestrator.models import CloudProvider

# Providers skipped when SKIP is set to something that is not a provider list
DEFAULT_SKIPPED_PROVIDERS = frozenset({CloudProvider.AKS, CloudProvider.DIGITALOCEAN})


class Settings(BaseSettings):
    """Orchestrator settings.

    These are loaded from environment variables or a .env file.
    ``DRY_RUN`` defaults to on; only the literal string ``false`` turns it off.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Stack selection
    stack_name: str = "dev"
    root_project: str = "infra"
    dry_run: bool = True
    skip: Optional[str] = None

    # Layout
    infra_dir: Path = Path(".")
    stacks_dir: Path = Path("stacks")
    clusters_file: Path = Path("clusters.yaml")
    kubeconfig_path: Path = Field(default_factory=lambda: Path.home() / ".kube" / "config")

    # Mesh stacks run for every cluster during federation (comma-separated)
    mesh_projects: str = "infra-k8s-istio-mesh,infra-k8s-linkerd-mesh"

    # Deadlines
    stack_timeout_seconds: float = 3600.0
    command_timeout_seconds: float = 300.0

    # Run ledger
    database_url: str = "sqlite:///./mesh_orchestrator.db"

    @field_validator("dry_run", mode="before")
    @classmethod
    def _parse_dry_run(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if value is None:
            return True
        return str(value) != "false"

    @property
    def skipped_providers(self) -> frozenset[CloudProvider]:
        """Providers whose bring-up is skipped entirely.

        ``SKIP=aks,lke`` skips the named providers. Any other non-empty value
        skips AKS and DigitalOcean.
        """
        if not self.skip:
            return frozenset()
        names = [part.strip().lower() for part in self.skip.split(",") if part.strip()]
        known = {provider.value for provider in CloudProvider}
        if names and all(name in known for name in names):
            return frozenset(CloudProvider(name) for name in names)
        return DEFAULT_SKIPPED_PROVIDERS

    @property
    def mesh_project_names(self) -> list[str]:
        return [name.strip() for name in self.mesh_projects.split(",") if name.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
