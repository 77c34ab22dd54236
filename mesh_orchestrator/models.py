"""Domain types and pydantic models for cluster plans, mesh config and runs."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mesh_orchestrator.config_map import ConfigEntry, ConfigMap


# =============================================================================
# ENUMS
# =============================================================================


class CloudProvider(str, Enum):
    """Managed Kubernetes provider."""

    GKE = "gke"
    AKS = "aks"
    DIGITALOCEAN = "digitalocean"
    LKE = "lke"


class RunStatus(str, Enum):
    """Status of an orchestration run or of a single stack within it."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BringUpState(str, Enum):
    """Linear states of one cluster bring-up."""

    START = "start"
    PROJECT_PROVISIONED = "project_provisioned"
    CLUSTER_PROVISIONED = "cluster_provisioned"
    KUBECONFIG_REGISTERED = "kubeconfig_registered"
    BASE_SERVICES_DEPLOYED = "base_services_deployed"
    DONE = "done"


# =============================================================================
# STACK IDENTITY
# =============================================================================


@dataclass(frozen=True)
class StackDescriptor:
    """Identity of a provisionable unit.

    Two descriptors are equal when project and stack name match; the work
    directory is only where the program lives.
    """

    project_name: str
    stack_name: str
    work_dir: Path = field(default=Path("."), compare=False)

    @property
    def identity(self) -> str:
        return f"{self.project_name}/{self.stack_name}"

    def __str__(self) -> str:
        return self.identity


@dataclass(frozen=True)
class StackUpResult:
    """Outputs of a converged (or, in dry-run, refreshed) stack."""

    descriptor: StackDescriptor
    outputs: ConfigMap
    output_namespace: str


# =============================================================================
# CLUSTER PLAN
# =============================================================================


class ClusterSpecBase(BaseModel):
    """Fields shared by every cluster in the plan."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(
        ...,
        description="Short cluster name, used in stack names",
        pattern=r"^[a-z0-9-]+$",
        min_length=3,
        max_length=40,
    )
    tailscale_port: Optional[int] = Field(default=None, ge=1024, le=65535)


class GkeClusterSpec(ClusterSpecBase):
    """GKE cluster, provisioned inside its own GCP project."""

    provider: Literal["gke"] = "gke"
    region: str
    zone: Optional[Literal["a", "b", "c"]] = None
    billing_account_id: Optional[str] = None
    folder_id: Optional[str] = None

    @property
    def location(self) -> str:
        return f"{self.region}-{self.zone}" if self.zone else self.region

    @property
    def location_type(self) -> str:
        return "zone" if self.zone else "region"


class AksClusterSpec(ClusterSpecBase):
    """AKS cluster."""

    provider: Literal["aks"] = "aks"
    location: str


class DigitalOceanClusterSpec(ClusterSpecBase):
    """DigitalOcean Kubernetes cluster."""

    provider: Literal["digitalocean"] = "digitalocean"
    region: str


class LkeClusterSpec(ClusterSpecBase):
    """Linode Kubernetes Engine cluster."""

    provider: Literal["lke"] = "lke"
    region: str


ClusterSpec = Annotated[
    Union[GkeClusterSpec, AksClusterSpec, DigitalOceanClusterSpec, LkeClusterSpec],
    Field(discriminator="provider"),
]


class ClusterPlan(BaseModel):
    """All clusters to bring up in one run."""

    clusters: list[ClusterSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names_and_ports(self) -> "ClusterPlan":
        names = [c.name for c in self.clusters]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate cluster names: {', '.join(duplicates)}")

        ports = [c.tailscale_port for c in self.clusters if c.tailscale_port is not None]
        if len(ports) != len(set(ports)):
            raise ValueError("Tailscale ports must be unique across clusters")
        return self


# =============================================================================
# MESH
# =============================================================================


class MeshClusterEntry(BaseModel):
    """Mesh identity of one federated cluster.

    Serialised with camelCase keys, the shape mesh stacks read from
    ``mesh:clusters``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    cluster_name: str = Field(alias="clusterName")
    tailscale_port: Optional[int] = Field(default=None, alias="tailscalePort")
    istio_remote_secret_data: Optional[str] = Field(default=None, alias="istioRemoteSecretData")
    linkerd_remote_secret_data: Optional[str] = Field(
        default=None, alias="linkerdRemoteSecretData"
    )
    linkerd_gateway_fqdn: Optional[str] = Field(default=None, alias="linkerdGatewayFqdn")


@dataclass(frozen=True)
class ClusterDescriptor:
    """A successfully brought-up cluster, ready for mesh federation."""

    cluster_name: str
    context_name: str
    kubeconfig: ConfigEntry
    provider: CloudProvider
    local_config: ConfigMap
    mesh: MeshClusterEntry


# =============================================================================
# RUN API MODELS
# =============================================================================


class RunRequest(BaseModel):
    """Request to start an orchestration run."""

    dry_run: Optional[bool] = Field(
        default=None,
        description="Override DRY_RUN for this run",
    )
    skip_providers: list[CloudProvider] = Field(default_factory=list)


class RunResponse(BaseModel):
    """Response after starting a run."""

    run_id: int
    stack_name: str
    dry_run: bool
    status: RunStatus
    message: str


class StackRun(BaseModel):
    """One stack convergence recorded within a run."""

    id: int
    resource_name: str
    project_name: str
    stack_name: str
    status: RunStatus
    outputs: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Run(BaseModel):
    """Orchestration run record."""

    id: int
    stack_name: str
    dry_run: bool
    status: RunStatus
    error_message: Optional[str] = None
    clusters: Optional[list[str]] = None
    stacks: list[StackRun] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
