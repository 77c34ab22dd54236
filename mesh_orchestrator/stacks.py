"""Stack modules: the Pulumi projects the orchestrator knows how to converge.

Cluster, project and base-service programs live in their own Pulumi projects
under ``stacks_dir``. The mesh programs ship with this repository under
``programs/``, one directory per project.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from mesh_orchestrator.models import StackDescriptor

MESH_PROGRAM_DIR = Path(__file__).resolve().parents[1] / "programs"


@dataclass(frozen=True)
class StackModule:
    """A Pulumi project and the contract its stacks follow.

    Attributes:
        project_name: Pulumi project name, half of every stack's identity
        directory: Directory of the program, relative to ``stacks_dir`` unless absolute
        namespace: Namespace the project's outputs are published under;
            defaults to the project name
        required_config: Keys that must be present before convergence
    """

    project_name: str
    directory: Path
    namespace: Optional[str] = None
    required_config: tuple[str, ...] = field(default_factory=tuple)

    @property
    def output_namespace(self) -> str:
        return self.namespace or self.project_name

    def work_dir(self, stacks_dir: Path) -> Path:
        return self.directory if self.directory.is_absolute() else stacks_dir / self.directory

    def descriptor(self, stack_name: str, stacks_dir: Path) -> StackDescriptor:
        return StackDescriptor(
            project_name=self.project_name,
            stack_name=stack_name,
            work_dir=self.work_dir(stacks_dir),
        )


GCP_PROJECT = StackModule("infra-gcp-project", Path("gcp-project"))
GKE_CLUSTER = StackModule(
    "infra-gke-cluster",
    Path("gke-cluster"),
    required_config=("gcp:project", "gcp:region"),
)
AZURE_CLUSTER = StackModule(
    "infra-azure-cluster",
    Path("azure-cluster"),
    required_config=("azure-native:subscriptionId",),
)
DO_CLUSTER = StackModule("infra-do-cluster", Path("do-cluster"))
LINODE_CLUSTER = StackModule("infra-linode-cluster", Path("linode-cluster"))
K8S_TRIFECTA = StackModule(
    "infra-k8s-trifecta",
    Path("k8s-trifecta"),
    required_config=("kubernetes:context", "cloud:kubernetesProvider"),
)

ISTIO_MESH = StackModule(
    "infra-k8s-istio-mesh",
    MESH_PROGRAM_DIR / "k8s-istio-mesh",
    required_config=("cloud:clusterName", "cloud:contextName", "mesh:clusters"),
)
LINKERD_MESH = StackModule(
    "infra-k8s-linkerd-mesh",
    MESH_PROGRAM_DIR / "k8s-linkerd-mesh",
    required_config=("cloud:clusterName", "cloud:contextName", "mesh:clusters"),
)
TAILSCALE = StackModule(
    "infra-k8s-tailscale",
    MESH_PROGRAM_DIR / "k8s-tailscale",
    required_config=(
        "cloud:clusterName",
        "cloud:contextName",
        "mesh:clusters",
        "infra-k8s-tailscale:tailscaleKey",
    ),
)

MESH_MODULES = {module.project_name: module for module in (ISTIO_MESH, LINKERD_MESH, TAILSCALE)}
