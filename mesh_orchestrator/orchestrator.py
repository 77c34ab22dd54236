"""Top-level driver: bring every planned cluster up, then federate the mesh."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import ValidationError

from mesh_orchestrator.bring_up import ClusterBringUp
from mesh_orchestrator.engine import Engine, PulumiEngine
from mesh_orchestrator.errors import BringUpFailedError, ConfigurationError
from mesh_orchestrator.executor import StackCache, StackExecutor, StackLedger
from mesh_orchestrator.federation import MeshFederation
from mesh_orchestrator.kubeconfig import KubeconfigRegistrar, KubeconfigStore, KubeCriticalSection
from mesh_orchestrator.models import CloudProvider, ClusterDescriptor, ClusterPlan, StackDescriptor
from mesh_orchestrator.settings import Settings
from mesh_orchestrator.shared_config import SharedConfig
from mesh_orchestrator.shell import CommandRunner, run_command
from mesh_orchestrator.stacks import MESH_MODULES, StackModule
from mesh_orchestrator.task_group import settle_all

logger = logging.getLogger(__name__)


def load_cluster_plan(path: Path) -> ClusterPlan:
    """Read and validate the cluster plan YAML file.

    Raises:
        ConfigurationError: The file is missing, not YAML, or not a valid plan
    """
    try:
        data = yaml.safe_load(Path(path).read_text())
    except FileNotFoundError:
        raise ConfigurationError(f"Cluster plan {path} not found") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cluster plan {path} is not valid YAML: {e}") from e

    try:
        return ClusterPlan.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid cluster plan {path}: {e}") from e


def resolve_mesh_modules(names: Iterable[str]) -> list[StackModule]:
    modules = []
    for name in names:
        if name not in MESH_MODULES:
            raise ConfigurationError(
                f"Unknown mesh project '{name}', expected one of {', '.join(sorted(MESH_MODULES))}"
            )
        modules.append(MESH_MODULES[name])
    return modules


@dataclass
class RunReport:
    """What a run brought up, skipped and federated."""

    clusters: dict[str, ClusterDescriptor] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    federated: dict[str, list[str]] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise BringUpFailedError(self.failures, self.clusters)


class Orchestrator:
    """Runs one orchestration pass over a cluster plan.

    All collaborators of a run are built here and passed down explicitly;
    nothing is cached between runs.

    Args:
        settings: Orchestrator settings
        engine: IaC engine, defaults to the Pulumi Automation API
        plan: Cluster plan, defaults to ``settings.clusters_file``
        run_command: Runs provider CLIs
        ledger: Optional sink recording every stack convergence
        known_identities: Stack identities recorded by earlier runs
        dry_run: Overrides ``settings.dry_run``
        skipped_providers: Overrides ``settings.skipped_providers``
    """

    def __init__(
        self,
        settings: Settings,
        engine: Optional[Engine] = None,
        plan: Optional[ClusterPlan] = None,
        run_command: CommandRunner = run_command,
        ledger: Optional[StackLedger] = None,
        known_identities: Optional[dict[str, str]] = None,
        dry_run: Optional[bool] = None,
        skipped_providers: Optional[Iterable[CloudProvider]] = None,
    ):
        self.settings = settings
        self.engine = engine or PulumiEngine()
        self.plan = plan
        self.run_command = run_command
        self.ledger = ledger
        self.dry_run = settings.dry_run if dry_run is None else dry_run
        self.skipped_providers = frozenset(
            settings.skipped_providers if skipped_providers is None else skipped_providers
        )
        self.mesh_modules = resolve_mesh_modules(settings.mesh_project_names)
        self.cache = StackCache(known_identities)
        self.critical_section = KubeCriticalSection()
        self.kubeconfig = KubeconfigStore(settings.kubeconfig_path, self.critical_section)
        self.registrar = KubeconfigRegistrar(
            self.kubeconfig, self.run_command, settings.command_timeout_seconds
        )

    def root_descriptor(self) -> StackDescriptor:
        return StackDescriptor(
            project_name=self.settings.root_project,
            stack_name=self.settings.stack_name,
            work_dir=self.settings.infra_dir,
        )

    async def run(self) -> RunReport:
        """Bring up every planned cluster, then federate the ones that came up.

        Raises:
            BringUpFailedError: After federation, if any bring-up or mesh stack failed
        """
        plan = self.plan or load_cluster_plan(self.settings.clusters_file)
        logger.info(
            f"Starting run for stack {self.settings.stack_name} "
            f"({'dry run' if self.dry_run else 'live'}), {len(plan.clusters)} cluster(s)"
        )

        shared = await SharedConfig.load(self.engine, self.root_descriptor())
        executor = StackExecutor(
            self.engine,
            shared=shared,
            cache=self.cache,
            dry_run=self.dry_run,
            timeout=self.settings.stack_timeout_seconds,
            ledger=self.ledger,
        )

        report = RunReport()
        bring_ups = {}
        for spec in plan.clusters:
            if CloudProvider(spec.provider) in self.skipped_providers:
                logger.info(f"Skipping cluster {spec.name} ({spec.provider})")
                report.skipped.append(spec.name)
                continue
            bring_up = ClusterBringUp(
                spec,
                executor,
                self.registrar,
                stack_name=self.settings.stack_name,
                stacks_dir=self.settings.stacks_dir,
                shared=shared,
            )
            bring_ups[spec.name] = bring_up.run()

        settled = await settle_all(bring_ups)
        for name, error in settled.failures.items():
            logger.error(f"Bring-up of {name} failed: {error}")
        report.failures.update(settled.failures)

        # Plan order, so mesh config is stable across runs
        report.clusters = {
            spec.name: settled.successes[spec.name]
            for spec in plan.clusters
            if spec.name in settled.successes
        }

        federation = MeshFederation(
            executor,
            shared,
            self.mesh_modules,
            stack_name=self.settings.stack_name,
            stacks_dir=self.settings.stacks_dir,
        )
        meshed = await federation.federate(list(report.clusters.values()))
        report.federated = meshed.successes
        for name, error in meshed.failures.items():
            report.failures[f"{name} (mesh)"] = error

        logger.info(
            f"Run finished: {len(report.clusters)} up, {len(report.skipped)} skipped, "
            f"{len(report.failures)} failed"
        )
        report.raise_for_failures()
        return report
