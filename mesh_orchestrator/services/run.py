"""Run service: starts orchestration runs and records their outcome."""

import json
import logging
from functools import lru_cache
from typing import Callable, Optional

from mesh_orchestrator.database import Database, RunLedger, RunRecord, get_database
from mesh_orchestrator.errors import BringUpFailedError
from mesh_orchestrator.models import CloudProvider, Run, RunStatus, StackRun
from mesh_orchestrator.orchestrator import Orchestrator
from mesh_orchestrator.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RunService:
    """Service for orchestration runs."""

    def __init__(
        self,
        database: Database,
        settings: Settings,
        orchestrator_factory: Callable[..., Orchestrator] = Orchestrator,
    ):
        self.database = database
        self.settings = settings
        self.orchestrator_factory = orchestrator_factory

    def create(self, dry_run: Optional[bool] = None) -> RunRecord:
        """Create a pending run.

        Raises:
            ValueError: Another run is pending or in progress
        """
        active = self.database.active_run()
        if active:
            raise ValueError(f"Run {active.id} is already {active.status.value}")
        return self.database.create_run(
            stack_name=self.settings.stack_name,
            dry_run=self.settings.dry_run if dry_run is None else dry_run,
        )

    async def execute(
        self,
        run_id: int,
        dry_run: bool,
        skip_providers: Optional[list[CloudProvider]] = None,
    ) -> None:
        """Run the orchestrator and record the outcome; never raises."""
        self.database.update_run_status(run_id, RunStatus.IN_PROGRESS)

        try:
            orchestrator = self.orchestrator_factory(
                self.settings,
                ledger=RunLedger(self.database, run_id),
                known_identities=self.database.stack_identities(),
                dry_run=dry_run,
                skipped_providers=skip_providers or None,
            )
            report = await orchestrator.run()

        except BringUpFailedError as e:
            logger.error(f"Run {run_id} failed: {e}")
            self.database.update_run_status(
                run_id,
                RunStatus.FAILED,
                clusters=list(e.successes),
                error_message=str(e),
            )
            return
        except Exception as e:
            logger.exception(f"Run {run_id} failed")
            self.database.update_run_status(
                run_id,
                RunStatus.FAILED,
                error_message=str(e) or type(e).__name__,
            )
            return

        self.database.update_run_status(
            run_id,
            RunStatus.SUCCEEDED,
            clusters=list(report.clusters),
        )

    def get_run(self, run_id: int) -> Optional[Run]:
        record = self.database.get_run(run_id)
        return self._to_model(record) if record else None

    def list_runs(self) -> list[Run]:
        return [self._to_model(record) for record in self.database.list_runs()]

    def _to_model(self, record: RunRecord) -> Run:
        """Convert record to model."""
        return Run(
            id=record.id,
            stack_name=record.stack_name,
            dry_run=record.dry_run,
            status=record.status,
            error_message=record.error_message,
            clusters=json.loads(record.clusters) if record.clusters else None,
            stacks=[
                StackRun(
                    id=s.id,
                    resource_name=s.resource_name,
                    project_name=s.project_name,
                    stack_name=s.stack_name,
                    status=s.status,
                    outputs=json.loads(s.outputs) if s.outputs else None,
                    error_message=s.error_message,
                    created_at=s.created_at,
                    updated_at=s.updated_at,
                )
                for s in record.stacks
            ],
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


@lru_cache
def get_run_service() -> RunService:
    """Get cached run service instance."""
    return RunService(get_database(), get_settings())
