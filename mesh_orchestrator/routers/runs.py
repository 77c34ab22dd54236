"""Run endpoints."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from mesh_orchestrator.models import Run, RunRequest, RunResponse, RunStatus
from mesh_orchestrator.services.run import RunService, get_run_service

router = APIRouter(prefix="/api/v1/runs", tags=["Runs"])


@router.post("", response_model=RunResponse, status_code=202)
async def start_run(
    request: RunRequest,
    background_tasks: BackgroundTasks,
    service: RunService = Depends(get_run_service),
) -> RunResponse:
    """Start an orchestration run in the background."""
    try:
        record = service.create(dry_run=request.dry_run)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(
        service.execute, record.id, record.dry_run, request.skip_providers
    )

    return RunResponse(
        run_id=record.id,
        stack_name=record.stack_name,
        dry_run=record.dry_run,
        status=RunStatus.PENDING,
        message="Run initiated. Check the run endpoint for progress.",
    )


@router.get("", response_model=list[Run])
async def list_runs(service: RunService = Depends(get_run_service)) -> list[Run]:
    """List runs, newest first."""
    return service.list_runs()


@router.get("/{run_id}", response_model=Run)
async def get_run(run_id: int, service: RunService = Depends(get_run_service)) -> Run:
    """Get a run with its stack records."""
    run = service.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run
