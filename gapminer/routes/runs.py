"""Run routes."""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from gapminer.database import get_db
from gapminer.errors import ConfigurationError, RunNotFound
from gapminer.models import Agent, Context, Log, Run
from gapminer.orchestrator import Orchestrator
from gapminer.schemas.run import (
    AgentSummary,
    ContextSummary,
    ContextVersionEntry,
    LogEntry,
    RunCreate,
    RunListEntry,
    RunResponse,
    RunResultsResponse,
    RunStartRequest,
    RunStartResponse,
    RunStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])

_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator, created on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator


def shutdown_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        _orchestrator.scheduler.shutdown()
        _orchestrator = None


def _require_run(db: Session, run_id: uuid.UUID) -> Run:
    run = db.get(Run, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.post("", response_model=RunResponse)
def create_run(
    data: RunCreate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Create a new run."""
    try:
        run = orchestrator.create_run(data)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RunResponse(
        run_id=run.id,
        query=run.query,
        status=run.status,
        paper_count=len(data.papers),
    )


@router.get("", response_model=List[RunListEntry])
def list_runs(
    owner_id: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List runs, newest first, optionally for one owner."""
    query = db.query(Run)
    if owner_id is not None:
        query = query.filter(Run.owner_id == owner_id)
    runs = query.order_by(Run.created_at.desc()).limit(limit).all()

    return [
        RunListEntry(
            run_id=run.id,
            owner_id=run.owner_id,
            query=run.query,
            status=run.status,
            current_iteration=run.current_iteration,
            progress_percentage=run.progress_percentage,
            paper_count=len(run.papers),
            created_at=run.created_at,
            completed_at=run.completed_at,
        )
        for run in runs
    ]


@router.post("/{run_id}/start", response_model=RunStartResponse)
def start_run(
    run_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    data: Optional[RunStartRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Validate a run and execute it in the background."""
    papers = data.papers if data else []
    try:
        orchestrator.validate(run_id, papers)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(orchestrator.start, run_id, papers)

    logger.info(f"Started run {run_id}")

    return RunStartResponse(run_id=run_id, message="Run started")


@router.get("/{run_id}/status", response_model=RunStatus)
def get_run_status(
    run_id: uuid.UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Get run status."""
    try:
        return orchestrator.get_status(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@router.get("/{run_id}/results", response_model=RunResultsResponse)
def get_run_results(
    run_id: uuid.UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Get final results (empty until the run finishes)."""
    try:
        return orchestrator.get_results(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@router.post("/{run_id}/cancel", response_model=RunStatus)
def cancel_run(
    run_id: uuid.UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Request cancellation of a run."""
    try:
        return orchestrator.cancel(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@router.get("/{run_id}/logs", response_model=List[LogEntry])
def get_run_logs(
    run_id: uuid.UUID,
    limit: int = 200,
    db: Session = Depends(get_db),
):
    """Get run logs, oldest first."""
    _require_run(db, run_id)
    return (
        db.query(Log)
        .filter(Log.run_id == run_id)
        .order_by(Log.created_at)
        .limit(limit)
        .all()
    )


@router.get("/{run_id}/agents", response_model=List[AgentSummary])
def get_run_agents(
    run_id: uuid.UUID,
    iteration: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """List agent executions of a run."""
    _require_run(db, run_id)
    query = db.query(Agent).filter(Agent.run_id == run_id)
    if iteration is not None:
        query = query.filter(Agent.iteration_number == iteration)
    return query.order_by(Agent.iteration_number, Agent.agent_type, Agent.agent_id).all()


@router.get("/{run_id}/contexts", response_model=List[ContextSummary])
def get_run_contexts(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """List active contexts of a run."""
    _require_run(db, run_id)
    return orchestrator.context_store.list_contexts(run_id)


@router.get("/{run_id}/contexts/{context_id}/versions", response_model=List[ContextVersionEntry])
def get_context_versions(
    run_id: uuid.UUID,
    context_id: uuid.UUID,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Version history of a context."""
    context = db.get(Context, context_id)
    if not context or context.run_id != run_id:
        raise HTTPException(status_code=404, detail="Context not found")
    return orchestrator.context_store.list_versions(context_id)
