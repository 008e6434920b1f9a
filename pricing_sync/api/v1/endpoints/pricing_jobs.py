"""
Pricing sync operator endpoints: queue, runs, breakers, retry ledger, maintenance.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import time
from pricing_sync.api.deps import get_db, get_pricing_client
from pricing_sync.integrations.justtcg import BatchPricingClient
from pricing_sync.jobs.queue import AlreadyQueuedOrRunning, JobQueue, validate_game
from pricing_sync.jobs.reaper import StuckJobReaper
from pricing_sync.jobs.run_tracker import JobRunTracker
from pricing_sync.jobs.scheduler import PricingScheduler, SchedulerOutcome
from pricing_sync.models.schemas.base import ResponseBase
from pricing_sync.models.schemas.pricing_jobs import (
    CancelRequest,
    CircuitBreakerRead,
    EnqueueRequest,
    EnqueueResponse,
    ForceFinishRequest,
    JobRunRead,
    QueueEntryRead,
    RetryEntryRead,
    RetryLedgerRead,
    ReviveRequest,
    RunNextRequest,
    RunOutcome,
    StuckRunRead,
    SweepRequest,
    SweepSummary,
)
from pricing_sync.services.maintenance import MaintenanceService
from pricing_sync.services.retry_ledger import RetryLedger
from pricing_sync.utils import get_logger, log_business_event, log_performance
from pricing_sync.utils.circuit_breaker import CircuitBreaker

router = APIRouter()
logger = get_logger(__name__)


def _game_or_400(game: str) -> str:
    try:
        return validate_game(game)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _run_or_404(tracker: JobRunTracker, run_id: int):
    run = tracker.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Job run {run_id} not found")
    return run


def _outcome(outcome: Optional[SchedulerOutcome], *, queue_job_id: Optional[int] = None, already_active: bool = False) -> RunOutcome:
    if outcome is None:
        return RunOutcome(queue_job_id=queue_job_id, already_active=already_active)
    run = outcome.run
    return RunOutcome(
        queue_job_id=outcome.queue_job_id,
        run_id=run.run_id,
        status=run.status.value,
        expected_batches=run.expected_batches,
        actual_batches=run.actual_batches,
        items_processed=run.items_processed,
        items_updated=run.items_updated,
        error=run.error,
        requeued_job_id=outcome.requeued_job_id,
        already_active=already_active,
    )


# ----------------------------- queue ----------------------------- #
@router.post("/jobs", response_model=ResponseBase, summary="Enqueue a pricing job for a game")
async def enqueue_job(payload: EnqueueRequest, request: Request, db: Session = Depends(get_db)) -> ResponseBase:
    request_id = getattr(request.state, "request_id", None)
    game = _game_or_400(payload.game)
    queue = JobQueue(db)
    try:
        job_id = queue.enqueue(game, payload.priority)
        result = EnqueueResponse(job_id=job_id, game=game, already_active=False)
        message = f"Pricing job queued for {game}"
    except AlreadyQueuedOrRunning as e:
        # Enqueue is idempotent from the operator's point of view.
        result = EnqueueResponse(job_id=e.existing_id, game=game, already_active=True)
        message = f"Pricing job for {game} is already queued or running"
    logger.info("Enqueue request handled", game=game, already_active=result.already_active, request_id=request_id)
    return ResponseBase(success=True, message=message, data=result.model_dump(mode="json"))


@router.post("/jobs/run", response_model=ResponseBase, summary="Run the next due pricing job")
async def run_next_job(
    request: Request,
    payload: Optional[RunNextRequest] = None,
    db: Session = Depends(get_db),
    client: BatchPricingClient = Depends(get_pricing_client),
) -> ResponseBase:
    start_time = time.time()
    game = _game_or_400(payload.game) if payload and payload.game else None
    scheduler = PricingScheduler(db, client)
    outcome = await scheduler.run_next(game)
    result = _outcome(outcome)
    log_performance(
        operation="run_pricing_job",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"status": result.status, "game": game, "request_id": getattr(request.state, "request_id", None)},
    )
    message = "No pricing job due" if outcome is None else f"Pricing run finished with status {result.status}"
    return ResponseBase(success=True, message=message, data=result.model_dump(mode="json"))


@router.post("/schedule", response_model=ResponseBase, summary="Enqueue (if needed) and run a game's pricing job")
async def schedule_job(
    payload: EnqueueRequest,
    db: Session = Depends(get_db),
    client: BatchPricingClient = Depends(get_pricing_client),
) -> ResponseBase:
    game = _game_or_400(payload.game)
    scheduler = PricingScheduler(db, client)
    scheduled = await scheduler.schedule(game, payload.priority)
    result = _outcome(scheduled.outcome, queue_job_id=scheduled.queue_job_id, already_active=scheduled.already_active)
    message = "No pricing job due" if scheduled.outcome is None else f"Pricing run finished with status {result.status}"
    return ResponseBase(success=True, message=message, data=result.model_dump(mode="json"))


@router.get("/queue", response_model=List[QueueEntryRead], summary="List active queue entries")
async def list_queue(db: Session = Depends(get_db)) -> List[QueueEntryRead]:
    return [QueueEntryRead.model_validate(e) for e in JobQueue(db).list_active()]


# ----------------------------- runs ----------------------------- #
@router.get("/runs", response_model=List[JobRunRead], summary="List recent job runs")
async def list_runs(
    game: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[JobRunRead]:
    if game:
        game = _game_or_400(game)
    runs = JobRunTracker(db).list_runs(game=game, status=status, limit=limit)
    return [JobRunRead.model_validate(r) for r in runs]


@router.get("/runs/stuck", response_model=List[StuckRunRead], summary="List runs running longer than the threshold")
async def list_stuck_runs(
    max_runtime_minutes: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
) -> List[StuckRunRead]:
    stuck = StuckJobReaper(db).list_stuck(max_runtime_minutes)
    return [StuckRunRead.model_validate(s) for s in stuck]


@router.post("/runs/sweep", response_model=ResponseBase, summary="Force-terminate stuck runs")
async def sweep_stuck_runs(
    request: Request,
    payload: Optional[SweepRequest] = None,
    db: Session = Depends(get_db),
) -> ResponseBase:
    summary = SweepSummary(**StuckJobReaper(db).sweep(payload.max_runtime_minutes if payload else None))
    logger.info("Stuck run sweep requested", request_id=getattr(request.state, "request_id", None), **summary.model_dump())
    return ResponseBase(
        success=True,
        message=f"Terminated {summary.runs_terminated} stuck run(s)",
        data=summary.model_dump(),
    )


@router.get("/runs/{run_id}", response_model=JobRunRead, summary="Get one job run")
async def get_run(run_id: int, db: Session = Depends(get_db)) -> JobRunRead:
    return JobRunRead.model_validate(_run_or_404(JobRunTracker(db), run_id))


@router.post("/runs/{run_id}/cancel", response_model=ResponseBase, summary="Request cooperative cancellation")
async def cancel_run(
    run_id: int,
    request: Request,
    payload: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
) -> ResponseBase:
    tracker = JobRunTracker(db)
    run = _run_or_404(tracker, run_id)
    control = tracker.request_cancel(run_id, payload.reason if payload else None)
    log_business_event(
        event_type="pricing_cancel_api",
        details={"run_id": run_id},
        game=run.game,
        request_id=getattr(request.state, "request_id", None),
    )
    return ResponseBase(
        success=True,
        message="Cancellation requested; the run stops at the next batch boundary",
        data={"run_id": run_id, "requested_at": control.requested_at.isoformat(), "reason": control.reason},
    )


@router.post("/runs/{run_id}/force-finish", response_model=ResponseBase, summary="Force a running run to a terminal status")
async def force_finish_run(run_id: int, payload: ForceFinishRequest, db: Session = Depends(get_db)) -> ResponseBase:
    tracker = JobRunTracker(db)
    _run_or_404(tracker, run_id)
    finished = tracker.force_finish(run_id, payload.status, payload.error)
    return ResponseBase(
        success=True,
        message="Run finished" if finished else "Run was not running; nothing changed",
        data={"run_id": run_id, "finished": finished, "status": tracker.get(run_id).status},
    )


# ----------------------------- circuit breakers ----------------------------- #
@router.get("/circuit-breakers", response_model=List[CircuitBreakerRead], summary="Per-game breaker state")
async def list_circuit_breakers(db: Session = Depends(get_db)) -> List[CircuitBreakerRead]:
    snapshot = CircuitBreaker(db).snapshot()
    return [CircuitBreakerRead(game=game, **state) for game, state in snapshot.items()]


@router.post("/circuit-breakers/{game}/reset", response_model=ResponseBase, summary="Close a game's breaker")
async def reset_circuit_breaker(game: str, db: Session = Depends(get_db)) -> ResponseBase:
    game = _game_or_400(game)
    MaintenanceService(db).reset_breaker(game)
    return ResponseBase(success=True, message=f"Circuit breaker for {game} reset", data={"game": game})


# ----------------------------- retry ledger ----------------------------- #
@router.get("/retries/{game}", response_model=RetryLedgerRead, summary="Retry ledger for a game")
async def get_retry_ledger(game: str, db: Session = Depends(get_db)) -> RetryLedgerRead:
    game = _game_or_400(game)
    ledger = RetryLedger(db)
    entries = [
        RetryEntryRead(
            item_id=e.item_id,
            game=e.game,
            retry_count=e.retry_count,
            max_retries=e.max_retries,
            last_error=e.last_error,
            last_retry_at=e.last_retry_at,
            next_retry_at=e.next_retry_at,
            dead=e.is_dead,
        )
        for e in ledger.entries(game)
    ]
    return RetryLedgerRead(game=game, due=ledger.due_for_retry(game), entries=entries)


@router.post("/retries/{game}/revive", response_model=ResponseBase, summary="Clear dead retry markers")
async def revive_dead_variants(game: str, payload: Optional[ReviveRequest] = None, db: Session = Depends(get_db)) -> ResponseBase:
    game = _game_or_400(game)
    revived = MaintenanceService(db).revive_dead(game, payload.item_id if payload else None)
    return ResponseBase(success=True, message=f"Revived {revived} variant(s)", data={"game": game, "revived": revived})


# ----------------------------- maintenance ----------------------------- #
@router.post("/maintenance/cleanup", response_model=ResponseBase, summary="Sweep, prune old runs, reset expired breakers")
async def run_auto_cleanup(db: Session = Depends(get_db)) -> ResponseBase:
    summary = MaintenanceService(db).auto_cleanup()
    return ResponseBase(success=True, message="Cleanup completed", data=summary)


@router.post("/maintenance/reset", response_model=ResponseBase, summary="Terminate all runs, fail queue, close breakers")
async def reset_sync_system(request: Request, db: Session = Depends(get_db)) -> ResponseBase:
    summary = MaintenanceService(db).reset_system()
    logger.warning("System reset requested via API", request_id=getattr(request.state, "request_id", None))
    return ResponseBase(success=True, message="Pricing sync system reset", data=summary)
