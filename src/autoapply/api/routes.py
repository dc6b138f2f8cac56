from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from autoapply.api.deps import get_controller
from autoapply.api.schemas import (
    ApplicationResponse,
    LogEventResponse,
    LogStatsResponse,
    PolicyResponse,
    RunResponse,
    RunStartRequest,
    RunStopRequest,
    SkippedJobResponse,
)
from autoapply.core.controller import (
    RunController,
    serialize_application,
    serialize_log_event,
    serialize_queue_record,
    serialize_run,
)
from autoapply.errors import AlreadyRunning, NotRunOwner, RunNotActive, RunNotFound
from autoapply.types import ApplyPolicy

router = APIRouter(prefix="/api", tags=["api"])


@router.post("/runs", response_model=RunResponse, status_code=201)
def start_run(payload: RunStartRequest, controller: RunController = Depends(get_controller)) -> RunResponse:
    try:
        run = controller.start_run(payload.user_id)
    except AlreadyRunning as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc), "run_id": exc.run_id}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return RunResponse.model_validate(serialize_run(run))


@router.post("/runs/{run_id}/stop", response_model=RunResponse)
def stop_run(
    run_id: int,
    payload: RunStopRequest,
    controller: RunController = Depends(get_controller),
) -> RunResponse:
    try:
        run = controller.stop_run(run_id, payload.user_id)
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NotRunOwner as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except RunNotActive as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RunResponse.model_validate(serialize_run(run))


@router.get("/users/{user_id}/run", response_model=RunResponse)
def get_run_status(user_id: int, controller: RunController = Depends(get_controller)) -> RunResponse:
    run = controller.get_run_status(user_id)
    if run is None:
        raise HTTPException(status_code=404, detail="No runs for user")
    return RunResponse.model_validate(serialize_run(run))


@router.get("/users/{user_id}/applications", response_model=list[ApplicationResponse])
def list_applications(
    user_id: int,
    run_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    controller: RunController = Depends(get_controller),
) -> list[ApplicationResponse]:
    rows = controller.list_applications(user_id, run_id=run_id, limit=limit)
    return [ApplicationResponse.model_validate(serialize_application(row)) for row in rows]


@router.get("/users/{user_id}/skipped", response_model=list[SkippedJobResponse])
def list_skipped(
    user_id: int,
    run_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    controller: RunController = Depends(get_controller),
) -> list[SkippedJobResponse]:
    rows = controller.list_skipped(user_id, run_id=run_id, limit=limit)
    return [SkippedJobResponse.model_validate(serialize_queue_record(row)) for row in rows]


@router.get("/users/{user_id}/policy", response_model=PolicyResponse)
def get_policy(user_id: int, controller: RunController = Depends(get_controller)) -> PolicyResponse:
    try:
        policy = controller.repo.get_apply_policy(user_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return PolicyResponse(user_id=user_id, policy=policy)


@router.put("/users/{user_id}/policy", response_model=PolicyResponse)
def set_policy(
    user_id: int,
    payload: ApplyPolicy,
    controller: RunController = Depends(get_controller),
) -> PolicyResponse:
    try:
        controller.repo.set_apply_policy(user_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return PolicyResponse(user_id=user_id, policy=payload)


@router.get("/logs", response_model=list[LogEventResponse])
def get_logs(
    user_id: int,
    run_id: int | None = None,
    job_id: int | None = None,
    stage: str | None = None,
    level: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    skip: int = Query(default=0, ge=0),
    controller: RunController = Depends(get_controller),
) -> list[LogEventResponse]:
    rows = controller.get_logs(
        user_id=user_id,
        run_id=run_id,
        job_id=job_id,
        stage=stage,
        level=level,
        limit=limit,
        offset=skip,
    )
    return [LogEventResponse.model_validate(serialize_log_event(row)) for row in rows]


@router.get("/logs/stats", response_model=LogStatsResponse)
def get_log_stats(
    user_id: int,
    run_id: int | None = None,
    hours: int = Query(default=24, ge=1, le=24 * 30),
    controller: RunController = Depends(get_controller),
) -> LogStatsResponse:
    return LogStatsResponse.model_validate(controller.get_log_stats(user_id=user_id, run_id=run_id, hours=hours))


@router.get("/queues/metrics")
def queue_metrics(controller: RunController = Depends(get_controller)) -> dict:
    return controller.queue_metrics()
