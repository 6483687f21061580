from fastapi import APIRouter, Depends, HTTPException, Query, status

from annuaire_api.core.security import get_machine_principal
from annuaire_api.schemas.tasks import ClaimedTaskOut, TaskOut, TaskResultRequest, TasksMaintenanceOut
from annuaire_api.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from annuaire_api.services.publications import get_publication_service

router = APIRouter()


@router.get("", response_model=list[TaskOut])
async def get_tasks(
    principal=Depends(get_machine_principal),
    service=Depends(get_publication_service),
    limit: int = Query(default=20, ge=1, le=200),
) -> list[TaskOut]:
    try:
        principal.require_scopes({"tasks:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        tasks = await service.list_tasks(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [TaskOut(**task) for task in tasks]


@router.post("/reap-stale", response_model=TasksMaintenanceOut)
async def reap_stale_tasks(
    principal=Depends(get_machine_principal),
    service=Depends(get_publication_service),
    limit: int = Query(default=100, ge=1, le=1000),
) -> TasksMaintenanceOut:
    try:
        principal.require_scopes({"tasks:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        requeued = await service.reap_stale(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return TasksMaintenanceOut(requeued=requeued)


@router.post("/{task_id}/claim", response_model=ClaimedTaskOut)
async def claim_task(
    task_id: str,
    principal=Depends(get_machine_principal),
    service=Depends(get_publication_service),
) -> ClaimedTaskOut:
    try:
        principal.require_scopes({"tasks:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        claimed = await service.claim_task(task_id, claimed_by=principal.subject)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ClaimedTaskOut(task=TaskOut(**claimed.task), entry=claimed.entry)


@router.post("/{task_id}/result", response_model=TaskOut)
async def submit_task_result(
    task_id: str,
    payload: TaskResultRequest,
    principal=Depends(get_machine_principal),
    service=Depends(get_publication_service),
) -> TaskOut:
    try:
        principal.require_scopes({"tasks:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        task = await service.submit_outcome(
            task_id,
            claim_id=payload.claim_id,
            version=payload.version,
            outcome=payload.outcome,
            error=payload.error,
            content_hash=payload.content_hash,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return TaskOut(**task)
