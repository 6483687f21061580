from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from annuaire_api.schemas.publications import (
    BulkRetryFailure,
    BulkRetryOut,
    BulkRetryRequest,
    DashboardStatus,
    PublicationDetailOut,
    PublicationOut,
)
from annuaire_api.schemas.tasks import TaskOperation, TaskOut
from annuaire_api.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from annuaire_api.services.publications import get_publication_service
from annuaire_api.services.queue import dashboard_status

router = APIRouter()


@router.get("", response_model=list[PublicationOut])
async def list_publications(
    service=Depends(get_publication_service),
    limit: int = Query(default=50, ge=1, le=500),
    publication_status: DashboardStatus | None = Query(default=None, alias="status"),
    operation: TaskOperation | None = Query(default=None),
) -> list[PublicationOut]:
    try:
        rows = await service.list_publications(limit=limit, status=publication_status, operation=operation)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [_to_publication(row) for row in rows]


@router.post("/bulk-retry", response_model=BulkRetryOut)
async def bulk_retry_publications(payload: BulkRetryRequest, service=Depends(get_publication_service)) -> BulkRetryOut:
    try:
        result = await service.bulk_retry(payload.publication_ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return BulkRetryOut(
        retried=[TaskOut(**task) for task in result.retried],
        failed=[BulkRetryFailure(task_id=item["task_id"], error=item["error"]) for item in result.failed],
    )


@router.get("/{task_id}", response_model=PublicationDetailOut)
async def get_publication(task_id: str, service=Depends(get_publication_service)) -> PublicationDetailOut:
    try:
        detail = await service.get_publication(task_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return PublicationDetailOut(
        task=TaskOut(**detail["task"]),
        history=[_to_publication(row) for row in detail["history"]],
    )


@router.post("/{task_id}/retry", response_model=TaskOut, status_code=status.HTTP_202_ACCEPTED)
async def retry_publication(task_id: str, service=Depends(get_publication_service)) -> TaskOut:
    try:
        task = await service.retry_publication(task_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return TaskOut(**task)


def _to_publication(row: dict[str, Any]) -> PublicationOut:
    return PublicationOut(
        id=str(row["id"]),
        task_id=row["task_id"],
        entry_id=row["entry_id"],
        email=row.get("entry_label"),
        operation=row["operation"],
        attempted_at=row["attempted_at"],
        status=dashboard_status(row["status"]),
        attempt_count=row["attempt_count"],
        error=row.get("error"),
    )
