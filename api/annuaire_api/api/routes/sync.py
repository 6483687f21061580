from fastapi import APIRouter, Depends, HTTPException, Query, status

from annuaire_api.schemas.sync import SyncRunOut, SyncStatusOut
from annuaire_api.services.errors import RepositoryUnavailableError
from annuaire_api.services.reconciliation import get_reconciliation_service

router = APIRouter()


@router.get("/sync-status", response_model=SyncStatusOut)
async def get_sync_status(service=Depends(get_reconciliation_service)) -> SyncStatusOut:
    try:
        summary = await service.sync_status()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SyncStatusOut(**summary)


@router.get("/sync/runs", response_model=list[SyncRunOut])
async def list_sync_runs(
    service=Depends(get_reconciliation_service),
    limit: int = Query(default=20, ge=1, le=200),
) -> list[SyncRunOut]:
    try:
        runs = await service.list_runs(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [SyncRunOut(**run) for run in runs]


@router.post("/sync/reconcile", response_model=SyncRunOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_reconciliation(service=Depends(get_reconciliation_service)) -> SyncRunOut:
    try:
        run = await service.run(trigger="manual")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if run is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="reconciliation already running")
    return SyncRunOut(**run)
