from fastapi import APIRouter, Depends, HTTPException, status

from annuaire_api.core.security import get_machine_principal
from annuaire_api.schemas.indicators import IndicatorPeriodOut, OverdueFlagOut
from annuaire_api.schemas.sync import ReconcileTriggerOut, SyncRunOut
from annuaire_api.services.errors import (
    AlreadySubmittedError,
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from annuaire_api.services.indicators import get_indicator_service
from annuaire_api.services.reconciliation import get_reconciliation_service

router = APIRouter()


@router.post("/reconcile", response_model=ReconcileTriggerOut)
async def run_scheduled_reconciliation(
    principal=Depends(get_machine_principal),
    service=Depends(get_reconciliation_service),
) -> ReconcileTriggerOut:
    try:
        principal.require_scopes({"scheduler:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        run = await service.run(trigger="scheduled")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if run is None:
        return ReconcileTriggerOut(started=False, run=None)
    return ReconcileTriggerOut(started=True, run=SyncRunOut(**run))


@router.post("/indicators/flag-overdue", response_model=OverdueFlagOut)
async def flag_overdue_indicators(
    principal=Depends(get_machine_principal),
    service=Depends(get_indicator_service),
) -> OverdueFlagOut:
    try:
        principal.require_scopes({"scheduler:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        flagged = await service.flag_overdue()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return OverdueFlagOut(flagged=flagged)


@router.post("/indicators/{period}/aggregate", response_model=IndicatorPeriodOut)
async def aggregate_indicators(
    period: str,
    principal=Depends(get_machine_principal),
    service=Depends(get_indicator_service),
) -> IndicatorPeriodOut:
    try:
        principal.require_scopes({"scheduler:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        view = await service.aggregate_month(period)
    except AlreadySubmittedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return IndicatorPeriodOut(**view)
