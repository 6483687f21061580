from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from annuaire_api.schemas.indicators import IndicatorPeriodOut
from annuaire_api.services.errors import (
    AlreadySubmittedError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from annuaire_api.services.indicators import get_indicator_service

router = APIRouter()


@router.get("", response_model=IndicatorPeriodOut)
async def get_indicators(
    service=Depends(get_indicator_service),
    period: str = Query(default="current", min_length=1, max_length=16),
) -> IndicatorPeriodOut:
    try:
        view = await service.get_period(period)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return IndicatorPeriodOut(**view)


@router.get("/periods", response_model=list[IndicatorPeriodOut])
async def list_indicator_periods(
    service=Depends(get_indicator_service),
    limit: int = Query(default=24, ge=1, le=120),
) -> list[IndicatorPeriodOut]:
    try:
        views = await service.list_periods(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [IndicatorPeriodOut(**view) for view in views]


@router.get("/{period}/export")
async def export_indicators(period: str, service=Depends(get_indicator_service)) -> Response:
    try:
        content = await service.export_csv(period)
        resolved = service.resolve_period(period)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="indicateurs_{resolved}.csv"'},
    )


@router.post("/{period}/submit", response_model=IndicatorPeriodOut)
async def submit_indicators(period: str, service=Depends(get_indicator_service)) -> IndicatorPeriodOut:
    try:
        view = await service.submit(period)
    except AlreadySubmittedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return IndicatorPeriodOut(**view)
