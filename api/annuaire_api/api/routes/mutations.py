from fastapi import APIRouter, Depends, HTTPException, status

from annuaire_api.core.security import get_machine_principal
from annuaire_api.schemas.mutations import MutationOut, MutationRequest
from annuaire_api.schemas.tasks import TaskOut
from annuaire_api.services.errors import RepositoryUnavailableError, RepositoryValidationError
from annuaire_api.services.publications import get_publication_service

router = APIRouter()


@router.post("", response_model=MutationOut, status_code=status.HTTP_202_ACCEPTED)
async def record_mutation(
    payload: MutationRequest,
    principal=Depends(get_machine_principal),
    service=Depends(get_publication_service),
) -> MutationOut:
    try:
        principal.require_scopes({"mutations:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await service.handle_mutation(
            entry_id=payload.entry_id,
            entry_type=payload.entry_type,
            kind=payload.kind,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MutationOut(
        entry_id=result.entry_id,
        action=result.action,
        operation=result.operation,
        task=TaskOut(**result.task) if result.task else None,
    )
