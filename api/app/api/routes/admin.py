from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.security import get_human_principal, require_principal_scopes
from app.schemas.admin import (
    CanonicalRawRequest,
    DemandEventOut,
    RawLinkRequest,
    SimilarityConfigOut,
    SimilarityConfigPatchRequest,
)
from app.schemas.demands import CanonicalDemandOut, RawPostingOut
from app.services.ingestion import DemandService, get_demand_service
from app.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    RepositoryWriteError,
    get_repository,
)

router = APIRouter()


@router.get("/similarity-config", response_model=SimilarityConfigOut)
async def get_similarity_config(
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
) -> SimilarityConfigOut:
    require_principal_scopes(principal, {"admin:write"})
    config = await service.config_provider.get()
    return SimilarityConfigOut(**config.as_dict())


@router.patch("/similarity-config", response_model=SimilarityConfigOut)
async def patch_similarity_config(
    payload: SimilarityConfigPatchRequest,
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
) -> SimilarityConfigOut:
    require_principal_scopes(principal, {"admin:write"})

    try:
        config = await service.config_provider.update(
            actor_user_id=principal.actor_id,
            enabled=payload.enabled,
            rule=payload.rule,
            threshold=payload.threshold,
        )
    except (RepositoryUnavailableError, RepositoryWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SimilarityConfigOut(**config.as_dict())


@router.put("/raw-postings/{raw_id}/link", response_model=RawPostingOut)
async def link_raw_posting(
    raw_id: str,
    payload: RawLinkRequest,
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
) -> RawPostingOut:
    require_principal_scopes(principal, {"admin:write"})

    try:
        row = await service.admin_link_raw(
            raw_id=raw_id,
            canonical_id=payload.canonical_id,
            actor_user_id=principal.actor_id,
            reason=payload.reason,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RawPostingOut(**row)


@router.delete("/raw-postings/{raw_id}/link", response_model=RawPostingOut)
async def unlink_raw_posting(
    raw_id: str,
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
    reason: str | None = Query(default=None, max_length=500),
) -> RawPostingOut:
    require_principal_scopes(principal, {"admin:write"})

    try:
        row = await service.admin_unlink_raw(raw_id=raw_id, actor_user_id=principal.actor_id, reason=reason)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RawPostingOut(**row)


@router.put("/canonical-demands/{canonical_id}/canonical-raw", response_model=CanonicalDemandOut)
async def set_canonical_raw(
    canonical_id: str,
    payload: CanonicalRawRequest,
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
) -> CanonicalDemandOut:
    require_principal_scopes(principal, {"admin:write"})

    try:
        row = await service.admin_set_canonical_raw(
            canonical_id=canonical_id,
            raw_id=payload.raw_id,
            actor_user_id=principal.actor_id,
            reason=payload.reason,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return CanonicalDemandOut(**row)


@router.get("/canonical-demands/{canonical_id}/events", response_model=list[DemandEventOut])
async def list_canonical_demand_events(
    canonical_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[DemandEventOut]:
    require_principal_scopes(principal, {"admin:write"})

    try:
        rows = await repository.list_demand_events(entity_id=canonical_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [DemandEventOut(**row) for row in rows]
