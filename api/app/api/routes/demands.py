from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.security import get_human_principal, require_principal_scopes
from app.schemas.demands import (
    CanonicalDemandCountOut,
    CanonicalDemandOut,
    CheckSimilarOut,
    CheckSimilarRequest,
    DemandIngestOut,
    DemandIngestRequest,
    DemandTextRequest,
    MatchDiagnosticsOut,
    ParsedDemandOut,
    RangeField,
    RawPostingOut,
    SimilarCandidateOut,
    SplitDemandOut,
)
from app.services.ingestion import DemandService, DemandValidationError, get_demand_service
from app.services.parser import has_multiple_demands, parse_demand_text, split_multi_line_demands
from app.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryUnsupportedOrderError,
    RepositoryValidationError,
    RepositoryWriteError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=DemandIngestOut, status_code=status.HTTP_201_CREATED)
async def ingest_demand(
    payload: DemandIngestRequest,
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
) -> DemandIngestOut:
    require_principal_scopes(principal, {"demand:write"})

    try:
        result = await service.ingest(
            raw_text=payload.raw_text,
            hints=payload.hints.model_dump(exclude_none=True),
            submitter_id=principal.actor_id,
            source=payload.source,
            parse_missing_hints=payload.parse_missing_hints,
        )
    except DemandValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (RepositoryUnavailableError, RepositoryWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DemandIngestOut(
        raw_id=result.raw_posting["id"],
        canonical_id=result.canonical["id"],
        created_canonical=result.created_canonical,
        match=MatchDiagnosticsOut(**result.diagnostics),
    )


@router.post("/check-similar", response_model=CheckSimilarOut)
async def check_similar(
    payload: CheckSimilarRequest,
    principal=Depends(get_human_principal),
    service: DemandService = Depends(get_demand_service),
) -> CheckSimilarOut:
    require_principal_scopes(principal, {"demand:read"})

    try:
        result = await service.check_similar(
            raw_text=payload.raw_text,
            hints=payload.hints.model_dump(exclude_none=True),
            submitter_id=principal.actor_id,
            since_days=payload.since_days,
            limit=payload.limit,
            threshold=payload.threshold,
            rule=payload.rule,
        )
    except DemandValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    return CheckSimilarOut(
        has_similar=result.has_similar,
        candidates=[
            SimilarCandidateOut(
                canonical_id=row.canonical_id,
                raw_text=row.raw_text,
                text_similarity=row.text_similarity,
                category_similarity=row.category_similarity,
                last_updated_at=row.last_updated_at,
                is_same_submitter=row.is_same_submitter,
            )
            for row in result.candidates
        ],
        rule=result.rule,
        threshold=result.threshold,
        candidate_pool_size=result.candidate_pool_size,
        non_critical_failures=result.non_critical_failures,
    )


@router.post("/parse", response_model=ParsedDemandOut)
async def parse_demand(
    payload: DemandTextRequest,
    principal=Depends(get_human_principal),
) -> ParsedDemandOut:
    require_principal_scopes(principal, {"demand:read"})
    return ParsedDemandOut(**parse_demand_text(payload.raw_text).to_hints())


@router.post("/split", response_model=SplitDemandOut)
async def split_demands(
    payload: DemandTextRequest,
    principal=Depends(get_human_principal),
) -> SplitDemandOut:
    require_principal_scopes(principal, {"demand:read"})
    if not has_multiple_demands(payload.raw_text):
        return SplitDemandOut(has_multiple=False, demands=[payload.raw_text.strip()])
    return SplitDemandOut(has_multiple=True, demands=split_multi_line_demands(payload.raw_text))


@router.get("/canonical", response_model=list[CanonicalDemandOut])
async def list_canonical_demands(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=200),
    only_valid: bool = Query(default=True),
) -> list[CanonicalDemandOut]:
    require_principal_scopes(principal, {"demand:read"})

    try:
        try:
            rows = await repository.list_canonical_demands(
                order_by="last_updated_ts",
                limit=limit,
                only_valid=only_valid,
            )
        except RepositoryUnsupportedOrderError:
            rows = await repository.list_canonical_demands(order_by=None, limit=limit, only_valid=only_valid)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [CanonicalDemandOut(**row) for row in rows]


@router.get("/canonical/range", response_model=list[CanonicalDemandOut])
async def list_canonical_demands_in_range(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    start_ts: int = Query(ge=0),
    end_ts: int = Query(ge=0),
    field: RangeField = Query(default="created_time_ts"),
    order: Literal["asc", "desc"] = Query(default="desc"),
    only_valid: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CanonicalDemandOut]:
    require_principal_scopes(principal, {"demand:read"})
    _require_window(start_ts, end_ts)

    try:
        rows = await repository.list_canonical_demands_in_range(
            start_ts=start_ts,
            end_ts=end_ts,
            field=field,
            only_valid=only_valid,
            descending=order == "desc",
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [CanonicalDemandOut(**row) for row in rows]


@router.get("/canonical/count", response_model=CanonicalDemandCountOut)
async def count_canonical_demands_in_range(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    start_ts: int = Query(ge=0),
    end_ts: int = Query(ge=0),
    field: RangeField = Query(default="created_time_ts"),
    only_valid: bool = Query(default=False),
) -> CanonicalDemandCountOut:
    require_principal_scopes(principal, {"demand:read"})
    _require_window(start_ts, end_ts)

    try:
        count = await repository.count_canonical_demands_in_range(
            start_ts=start_ts,
            end_ts=end_ts,
            field=field,
            only_valid=only_valid,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CanonicalDemandCountOut(count=count, field=field, start_ts=start_ts, end_ts=end_ts, only_valid=only_valid)


@router.get("/canonical/{canonical_id}", response_model=CanonicalDemandOut)
async def get_canonical_demand(
    canonical_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CanonicalDemandOut:
    require_principal_scopes(principal, {"demand:read"})

    try:
        row = await repository.get_canonical_demand(canonical_id=canonical_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return CanonicalDemandOut(**row)


@router.get("/raw/{raw_id}", response_model=RawPostingOut)
async def get_raw_posting(
    raw_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> RawPostingOut:
    require_principal_scopes(principal, {"demand:read"})

    try:
        row = await repository.get_raw_posting(raw_id=raw_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RawPostingOut(**row)


def _require_window(start_ts: int, end_ts: int) -> None:
    if end_ts <= start_ts:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="end_ts must be after start_ts")
