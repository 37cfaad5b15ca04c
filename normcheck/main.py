from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .coefficients import CoefficientTable
from .coordinator import AnalysisCoordinator
from .errors import NormDataError, NotFoundError, ValidationError
from .ingestion import parse_coefficients, parse_norm_curves, parse_observation_rows
from .logging_utils import log_event
from .models import AnalysisRequest, CoefficientBatchRequest, NormBatchRequest, ObservationBatchRequest
from .settings import settings
from .snapshot_store import load_curve_snapshot, save_curve_snapshot


@asynccontextmanager
async def lifespan(app: FastAPI):
    coordinator = AnalysisCoordinator()
    if settings.norm_snapshot_enabled:
        curves, updated_at = load_curve_snapshot()
        if curves:
            coordinator.ingest_curves(curves)
        log_event("norm_snapshot_loaded", curves=len(curves), updated_at=updated_at)
    app.state.coordinator = coordinator
    yield
    app.state.coordinator = None


app = FastAPI(title="Norm Deviation Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_coordinator(request: Request) -> AnalysisCoordinator:
    coordinator: AnalysisCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="coordinator not initialised")
    return coordinator


CoordinatorDep = Annotated[AnalysisCoordinator, Depends(get_coordinator)]


def _http_error(e: NormDataError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=422, detail=str(e))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/norms")
def ingest_norms(req: NormBatchRequest, coordinator: CoordinatorDep) -> dict[str, Any]:
    t0 = time.perf_counter()
    batch = parse_norm_curves(req.curves)
    report = coordinator.ingest_curves(batch.items)
    if settings.norm_snapshot_enabled and report:
        save_curve_snapshot(coordinator.store.curves())

    log_event(
        "norms_request",
        request_id=str(uuid.uuid4()),
        accepted=batch.accepted_count,
        rejected=batch.rejected_count,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return {
        "results": report,
        "accepted": batch.accepted_count,
        "rejected": [r.as_dict() for r in batch.rejected],
    }


@app.post("/observations")
def ingest_observations(req: ObservationBatchRequest, coordinator: CoordinatorDep) -> dict[str, Any]:
    t0 = time.perf_counter()
    batch = parse_observation_rows(req.rows)
    summary = coordinator.ingest_observations(batch.items, replace=req.replace)

    log_event(
        "observations_request",
        request_id=str(uuid.uuid4()),
        accepted=batch.accepted_count,
        rejected=batch.rejected_count,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return {
        "summary": summary.as_dict(),
        "accepted": batch.accepted_count,
        "rejected": [r.as_dict() for r in batch.rejected],
    }


@app.post("/coefficients")
def ingest_coefficients(req: CoefficientBatchRequest, coordinator: CoordinatorDep) -> dict[str, Any]:
    batch = parse_coefficients(req.coefficients)
    try:
        table = CoefficientTable(batch.items, min_work_threshold=req.min_work_threshold)
    except NormDataError as e:
        raise _http_error(e) from e
    coordinator.set_coefficients(table)
    return {
        "accepted": batch.accepted_count,
        "loaded": len(table),
        "filtered_out": table.filtered_out,
        "rejected": [r.as_dict() for r in batch.rejected],
        "statistics": table.statistics(),
    }


@app.post("/analyze")
def analyze(req: AnalysisRequest, coordinator: CoordinatorDep) -> dict[str, Any]:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    try:
        result = coordinator.analyze(req)
    except NormDataError as e:
        raise _http_error(e) from e

    log_event(
        "analyze_request",
        request_id=request_id,
        segment_name=req.segment_name,
        norm_id=req.norm_id,
        analyzed=result.analyzed,
        skipped=result.skipped,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return result.as_dict()


@app.get("/sections")
def list_sections(coordinator: CoordinatorDep) -> dict[str, Any]:
    return {"sections": coordinator.sections()}


@app.get("/sections/{name}/norms")
def section_norms(name: str, coordinator: CoordinatorDep) -> dict[str, Any]:
    try:
        norms = coordinator.norms_for_section(name)
    except NormDataError as e:
        raise _http_error(e) from e
    return {"section": name, "norms": norms}


@app.get("/norms/validate")
def validate_norms(coordinator: CoordinatorDep) -> dict[str, Any]:
    return coordinator.validate_curves().as_dict()


@app.get("/cache/stats")
def cache_stats(coordinator: CoordinatorDep) -> dict[str, Any]:
    return coordinator.cache_stats()


@app.delete("/cache")
def clear_cache(coordinator: CoordinatorDep) -> dict[str, int]:
    return {"cleared": coordinator.clear_cache()}
