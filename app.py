import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query

import db
from db import PersistenceError
from engines.orchestrator import AnalyticsOrchestrator
from engines.stores import SQLiteHistoryStore, SQLiteProfileStore
from env_validation import load_analytics_config, validate_environment
from schemas import (
    CustomMetricRequest,
    ExerciseOutcome,
    HistoryFilter,
    OutcomeIngestRequest,
    OutcomeValidationError,
    ProgressionUpdateRequest,
    SessionIngestRequest,
    SessionRecord,
)

logger = logging.getLogger(__name__)


# Built by the lifespan once the environment has been validated.
ORCHESTRATOR: Optional[AnalyticsOrchestrator] = None


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global ORCHESTRATOR
    try:
        # Validate environment variables first
        validate_environment()

        db.init()
        if ORCHESTRATOR is None:
            ORCHESTRATOR = AnalyticsOrchestrator.from_config(
                load_analytics_config(), SQLiteProfileStore(), SQLiteHistoryStore()
            )
        logger.info(
            "Analytics engine ready (auto_snapshots=%s, cache_ttl=%ss)",
            ORCHESTRATOR.auto_snapshots,
            ORCHESTRATOR.cache.ttl_seconds,
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    flushed = ORCHESTRATOR.close()
    ORCHESTRATOR = None
    logger.info("Shutdown flushed %s pending metrics profiles", flushed)


app = FastAPI(title="Learning Analytics Engine", version="1.0.0", lifespan=_lifespan)


def _orchestrator() -> AnalyticsOrchestrator:
    if ORCHESTRATOR is None:
        raise HTTPException(status_code=503, detail="analytics engine not started")
    return ORCHESTRATOR


def _require_user(user_id: str) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    return user_id


def _profile_unavailable(user_id: str, exc: PersistenceError) -> HTTPException:
    logger.error("Metrics profile for %s unavailable: %s", user_id, exc)
    return HTTPException(status_code=503, detail="metrics profile unavailable")


# ---------- Ingestion ----------
@app.post("/analytics/outcomes")
def ingest_outcome(body: OutcomeIngestRequest):
    user_id = _require_user(body.user_id)
    outcome = ExerciseOutcome.model_validate(body.model_dump(exclude={"user_id"}))
    try:
        summary = _orchestrator().ingest(user_id, outcome)
    except OutcomeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return summary.model_dump(mode="json")


@app.post("/analytics/sessions")
def record_session(body: SessionIngestRequest):
    user_id = _require_user(body.user_id)
    session = SessionRecord.model_validate(body.model_dump(exclude={"user_id"}))
    try:
        summary = _orchestrator().record_session(user_id, session)
    except OutcomeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return summary.model_dump(mode="json")


@app.post("/analytics/progression")
def update_progression(body: ProgressionUpdateRequest):
    user_id = _require_user(body.user_id)
    try:
        summary = _orchestrator().update_progression(user_id, level=body.level, progress=body.progress)
    except OutcomeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return summary.model_dump(mode="json")


@app.post("/analytics/custom-metrics")
def create_custom_metric(body: CustomMetricRequest):
    user_id = _require_user(body.user_id)
    try:
        metric = _orchestrator().create_custom_metric(
            user_id,
            body.metric_id,
            body.value,
            name=body.name,
            category=body.category,
            metadata=body.metadata,
        )
    except OutcomeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return metric.model_dump(mode="json")


@app.put("/analytics/custom-metrics")
def update_custom_metric(body: CustomMetricRequest):
    user_id = _require_user(body.user_id)
    try:
        metric = _orchestrator().update_custom_metric(
            user_id, body.metric_id, body.value, metadata=body.metadata
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"unknown metric {body.metric_id}") from exc
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return metric.model_dump(mode="json")


# ---------- Queries ----------
@app.get("/analytics/profile")
def get_profile(user_id: str, summary: bool = False):
    user_id = _require_user(user_id)
    orchestrator = _orchestrator()
    try:
        if summary:
            return orchestrator.get_summary(user_id).model_dump(mode="json")
        return orchestrator.get_profile(user_id).model_dump(mode="json")
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc


@app.get("/analytics/recommendations")
def get_recommendations(user_id: str, count: int = Query(default=3, ge=0, le=50)):
    user_id = _require_user(user_id)
    try:
        recommendations = _orchestrator().recommend(user_id, count=count)
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return {
        "user_id": user_id,
        "recommendations": [rec.model_dump(mode="json") for rec in recommendations],
    }


@app.get("/analytics/strengths")
def get_strengths_and_weaknesses(user_id: str):
    user_id = _require_user(user_id)
    try:
        result = _orchestrator().identify_strengths_and_weaknesses(user_id)
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    return result.model_dump(mode="json")


@app.get("/analytics/metrics")
def get_metrics(user_id: str, metric_id: Optional[List[str]] = Query(default=None)):
    user_id = _require_user(user_id)
    try:
        metrics = _orchestrator().get_user_metrics(user_id, metric_id)
    except PersistenceError as exc:
        raise _profile_unavailable(user_id, exc) from exc
    if metric_id:
        missing = [mid for mid in metric_id if mid not in metrics]
        if missing:
            raise HTTPException(status_code=404, detail=f"unknown metric(s): {', '.join(missing)}")
    return {
        "user_id": user_id,
        "metrics": {mid: metric.model_dump(mode="json") for mid, metric in metrics.items()},
    }


@app.get("/analytics/history")
def get_history(
    user_id: str,
    metric_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: Optional[int] = Query(default=None, ge=0),
    offset: Optional[int] = Query(default=None, ge=0),
):
    user_id = _require_user(user_id)
    history_filter = HistoryFilter(start_date=start_date, end_date=end_date, limit=limit, offset=offset)
    try:
        snapshots = _orchestrator().get_metric_history(user_id, metric_id, history_filter)
    except PersistenceError as exc:
        logger.exception("Failed to read metric history for %s", user_id)
        raise HTTPException(status_code=503, detail="metric history unavailable") from exc
    return {
        "user_id": user_id,
        "metric_id": metric_id,
        "snapshots": [snapshot.model_dump(mode="json") for snapshot in snapshots],
    }


# ---------- Maintenance ----------
@app.post("/analytics/maintenance")
def run_maintenance():
    orchestrator = _orchestrator()
    try:
        pruned = orchestrator.prune_history()
    except PersistenceError as exc:
        logger.exception("Metric history pruning failed")
        raise HTTPException(status_code=503, detail="metric history unavailable") from exc
    flushed = orchestrator.flush_pending()
    return {"status": "ok", "pruned": pruned, "flushed": flushed}
