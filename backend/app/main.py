from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.app.wiring import Pipeline, build_sqlite_pipeline
from backend.recommender.errors import (
    ConcurrentUpdate,
    InvalidTransition,
    StoreUnavailable,
    ValidationError,
)
from backend.recommender.tuning import ONBOARDING_GENRES
from backend.recommender.variants import variant_names

setup_logging(settings.log_level)


# Request bodies
class FeedbackIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1, max_length=32)  # shown/clicked/converted/dismissed
    converted_action: Optional[str] = Field(default=None, max_length=32)
    surface: str = Field("home", min_length=1, max_length=32)
    session_id: Optional[str] = Field(default=None, max_length=128)


class TrackEventIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, max_length=64)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = Field(default=None, max_length=128)


class TrackBatchIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    # elements are validated one by one so a bad event cannot sink the batch
    events: List[Any] = Field(..., min_length=1, max_length=500)


class OnboardingIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    genres: List[str] = Field(..., min_length=1)
    authors: List[str] = Field(default_factory=list)


def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "pipeline", None) is None
        if owned:
            app.state.pipeline = build_sqlite_pipeline(settings)
        yield
        if owned:
            app.state.pipeline.close()

    app = FastAPI(
        title=settings.app_name,
        version="0.2.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    if settings.cors_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins_list,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Error mapping
    @app.exception_handler(InvalidTransition)
    async def invalid_transition(request: Request, exc: InvalidTransition):
        return JSONResponse(status_code=409, content={"detail": exc.message, "field": exc.field})

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.message, "field": exc.field})

    @app.exception_handler(ConcurrentUpdate)
    async def concurrent_update(request: Request, exc: ConcurrentUpdate):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"detail": "storage unavailable"})

    def pipe() -> Pipeline:
        return app.state.pipeline

    @app.get("/health")
    def health():
        return {"status": "ok", "app": settings.app_name, "env": settings.app_env}

    @app.get("/")
    def root():
        return {"message": "Recommendation API is running", "docs": "/docs", "health": "/health"}

    # Recommendations
    @app.get("/recommendations")
    def recommendations(
        user_id: str = Query(..., min_length=1),
        surface: str = Query("home", min_length=1, max_length=32),
        limit: int = Query(settings.default_limit, ge=1, le=settings.max_limit),
        refresh: bool = Query(False),
        session_id: Optional[str] = Query(default=None, max_length=128),
    ):
        svc = pipe().recommendations
        context = svc.build_context(surface, session_id)
        result = svc.get_recommendations(
            user_id,
            surface=surface,
            limit=limit,
            force_refresh=refresh,
            context=context,
        )
        return {
            "user_id": result.user_id,
            "surface": result.surface,
            "source": result.source,
            "cached": result.source == "cache",
            "algorithm": result.algorithm,
            "context": context.to_dict(),
            "items": [r.to_dict() for r in result.items],
            "related": {name: [r.to_dict() for r in recs] for name, recs in result.related.items()},
        }

    @app.get("/recommendations/friends")
    def friend_recommendations(
        user_id: str = Query(..., min_length=1),
        limit: int = Query(settings.related_limit, ge=1, le=settings.max_limit),
        refresh: bool = Query(False),
        session_id: Optional[str] = Query(default=None, max_length=128),
    ):
        result = pipe().recommendations.get_friend_recommendations(
            user_id, limit=limit, force_refresh=refresh, session_id=session_id
        )
        return {
            "user_id": result.user_id,
            "source": result.source,
            "cached": result.source == "cache",
            "items": [r.to_dict() for r in result.items],
        }

    @app.get("/recommendations/similar/{item_id}")
    def similar_recommendations(
        item_id: str,
        limit: int = Query(settings.related_limit, ge=1, le=settings.max_limit),
        user_id: Optional[str] = Query(default=None, min_length=1),
    ):
        items = pipe().recommendations.similar_items(item_id, limit, user_id)
        if items is None:
            raise HTTPException(status_code=404, detail="Item not found")
        return {"item_id": item_id, "items": [r.to_dict() for r in items]}

    @app.post("/recommendations/feedback")
    def recommendation_feedback(body: FeedbackIn):
        row = pipe().recommendations.record_feedback(
            body.user_id,
            body.item_id,
            body.action,
            converted_action=body.converted_action,
            surface=body.surface,
            session_id=body.session_id,
        )
        return {"status": "ok", "row_status": row["status"]}

    # Metrics (computed from the log only)
    @app.get("/metrics/algorithms")
    def algorithm_metrics(
        algorithm: Optional[str] = Query(default=None),
        days: int = Query(settings.metrics_window_days, ge=1, le=365),
    ):
        metrics = pipe().log.get_algorithm_metrics(algorithm, days)
        return {"algorithm": algorithm or "all", "days": days, "metrics": metrics}

    @app.get("/metrics/algorithms/compare")
    def compare_algorithms(
        a: str = Query(..., min_length=1),
        b: str = Query(..., min_length=1),
        days: int = Query(settings.metrics_window_days, ge=1, le=365),
    ):
        if a == b:
            raise HTTPException(status_code=400, detail="a and b must name different algorithms")
        return {"days": days, **pipe().log.compare_algorithms(a, b, days)}

    @app.get("/metrics/top-items")
    def top_items(
        limit: int = Query(20, ge=1, le=200),
        days: int = Query(30, ge=1, le=365),
    ):
        return {"days": days, "items": pipe().log.top_performers(limit, days)}

    # Event ingestion
    @app.post("/events/track")
    def track_event(body: TrackEventIn):
        event = pipe().events.track(body.type, body.user_id, body.metadata, body.session_id)
        return {"status": "ok", "event_id": event["event_id"]}

    @app.post("/events/track/batch")
    def track_events(body: TrackBatchIn):
        events = [
            {**ev, "user_id": body.user_id} if isinstance(ev, dict) else ev
            for ev in body.events
        ]
        result = pipe().events.track_batch(events)
        return {
            "status": "ok",
            "accepted": result.accepted,
            "failed": result.failed,
            "errors": result.errors,
        }

    # Onboarding
    @app.post("/onboarding")
    def onboarding(body: OnboardingIn):
        p = pipe()
        summary = p.preferences.merge_onboarding_preferences(body.user_id, body.genres, body.authors)
        p.events.track_quietly(
            "onboarding.completed",
            body.user_id,
            {"genres": body.genres, "authors": body.authors},
        )
        return {"status": "ok", "preferences": summary}

    @app.get("/onboarding/genres")
    def onboarding_genres():
        return {"genres": ONBOARDING_GENRES}

    # Debug endpoints
    @app.get("/debug/preferences")
    def debug_preferences(user_id: str = Query(..., min_length=1)):
        profile = pipe().preferences.get(user_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="No preference profile for this user")
        return {
            "user_id": user_id,
            "profile": profile.to_doc(),
            "top_genres": [{"genre": g, "weight": w} for g, w in profile.top_genres()],
        }

    @app.get("/debug/cache/stats")
    def debug_cache_stats():
        return pipe().cache.stats()

    @app.get("/debug/recommendation-log")
    def debug_recommendation_log(
        user_id: str = Query(..., min_length=1),
        limit: int = Query(50, ge=1, le=200),
    ):
        return pipe().log.user_history(user_id, limit)

    @app.get("/debug/activity")
    def debug_activity(
        user_id: str = Query(..., min_length=1),
        days: int = Query(7, ge=1, le=90),
    ):
        tracker = pipe().events
        return {
            "user_id": user_id,
            "days": days,
            "activity": tracker.recent_activity(user_id, days),
            "engagement_score": tracker.engagement_score(user_id, days),
            "active": tracker.is_active_user(user_id, days),
        }

    @app.get("/debug/algorithms")
    def debug_algorithms():
        return {"algorithms": variant_names(), "ab_testing": settings.ab_testing_enabled}

    return app


app = create_app()
