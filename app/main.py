"""FastAPI application"""
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import List
import logging

from models import EventInput
from db import (
    MongoAffinityStore, MongoCatalog, MongoEventStore, connect_db, disconnect_db, seed_catalog,
)
from errors import ProcessingError, ValidationError
from messaging import connect_queue, disconnect_queue, publish_event
from processor import EventProcessor
from helpers import RateLimiter
from config import LOG_LEVEL, MAX_BATCH_SIZE, RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW

logging.basicConfig(level=LOG_LEVEL, format='{"time":"%(asctime)s","msg":"%(message)s"}')
logger = logging.getLogger(__name__)


class AppState:
    processor: EventProcessor = None


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_db()
    catalog = MongoCatalog()
    await seed_catalog(catalog)
    state.processor = EventProcessor(MongoEventStore(), catalog, MongoAffinityStore())
    await connect_queue()
    logger.info("System initialized")
    yield
    await disconnect_queue()
    await disconnect_db()


app = FastAPI(title="Streaming View Analytics API", version="1.0.0", lifespan=lifespan)
rate_limiter = RateLimiter(RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW)


def get_processor() -> EventProcessor:
    if state.processor is None:
        raise HTTPException(status_code=503, detail="Processor not initialized")
    return state.processor


def check_limit(limit: int, maximum: int = 100):
    if limit < 1 or limit > maximum:
        raise HTTPException(status_code=400, detail=f"Limit must be 1-{maximum}")


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_id = request.client.host if request.client else "unknown"
    if not rate_limiter.allow_request(client_id):
        return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})
    return await call_next(request)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ProcessingError)
async def processing_error_handler(request: Request, exc: ProcessingError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.post("/events", status_code=201)
async def ingest_event(event: EventInput, processor: EventProcessor = Depends(get_processor)):
    """Process a single event"""
    applied = await processor.process(event.to_event())
    return {"status": "processed" if applied else "duplicate", "event_id": event.event_id}


@app.post("/events/batch", status_code=201)
async def ingest_batch(events: List[EventInput], processor: EventProcessor = Depends(get_processor)):
    """Process a batch of events synchronously"""
    result = await processor.process_batch([e.to_event() for e in events])
    return result


@app.post("/events/queue", status_code=202)
async def enqueue_events(events: List[EventInput]):
    """Publish a batch of events for the worker"""
    if not events or len(events) > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail="Invalid batch size")

    for event in events:
        await publish_event(event.model_dump(mode="json"))

    return {"status": "accepted", "count": len(events)}


@app.get("/videos/top")
async def get_top_videos(limit: int = 10, processor: EventProcessor = Depends(get_processor)):
    """Top videos by total views"""
    check_limit(limit)
    videos = await processor.top_videos(limit)
    return {"count": len(videos), "videos": videos}


@app.get("/videos/trending")
async def get_trending_videos(limit: int = 10, processor: EventProcessor = Depends(get_processor)):
    """Videos viewed well above their trailing-week average"""
    check_limit(limit)
    trending = await processor.detect_trending(limit)
    return {"count": len(trending), "trending": trending}


@app.get("/videos/{video_id}/stats")
async def get_video_stats(video_id: str, processor: EventProcessor = Depends(get_processor)):
    """Running stats for one video"""
    stats = await processor.get_stats(video_id)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No stats for video {video_id}")
    return stats


@app.get("/users/{user_id}/recommendations")
async def get_recommendations(user_id: str, limit: int = 5,
                              processor: EventProcessor = Depends(get_processor)):
    """Personalized recommendations"""
    check_limit(limit, maximum=50)
    videos = await processor.recommend(user_id, limit)
    return {"user_id": user_id, "count": len(videos), "recommendations": videos}


@app.post("/users/{user_id}/recommendations/refresh")
async def refresh_recommendations(user_id: str, limit: int = 5,
                                  processor: EventProcessor = Depends(get_processor)):
    """Recompute recommendations and cache them on the profile"""
    check_limit(limit, maximum=50)
    videos = await processor.refresh_recommendations(user_id, limit)
    return {"user_id": user_id, "count": len(videos), "recommendations": videos}


@app.get("/categories")
async def get_category_stats(processor: EventProcessor = Depends(get_processor)):
    """Per-category views and mean watch duration"""
    categories = await processor.category_aggregate()
    return {"count": len(categories), "categories": categories}


@app.get("/analytics/periods")
async def get_period_stats(period: str = "day", processor: EventProcessor = Depends(get_processor)):
    """Event volume per hour, day or month"""
    return {"period": period, "data": await processor.aggregate_by_period(period)}


@app.get("/analytics/hourly")
async def get_hourly_stats(processor: EventProcessor = Depends(get_processor)):
    """Event volume per hour over the last day"""
    return {"data": await processor.hourly_stats()}


@app.get("/analytics/{dimension}")
async def get_breakdown(dimension: str, processor: EventProcessor = Depends(get_processor)):
    """Event counts by device_type, quality or action"""
    return {"dimension": dimension, "data": await processor.aggregate_by(dimension)}


@app.get("/dashboard")
async def get_dashboard(processor: EventProcessor = Depends(get_processor)):
    """Dashboard summary"""
    return await processor.dashboard()


@app.get("/health")
async def health_check():
    """Health check"""
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics(processor: EventProcessor = Depends(get_processor)):
    """System metrics"""
    return await processor.metrics()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
