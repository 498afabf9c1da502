"""Event processing pipeline.

EventProcessor is the boundary the API and the queue worker call. For each
event it:

1. validates the identifiers and duration,
2. stamps a processing timestamp when the event has none,
3. persists the raw event (an event_id already stored and applied stops here),
4. folds WATCH durations into the video's running stats,
5. updates the user's affinity profile,
6. marks the event applied.

Steps 3, 4 and 6 are the primary path: storage errors and timeouts there raise
ProcessingError. Step 5 is best effort; a failure is logged as a
ProfileUpdateWarning and counted, and the event still succeeds. An event whose
primary path failed after it was stored is applied again when it is retried.
"""
import asyncio
import logging
import math
import time
from datetime import datetime
from typing import Dict, List, Optional

import analytics
from config import (
    MAX_BATCH_SIZE, STORE_TIMEOUT_SECONDS, UNKNOWN_CATEGORY, WATCH_HISTORY_LIMIT,
)
from errors import ProcessingError, ProfileUpdateWarning, ValidationError
from helpers import utcnow
from models import BatchResult, CategoryStats, TrendingVideo, UserProfile, Video, VideoStats, ViewEvent
from recommendations import RecommendationEngine
from stats_engine import StatsEngine
from stores import AffinityStore, Catalog, EventStore
from trends import TrendDetector

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("event_id", "user_id", "video_id")
BULK_CHUNK = 1000


class EventProcessor:

    def __init__(self, store: EventStore, catalog: Catalog, affinity: AffinityStore,
                 timeout: float = STORE_TIMEOUT_SECONDS,
                 max_batch_size: int = MAX_BATCH_SIZE,
                 history_limit: int = WATCH_HISTORY_LIMIT):
        self.store = store
        self.catalog = catalog
        self.affinity = affinity
        self.timeout = timeout
        self.max_batch_size = max_batch_size
        self.history_limit = history_limit

        self.stats = StatsEngine(store)
        self.trends = TrendDetector(store, catalog)
        self.recommender = RecommendationEngine(affinity, catalog)

        self.processed = 0
        self.duplicates = 0
        self.failed = 0
        self.profile_failures = 0

    async def _call(self, awaitable, what: str, timeout: Optional[float] = None):
        """Await a store call with a deadline; failures become ProcessingError"""
        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise ProcessingError(f"Timed out after {timeout}s: {what}") from e
        except (ValidationError, ProcessingError):
            raise
        except Exception as e:
            raise ProcessingError(f"Failed to {what}: {e}") from e

    @staticmethod
    def validate(event: ViewEvent) -> None:
        for field in REQUIRED_FIELDS:
            value = getattr(event, field)
            if not value or not value.strip():
                raise ValidationError(f"Invalid event: {field} is required")
        if event.duration is None or event.duration < 0:
            raise ValidationError(f"Invalid event: duration must be non-negative, got {event.duration}")

    @staticmethod
    def _stamp(event: ViewEvent) -> ViewEvent:
        if event.timestamp is not None:
            return event
        return event.model_copy(update={"timestamp": utcnow()})

    async def process(self, event: ViewEvent) -> bool:
        """Process one event; False when it was a duplicate and nothing changed"""
        self.validate(event)
        event = self._stamp(event)

        try:
            stored = await self._call(self.store.put_event(event), f"persist event {event.event_id}")
            if not stored:
                self.duplicates += 1
                logger.info(f"Duplicate event {event.event_id} ignored")
                return False
            await self._apply(event)
        except ProcessingError:
            self.failed += 1
            logger.error(f"Error processing event: {event.event_id}", exc_info=True)
            raise

        self.processed += 1
        logger.debug(f"Processed event: {event.event_id} for user: {event.user_id}")
        return True

    async def process_batch(self, events: List[ViewEvent]) -> BatchResult:
        """Bulk-persist a batch, then apply side effects event by event in order.

        Admission checks run before anything is written. After that, one
        event's failed side effects do not stop the rest of the batch.
        """
        if not events:
            raise ValidationError("No events provided")
        if len(events) > self.max_batch_size:
            raise ValidationError(
                f"Batch size {len(events)} exceeds maximum of {self.max_batch_size} events"
            )
        for event in events:
            self.validate(event)

        started = time.perf_counter()
        events = [self._stamp(e) for e in events]
        stored = await self._call(
            self.store.put_events_bulk(events),
            f"persist batch of {len(events)} events",
            timeout=self.timeout * math.ceil(len(events) / BULK_CHUNK),
        )

        applied = set()
        for event in events:
            if event.event_id not in stored or event.event_id in applied:
                continue
            applied.add(event.event_id)
            try:
                await self._apply(event)
            except ProcessingError as e:
                self.failed += 1
                logger.error(f"Batch side effects failed for event {event.event_id}: {e}")

        elapsed = time.perf_counter() - started
        duplicates = len(events) - len(applied)
        self.processed += len(applied)
        self.duplicates += duplicates

        result = BatchResult(
            processed=len(events),
            duplicates=duplicates,
            elapsed_ms=elapsed * 1000.0,
            events_per_second=len(events) / elapsed if elapsed > 0 else float(len(events)),
        )
        logger.info(
            f"Processed batch of {result.processed} events in {result.elapsed_ms:.1f}ms "
            f"({result.events_per_second:.0f} events/sec, {duplicates} duplicates)"
        )
        return result

    async def _apply(self, event: ViewEvent) -> None:
        if event.is_watch:
            await self._call(
                self.stats.update(event.video_id, event.duration, event.user_id),
                f"update stats for {event.video_id}"
            )
        await self._update_profile(event)
        await self._call(self.store.mark_applied(event.event_id), f"mark {event.event_id} applied")

    async def _update_profile(self, event: ViewEvent) -> None:
        now = utcnow()
        watch_time = event.duration if event.is_watch else 0

        try:
            video = await asyncio.wait_for(self.catalog.get_video(event.video_id), self.timeout)
            category = video.category if video is not None else UNKNOWN_CATEGORY

            def fold(profile: Optional[UserProfile]) -> UserProfile:
                profile = profile or UserProfile(user_id=event.user_id)
                profile.add_to_history(event.video_id, category, watch_time, now, self.history_limit)
                return profile

            await asyncio.wait_for(self.affinity.upsert_profile(event.user_id, fold), self.timeout)
        except Exception as e:
            self.profile_failures += 1
            logger.warning(str(ProfileUpdateWarning(event.user_id, e)))

    async def get_stats(self, video_id: str) -> Optional[VideoStats]:
        return await self._call(self.stats.get(video_id), f"read stats for {video_id}")

    async def top_videos(self, limit: int) -> List[VideoStats]:
        return await self._call(self.stats.top_by_views(limit), "read top videos")

    async def detect_trending(self, limit: int, now: Optional[datetime] = None) -> List[TrendingVideo]:
        return await self._call(self.trends.detect_trending(limit, now), "detect trending videos")

    async def recommend(self, user_id: str, limit: int) -> List[Video]:
        return await self._call(self.recommender.recommend(user_id, limit),
                                f"recommend for {user_id}")

    async def refresh_recommendations(self, user_id: str, limit: int) -> List[Video]:
        return await self._call(self.recommender.refresh(user_id, limit),
                                f"refresh recommendations for {user_id}")

    async def category_aggregate(self) -> Dict[str, CategoryStats]:
        return await self._call(analytics.category_aggregate(self.store, self.catalog),
                                "aggregate categories")

    async def aggregate_by(self, dimension: str) -> Dict[str, int]:
        return await self._call(analytics.aggregate_by(self.store, dimension),
                                f"aggregate by {dimension}")

    async def aggregate_by_period(self, period: str) -> List[dict]:
        return await self._call(analytics.aggregate_by_period(self.store, period),
                                f"aggregate by {period}")

    async def hourly_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        return await self._call(analytics.hourly_stats(self.store, now), "read hourly stats")

    async def dashboard(self):
        return await self._call(analytics.dashboard_summary(self.store, self.catalog),
                                "build dashboard")

    def counters(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "profile_failures": self.profile_failures,
        }

    async def metrics(self):
        return await self._call(analytics.get_metrics(self.store, self.counters()), "read metrics")
