"""Trend detection: last 24 hours against the trailing week's daily average.

Each call reads the stats touched in the last day and counts WATCH events in
two windows per candidate:

    views_24h       [now - 24h, now)
    views_7d_prior  [now - 7d, now - 24h)

The score is views_24h divided by the prior week's daily average. Videos with
no baseline are scored by their raw recent volume, which favours newly popular
content. At most `concurrency` candidates are counted at once. Reads take no
locks; a score computed just before a concurrent update lands is acceptable.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from config import TREND_CONCURRENCY, TREND_THRESHOLD
from helpers import to_naive_utc, utcnow
from models import Action, TrendingVideo, VideoStats
from stores import Catalog, EventStore

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)
BASELINE_WINDOW = timedelta(days=7)
BASELINE_DAYS = 7.0


def trend_score(views_24h: int, views_7d_prior: int) -> float:
    daily_avg_7d = views_7d_prior / BASELINE_DAYS
    if daily_avg_7d > 0:
        return views_24h / daily_avg_7d
    return float(views_24h)


def is_trending(score: float, threshold: float = TREND_THRESHOLD) -> bool:
    return score > threshold


class TrendDetector:

    def __init__(self, store: EventStore, catalog: Catalog, threshold: float = TREND_THRESHOLD,
                 concurrency: int = TREND_CONCURRENCY):
        self.store = store
        self.catalog = catalog
        self.threshold = threshold
        self.concurrency = concurrency

    async def _score(self, stats: VideoStats, now: datetime,
                     slots: asyncio.Semaphore) -> Optional[TrendingVideo]:
        recent_start = now - RECENT_WINDOW
        async with slots:
            views_24h = await self.store.count_events(stats.video_id, Action.WATCH, recent_start, now)
            views_prior = await self.store.count_events(
                stats.video_id, Action.WATCH, now - BASELINE_WINDOW, recent_start
            )
        score = trend_score(views_24h, views_prior)
        if not is_trending(score, self.threshold):
            return None

        video = await self.catalog.get_video(stats.video_id)
        if video is None:
            logger.debug(f"Trending video {stats.video_id} missing from catalog, skipping")
            return None

        return TrendingVideo(
            video=video,
            views_24h=views_24h,
            trend_score=score,
            total_views=stats.total_views,
        )

    async def detect_trending(self, limit: int, now: Optional[datetime] = None) -> List[TrendingVideo]:
        now = to_naive_utc(now) if now else utcnow()
        candidates = await self.store.stats_updated_since(now - RECENT_WINDOW)
        slots = asyncio.Semaphore(self.concurrency)
        scored = await asyncio.gather(*(self._score(s, now, slots) for s in candidates))

        trending = [t for t in scored if t is not None]
        trending.sort(key=lambda t: (-t.trend_score, t.video.video_id))
        logger.debug(f"Detected {len(trending)} trending videos from {len(candidates)} candidates")
        return trending[:limit]
