"""Incremental per-video statistics"""
import logging
from datetime import datetime
from collections import OrderedDict
from typing import List, Optional, Set

from config import UNIQUE_VIEWER_WINDOW, VIEWER_TRACKED_VIDEOS
from errors import ValidationError
from helpers import utcnow
from models import VideoStats
from stores import EventStore

logger = logging.getLogger(__name__)


def apply_watch(current: Optional[VideoStats], video_id: str, duration: int,
                now: datetime, new_viewer: bool = False) -> VideoStats:
    """Fold one WATCH duration into the running mean.

    `current` is never mutated; an absent record counts as zero views.
    """
    if current is None:
        current = VideoStats(video_id=video_id)

    count = current.total_views
    return VideoStats(
        video_id=video_id,
        total_views=count + 1,
        avg_duration=(current.avg_duration * count + duration) / (count + 1),
        unique_viewers=current.unique_viewers + (1 if new_viewer else 0),
        last_updated=now,
    )


class StatsEngine:
    """Maintains VideoStats as WATCH events arrive.

    Writes go through the store's atomic upsert, so two updates to the same
    video never interleave their read-modify-write.

    Unique viewers are best effort: the engine remembers the users seen by
    this process for the `tracked_videos` most recently updated videos, up to
    `viewer_window` users each, after which a video's set starts over. A
    viewer is remembered only once their update has been stored.
    """

    def __init__(self, store: EventStore, viewer_window: int = UNIQUE_VIEWER_WINDOW,
                 tracked_videos: int = VIEWER_TRACKED_VIDEOS):
        self.store = store
        self.viewer_window = viewer_window
        self.tracked_videos = tracked_videos
        self._viewers: "OrderedDict[str, Set[str]]" = OrderedDict()

    def _is_new_viewer(self, video_id: str, user_id: Optional[str]) -> bool:
        if user_id is None:
            return False
        seen = self._viewers.get(video_id)
        return seen is None or user_id not in seen

    def _remember(self, video_id: str, user_id: str) -> None:
        seen = self._viewers.get(video_id)
        if seen is None:
            seen = self._viewers[video_id] = set()
            while len(self._viewers) > self.tracked_videos:
                self._viewers.popitem(last=False)
        else:
            self._viewers.move_to_end(video_id)
        if user_id not in seen:
            if len(seen) >= self.viewer_window:
                seen.clear()
            seen.add(user_id)

    async def update(self, video_id: str, duration: int,
                     user_id: Optional[str] = None) -> VideoStats:
        if duration is None or duration < 0:
            raise ValidationError(f"Watch duration must be non-negative, got {duration}")

        now = utcnow()

        # runs under the store's per-video lock
        def fold(current: Optional[VideoStats]) -> VideoStats:
            new_viewer = self._is_new_viewer(video_id, user_id)
            return apply_watch(current, video_id, duration, now, new_viewer)

        stats = await self.store.upsert_stats(video_id, fold)
        if user_id is not None:
            self._remember(video_id, user_id)
        logger.debug(f"Stats for {video_id}: views={stats.total_views} avg={stats.avg_duration:.2f}")
        return stats

    async def get(self, video_id: str) -> Optional[VideoStats]:
        return await self.store.get_stats(video_id)

    async def top_by_views(self, limit: int) -> List[VideoStats]:
        return await self.store.top_stats(limit)

    async def updated_since(self, since: datetime) -> List[VideoStats]:
        return await self.store.stats_updated_since(since)
