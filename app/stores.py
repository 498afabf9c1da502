"""Collaborator contracts and their in-memory implementations.

The processing core talks to three collaborators:

* an event/stats store holding raw events and per-video running statistics,
* the video catalog,
* the affinity store holding per-user profiles.

`upsert_*` methods are atomic read-modify-write operations: the callback gets
the current record (or None) and returns the new one, and no other upsert for
the same key runs in between.

Events are stored before their side effects run and marked applied after. An
event that was stored but never marked applied is handed back by `put_event`
so a retry can finish it. The MongoDB implementations live in db.py.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from helpers import KeyedLock
from models import Action, UserProfile, Video, VideoStats, ViewEvent

StatsUpdate = Callable[[Optional[VideoStats]], VideoStats]
ProfileUpdate = Callable[[Optional[UserProfile]], UserProfile]


def _by_popularity(video: Video):
    return (-video.views, video.video_id)


def _by_views(stats: VideoStats):
    last = stats.last_updated.timestamp() if stats.last_updated else float("-inf")
    return (-stats.total_views, -last, stats.video_id)


class EventStore(ABC):

    @abstractmethod
    async def put_event(self, event: ViewEvent) -> bool:
        """Persist one event; False when its event_id is already stored and applied"""

    @abstractmethod
    async def put_events_bulk(self, events: List[ViewEvent]) -> Set[str]:
        """Persist many events; returns the event_ids not yet applied"""

    @abstractmethod
    async def mark_applied(self, event_id: str) -> None:
        """Record that an event's side effects have been applied"""

    @abstractmethod
    async def get_stats(self, video_id: str) -> Optional[VideoStats]:
        ...

    @abstractmethod
    async def upsert_stats(self, video_id: str, fn: StatsUpdate) -> VideoStats:
        ...

    @abstractmethod
    async def top_stats(self, limit: int) -> List[VideoStats]:
        ...

    @abstractmethod
    async def stats_updated_since(self, since: datetime) -> List[VideoStats]:
        ...

    @abstractmethod
    async def count_events(self, video_id: str, action: Action,
                           start: datetime, end: datetime) -> int:
        """Events for a video and action with start <= timestamp < end"""

    @abstractmethod
    async def count_all_events(self) -> int:
        ...

    @abstractmethod
    async def count_events_by(self, field: str) -> Dict[str, int]:
        """Event counts grouped by a field value; missing values are skipped"""

    @abstractmethod
    async def events_by_period(self, date_format: str,
                               since: Optional[datetime] = None) -> List[dict]:
        """Rows of {"period", "count", "avg_duration"} grouped by strftime format"""


class Catalog(ABC):

    @abstractmethod
    async def get_video(self, video_id: str) -> Optional[Video]:
        ...

    @abstractmethod
    async def find_by_category(self, category: str, limit: Optional[int] = None) -> List[Video]:
        """Most viewed first, ties by video_id"""

    @abstractmethod
    async def find_most_popular(self, limit: int) -> List[Video]:
        """Most viewed first, ties by video_id"""

    @abstractmethod
    async def list_categories(self) -> List[str]:
        ...

    @abstractmethod
    async def count_videos(self) -> int:
        ...

    @abstractmethod
    async def save_videos(self, videos: Iterable[Video]) -> int:
        ...


class AffinityStore(ABC):

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        ...

    @abstractmethod
    async def upsert_profile(self, user_id: str, fn: ProfileUpdate) -> UserProfile:
        ...

    @abstractmethod
    async def set_recommendations(self, user_id: str, video_ids: List[str]) -> None:
        ...


class MemoryEventStore(EventStore):
    """Process-local store; records are copied in and out"""

    def __init__(self):
        self.events: Dict[str, ViewEvent] = {}
        self.applied: Set[str] = set()
        self.stats: Dict[str, VideoStats] = {}
        self.locks = KeyedLock()

    async def put_event(self, event: ViewEvent) -> bool:
        if event.event_id in self.events:
            return event.event_id not in self.applied
        self.events[event.event_id] = event
        return True

    async def put_events_bulk(self, events: List[ViewEvent]) -> Set[str]:
        stored = set()
        for event in events:
            if await self.put_event(event):
                stored.add(event.event_id)
        return stored

    async def mark_applied(self, event_id: str) -> None:
        self.applied.add(event_id)

    async def get_stats(self, video_id: str) -> Optional[VideoStats]:
        stats = self.stats.get(video_id)
        return stats.model_copy() if stats else None

    async def upsert_stats(self, video_id: str, fn: StatsUpdate) -> VideoStats:
        async with self.locks.hold(video_id):
            current = await self.get_stats(video_id)
            updated = fn(current)
            self.stats[video_id] = updated.model_copy()
            return updated

    async def top_stats(self, limit: int) -> List[VideoStats]:
        ranked = sorted(self.stats.values(), key=_by_views)
        return [s.model_copy() for s in ranked[:limit]]

    async def stats_updated_since(self, since: datetime) -> List[VideoStats]:
        recent = [s for s in self.stats.values()
                  if s.last_updated is not None and s.last_updated >= since]
        return [s.model_copy() for s in sorted(recent, key=_by_views)]

    async def count_events(self, video_id: str, action: Action,
                           start: datetime, end: datetime) -> int:
        return sum(
            1 for e in self.events.values()
            if e.video_id == video_id and e.action == action and start <= e.timestamp < end
        )

    async def count_all_events(self) -> int:
        return len(self.events)

    async def count_events_by(self, field: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self.events.values():
            value = getattr(event, field)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            counts[value] = counts.get(value, 0) + 1
        return counts

    async def events_by_period(self, date_format: str,
                               since: Optional[datetime] = None) -> List[dict]:
        groups: Dict[str, List[int]] = {}
        for event in self.events.values():
            if since is not None and event.timestamp < since:
                continue
            groups.setdefault(event.timestamp.strftime(date_format), []).append(event.duration)
        return [
            {"period": period, "count": len(durations),
             "avg_duration": sum(durations) / len(durations)}
            for period, durations in groups.items()
        ]


class MemoryCatalog(Catalog):

    def __init__(self, videos: Iterable[Video] = ()):
        self.videos: Dict[str, Video] = {}
        for video in videos:
            self.videos[video.video_id] = video

    async def get_video(self, video_id: str) -> Optional[Video]:
        return self.videos.get(video_id)

    async def find_by_category(self, category: str, limit: Optional[int] = None) -> List[Video]:
        matches = sorted(
            (v for v in self.videos.values() if v.category == category),
            key=_by_popularity
        )
        return matches if limit is None else matches[:limit]

    async def find_most_popular(self, limit: int) -> List[Video]:
        return sorted(self.videos.values(), key=_by_popularity)[:limit]

    async def list_categories(self) -> List[str]:
        return sorted({v.category for v in self.videos.values()})

    async def count_videos(self) -> int:
        return len(self.videos)

    async def save_videos(self, videos: Iterable[Video]) -> int:
        count = 0
        for video in videos:
            self.videos[video.video_id] = video
            count += 1
        return count


class MemoryAffinityStore(AffinityStore):

    def __init__(self):
        self.profiles: Dict[str, UserProfile] = {}
        self.locks = KeyedLock()

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        profile = self.profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def upsert_profile(self, user_id: str, fn: ProfileUpdate) -> UserProfile:
        async with self.locks.hold(user_id):
            current = await self.get_profile(user_id)
            updated = fn(current)
            self.profiles[user_id] = updated.model_copy(deep=True)
            return updated

    async def set_recommendations(self, user_id: str, video_ids: List[str]) -> None:
        async with self.locks.hold(user_id):
            profile = self.profiles.get(user_id)
            if profile is not None:
                profile.recommended_videos = list(video_ids)
