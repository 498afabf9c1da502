"""Data models for view events, statistics, profiles and the catalog"""
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from beanie import Document
from pymongo import IndexModel, ASCENDING, DESCENDING
from typing import Dict, List, Optional
from datetime import datetime

from config import WATCH_HISTORY_LIMIT
from helpers import parse_timestamp, to_naive_utc, utcnow


class Action(str, Enum):
    WATCH = "WATCH"
    PAUSE = "PAUSE"
    STOP = "STOP"
    RESUME = "RESUME"
    SEEK = "SEEK"


class ViewEvent(BaseModel):
    """Immutable viewing fact.

    Identifiers are validated by the processor. Timestamps are normalized to
    naive UTC on construction.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str
    user_id: str
    video_id: str
    action: Action
    timestamp: Optional[datetime] = None
    duration: int = 0
    quality: Optional[str] = None
    device_type: Optional[str] = None

    @field_validator('timestamp')
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else v

    @property
    def is_watch(self) -> bool:
        return self.action == Action.WATCH


class EventInput(BaseModel):
    """API input validation"""
    event_id: str
    user_id: str
    video_id: str
    action: Action
    timestamp: Optional[str] = None
    duration: int = 0
    quality: Optional[str] = None
    device_type: Optional[str] = None

    @field_validator('timestamp')
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            parse_timestamp(v)
            return v
        except ValueError:
            raise ValueError(f"Invalid ISO-8601: {v}")

    @field_validator('action', mode='before')
    @classmethod
    def normalize_action(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    def to_event(self) -> ViewEvent:
        return ViewEvent(
            event_id=self.event_id,
            user_id=self.user_id,
            video_id=self.video_id,
            action=self.action,
            timestamp=parse_timestamp(self.timestamp) if self.timestamp else None,
            duration=self.duration,
            quality=self.quality,
            device_type=self.device_type,
        )


class VideoStats(BaseModel):
    """Running aggregate over the WATCH events of one video"""
    video_id: str
    total_views: int = 0
    avg_duration: float = 0.0
    unique_viewers: int = 0
    last_updated: Optional[datetime] = None


class UserProfile(BaseModel):
    """Affinity profile: watch history and per-category watch counts"""
    user_id: str
    watch_history: List[str] = Field(default_factory=list)
    preferences: Dict[str, int] = Field(default_factory=dict)
    recommended_videos: List[str] = Field(default_factory=list)
    last_active: Optional[datetime] = None
    total_watch_time: int = 0

    def add_to_history(self, video_id: str, category: str, watch_time: int,
                       now: datetime, limit: int = WATCH_HISTORY_LIMIT) -> None:
        """Most recent first; the oldest entries fall off past `limit`."""
        self.watch_history.insert(0, video_id)
        del self.watch_history[limit:]
        self.preferences[category] = self.preferences.get(category, 0) + 1
        self.total_watch_time += watch_time
        self.last_active = now

    def top_categories(self, limit: int) -> List[str]:
        """Categories by descending watch count, ties by name"""
        ranked = sorted(self.preferences.items(), key=lambda item: (-item[1], item[0]))
        return [category for category, _ in ranked[:limit]]


class Video(BaseModel):
    """Catalog entry"""
    video_id: str
    title: str = ""
    category: str
    duration: int = 0
    upload_date: Optional[datetime] = None
    views: int = 0
    likes: int = 0
    rating: float = 0.0


class TrendingVideo(BaseModel):
    video: Video
    views_24h: int
    trend_score: float
    total_views: int


class CategoryStats(BaseModel):
    category: str
    video_count: int
    total_views: int
    avg_duration: float


class BatchResult(BaseModel):
    processed: int
    duplicates: int = 0
    elapsed_ms: float
    events_per_second: float


class EventDocument(Document):
    """MongoDB document with indexes"""
    event_id: str
    user_id: str
    video_id: str
    action: str
    timestamp: datetime
    duration: int = 0
    quality: Optional[str] = None
    device_type: Optional[str] = None
    ingested_at: datetime = Field(default_factory=utcnow)
    applied: bool = False

    class Settings:
        name = "events"
        indexes = [
            IndexModel([("event_id", ASCENDING)], unique=True),
            IndexModel([("user_id", ASCENDING)]),
            IndexModel([("video_id", ASCENDING)]),
            IndexModel([("timestamp", DESCENDING)]),
            IndexModel([("video_id", ASCENDING), ("action", ASCENDING), ("timestamp", DESCENDING)]),
        ]

    @classmethod
    def from_event(cls, event: ViewEvent) -> "EventDocument":
        return cls(
            event_id=event.event_id,
            user_id=event.user_id,
            video_id=event.video_id,
            action=event.action.value,
            timestamp=event.timestamp,
            duration=event.duration,
            quality=event.quality,
            device_type=event.device_type,
        )


class VideoStatsDocument(Document):
    video_id: str
    total_views: int = 0
    avg_duration: float = 0.0
    unique_viewers: int = 0
    last_updated: Optional[datetime] = None

    class Settings:
        name = "video_stats"
        indexes = [
            IndexModel([("video_id", ASCENDING)], unique=True),
            IndexModel([("last_updated", DESCENDING)]),
            IndexModel([("total_views", DESCENDING), ("last_updated", DESCENDING)]),
        ]


class UserProfileDocument(Document):
    user_id: str
    watch_history: List[str] = Field(default_factory=list)
    preferences: Dict[str, int] = Field(default_factory=dict)
    recommended_videos: List[str] = Field(default_factory=list)
    last_active: Optional[datetime] = None
    total_watch_time: int = 0

    class Settings:
        name = "user_profiles"
        indexes = [
            IndexModel([("user_id", ASCENDING)], unique=True),
        ]


class VideoDocument(Document):
    video_id: str
    title: str = ""
    category: str
    duration: int = 0
    upload_date: Optional[datetime] = None
    views: int = 0
    likes: int = 0
    rating: float = 0.0

    class Settings:
        name = "videos"
        indexes = [
            IndexModel([("video_id", ASCENDING)], unique=True),
            IndexModel([("category", ASCENDING), ("views", DESCENDING)]),
            IndexModel([("views", DESCENDING)]),
        ]
