"""Database connection, MongoDB-backed stores and catalog seeding"""
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie
from pymongo import ASCENDING, DESCENDING, UpdateOne
from pymongo.errors import BulkWriteError, DuplicateKeyError
import logging
import csv
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from models import (
    Action, EventDocument, UserProfile, UserProfileDocument, Video,
    VideoDocument, VideoStats, VideoStatsDocument, ViewEvent,
)
from stores import AffinityStore, Catalog, EventStore, ProfileUpdate, StatsUpdate
from helpers import KeyedLock, parse_date
from config import MONGODB_URL, MONGODB_DB, CSV_PATH

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000
SEED_CHUNK = 1000


class DB:
    client: AsyncIOMotorClient = None

db = DB()

async def connect_db():
    """Initialize Beanie ODM"""
    db.client = AsyncIOMotorClient(MONGODB_URL)
    await init_beanie(
        database=db.client[MONGODB_DB],
        document_models=[EventDocument, VideoStatsDocument, UserProfileDocument, VideoDocument]
    )
    logger.info("Database connected")

async def disconnect_db():
    """Close database connection"""
    if db.client:
        db.client.close()


def _stats(doc: Optional[VideoStatsDocument]) -> Optional[VideoStats]:
    return VideoStats.model_validate(doc.model_dump()) if doc else None


def _profile(doc: Optional[UserProfileDocument]) -> Optional[UserProfile]:
    return UserProfile.model_validate(doc.model_dump()) if doc else None


def _video(doc: Optional[VideoDocument]) -> Optional[Video]:
    return Video.model_validate(doc.model_dump()) if doc else None


class MongoEventStore(EventStore):
    """Events and video stats in MongoDB.

    Stats upserts are serialized per video within this process; the store is
    meant to have a single writing process.
    """

    def __init__(self):
        self.locks = KeyedLock()

    async def _pending(self, event_ids: Iterable[str]) -> Set[str]:
        """Ids among event_ids that are stored but not yet applied"""
        docs = await EventDocument.find(
            {"event_id": {"$in": list(event_ids)}, "applied": False}
        ).to_list()
        return {d.event_id for d in docs}

    async def put_event(self, event: ViewEvent) -> bool:
        try:
            await EventDocument.from_event(event).insert()
            return True
        except DuplicateKeyError:
            if await self._pending([event.event_id]):
                logger.info(f"Event {event.event_id} stored but not applied, retrying")
                return True
            logger.info(f"Duplicate event {event.event_id}, skipping")
            return False

    async def put_events_bulk(self, events: List[ViewEvent]) -> Set[str]:
        docs = [EventDocument.from_event(e) for e in events]
        try:
            await EventDocument.insert_many(docs, ordered=False)
            return {e.event_id for e in events}
        except BulkWriteError as e:
            errors = e.details.get("writeErrors", [])
            if any(err.get("code") != DUPLICATE_KEY for err in errors):
                raise
            rejected = {err["index"] for err in errors}
            logger.info(f"Bulk insert skipped {len(rejected)} duplicate events")
            stored = {ev.event_id for i, ev in enumerate(events) if i not in rejected}
            return stored | await self._pending(events[i].event_id for i in rejected)

    async def mark_applied(self, event_id: str) -> None:
        await EventDocument.get_motor_collection().update_one(
            {"event_id": event_id},
            {"$set": {"applied": True}}
        )

    async def get_stats(self, video_id: str) -> Optional[VideoStats]:
        return _stats(await VideoStatsDocument.find_one(VideoStatsDocument.video_id == video_id))

    async def upsert_stats(self, video_id: str, fn: StatsUpdate) -> VideoStats:
        async with self.locks.hold(video_id):
            updated = fn(await self.get_stats(video_id))
            await VideoStatsDocument.get_motor_collection().update_one(
                {"video_id": video_id},
                {"$set": updated.model_dump()},
                upsert=True
            )
            return updated

    async def top_stats(self, limit: int) -> List[VideoStats]:
        docs = await VideoStatsDocument.find_all().sort(
            [("total_views", DESCENDING), ("last_updated", DESCENDING), ("video_id", ASCENDING)]
        ).limit(limit).to_list()
        return [_stats(d) for d in docs]

    async def stats_updated_since(self, since: datetime) -> List[VideoStats]:
        docs = await VideoStatsDocument.find(
            VideoStatsDocument.last_updated >= since
        ).sort([("total_views", DESCENDING), ("video_id", ASCENDING)]).to_list()
        return [_stats(d) for d in docs]

    async def count_events(self, video_id: str, action: Action,
                           start: datetime, end: datetime) -> int:
        return await EventDocument.find(
            EventDocument.video_id == video_id,
            EventDocument.action == action.value,
            EventDocument.timestamp >= start,
            EventDocument.timestamp < end,
        ).count()

    async def count_all_events(self) -> int:
        return await EventDocument.count()

    async def count_events_by(self, field: str) -> Dict[str, int]:
        pipeline = [
            {"$match": {field: {"$ne": None}}},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}}
        ]

        result = {}
        async for doc in EventDocument.aggregate(pipeline):
            result[doc["_id"]] = doc["count"]
        return result

    async def events_by_period(self, date_format: str,
                               since: Optional[datetime] = None) -> List[dict]:
        pipeline = []
        if since is not None:
            pipeline.append({"$match": {"timestamp": {"$gte": since}}})
        pipeline.append({"$group": {
            "_id": {"$dateToString": {"format": date_format, "date": "$timestamp"}},
            "count": {"$sum": 1},
            "avg_duration": {"$avg": "$duration"}
        }})

        result = []
        async for doc in EventDocument.aggregate(pipeline):
            result.append({"period": doc["_id"], "count": doc["count"],
                           "avg_duration": doc["avg_duration"] or 0.0})
        return result


class MongoCatalog(Catalog):

    async def get_video(self, video_id: str) -> Optional[Video]:
        return _video(await VideoDocument.find_one(VideoDocument.video_id == video_id))

    async def find_by_category(self, category: str, limit: Optional[int] = None) -> List[Video]:
        query = VideoDocument.find(VideoDocument.category == category).sort(
            [("views", DESCENDING), ("video_id", ASCENDING)]
        )
        if limit is not None:
            query = query.limit(limit)
        return [_video(d) for d in await query.to_list()]

    async def find_most_popular(self, limit: int) -> List[Video]:
        docs = await VideoDocument.find_all().sort(
            [("views", DESCENDING), ("video_id", ASCENDING)]
        ).limit(limit).to_list()
        return [_video(d) for d in docs]

    async def list_categories(self) -> List[str]:
        categories = await VideoDocument.get_motor_collection().distinct("category")
        return sorted(c for c in categories if c)

    async def count_videos(self) -> int:
        return await VideoDocument.count()

    async def save_videos(self, videos: Iterable[Video]) -> int:
        ops = [
            UpdateOne({"video_id": v.video_id}, {"$set": v.model_dump()}, upsert=True)
            for v in videos
        ]
        if not ops:
            return 0
        await VideoDocument.get_motor_collection().bulk_write(ops, ordered=False)
        return len(ops)


class MongoAffinityStore(AffinityStore):

    def __init__(self):
        self.locks = KeyedLock()

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return _profile(await UserProfileDocument.find_one(UserProfileDocument.user_id == user_id))

    async def upsert_profile(self, user_id: str, fn: ProfileUpdate) -> UserProfile:
        async with self.locks.hold(user_id):
            updated = fn(await self.get_profile(user_id))
            await UserProfileDocument.get_motor_collection().update_one(
                {"user_id": user_id},
                {"$set": updated.model_dump()},
                upsert=True
            )
            return updated

    async def set_recommendations(self, user_id: str, video_ids: List[str]) -> None:
        async with self.locks.hold(user_id):
            await UserProfileDocument.get_motor_collection().update_one(
                {"user_id": user_id},
                {"$set": {"recommended_videos": list(video_ids)}}
            )


def _row_to_video(row: dict) -> Video:
    return Video(
        video_id=row['video_id'],
        title=row.get('title', ''),
        category=row['category'],
        duration=int(row.get('duration') or 0),
        upload_date=parse_date(row['upload_date']) if row.get('upload_date') else None,
        views=int(row.get('views') or 0),
        likes=int(row.get('likes') or 0),
        rating=float(row.get('rating') or 0.0),
    )


async def seed_catalog(catalog: Catalog, csv_path: str = CSV_PATH):
    """Idempotent CSV seeding of the video catalog"""
    if await catalog.count_videos() > 0:
        logger.info("Catalog already seeded, skipping")
        return

    path = Path(csv_path)
    if not path.exists():
        logger.warning(f"No catalog CSV at {path}, skipping seed")
        return

    logger.info(f"Seeding catalog from {path}")
    batch, errors = [], 0

    with open(path, 'r', newline='') as f:
        for row in csv.DictReader(f):
            try:
                batch.append(_row_to_video(row))
                if len(batch) >= SEED_CHUNK:
                    await catalog.save_videos(batch)
                    batch = []
            except (KeyError, ValueError) as e:
                errors += 1
                if errors <= 3:
                    logger.error(f"Parse error: {e}")

    if batch:
        await catalog.save_videos(batch)

    total = await catalog.count_videos()
    logger.info(f"Seeded {total} videos, {errors} errors")
