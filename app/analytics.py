"""Analytics calculations"""
import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from errors import ValidationError
from helpers import to_naive_utc, utcnow
from models import CategoryStats
from stores import Catalog, EventStore

DIMENSIONS = ("device_type", "quality", "action")
PERIOD_FORMATS = {
    "hour": "%Y-%m-%d %H:00",
    "day": "%Y-%m-%d",
    "month": "%Y-%m",
}
MAX_PERIODS = 24


async def category_aggregate(store: EventStore, catalog: Catalog) -> Dict[str, CategoryStats]:
    """Views and view-weighted mean duration per catalog category"""
    result = {}
    for category in await catalog.list_categories():
        videos = await catalog.find_by_category(category)
        all_stats = await asyncio.gather(*(store.get_stats(v.video_id) for v in videos))

        total_views = 0
        total_duration = 0.0
        for stats in all_stats:
            if stats is not None:
                total_views += stats.total_views
                total_duration += stats.avg_duration * stats.total_views

        result[category] = CategoryStats(
            category=category,
            video_count=len(videos),
            total_views=total_views,
            avg_duration=total_duration / total_views if total_views > 0 else 0.0
        )

    return result


async def aggregate_by(store: EventStore, dimension: str) -> Dict[str, int]:
    """Event counts per device type, quality or action, largest first"""
    if dimension not in DIMENSIONS:
        raise ValidationError(f"Unknown dimension: {dimension}. Use one of {', '.join(DIMENSIONS)}")

    counts = await store.count_events_by(dimension)
    return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


async def aggregate_by_period(store: EventStore, period: str) -> List[dict]:
    """Event count and mean duration per hour, day or month, newest first"""
    date_format = PERIOD_FORMATS.get(period.lower(), PERIOD_FORMATS["day"])
    rows = await store.events_by_period(date_format)
    rows.sort(key=lambda row: row["period"], reverse=True)
    return rows[:MAX_PERIODS]


async def hourly_stats(store: EventStore, now: Optional[datetime] = None) -> Dict[str, int]:
    """Event counts per hour of day over the last 24 hours"""
    now = to_naive_utc(now) if now else utcnow()
    rows = await store.events_by_period("%H:00", since=now - timedelta(hours=24))
    return {row["period"]: row["count"] for row in sorted(rows, key=lambda row: row["period"])}


async def dashboard_summary(store: EventStore, catalog: Catalog):
    """Dashboard headline numbers"""
    total_events, total_videos, top_videos, categories = await asyncio.gather(
        store.count_all_events(),
        catalog.count_videos(),
        store.top_stats(5),
        category_aggregate(store, catalog),
    )

    return {
        "total_events": total_events,
        "total_videos": total_videos,
        "top_videos": top_videos,
        "category_stats": categories,
    }


async def get_metrics(store: EventStore, counters: Dict[str, int]):
    """System metrics"""
    total = await store.count_all_events()
    actions = await aggregate_by(store, "action")

    return {
        "total_events": total,
        "top_actions": [{"action": a, "count": c} for a, c in list(actions.items())[:5]],
        "processor": counters,
    }
