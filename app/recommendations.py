"""Rule-based recommendations from a user's affinity profile"""
import logging
from typing import List, Set

from config import TOP_CATEGORY_COUNT
from errors import ValidationError
from models import Video
from stores import AffinityStore, Catalog

logger = logging.getLogger(__name__)


class RecommendationEngine:
    """Unseen videos from the user's favourite categories, topped up with
    globally popular ones.

    Output is a pure function of the profile and catalog: categories tie on
    name, videos tie on video_id.
    """

    def __init__(self, affinity: AffinityStore, catalog: Catalog,
                 top_categories: int = TOP_CATEGORY_COUNT):
        self.affinity = affinity
        self.catalog = catalog
        self.top_categories = top_categories

    async def recommend(self, user_id: str, limit: int) -> List[Video]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        profile = await self.affinity.get_profile(user_id)
        if profile is None:
            return await self.catalog.find_most_popular(limit)

        watched: Set[str] = set(profile.watch_history)
        # Fetch enough candidates that filtering watched videos can still fill the list
        fetch = limit + len(watched)
        picked: List[Video] = []
        picked_ids: Set[str] = set()

        def take(candidates: List[Video]) -> None:
            for video in candidates:
                if len(picked) >= limit:
                    return
                if video.video_id in watched or video.video_id in picked_ids:
                    continue
                picked.append(video)
                picked_ids.add(video.video_id)

        for category in profile.top_categories(self.top_categories):
            if len(picked) >= limit:
                break
            take(await self.catalog.find_by_category(category, fetch))

        if len(picked) < limit:
            take(await self.catalog.find_most_popular(fetch + len(picked)))

        logger.debug(f"Generated {len(picked)} recommendations for user: {user_id}")
        return picked[:limit]

    async def refresh(self, user_id: str, limit: int) -> List[Video]:
        """Recompute and cache the recommendation ids on the profile"""
        videos = await self.recommend(user_id, limit)
        await self.affinity.set_recommendations(user_id, [v.video_id for v in videos])
        return videos
