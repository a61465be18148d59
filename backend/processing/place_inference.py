"""
Place inference cache
Per-user inferred places reused across ingestion runs until expiry or a manual refresh
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from core.geometry import haversine_m
from core.logger import get_logger
from models.entities import HourlySummary, InferredPlace

logger = get_logger(__name__)

DEFAULT_PLACE_RADIUS_M = 150.0


class PlaceInferenceCache:
    """In-memory cache of each user's inferred places

    Entries expire after ``ttl_days``; ``invalidate`` drops a user's entry
    so the next run fetches fresh places.
    """

    def __init__(self, ttl_days: int = 14):
        self.ttl = timedelta(days=ttl_days)
        self._entries: Dict[str, Tuple[datetime, List[InferredPlace]]] = {}

    def get(self, user_id: str, now: datetime) -> Optional[List[InferredPlace]]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None

        fetched_at, places = entry
        if now - fetched_at >= self.ttl:
            logger.debug(f"Place cache expired for user {user_id}")
            del self._entries[user_id]
            return None
        return places

    def put(self, user_id: str, places: Sequence[InferredPlace], now: datetime) -> None:
        self._entries[user_id] = (now, list(places))

    def invalidate(self, user_id: str) -> bool:
        """Drop a user's cached places, returns whether anything was cached"""
        removed = self._entries.pop(user_id, None) is not None
        if removed:
            logger.debug(f"Place cache invalidated for user {user_id}")
        return removed

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries


def find_matching_place(
    latitude: float,
    longitude: float,
    places: Sequence[InferredPlace],
) -> Optional[InferredPlace]:
    """Nearest place whose radius contains the point"""
    best: Optional[InferredPlace] = None
    best_distance = float("inf")

    for place in places:
        if place.latitude is None or place.longitude is None:
            continue
        distance = haversine_m(latitude, longitude, place.latitude, place.longitude)
        radius = place.radius_meters or DEFAULT_PLACE_RADIUS_M
        if distance <= radius and distance < best_distance:
            best = place
            best_distance = distance

    return best


def annotate_summaries(
    summaries: Sequence[HourlySummary],
    places: Sequence[InferredPlace],
) -> List[HourlySummary]:
    """Attach the matching inferred place to summaries that have coordinates but none"""
    if not places:
        return list(summaries)

    annotated: List[HourlySummary] = []
    matched = 0
    for summary in summaries:
        if (
            summary.inferred_place is None
            and summary.latitude is not None
            and summary.longitude is not None
        ):
            place = find_matching_place(summary.latitude, summary.longitude, places)
            if place is not None:
                summary = summary.model_copy(update={"inferred_place": place})
                matched += 1
        annotated.append(summary)

    if matched:
        logger.debug(f"Matched {matched} hourly summaries to cached places")
    return annotated
