"""
Gap filler
Converts location blocks into calendar-shaped events for one local day,
dropping blocks covered by user events and filling unaccounted time
"""

from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional, Sequence, Tuple

from core.logger import get_logger
from core.timeutils import MINUTES_PER_DAY, day_bounds, minutes_from_midnight, parse_ymd
from models.entities import (
    DerivedEventMeta,
    LocationBlock,
    ScheduledEvent,
    UsageSummaryItem,
)

logger = get_logger(__name__)

MIN_GAP_MINUTES = 5
SLEEP_OVERLAP_RATIO = 0.5
SUMMARY_APP_LIMIT = 5
DESCRIPTION_APP_LIMIT = 3

LOCATION_CATEGORY_MAP = {
    "home": "routine",
    "office": "work",
    "coworking": "work",
    "school": "work",
    "university": "work",
    "gym": "health",
    "fitness": "health",
    "park": "health",
    "recreation": "health",
    "restaurant": "meal",
    "cafe": "meal",
    "bar": "meal",
    "church": "routine",
    "temple": "routine",
    "mosque": "routine",
    "store": "free",
    "shopping": "free",
}

TimeRange = Tuple[int, int]


def location_category_to_event_category(block: LocationBlock) -> str:
    """Map a block's place category to an event category"""
    if block.type == "travel":
        return "travel"
    category = (block.location_category or "").strip().lower()
    return LOCATION_CATEGORY_MAP.get(category, "unknown")


def _block_description(block: LocationBlock) -> str:
    if block.activity_inference.primary:
        return block.activity_inference.primary
    return ", ".join(app.display_name for app in block.apps[:DESCRIPTION_APP_LIMIT])


def location_block_to_event(block: LocationBlock, ymd: str, tz: tzinfo) -> ScheduledEvent:
    """Convert one block into a derived ScheduledEvent positioned on ``ymd``"""
    category = location_category_to_event_category(block)

    start_minutes = min(minutes_from_midnight(block.start_time, ymd, tz), MINUTES_PER_DAY - 1)
    end_minutes = minutes_from_midnight(block.end_time, ymd, tz)
    duration = max(1, min(end_minutes - start_minutes, MINUTES_PER_DAY - start_minutes))

    place = block.inferred_place
    latitude = place.latitude if place and place.latitude is not None else block.latitude
    longitude = place.longitude if place and place.longitude is not None else block.longitude

    meta = DerivedEventMeta(
        kind="travel" if block.type == "travel" else "location_block",
        category=category,
        confidence=block.confidence,
        place_label=block.location_label,
        place_id=block.place_id or (place.place_id if place else None),
        latitude=latitude,
        longitude=longitude,
        fuzzy_location=block.is_place_inferred or block.is_carried_forward,
        summary=[
            UsageSummaryItem(label=app.display_name, seconds=app.total_minutes * 60)
            for app in block.apps[:SUMMARY_APP_LIMIT]
        ],
    )

    return ScheduledEvent(
        id=f"lb:{block.id}",
        title=block.location_label,
        description=_block_description(block),
        start_minutes=start_minutes,
        duration=duration,
        category=category,
        meta=meta,
    )


def _covered_by_user_event(event: ScheduledEvent, user_events: Sequence[ScheduledEvent]) -> bool:
    # A block loses to a user event when its midpoint falls inside it
    midpoint = (event.start_minutes + event.end_minutes) / 2
    return any(user.start_minutes <= midpoint < user.end_minutes for user in user_events)


def planned_sleep_ranges(planned_events: Sequence[ScheduledEvent]) -> List[TimeRange]:
    return [
        (e.start_minutes, e.end_minutes)
        for e in planned_events
        if e.category == "sleep" or e.meta.kind == "sleep_schedule"
    ]


def overlaps_sleep(gap_start: int, gap_end: int, sleep_ranges: Sequence[TimeRange]) -> bool:
    """Whether at least half of the gap overlaps planned sleep"""
    gap_duration = gap_end - gap_start
    if gap_duration <= 0:
        return False

    total_overlap = 0
    for range_start, range_end in sleep_ranges:
        overlap = min(gap_end, range_end) - max(gap_start, range_start)
        if overlap > 0:
            total_overlap += overlap

    return total_overlap >= gap_duration * SLEEP_OVERLAP_RATIO


def build_gap_event(
    start_minutes: int,
    duration: int,
    sleep_ranges: Sequence[TimeRange],
    ymd: str,
) -> ScheduledEvent:
    is_sleep = overlaps_sleep(start_minutes, start_minutes + duration, sleep_ranges)
    category = "sleep" if is_sleep else "unknown"

    return ScheduledEvent(
        id=f"lb:gap:{ymd}:{start_minutes}",
        title="Sleep" if is_sleep else "Unknown",
        description="",
        start_minutes=start_minutes,
        duration=duration,
        category=category,
        meta=DerivedEventMeta(
            kind="sleep_schedule" if is_sleep else "unknown_gap",
            category=category,
        ),
    )


def fill_gaps(
    events: Sequence[ScheduledEvent],
    sleep_ranges: Sequence[TimeRange],
    ymd: str,
) -> List[ScheduledEvent]:
    """
    Insert Sleep/Unknown events into gaps of at least 5 minutes

    Gaps between events are always filled. The stretch before the first
    event and after the last one is filled only when it overlaps sleep.
    ``events`` must be sorted by start.
    """
    if not events:
        return []

    result: List[ScheduledEvent] = []

    first_start = events[0].start_minutes
    if first_start >= MIN_GAP_MINUTES and overlaps_sleep(0, first_start, sleep_ranges):
        result.append(build_gap_event(0, first_start, sleep_ranges, ymd))

    cursor = first_start
    for event in events:
        gap = event.start_minutes - cursor
        if gap >= MIN_GAP_MINUTES:
            result.append(build_gap_event(cursor, gap, sleep_ranges, ymd))
        result.append(event)
        cursor = max(cursor, event.end_minutes)

    remaining = MINUTES_PER_DAY - cursor
    if remaining >= MIN_GAP_MINUTES and overlaps_sleep(cursor, MINUTES_PER_DAY, sleep_ranges):
        result.append(build_gap_event(cursor, remaining, sleep_ranges, ymd))

    return result


def _intersects_day(block: LocationBlock, day_start: datetime, day_end: datetime) -> bool:
    return block.end_time > day_start and block.start_time < day_end


def _sorted_events(events: Sequence[ScheduledEvent]) -> List[ScheduledEvent]:
    return sorted(events, key=lambda e: (e.start_minutes, e.end_minutes))


def location_blocks_to_scheduled_events(
    blocks: Sequence[LocationBlock],
    ymd: str,
    tz: tzinfo,
    planned_events: Optional[Sequence[ScheduledEvent]] = None,
    user_actual_events: Optional[Sequence[ScheduledEvent]] = None,
    today: Optional[date] = None,
) -> List[ScheduledEvent]:
    """
    Convert LocationBlocks into the day's actual-column ScheduledEvents

    Steps:
    1. Days more than one day in the future return only user events
    2. Each block that touches the day becomes a derived event
    3. Derived events whose midpoint falls inside a user event are dropped
    4. User events and surviving derived events are merged and sorted
    5. Gaps are filled with Sleep or Unknown events

    Args:
        blocks: Location blocks, typically from group_into_location_blocks
        ymd: Local day being built (YYYY-MM-DD)
        tz: The user's timezone
        planned_events: Planned events, used for sleep-gap detection
        user_actual_events: User-entered actual events, which always win
        today: Local "today"; defaults to the current date in ``tz``

    Returns:
        Events sorted by start minute
    """
    planned_events = list(planned_events or [])
    user_actual_events = list(user_actual_events or [])

    if today is None:
        today = datetime.now(tz).date()

    if parse_ymd(ymd) > today + timedelta(days=1):
        logger.debug(f"{ymd} is in the future, returning user events only")
        return _sorted_events(user_actual_events)

    if not blocks and not user_actual_events:
        return []

    day_start, day_end = day_bounds(ymd, tz)
    block_events = [
        location_block_to_event(block, ymd, tz)
        for block in blocks
        if _intersects_day(block, day_start, day_end)
    ]

    kept = [e for e in block_events if not _covered_by_user_event(e, user_actual_events)]
    if len(kept) < len(block_events):
        logger.debug(
            f"Dropped {len(block_events) - len(kept)} derived events covered by user events on {ymd}"
        )

    merged = _sorted_events(user_actual_events + kept)
    return fill_gaps(merged, planned_sleep_ranges(planned_events), ymd)
