"""
Location block grouping
Groups chronologically ordered hourly summaries into contiguous place/activity blocks
"""

from collections import Counter
from datetime import datetime, timedelta, tzinfo
from typing import Dict, List, Optional, Sequence, Tuple

from core.geometry import haversine_m
from core.logger import get_logger
from core.timeutils import epoch_ms
from models.entities import (
    ActivityInference,
    AppSession,
    BlockAppUsage,
    HourlySummary,
    LocationBlock,
)

logger = get_logger(__name__)

SAME_PLACE_DISTANCE_THRESHOLD_M = 200.0
TRAVEL_ACTIVITY = "commute"
UNKNOWN_LABEL = "Unknown Location"
TRAVEL_LABEL = "In Transit"
# Placeholder labels never identify a place
MEANINGLESS_LABELS = {"", "unknown", "unknown location", "location"}
# Labels that never seed a carried-forward block
NON_CARRYABLE_LABELS = MEANINGLESS_LABELS | {"in transit"}
TRAVEL_VERBS = {"walking": "Walking", "cycling": "Cycling", "driving": "Driving"}

MIN_CARRY_FORWARD_GAP = timedelta(minutes=30)
MAX_CARRY_FORWARD_GAP = timedelta(hours=16)
# The user is assumed to leave this long before a travel block starts
PRE_TRAVEL_BUFFER = timedelta(minutes=30)
CARRIED_CONFIDENCE_FACTOR = 0.6
MIN_CARRIED_CONFIDENCE = 0.3


def _is_travel(summary: HourlySummary) -> bool:
    return (summary.primary_activity or "").lower() == TRAVEL_ACTIVITY


def _place_id(summary: HourlySummary) -> Optional[str]:
    if summary.place_id:
        return summary.place_id
    if summary.inferred_place is not None:
        return summary.inferred_place.place_id
    return None


def _coordinates(summary: HourlySummary) -> Optional[Tuple[float, float]]:
    if summary.latitude is not None and summary.longitude is not None:
        return summary.latitude, summary.longitude
    place = summary.inferred_place
    if place is not None and place.latitude is not None and place.longitude is not None:
        return place.latitude, place.longitude
    return None


def _label(summary: HourlySummary) -> Optional[str]:
    label = summary.place_label
    if not label and summary.inferred_place is not None:
        label = summary.inferred_place.name
    return label


def _is_meaningful(label: Optional[str]) -> bool:
    return (label or "").strip().lower() not in MEANINGLESS_LABELS


def _carries_place(label: Optional[str]) -> bool:
    return (label or "").strip().lower() not in NON_CARRYABLE_LABELS


def is_same_place(a: HourlySummary, b: HourlySummary) -> bool:
    """Whether two hours belong to the same place identity

    Priority: place id, then coordinate proximity (< 200 m), then a
    case-insensitive label match. Travel hours only match travel hours.
    """
    if _is_travel(a) and _is_travel(b):
        return True
    if _is_travel(a) or _is_travel(b):
        return False

    id_a, id_b = _place_id(a), _place_id(b)
    if id_a and id_b:
        return id_a == id_b

    coords_a, coords_b = _coordinates(a), _coordinates(b)
    if coords_a and coords_b:
        return haversine_m(*coords_a, *coords_b) < SAME_PLACE_DISTANCE_THRESHOLD_M

    label_a, label_b = _label(a), _label(b)
    if _is_meaningful(label_a) and _is_meaningful(label_b):
        return label_a.strip().lower() == label_b.strip().lower()

    return False


def _aggregate_apps(
    group: Sequence[HourlySummary],
    block_start: datetime,
    block_end: datetime,
) -> List[BlockAppUsage]:
    totals: Dict[str, dict] = {}

    for summary in group:
        for app in summary.app_breakdown:
            if app.minutes < 1:
                continue
            entry = totals.setdefault(
                app.app_id,
                {
                    "app_id": app.app_id,
                    "display_name": app.display_name,
                    "category": app.category,
                    "total_minutes": 0.0,
                    "sessions": [],
                },
            )
            entry["total_minutes"] += app.minutes

            # Sessions are clamped to the block range
            for session in app.sessions:
                start = max(session.start_time, block_start)
                end = min(session.end_time, block_end)
                if end > start:
                    entry["sessions"].append(
                        AppSession(start_time=start, end_time=end, minutes=session.minutes)
                    )

    apps = []
    for entry in totals.values():
        entry["sessions"].sort(key=lambda s: (s.start_time, s.end_time))
        apps.append(BlockAppUsage(**entry))

    apps.sort(key=lambda a: (-a.total_minutes, a.app_id))
    return apps


def _infer_activity(group: Sequence[HourlySummary]) -> ActivityInference:
    details: List[str] = []
    for summary in group:
        text = (summary.activity_text or "").strip()
        if text and text not in details:
            details.append(text)

    activities = Counter(s.primary_activity for s in group if s.primary_activity)
    dominant = None
    if activities:
        # Ties go to the activity seen first
        top = max(activities.values())
        dominant = next(s.primary_activity for s in group if activities.get(s.primary_activity) == top)

    primary = details[0] if details else None
    if primary is None and dominant:
        primary = dominant.replace("_", " ").capitalize()

    return ActivityInference(primary=primary, details=details, dominant_activity=dominant)


def _weighted_confidence(
    group: Sequence[HourlySummary],
    block_start: datetime,
    block_end: datetime,
) -> float:
    """Average hour confidence weighted by the minutes each hour covers"""
    total_weight = 0.0
    weighted = 0.0
    for summary in group:
        hour_end = summary.hour_start + timedelta(hours=1)
        covered = (min(hour_end, block_end) - max(summary.hour_start, block_start)).total_seconds()
        weight = max(covered, 0.0) / 60.0
        total_weight += weight
        weighted += summary.confidence * weight
    return weighted / total_weight if total_weight > 0 else 0.0


def _travel_movement_type(group: Sequence[HourlySummary]) -> Optional[str]:
    """First concrete movement mode among the travel hours"""
    for summary in group:
        if summary.movement_type and summary.movement_type not in ("unknown", "stationary"):
            return summary.movement_type
    return group[0].movement_type


def travel_label(movement_type: Optional[str], destination: Optional[str]) -> str:
    """Label for a travel block, e.g. "Driving → Office" or "Walking"

    Falls back to "In Transit" when neither the mode nor the destination is known.
    """
    verb = TRAVEL_VERBS.get(movement_type or "", "Travel")
    if _carries_place(destination):
        return f"{verb} → {destination.strip()}"
    if movement_type and movement_type != "unknown":
        return verb
    return TRAVEL_LABEL


def build_block(group: Sequence[HourlySummary]) -> LocationBlock:
    """Build a LocationBlock from consecutive summaries at one place"""
    first = group[0]
    last = group[-1]

    start_time = first.hour_start
    end_time = last.hour_start + timedelta(hours=1)
    is_travel = _is_travel(first)

    inferred_place = next(
        (s.inferred_place for s in group if s.inferred_place is not None), None
    )

    movement_type = None
    distance_meters = None
    if is_travel:
        movement_type = _travel_movement_type(group)
        total_distance = sum(s.distance_meters or 0.0 for s in group)
        distance_meters = total_distance if total_distance > 0 else None
        location_label = travel_label(movement_type, _label(last))
        location_category = "travel"
    else:
        location_label = next(
            (_label(s) for s in group if _is_meaningful(_label(s))), UNKNOWN_LABEL
        )
        location_category = inferred_place.category if inferred_place else None

    coords = next((c for c in (_coordinates(s) for s in group) if c), None)

    return LocationBlock(
        id=first.id,
        type="travel" if is_travel else "stationary",
        start_time=start_time,
        end_time=end_time,
        location_label=location_label,
        location_category=location_category,
        place_id=None if is_travel else next((_place_id(s) for s in group if _place_id(s)), None),
        inferred_place=inferred_place,
        movement_type=movement_type,
        distance_meters=distance_meters,
        is_place_inferred=inferred_place is not None and not any(s.place_id for s in group),
        latitude=coords[0] if coords else None,
        longitude=coords[1] if coords else None,
        apps=_aggregate_apps(group, start_time, end_time),
        activity_inference=_infer_activity(group),
        confidence=_weighted_confidence(group, start_time, end_time),
        total_location_samples=sum(s.location_samples for s in group),
        summary_ids=[s.id for s in group],
    )


def dedupe_summaries(summaries: Sequence[HourlySummary]) -> List[HourlySummary]:
    """Chronological summaries, one per id (the last occurrence wins)"""
    by_id: Dict[str, HourlySummary] = {}
    for summary in summaries:
        by_id[summary.id] = summary
    return sorted(by_id.values(), key=lambda s: (s.hour_start, s.id))


def group_into_location_blocks(
    summaries: Sequence[HourlySummary],
    tz: tzinfo,
) -> List[LocationBlock]:
    """
    Group hourly summaries into LocationBlocks

    Summaries are de-duplicated by id (last one wins) and walked in
    chronological order. A new block opens whenever place identity changes
    or the local day ends.
    """
    if not summaries:
        return []

    ordered = dedupe_summaries(summaries)

    groups: List[List[HourlySummary]] = [[ordered[0]]]
    for summary in ordered[1:]:
        previous = groups[-1][-1]
        same_day = (
            previous.hour_start.astimezone(tz).date() == summary.hour_start.astimezone(tz).date()
        )
        if same_day and is_same_place(previous, summary):
            groups[-1].append(summary)
        else:
            groups.append([summary])

    blocks = [build_block(group) for group in groups]
    logger.debug(f"Grouped {len(ordered)} hourly summaries into {len(blocks)} location blocks")
    return blocks


# ============ Carry-forward and merging ============


def create_carried_forward_block(
    source: LocationBlock,
    start: datetime,
    end: datetime,
    summaries: Sequence[HourlySummary],
) -> LocationBlock:
    """Synthesize a block at ``source``'s place for [start, end)

    App usage comes from the hours overlapping the range; confidence is
    reduced since no location was measured.
    """
    overlapping = [
        s for s in summaries
        if s.hour_start < end and s.hour_start + timedelta(hours=1) > start
    ]
    inherited = source.activity_inference

    return LocationBlock(
        id=f"{source.id}-carried-{epoch_ms(start)}",
        type="stationary",
        start_time=start,
        end_time=end,
        location_label=source.location_label,
        location_category=source.location_category,
        place_id=source.place_id,
        inferred_place=source.inferred_place,
        is_place_inferred=source.is_place_inferred,
        is_carried_forward=True,
        latitude=source.latitude,
        longitude=source.longitude,
        apps=_aggregate_apps(overlapping, start, end),
        activity_inference=ActivityInference(
            primary=inherited.primary, dominant_activity=inherited.dominant_activity
        ),
        confidence=max(MIN_CARRIED_CONFIDENCE, source.confidence * CARRIED_CONFIDENCE_FACTOR),
        total_location_samples=0,
        summary_ids=[s.id for s in overlapping],
    )


def _carryable(block: LocationBlock) -> bool:
    return block.type == "stationary" and _carries_place(block.location_label)


def _carry_gap_end(current: LocationBlock, following: LocationBlock, tz: tzinfo) -> Optional[datetime]:
    """End of the carried-forward range between two blocks, None if the gap is not filled"""
    gap_start = current.end_time
    gap_end = following.start_time
    if not MIN_CARRY_FORWARD_GAP <= gap_end - gap_start <= MAX_CARRY_FORWARD_GAP:
        return None

    # A different known place on the far side means the user moved during the gap
    if (
        _carryable(following)
        and following.location_label.strip().lower() != current.location_label.strip().lower()
    ):
        return None

    if following.type == "travel":
        gap_end -= PRE_TRAVEL_BUFFER

    local_start = gap_start.astimezone(tz)
    next_midnight = datetime.combine(
        local_start.date() + timedelta(days=1), datetime.min.time(), tzinfo=tz
    )
    gap_end = min(gap_end, next_midnight)

    if gap_end - gap_start < MIN_CARRY_FORWARD_GAP:
        return None
    return gap_end


def fill_location_gaps(
    blocks: Sequence[LocationBlock],
    summaries: Sequence[HourlySummary],
    tz: tzinfo,
) -> List[LocationBlock]:
    """
    Carry the last known place forward across gaps and unknown blocks

    - A stationary block without a meaningful label that follows a known
      stationary place is replaced by a carried-forward copy of that place
    - A gap of 30 minutes to 16 hours after a known stationary place is filled,
      unless the next block is a different known place; before a travel
      block the filled range stops 30 minutes early
    - Filled ranges never cross local midnight

    Consecutive blocks at the same place are merged afterwards.
    """
    if not blocks:
        return []

    ordered = sorted(blocks, key=lambda b: (b.start_time, b.id))
    result: List[LocationBlock] = []
    last_known: Optional[LocationBlock] = None
    carried = 0

    for index, block in enumerate(ordered):
        current = block
        if (
            current.type == "stationary"
            and not _carries_place(current.location_label)
            and last_known is not None
        ):
            current = create_carried_forward_block(
                last_known, block.start_time, block.end_time, summaries
            )
            carried += 1

        result.append(current)
        if _carryable(current):
            last_known = current

        if index + 1 < len(ordered) and _carryable(current):
            gap_end = _carry_gap_end(current, ordered[index + 1], tz)
            if gap_end is not None:
                result.append(
                    create_carried_forward_block(current, current.end_time, gap_end, summaries)
                )
                carried += 1

        # Travel means the user left; nothing carries past it
        if current.type == "travel":
            last_known = None

    if carried:
        logger.debug(f"Carried forward {carried} location block(s)")

    result.sort(key=lambda b: (b.start_time, b.id))
    return merge_consecutive_blocks(result, tz)


def is_same_block_location(a: LocationBlock, b: LocationBlock) -> bool:
    """Whether two blocks are at the same physical place

    Travel blocks never match. Labels are not compared: one place name can
    cover several physical locations.
    """
    if a.type == "travel" or b.type == "travel":
        return False

    if a.place_id and b.place_id:
        return a.place_id == b.place_id

    if a.inferred_place is not None and b.inferred_place is not None:
        if a.inferred_place.place_id == b.inferred_place.place_id:
            return True

    if None not in (a.latitude, a.longitude, b.latitude, b.longitude):
        distance = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
        return distance < SAME_PLACE_DISTANCE_THRESHOLD_M

    return False


def merge_app_usage(
    first: Sequence[BlockAppUsage],
    second: Sequence[BlockAppUsage],
) -> List[BlockAppUsage]:
    """Sum minutes and concatenate sessions of apps present in both blocks"""
    merged: Dict[str, BlockAppUsage] = {app.app_id: app for app in first}
    for app in second:
        existing = merged.get(app.app_id)
        if existing is None:
            merged[app.app_id] = app
            continue
        sessions = sorted(
            [*existing.sessions, *app.sessions], key=lambda s: (s.start_time, s.end_time)
        )
        merged[app.app_id] = existing.model_copy(
            update={
                "total_minutes": existing.total_minutes + app.total_minutes,
                "sessions": sessions,
            }
        )
    return sorted(merged.values(), key=lambda a: (-a.total_minutes, a.app_id))


def _merge_pair(current: LocationBlock, following: LocationBlock) -> LocationBlock:
    current_minutes = current.duration_minutes
    following_minutes = following.duration_minutes
    total_minutes = current_minutes + following_minutes
    if total_minutes > 0:
        confidence = (
            current.confidence * current_minutes + following.confidence * following_minutes
        ) / total_minutes
    else:
        confidence = current.confidence

    return current.model_copy(
        update={
            "end_time": max(current.end_time, following.end_time),
            "apps": merge_app_usage(current.apps, following.apps),
            "confidence": confidence,
            "total_location_samples": current.total_location_samples
            + following.total_location_samples,
            "summary_ids": current.summary_ids + following.summary_ids,
            "is_carried_forward": current.is_carried_forward and following.is_carried_forward,
        }
    )


def merge_consecutive_blocks(
    blocks: Sequence[LocationBlock],
    tz: tzinfo,
) -> List[LocationBlock]:
    """Merge touching blocks at the same place within one local day

    The merged block keeps the first block's id and labels; confidence is
    the duration-weighted average.
    """
    if not blocks:
        return []

    ordered = sorted(blocks, key=lambda b: (b.start_time, b.id))
    result: List[LocationBlock] = []
    current = ordered[0]

    for following in ordered[1:]:
        touching = following.start_time <= current.end_time
        same_day = (
            current.start_time.astimezone(tz).date()
            == following.start_time.astimezone(tz).date()
        )
        if touching and same_day and is_same_block_location(current, following):
            current = _merge_pair(current, following)
        else:
            result.append(current)
            current = following

    result.append(current)
    return result


def build_location_blocks(
    summaries: Sequence[HourlySummary],
    tz: tzinfo,
) -> List[LocationBlock]:
    """Group hourly summaries into blocks, then carry places across gaps and merge"""
    ordered = dedupe_summaries(summaries)
    grouped = group_into_location_blocks(ordered, tz)
    return fill_location_gaps(grouped, ordered, tz)
