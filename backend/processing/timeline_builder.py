"""
Timeline event builder
Merges app sessions, communication rows and calendar events into one sorted,
overlap-annotated daily timeline
"""

from datetime import datetime, timedelta, tzinfo
from typing import Dict, List, Optional, Sequence, Set, Tuple

from core.logger import get_logger
from core.timeutils import epoch_ms, minutes_from_midnight, minutes_to_datetime
from models.entities import (
    BlockAppUsage,
    CommunicationRow,
    LocationBlock,
    ScheduledEvent,
    TimelineEvent,
)

logger = get_logger(__name__)

MERGE_GAP = timedelta(minutes=2)
DEFAULT_COMM_DURATION = timedelta(minutes=5)

COMM_KINDS = {"email", "slack_message", "phone_call", "sms", "meeting"}
COMM_LABELS = {
    "email": "E-Mail",
    "slack_message": "Slack Message",
    "phone_call": "Phone Call",
    "sms": "SMS",
    "meeting": "Meeting",
}

# Kinds produced by the activity pipeline itself; never shown as meetings
DERIVED_KINDS = {
    "session_block",
    "travel",
    "commute",
    "location_block",
    "location_inferred",
    "transition_commute",
    "transition_prep",
    "transition_wind_down",
    "sleep_schedule",
    "sleep_interrupted",
    "sleep_late",
    "screen_time",
    "unknown_gap",
    "pattern_gap",
    "evidence_block",
}


def productivity_flag(category: Optional[str]) -> str:
    if category == "work":
        return "productive"
    if category in ("social", "entertainment"):
        return "unproductive"
    return "neutral"


def _block_at(moment: datetime, blocks: Sequence[LocationBlock]) -> Optional[str]:
    for block in blocks:
        if block.start_time <= moment < block.end_time:
            return block.id
    return None


# ============ App sessions ============


def _merge_sessions(app: BlockAppUsage) -> List[Tuple[datetime, datetime, float]]:
    """Merge back-to-back sessions separated by at most two minutes"""
    merged: List[List] = []
    for session in sorted(app.sessions, key=lambda s: (s.start_time, s.end_time)):
        if merged and session.start_time - merged[-1][1] <= MERGE_GAP:
            merged[-1][1] = max(merged[-1][1], session.end_time)
            merged[-1][2] += session.minutes
        else:
            merged.append([session.start_time, session.end_time, session.minutes])
    return [tuple(m) for m in merged]


def build_app_events(block: LocationBlock) -> List[TimelineEvent]:
    events = []
    for app in block.apps:
        for start, end, minutes in _merge_sessions(app):
            # Reported minutes never exceed the wall-clock span
            span_minutes = round((end - start).total_seconds() / 60)
            duration = min(minutes, max(1, span_minutes))

            events.append(
                TimelineEvent(
                    id=f"app-{app.app_id}-{epoch_ms(start)}",
                    kind="app",
                    kind_label="App",
                    title=app.display_name,
                    start_time=start,
                    end_time=end,
                    duration_minutes=max(1, round(duration)),
                    app_category=app.category,
                    productivity=productivity_flag(app.category),
                    block_id=block.id,
                )
            )
    return events


# ============ Communication rows ============


def comm_row_start(row: CommunicationRow) -> Optional[datetime]:
    """Row timestamp by priority sent > received > scheduled start > created

    Returns None when the row has no timestamp.
    """
    for value in (row.sent_at, row.received_at, row.scheduled_start, row.created_at):
        if value is not None:
            return value
    return None


def comm_row_end(row: CommunicationRow, start: datetime) -> datetime:
    if row.scheduled_end is not None and row.scheduled_end >= start:
        return row.scheduled_end
    return start + DEFAULT_COMM_DURATION


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count > 1 else ''}"


def comm_subtitle(kind: str, meta: Dict) -> Optional[str]:
    if kind == "email":
        recipients = meta.get("recipients")
        if isinstance(recipients, list):
            count = len(recipients)
        else:
            count = 1 if isinstance(meta.get("to_addresses"), str) and meta["to_addresses"] else 0
        return _plural(count, "Recipient") if count > 0 else None

    if kind == "meeting":
        attendees = meta.get("attendees")
        if isinstance(attendees, list):
            count = len(attendees)
        else:
            count = meta.get("attendee_count")
        if isinstance(count, (int, float)) and not isinstance(count, bool) and count > 0:
            return _plural(int(count), "Attendee")
        return None

    if kind == "slack_message":
        channel = meta.get("channel")
        if isinstance(channel, str) and channel:
            return f"#{channel}"

    return None


def build_comm_events(
    rows: Sequence[CommunicationRow],
    blocks: Sequence[LocationBlock] = (),
) -> List[TimelineEvent]:
    events = []
    for row in rows:
        start = comm_row_start(row)
        if start is None:
            logger.debug(f"Skipping communication row {row.id}: no usable timestamp")
            continue
        end = comm_row_end(row, start)

        row_type = row.type or "email"
        kind = row_type if row_type in COMM_KINDS else "email"
        kind_label = COMM_LABELS.get(row_type, "Message")
        duration = max(1, round((end - start).total_seconds() / 60))

        events.append(
            TimelineEvent(
                id=f"comm-{row.id}",
                kind=kind,
                kind_label=kind_label,
                title=row.title or kind_label,
                subtitle=comm_subtitle(kind, row.meta),
                start_time=start,
                end_time=end,
                duration_minutes=duration,
                productivity="neutral",
                block_id=_block_at(start, blocks),
            )
        )
    return events


# ============ Calendar ============


def is_derived_event(event: ScheduledEvent) -> bool:
    if event.meta.kind in DERIVED_KINDS:
        return True
    return event.meta.source in ("derived", "evidence")


def scheduled_event_range(event: ScheduledEvent, ymd: str, tz: tzinfo) -> Tuple[datetime, datetime]:
    start = minutes_to_datetime(event.start_minutes, ymd, tz)
    return start, start + timedelta(minutes=event.duration)


def _planned_ref(event: ScheduledEvent) -> Optional[str]:
    return getattr(event.meta, "planned_event_id", None)


def build_calendar_events(
    planned: Sequence[ScheduledEvent],
    actual: Sequence[ScheduledEvent],
    ymd: str,
    tz: tzinfo,
    blocks: Sequence[LocationBlock] = (),
) -> List[TimelineEvent]:
    """
    Pair planned events with their actual counterparts

    Matching is by the actual event's planned-event back-reference first,
    then by identical title with an overlapping time range. Matched pairs
    become meetings, unmatched planned events stay scheduled, and unmatched
    user actual events become their own meetings. Derived and evidence
    events are ignored on both sides.
    """
    planned = [p for p in planned if not is_derived_event(p)]
    actual = [a for a in actual if not is_derived_event(a)]
    planned_ids = {p.id for p in planned}

    actual_by_planned_id: Dict[str, ScheduledEvent] = {}
    for act in actual:
        ref = _planned_ref(act)
        if ref and ref in planned_ids:
            actual_by_planned_id.setdefault(ref, act)

    referenced: Set[str] = {a.id for a in actual_by_planned_id.values()}
    consumed: Set[str] = set()
    events: List[TimelineEvent] = []

    for plan in planned:
        start, end = scheduled_event_range(plan, ymd, tz)

        match = actual_by_planned_id.get(plan.id)
        if match is None:
            for act in actual:
                if act.id in consumed or act.id in referenced or act.title != plan.title:
                    continue
                act_start, act_end = scheduled_event_range(act, ymd, tz)
                if act_start < end and act_end > start:
                    match = act
                    break

        if match is not None:
            consumed.add(match.id)

        events.append(
            TimelineEvent(
                id=f"cal-{plan.id}",
                kind="meeting" if match else "scheduled",
                kind_label="Meeting" if match else "Scheduled",
                title=plan.title,
                subtitle=plan.location,
                start_time=start,
                end_time=end,
                duration_minutes=max(1, plan.duration),
                productivity="neutral",
                block_id=_block_at(start, blocks),
                scheduled_event_id=plan.id,
                actual_event_id=match.id if match else None,
            )
        )

    for act in actual:
        if act.id in consumed:
            continue
        start, end = scheduled_event_range(act, ymd, tz)
        events.append(
            TimelineEvent(
                id=f"cal-actual-{act.id}",
                kind="meeting",
                kind_label="Meeting",
                title=act.title,
                subtitle=act.location,
                start_time=start,
                end_time=end,
                duration_minutes=max(1, act.duration),
                productivity="neutral",
                block_id=_block_at(start, blocks),
                actual_event_id=act.id,
            )
        )

    return events


# ============ Merge ============


def detect_overlaps(events: Sequence[TimelineEvent]) -> List[List[str]]:
    """Overlapping event ids per position; ``events`` must be sorted by start"""
    overlaps: List[List[str]] = [[] for _ in events]
    for i, current in enumerate(events):
        for j in range(i + 1, len(events)):
            if events[j].start_time >= current.end_time:
                break
            overlaps[i].append(events[j].id)
            overlaps[j].append(current.id)
    return overlaps


def build_timeline_events(
    blocks: Sequence[LocationBlock],
    comm_rows: Sequence[CommunicationRow],
    planned: Sequence[ScheduledEvent],
    actual: Sequence[ScheduledEvent],
    current_minutes: Optional[int],
    ymd: str,
    tz: tzinfo,
) -> List[TimelineEvent]:
    """
    Build the unified timeline for one day

    Args:
        blocks: The day's location blocks (source of app sessions)
        comm_rows: Communication rows for the day
        planned: Planned calendar events
        actual: Actual calendar events
        current_minutes: "Now" in minutes from local midnight when ``ymd``
            is today; None or negative marks every event as past
        ymd: Local day (YYYY-MM-DD)
        tz: The user's timezone

    Returns:
        Events sorted by start time, then end time, then id
    """
    events: List[TimelineEvent] = []
    for block in blocks:
        events.extend(build_app_events(block))
    events.extend(build_comm_events(comm_rows, blocks))
    events.extend(build_calendar_events(planned, actual, ymd, tz, blocks))

    events.sort(key=lambda e: (e.start_time, e.end_time, e.id))

    overlaps = detect_overlaps(events)
    is_today = current_minutes is not None and current_minutes >= 0

    result = []
    for event, overlapping in zip(events, overlaps):
        is_past = True
        if is_today:
            is_past = minutes_from_midnight(event.end_time, ymd, tz) <= current_minutes
        result.append(event.model_copy(update={"is_past": is_past, "overlaps": overlapping}))

    logger.debug(f"Built {len(result)} timeline events for {ymd}")
    return result


# ============ Range filters ============


def filter_comm_rows_to_range(
    rows: Sequence[CommunicationRow],
    start: datetime,
    end: datetime,
) -> List[CommunicationRow]:
    """Rows whose [start, end) intersects the range; rows without a timestamp are dropped"""
    kept = []
    for row in rows:
        row_start = comm_row_start(row)
        if row_start is None:
            continue
        if row_start < end and comm_row_end(row, row_start) > start:
            kept.append(row)
    return kept


def filter_scheduled_to_range(
    events: Sequence[ScheduledEvent],
    start: datetime,
    end: datetime,
    ymd: str,
    tz: tzinfo,
) -> List[ScheduledEvent]:
    kept = []
    for event in events:
        event_start, event_end = scheduled_event_range(event, ymd, tz)
        if event_start < end and event_end > start:
            kept.append(event)
    return kept
