"""
Data entity model definitions
Core data structures of the activity timeline pipeline
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BeforeValidator, ConfigDict, Field, model_validator

from core.errors import MalformedInputError
from core.timeutils import parse_timestamp

from .base import BaseModel, SourceRecord


def _to_utc(value: Any) -> Any:
    if value is None or value == "":
        return None
    try:
        return parse_timestamp(value)
    except MalformedInputError as e:
        raise ValueError(str(e)) from e


# Accepts epoch-ms, ISO-8601 text or datetime; always stored as aware UTC
UtcDatetime = Annotated[datetime, BeforeValidator(_to_utc)]

MovementState = Literal["moving", "stationary"]
BlockType = Literal["stationary", "travel"]
EventSource = Literal["user", "derived", "evidence"]
TimelineEventKind = Literal[
    "app",
    "email",
    "slack_message",
    "meeting",
    "phone_call",
    "sms",
    "website",
    "scheduled",
]
ProductivityFlag = Literal["productive", "neutral", "unproductive"]
StageStatus = Literal["succeeded", "skipped", "failed"]
RunStatus = Literal["succeeded", "up_to_date", "skipped", "failed"]


# ============ Location ============


class LocationSample(SourceRecord):
    """A single GPS fix from the native location source"""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_meters: Optional[float] = None  # None means unknown accuracy
    recorded_at: UtcDatetime


class MovementClassification(BaseModel):
    """Moving/stationary verdict for one sample window"""

    state: Optional[MovementState] = None  # None when insufficient or ambiguous
    confidence: float = 0.0
    total_distance_meters: float = 0.0
    time_span_ms: int = 0
    usable_sample_count: int = 0


class InferredPlace(SourceRecord):
    """A place from the user's place-inference history"""

    place_id: str
    name: str
    category: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_meters: float = 150.0
    confidence: float = 0.0


# ============ Hourly enrichment input ============


class AppSession(SourceRecord):
    """A single contiguous session of app usage"""

    model_config = ConfigDict(frozen=True)

    start_time: UtcDatetime
    end_time: UtcDatetime
    minutes: float


class SummaryApp(SourceRecord):
    """Per-app usage within one hourly summary"""

    app_id: str
    display_name: str
    category: str = "utility"
    minutes: float = 0
    sessions: List[AppSession] = []


class HourlySummary(SourceRecord):
    """Enriched place/activity summary for one hour"""

    id: str
    hour_start: UtcDatetime
    place_label: Optional[str] = None
    place_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    inferred_place: Optional[InferredPlace] = None
    confidence: float = 0.0
    primary_activity: Optional[str] = None  # 'commute' marks a travel hour
    activity_text: Optional[str] = None
    movement_type: Optional[str] = None  # walking, cycling, driving, stationary, unknown
    distance_meters: Optional[float] = None
    location_samples: int = 0
    app_breakdown: List[SummaryApp] = []


# ============ Location blocks ============


class BlockAppUsage(BaseModel):
    """Aggregated app usage across all hours of a block"""

    model_config = ConfigDict(frozen=True)

    app_id: str
    display_name: str
    category: str
    total_minutes: float
    sessions: List[AppSession] = []


class ActivityInference(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary: Optional[str] = None
    details: List[str] = []
    dominant_activity: Optional[str] = None


class LocationBlock(BaseModel):
    """A contiguous period of time spent at one place, or travelling"""

    model_config = ConfigDict(frozen=True)

    id: str
    type: BlockType
    start_time: UtcDatetime
    end_time: UtcDatetime
    location_label: str
    location_category: Optional[str] = None
    place_id: Optional[str] = None
    inferred_place: Optional[InferredPlace] = None
    is_place_inferred: bool = False
    is_carried_forward: bool = False  # synthesized from the previous block across a gap
    movement_type: Optional[str] = None
    distance_meters: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    apps: List[BlockAppUsage] = []
    activity_inference: ActivityInference = Field(default_factory=ActivityInference)
    confidence: float = 0.0
    total_location_samples: int = 0
    summary_ids: List[str] = []

    @property
    def duration_minutes(self) -> int:
        return round((self.end_time - self.start_time).total_seconds() / 60)


# ============ Scheduled (calendar-shaped) events ============


class UsageSummaryItem(BaseModel):
    label: str
    seconds: float


class _EventMetaBase(BaseModel):
    """Known fields shared by every meta variant

    Keys outside a variant's known set are moved into ``extensions``
    instead of being rejected.
    """

    kind: Optional[str] = None
    category: Optional[str] = None
    confidence: Optional[float] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extensions(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        known = set()
        for name, field in cls.model_fields.items():
            known.add(name)
            if field.alias:
                known.add(field.alias)

        unknown = {k: v for k, v in data.items() if k not in known}
        if not unknown:
            return data

        cleaned = {k: v for k, v in data.items() if k in known}
        extensions = dict(cleaned.get("extensions") or {})
        extensions.update(unknown)
        cleaned["extensions"] = extensions
        return cleaned


class UserEventMeta(_EventMetaBase):
    """Meta of an event entered by the user"""

    source: Literal["user"] = "user"
    planned_event_id: Optional[str] = None  # actual -> planned back-reference


class DerivedEventMeta(_EventMetaBase):
    """Meta of an event synthesized from location blocks or gap filling"""

    source: Literal["derived"] = "derived"
    place_label: Optional[str] = None
    place_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    fuzzy_location: bool = False
    summary: List[UsageSummaryItem] = []


class EvidenceEventMeta(_EventMetaBase):
    """Meta of an event synthesized from raw evidence (screen time, samples)"""

    source: Literal["evidence"] = "evidence"
    evidence_ids: List[str] = []


EventMeta = Annotated[
    Union[UserEventMeta, DerivedEventMeta, EvidenceEventMeta],
    Field(discriminator="source"),
]


class ScheduledEvent(SourceRecord):
    """Calendar-shaped event positioned in minutes from local midnight"""

    id: str
    title: str
    description: str = ""
    start_minutes: int
    duration: int = Field(ge=0)
    category: str = "unknown"
    location: Optional[str] = None
    meta: EventMeta = Field(default_factory=UserEventMeta)

    @model_validator(mode="before")
    @classmethod
    def _default_meta_source(cls, data: Any) -> Any:
        # Rows without a source tag were entered by the user
        if isinstance(data, dict):
            meta = data.get("meta")
            if meta is None and "meta" in data:
                data = {**data, "meta": {"source": "user"}}
            elif isinstance(meta, dict) and "source" not in meta:
                data = {**data, "meta": {**meta, "source": "user"}}
        return data

    @property
    def end_minutes(self) -> int:
        return self.start_minutes + self.duration

    @property
    def source(self) -> str:
        return self.meta.source


# ============ Communication rows ============


class CommunicationRow(SourceRecord):
    """Email / Slack / phone / SMS / meeting row from the communication store"""

    id: str
    type: str = "email"
    title: Optional[str] = None
    sent_at: Optional[UtcDatetime] = None
    received_at: Optional[UtcDatetime] = None
    scheduled_start: Optional[UtcDatetime] = None
    scheduled_end: Optional[UtcDatetime] = None
    created_at: Optional[UtcDatetime] = None
    meta: Dict[str, Any] = {}


# ============ Timeline read model ============


class TimelineEvent(BaseModel):
    """One row of the merged daily timeline"""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: TimelineEventKind
    kind_label: str
    title: str
    subtitle: Optional[str] = None
    start_time: UtcDatetime
    end_time: UtcDatetime
    duration_minutes: int
    app_category: Optional[str] = None
    productivity: ProductivityFlag = "neutral"
    is_past: bool = True
    overlaps: List[str] = []
    block_id: Optional[str] = None
    scheduled_event_id: Optional[str] = None
    actual_event_id: Optional[str] = None


# ============ Ingestion ============


class IngestionCheckpoint(BaseModel):
    """Per-user cursor marking the last successfully processed window"""

    user_id: str
    timezone: str = "UTC"
    last_window_start: Optional[UtcDatetime] = None
    last_window_end: Optional[UtcDatetime] = None
    last_processed_at: Optional[UtcDatetime] = None
    stats: Dict[str, Any] = {}


class StageResult(BaseModel):
    """Outcome of one pipeline stage for one window"""

    stage: str
    status: StageStatus
    count: int = 0
    skipped_records: int = 0
    error_kind: Optional[str] = None
    message: str = ""


class WindowRunStats(BaseModel):
    """Per-window run statistics persisted with the checkpoint"""

    window_start: UtcDatetime
    window_end: UtcDatetime
    sessions_processed: int = 0
    segments_created: int = 0
    records_skipped: int = 0
    stages: List[StageResult] = []

    def status_counts(self) -> Dict[str, int]:
        counts = {"succeeded": 0, "skipped": 0, "failed": 0}
        for stage in self.stages:
            counts[stage.status] += 1
        return counts


class WindowLock(BaseModel):
    """History row for one committed window"""

    user_id: str
    window_start: UtcDatetime
    window_end: UtcDatetime
    locked_at: UtcDatetime
    stats: Optional[WindowRunStats] = None


class DayTimeline(BaseModel):
    """Fully built read model for one user-day"""

    user_id: str
    ymd: str
    timezone: str
    window_end: UtcDatetime
    movement: Optional[MovementClassification] = None
    blocks: List[LocationBlock] = []
    scheduled_events: List[ScheduledEvent] = []
    timeline_events: List[TimelineEvent] = []


class IngestionRunResult(BaseModel):
    """Result of one scheduler invocation for one user"""

    user_id: str
    status: RunStatus
    trigger: str = "timer"
    windows_processed: int = 0
    checkpoint: Optional[IngestionCheckpoint] = None
    window_stats: List[WindowRunStats] = []
    error: Optional[str] = None
    reason: Optional[str] = None
