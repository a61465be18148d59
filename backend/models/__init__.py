"""
Models for the activity timeline pipeline
pydantic models shared by processing stages, the agent and handlers
"""

from .base import (
    BaseModel,
    OperationDataResponse,
    OperationResponse,
    SourceRecord,
    TimedOperationResponse,
)
from .entities import (
    ActivityInference,
    AppSession,
    BlockAppUsage,
    CommunicationRow,
    DayTimeline,
    DerivedEventMeta,
    EventMeta,
    EvidenceEventMeta,
    HourlySummary,
    InferredPlace,
    IngestionCheckpoint,
    IngestionRunResult,
    LocationBlock,
    LocationSample,
    MovementClassification,
    ScheduledEvent,
    StageResult,
    SummaryApp,
    TimelineEvent,
    UsageSummaryItem,
    UserEventMeta,
    WindowLock,
    WindowRunStats,
)

__all__ = [
    # Base
    "BaseModel",
    "OperationResponse",
    "OperationDataResponse",
    "SourceRecord",
    "TimedOperationResponse",
    # Location
    "LocationSample",
    "MovementClassification",
    "InferredPlace",
    # Enrichment input
    "AppSession",
    "SummaryApp",
    "HourlySummary",
    # Blocks
    "BlockAppUsage",
    "ActivityInference",
    "LocationBlock",
    # Scheduled events
    "UsageSummaryItem",
    "UserEventMeta",
    "DerivedEventMeta",
    "EvidenceEventMeta",
    "EventMeta",
    "ScheduledEvent",
    # Timeline
    "CommunicationRow",
    "TimelineEvent",
    "DayTimeline",
    # Ingestion
    "IngestionCheckpoint",
    "StageResult",
    "WindowLock",
    "WindowRunStats",
    "IngestionRunResult",
]
