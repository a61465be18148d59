"""
IngestionAgent - Windowed, checkpointed timeline ingestion per user

Runs the fusion pipeline over fixed clock-aligned windows:
- Reads the user's checkpoint and computes the unprocessed windows
- Fetches all sources concurrently, then runs the pure fusion stages
- Commits the advanced checkpoint and the rebuilt day snapshot together

A window that fails leaves the checkpoint where it was; the next cycle
retries it. Runs for the same user never overlap.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from core.db import DatabaseManager, get_db
from core.errors import ConcurrencyConflictError, InsufficientDataError, UpstreamFetchError
from core.logger import get_logger
from core.records import coerce_records
from core.settings import get_settings
from core.sources import (
    CalendarSource,
    CommunicationSource,
    HourlySummarySource,
    LocationSampleSource,
    PlaceSource,
)
from core.timeutils import (
    day_bounds,
    floor_to_window,
    minutes_from_midnight,
    next_window_boundary,
    parse_ymd,
    tzinfo_from_name,
    windows_between,
    ymd_for,
)
from models.entities import (
    CommunicationRow,
    DayTimeline,
    HourlySummary,
    InferredPlace,
    IngestionRunResult,
    LocationSample,
    ScheduledEvent,
    StageResult,
    WindowRunStats,
)
from processing.gap_filler import location_blocks_to_scheduled_events
from processing.location_blocks import build_location_blocks
from processing.movement import classify_movement
from processing.place_inference import PlaceInferenceCache, annotate_summaries
from processing.timeline_builder import build_timeline_events, comm_row_start

logger = get_logger(__name__)

# Movement needs a longer span than one window to call a user stationary
MOVEMENT_LOOKBACK = timedelta(minutes=60)


class UserPhase(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


@dataclass
class UserIngestionState:
    """Scheduler state owned by the agent for one user"""

    user_id: str
    timezone: str
    phase: UserPhase = UserPhase.IDLE
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None
    runs: int = 0


@dataclass
class IngestionSources:
    """External collaborators the pipeline reads from"""

    locations: LocationSampleSource
    summaries: HourlySummarySource
    communications: CommunicationSource
    calendar: CalendarSource
    places: Optional[PlaceSource] = None


@dataclass
class WindowFetch:
    samples: Sequence[Any] = field(default_factory=list)
    summaries: Sequence[Any] = field(default_factory=list)
    comm_rows: Sequence[Any] = field(default_factory=list)
    planned: Sequence[Any] = field(default_factory=list)
    actual: Sequence[Any] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionAgent:
    """
    Ingestion agent driving the timeline pipeline

    Responsibilities:
    - Keep one scheduler state per registered user
    - Process unprocessed windows oldest first, bounded per cycle
    - Advance checkpoints only after a window fully succeeds
    """

    def __init__(
        self,
        sources: IngestionSources,
        db: Optional[DatabaseManager] = None,
        window_minutes: Optional[int] = None,
        max_catch_up_windows: Optional[int] = None,
        default_timezone: Optional[str] = None,
        place_cache: Optional[PlaceInferenceCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize IngestionAgent

        Args:
            sources: Source collaborators
            db: Database manager (defaults to the global one)
            window_minutes: Window size, must divide a day ([ingestion] window_minutes)
            max_catch_up_windows: Most windows processed per user per cycle
            default_timezone: Timezone for users registered without one
            place_cache: Inferred-place cache shared across runs
            clock: Returns the current aware datetime
        """
        settings = get_settings().get_ingestion_settings()

        self.sources = sources
        self.db = db or get_db()
        self.window_minutes = window_minutes or settings.window_minutes
        self.max_catch_up_windows = max_catch_up_windows or settings.max_catch_up_windows
        self.default_timezone = default_timezone or settings.default_timezone
        self.place_cache = place_cache or PlaceInferenceCache(settings.place_cache_ttl_days)
        self.clock = clock or _utc_now

        if self.window_minutes <= 0 or 1440 % self.window_minutes != 0:
            raise ValueError(f"window_minutes must divide a day, got {self.window_minutes}")

        # user_id -> state; the lock only guards phase check-and-set
        self._users: Dict[str, UserIngestionState] = {}
        self._state_lock = threading.Lock()

        # Running state
        self.is_running = False
        self.is_paused = False
        self.ingestion_task: Optional[asyncio.Task] = None
        self.activation_task: Optional[asyncio.Task] = None

        # Statistics
        self.stats: Dict[str, Any] = {
            "total_runs": 0,
            "windows_processed": 0,
            "failed_runs": 0,
            "skipped_runs": 0,
            "last_run_time": None,
        }

        logger.debug(
            f"IngestionAgent initialized (window: {self.window_minutes}min, "
            f"max catch-up: {self.max_catch_up_windows} windows)"
        )

    # ============ Lifecycle ============

    async def start(self):
        """Start the agent: load known users, run once, then follow the clock"""
        if self.is_running:
            logger.warning("IngestionAgent is already running")
            return

        self.is_running = True

        for checkpoint in await self.db.checkpoints.get_all():
            self._ensure_state(checkpoint.user_id, checkpoint.timezone)

        self.activation_task = asyncio.create_task(self.run_all(trigger="activation"))
        self.ingestion_task = asyncio.create_task(self._periodic_ingestion())

        logger.info(
            f"IngestionAgent started ({len(self._users)} users, "
            f"window {self.window_minutes}min)"
        )

    async def stop(self):
        """Stop the agent; a cancelled window is simply not advanced"""
        if not self.is_running:
            return

        self.is_running = False
        self.is_paused = False

        for task in (self.ingestion_task, self.activation_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        logger.info("IngestionAgent stopped")

    def pause(self):
        """Pause the agent (app backgrounded / system sleep)"""
        if not self.is_running:
            return

        self.is_paused = True
        logger.debug("IngestionAgent paused")

    def resume(self):
        """Resume the agent and catch up immediately

        Must be called from within a running event loop.
        """
        if not self.is_running:
            return

        self.is_paused = False
        if self.activation_task is None or self.activation_task.done():
            self.activation_task = asyncio.create_task(self.run_all(trigger="resume"))
        logger.debug("IngestionAgent resumed")

    def _seconds_until_next_boundary(self) -> float:
        now = self.clock()
        boundary = next_window_boundary(now, self.window_minutes)
        return max((boundary - now).total_seconds(), 0.0)

    async def _periodic_ingestion(self):
        """Scheduled task: run all users at every window boundary"""
        while self.is_running:
            try:
                await asyncio.sleep(self._seconds_until_next_boundary())

                # Skip processing if paused (system sleep)
                if self.is_paused:
                    logger.debug("IngestionAgent paused, skipping cycle")
                    continue

                await self.run_all(trigger="timer")
            except asyncio.CancelledError:
                logger.debug("Ingestion task cancelled")
                break
            except Exception as e:
                logger.error(f"Ingestion task exception: {e}", exc_info=True)

    # ============ Users ============

    def _ensure_state(self, user_id: str, timezone_name: Optional[str] = None) -> UserIngestionState:
        with self._state_lock:
            state = self._users.get(user_id)
            if state is None:
                state = UserIngestionState(
                    user_id=user_id, timezone=timezone_name or self.default_timezone
                )
                self._users[user_id] = state
            elif timezone_name:
                state.timezone = timezone_name
            return state

    async def register_user(self, user_id: str, timezone_name: Optional[str] = None) -> UserIngestionState:
        """
        Register a user for scheduled ingestion

        Raises:
            ValueError: If the timezone name is unknown
        """
        timezone_name = timezone_name or self.default_timezone
        tzinfo_from_name(timezone_name)

        state = self._ensure_state(user_id, timezone_name)
        await self.db.checkpoints.ensure(user_id, timezone_name)
        logger.debug(f"Registered user {user_id} ({timezone_name})")
        return state

    def unregister_user(self, user_id: str) -> bool:
        with self._state_lock:
            removed = self._users.pop(user_id, None) is not None
        self.place_cache.invalidate(user_id)
        return removed

    def get_user_state(self, user_id: str) -> Optional[UserIngestionState]:
        return self._users.get(user_id)

    def _claim(self, user_id: str) -> UserIngestionState:
        """Atomically move a user from idle to scheduled

        Raises:
            ConcurrencyConflictError: If a run is already scheduled or running
        """
        state = self._ensure_state(user_id)
        with self._state_lock:
            if state.phase != UserPhase.IDLE:
                raise ConcurrencyConflictError(user_id)
            state.phase = UserPhase.SCHEDULED
        return state

    def _mark_running(self, state: UserIngestionState) -> None:
        with self._state_lock:
            state.phase = UserPhase.RUNNING

    def _release(self, state: UserIngestionState, status: str, error: Optional[str]) -> None:
        with self._state_lock:
            state.phase = UserPhase.IDLE
            state.last_status = status
            state.last_error = error
            state.last_run_at = self.clock()
            state.runs += 1

    # ============ Runs ============

    async def run_all(self, trigger: str = "timer") -> List[IngestionRunResult]:
        """Run every registered user concurrently; users never share state"""
        user_ids = list(self._users)
        if not user_ids:
            return []
        return list(await asyncio.gather(*(self.run_user(uid, trigger) for uid in user_ids)))

    async def refresh(self, user_id: str) -> IngestionRunResult:
        """
        Manual refresh: drop cached places and run now

        When no window is pending, the last processed window is rebuilt in
        place without moving the checkpoint.
        """
        self.place_cache.invalidate(user_id)
        return await self.run_user(user_id, trigger="manual", rebuild_if_idle=True)

    async def run_user(
        self,
        user_id: str,
        trigger: str = "timer",
        rebuild_if_idle: bool = False,
    ) -> IngestionRunResult:
        """
        Process all pending windows for one user

        Args:
            user_id: User identifier
            trigger: What requested the run ("timer", "activation", "resume", "manual")
            rebuild_if_idle: Rebuild the last processed window when nothing is pending

        Returns:
            IngestionRunResult; a concurrent request yields status "skipped"
        """
        try:
            state = self._claim(user_id)
        except ConcurrencyConflictError as e:
            logger.warning(f"Ingestion run refused ({trigger}): {e}")
            self.stats["skipped_runs"] += 1
            return IngestionRunResult(
                user_id=user_id, status="skipped", trigger=trigger, reason=e.kind
            )

        result: Optional[IngestionRunResult] = None
        try:
            self._mark_running(state)
            result = await self._run_pending(state, trigger, rebuild_if_idle)
            return result
        except Exception as e:
            logger.error(f"Ingestion run failed for {user_id}: {e}", exc_info=True)
            result = IngestionRunResult(
                user_id=user_id,
                status="failed",
                trigger=trigger,
                error=str(e),
                reason=getattr(e, "kind", type(e).__name__),
            )
            return result
        finally:
            status = result.status if result else "failed"
            self._release(state, status, result.error if result else "cancelled")
            self.stats["total_runs"] += 1
            self.stats["last_run_time"] = datetime.now().isoformat()
            if status == "failed":
                self.stats["failed_runs"] += 1

    def pending_windows(
        self, last_window_end: Optional[datetime], now: datetime
    ) -> List[Tuple[datetime, datetime]]:
        """Unprocessed complete windows, oldest first, bounded per cycle

        Without a checkpoint only the latest complete window is pending.
        """
        step = timedelta(minutes=self.window_minutes)
        current = floor_to_window(now, self.window_minutes)
        start = last_window_end if last_window_end is not None else current - step
        windows = windows_between(start, current, self.window_minutes)
        if len(windows) > self.max_catch_up_windows:
            logger.info(
                f"{len(windows)} windows pending, processing the oldest "
                f"{self.max_catch_up_windows} this cycle"
            )
        return windows[: self.max_catch_up_windows]

    async def _run_pending(
        self,
        state: UserIngestionState,
        trigger: str,
        rebuild_if_idle: bool,
    ) -> IngestionRunResult:
        user_id = state.user_id
        checkpoint = await self.db.checkpoints.ensure(user_id, state.timezone)
        windows = self.pending_windows(checkpoint.last_window_end, self.clock())

        if not windows:
            if rebuild_if_idle and checkpoint.last_window_end is not None:
                stats, timeline = await self.process_window(
                    user_id,
                    checkpoint.timezone,
                    checkpoint.last_window_start,
                    checkpoint.last_window_end,
                )
                await self.db.snapshots.save(timeline)
                await self.db.window_locks.lock_window(
                    user_id,
                    checkpoint.last_window_start,
                    checkpoint.last_window_end,
                    self.clock(),
                    stats,
                )
                logger.info(f"Rebuilt last window for {user_id} ending {checkpoint.last_window_end}")
                return IngestionRunResult(
                    user_id=user_id,
                    status="up_to_date",
                    trigger=trigger,
                    checkpoint=checkpoint,
                    window_stats=[stats],
                    reason="rebuilt",
                )
            return IngestionRunResult(
                user_id=user_id, status="up_to_date", trigger=trigger, checkpoint=checkpoint
            )

        processed: List[WindowRunStats] = []
        for window_start, window_end in windows:
            try:
                stats, timeline = await self.process_window(
                    user_id, checkpoint.timezone, window_start, window_end
                )
            except UpstreamFetchError as e:
                logger.warning(
                    f"Window {window_start.isoformat()} for {user_id} aborted, "
                    f"checkpoint unchanged: {e}"
                )
                processed.append(
                    WindowRunStats(
                        window_start=window_start,
                        window_end=window_end,
                        stages=[
                            StageResult(
                                stage="fetch",
                                status="failed",
                                error_kind=e.kind,
                                message=str(e),
                            )
                        ],
                    )
                )
                return IngestionRunResult(
                    user_id=user_id,
                    status="failed",
                    trigger=trigger,
                    windows_processed=len(processed) - 1,
                    checkpoint=await self.db.checkpoints.get(user_id),
                    window_stats=processed,
                    error=str(e),
                    reason=e.kind,
                )

            advanced = await self.db.checkpoints.advance(
                user_id, window_start, window_end, self.clock(), stats, timeline
            )
            if not advanced:
                break

            processed.append(stats)
            self.stats["windows_processed"] += 1
            logger.info(
                f"Committed window {window_start.isoformat()} - {window_end.isoformat()} "
                f"for {user_id}: {stats.segments_created} segments, "
                f"{stats.records_skipped} skipped records"
            )

        return IngestionRunResult(
            user_id=user_id,
            status="succeeded" if processed else "up_to_date",
            trigger=trigger,
            windows_processed=len(processed),
            checkpoint=await self.db.checkpoints.get(user_id),
            window_stats=processed,
        )

    # ============ Window processing ============

    async def _fetch(self, source_name: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except UpstreamFetchError:
            raise
        except Exception as e:
            raise UpstreamFetchError(source_name, str(e)) from e

    async def _get_places(self, user_id: str, now: datetime) -> List[InferredPlace]:
        cached = self.place_cache.get(user_id, now)
        if cached is not None:
            return cached
        if self.sources.places is None:
            return []

        raw = await self._fetch(self.sources.places.name, self.sources.places.fetch_places(user_id))
        places, _ = coerce_records(InferredPlace, raw or [], "inferred place")
        self.place_cache.put(user_id, places, now)
        return places

    async def fetch_window(
        self,
        user_id: str,
        ymd: str,
        window_start: datetime,
        window_end: datetime,
        day_start: datetime,
    ) -> WindowFetch:
        """
        Query every source for one window concurrently

        Samples cover at least the last hour before the window end; summaries
        and communications cover the local day up to the window end, so the
        day view is rebuilt whole.

        Raises:
            UpstreamFetchError: If any source query fails
        """
        sources = self.sources
        samples_start = min(window_start, window_end - MOVEMENT_LOOKBACK)
        results = await asyncio.gather(
            self._fetch(
                sources.locations.name,
                sources.locations.fetch_samples(user_id, samples_start, window_end),
            ),
            self._fetch(
                sources.summaries.name,
                sources.summaries.fetch_summaries(user_id, day_start, window_end),
            ),
            self._fetch(
                sources.communications.name,
                sources.communications.fetch_rows(user_id, day_start, window_end),
            ),
            self._fetch(sources.calendar.name, sources.calendar.fetch_events(user_id, ymd)),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException):
                raise result

        samples, summaries, comm_rows, calendar = results
        planned, actual = calendar if calendar else ([], [])
        return WindowFetch(
            samples=samples or [],
            summaries=summaries or [],
            comm_rows=comm_rows or [],
            planned=planned or [],
            actual=actual or [],
        )

    async def process_window(
        self,
        user_id: str,
        timezone_name: str,
        window_start: datetime,
        window_end: datetime,
    ) -> Tuple[WindowRunStats, DayTimeline]:
        """
        Fetch and fuse one window into the day snapshot it belongs to

        The window's day is the local date of its start. Everything derived
        from the inputs is relative to the window end, so re-running an
        unchanged window reproduces the same snapshot.

        Raises:
            UpstreamFetchError: If a source query fails
        """
        tz = tzinfo_from_name(timezone_name)
        ymd = ymd_for(window_start, tz)
        day_start, day_end = day_bounds(ymd, tz)

        places = await self._get_places(user_id, self.clock())
        fetched = await self.fetch_window(user_id, ymd, window_start, window_end, day_start)

        stages: List[StageResult] = []

        # Movement
        samples, skipped_samples = coerce_records(LocationSample, fetched.samples, "location sample")
        movement = classify_movement(samples)
        stages.append(
            StageResult(
                stage="movement",
                status="succeeded" if movement.state else "skipped",
                count=movement.usable_sample_count,
                skipped_records=skipped_samples,
                error_kind=None if movement.state else InsufficientDataError.kind,
            )
        )

        # Location blocks
        summaries, skipped_summaries = coerce_records(HourlySummary, fetched.summaries, "hourly summary")
        summaries = [s for s in summaries if day_start <= s.hour_start < day_end]
        blocks = build_location_blocks(annotate_summaries(summaries, places), tz)
        stages.append(
            StageResult(
                stage="location_blocks",
                status="succeeded" if blocks else "skipped",
                count=len(blocks),
                skipped_records=skipped_summaries,
            )
        )

        # Scheduled events
        planned, skipped_planned = coerce_records(ScheduledEvent, fetched.planned, "planned event")
        actual, skipped_actual = coerce_records(ScheduledEvent, fetched.actual, "actual event")
        user_actual = [event for event in actual if event.source == "user"]
        scheduled_events = location_blocks_to_scheduled_events(
            blocks,
            ymd,
            tz,
            planned_events=planned,
            user_actual_events=user_actual,
            today=parse_ymd(ymd_for(window_end, tz)),
        )
        stages.append(
            StageResult(
                stage="scheduled_events",
                status="succeeded" if scheduled_events else "skipped",
                count=len(scheduled_events),
                skipped_records=skipped_planned + skipped_actual,
            )
        )

        # Timeline
        comm_rows, skipped_comm = coerce_records(CommunicationRow, fetched.comm_rows, "communication")
        usable_comm = [row for row in comm_rows if comm_row_start(row) is not None]
        skipped_comm += len(comm_rows) - len(usable_comm)

        current_minutes = minutes_from_midnight(window_end, ymd, tz) if window_end < day_end else -1
        timeline_events = build_timeline_events(
            blocks, usable_comm, planned, actual, current_minutes, ymd, tz
        )
        stages.append(
            StageResult(
                stage="timeline",
                status="succeeded" if timeline_events else "skipped",
                count=len(timeline_events),
                skipped_records=skipped_comm,
            )
        )

        stats = WindowRunStats(
            window_start=window_start,
            window_end=window_end,
            sessions_processed=sum(len(app.sessions) for block in blocks for app in block.apps),
            segments_created=len(scheduled_events),
            records_skipped=sum(stage.skipped_records for stage in stages),
            stages=stages,
        )
        timeline = DayTimeline(
            user_id=user_id,
            ymd=ymd,
            timezone=timezone_name,
            window_end=window_end,
            movement=movement,
            blocks=blocks,
            scheduled_events=scheduled_events,
            timeline_events=timeline_events,
        )
        return stats, timeline

    def get_stats(self) -> Dict[str, Any]:
        """Get ingestion statistics"""
        return {
            **self.stats,
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "window_minutes": self.window_minutes,
            "users": {
                uid: {
                    "phase": state.phase.value,
                    "timezone": state.timezone,
                    "last_status": state.last_status,
                    "last_error": state.last_error,
                }
                for uid, state in self._users.items()
            },
        }


# Global agent instance
_ingestion_agent: Optional[IngestionAgent] = None


def get_ingestion_agent() -> Optional[IngestionAgent]:
    """Get the global ingestion agent, None until one is installed"""
    return _ingestion_agent


def set_ingestion_agent(agent: Optional[IngestionAgent]) -> None:
    global _ingestion_agent
    _ingestion_agent = agent
