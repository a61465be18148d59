"""Tests for agents.ingestion_agent."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from agents.ingestion_agent import IngestionAgent, UserPhase
from core.sources import HourlySummarySource
from models.entities import HourlySummary, InferredPlace, LocationSample, ScheduledEvent

UTC = timezone.utc
DAY = datetime(2024, 5, 1, tzinfo=UTC)

HOME = InferredPlace(place_id="home", name="Home", category="home", latitude=40.0, longitude=-73.0)


def summary(h, **kwargs):
    data = {"id": f"h{h}", "hour_start": DAY + timedelta(hours=h), "confidence": 0.8}
    data.update(kwargs)
    return HourlySummary(**data)


def still_samples(start, count=4, every=10):
    return [
        LocationSample(
            latitude=40.0,
            longitude=-73.0,
            accuracy_meters=5,
            recorded_at=start + timedelta(minutes=every * i),
        )
        for i in range(count)
    ]


@pytest.fixture
def populated(sources):
    sources.summaries.summaries = [
        summary(7, latitude=40.0, longitude=-73.0),
        summary(8, latitude=40.0, longitude=-73.0),
        summary(
            9,
            place_id="office",
            place_label="Office",
            app_breakdown=[
                {
                    "appId": "mail",
                    "displayName": "Mail",
                    "category": "work",
                    "minutes": 15,
                    "sessions": [
                        {
                            "startTime": DAY + timedelta(hours=9, minutes=5),
                            "endTime": DAY + timedelta(hours=9, minutes=20),
                            "minutes": 15,
                        }
                    ],
                }
            ],
        ),
    ]
    sources.locations.samples = still_samples(DAY + timedelta(hours=9), count=4, every=15)
    sources.places.places = [HOME]
    sources.calendar.planned = [ScheduledEvent(id="p1", title="Standup", start_minutes=570, duration=15)]
    return sources


def run(coro):
    return asyncio.run(coro)


class TestFirstRun:
    def test_processes_latest_complete_window(self, agent, db, populated):
        result = run(agent.run_user("u1"))
        assert result.status == "succeeded"
        assert result.windows_processed == 1
        assert result.checkpoint.last_window_start == DAY + timedelta(hours=9, minutes=30)
        assert result.checkpoint.last_window_end == DAY + timedelta(hours=10)

    def test_snapshot_is_committed(self, agent, db, populated):
        run(agent.run_user("u1"))
        timeline = run(db.snapshots.get("u1", "2024-05-01"))
        assert [b.location_label for b in timeline.blocks] == ["Home", "Office"]
        assert timeline.blocks[0].location_category == "home"
        assert timeline.movement.state == "stationary"
        assert [e.title for e in timeline.scheduled_events] == ["Home", "Office"]
        ids = [e.id for e in timeline.timeline_events]
        assert "cal-p1" in ids
        assert any(i.startswith("app-mail-") for i in ids)

    def test_window_stats(self, agent, populated):
        result = run(agent.run_user("u1"))
        (stats,) = result.window_stats
        assert stats.sessions_processed == 1
        assert stats.segments_created == 2
        assert stats.records_skipped == 0
        assert [s.stage for s in stats.stages] == ["movement", "location_blocks", "scheduled_events", "timeline"]
        assert stats.status_counts()["failed"] == 0

    def test_state_returns_to_idle(self, agent, populated):
        run(agent.run_user("u1"))
        state = agent.get_user_state("u1")
        assert state.phase == UserPhase.IDLE
        assert state.last_status == "succeeded"


class TestIdempotence:
    def test_rerun_same_window_does_not_advance(self, agent, db, populated):
        first = run(agent.run_user("u1"))
        second = run(agent.run_user("u1"))
        assert second.status == "up_to_date"
        assert second.windows_processed == 0
        assert second.checkpoint.last_window_end == first.checkpoint.last_window_end

    def test_process_window_is_deterministic(self, agent, populated):
        start = DAY + timedelta(hours=9, minutes=30)
        end = start + timedelta(minutes=30)
        _, first = run(agent.process_window("u1", "UTC", start, end))
        _, second = run(agent.process_window("u1", "UTC", start, end))
        assert first == second


class TestCatchUp:
    def test_bounded_per_cycle_oldest_first(self, agent, clock, populated):
        run(agent.run_user("u1"))
        clock.advance(hours=3)

        result = run(agent.run_user("u1"))
        assert result.windows_processed == 4
        starts = [s.window_start for s in result.window_stats]
        assert starts == sorted(starts)
        assert starts[0] == DAY + timedelta(hours=10)
        assert result.checkpoint.last_window_end == DAY + timedelta(hours=12)

        rest = run(agent.run_user("u1"))
        assert rest.windows_processed == 2
        assert rest.checkpoint.last_window_end == DAY + timedelta(hours=13)

    def test_partial_window_waits(self, agent, clock, populated):
        run(agent.run_user("u1"))
        clock.advance(minutes=20)
        assert run(agent.run_user("u1")).status == "up_to_date"


class TestFailures:
    def test_upstream_failure_leaves_checkpoint(self, agent, db, clock, populated):
        run(agent.run_user("u1"))
        before = run(db.checkpoints.get("u1"))

        populated.summaries.fail = True
        clock.advance(minutes=30)
        result = run(agent.run_user("u1"))

        assert result.status == "failed"
        assert result.reason == "upstream_fetch_failure"
        assert result.window_stats[-1].stages[0].status == "failed"
        assert run(db.checkpoints.get("u1")).last_window_end == before.last_window_end
        assert agent.get_user_state("u1").phase == UserPhase.IDLE

    def test_retry_after_failure(self, agent, clock, populated):
        populated.calendar.fail = True
        assert run(agent.run_user("u1")).status == "failed"
        populated.calendar.fail = False
        result = run(agent.run_user("u1"))
        assert result.status == "succeeded"
        assert result.windows_processed == 1

    def test_failed_window_keeps_earlier_commits(self, agent, db, clock, populated):
        run(agent.run_user("u1"))
        clock.advance(hours=1)

        original = populated.locations.fetch_samples
        calls = {"n": 0}

        async def flaky(user_id, start, end):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("connection reset")
            return await original(user_id, start, end)

        populated.locations.fetch_samples = flaky
        result = run(agent.run_user("u1"))
        assert result.status == "failed"
        assert result.windows_processed == 1
        assert run(db.checkpoints.get("u1")).last_window_end == DAY + timedelta(hours=10, minutes=30)

    def test_malformed_records_are_skipped_not_fatal(self, agent, populated):
        populated.summaries.summaries.append(
            {"id": "bad", "hourStart": (DAY + timedelta(hours=6)).isoformat(), "confidence": "high"}
        )
        populated.communications.rows = [{"id": "c1", "sentAt": "garbage"}]
        result = run(agent.run_user("u1"))
        assert result.status == "succeeded"
        assert result.window_stats[0].records_skipped == 2

    def test_store_rows_with_extra_columns_are_used(self, agent, db, sources):
        start = DAY + timedelta(hours=9)
        sources.locations.samples = [
            {
                "latitude": 40.0,
                "longitude": -73.0,
                "accuracyMeters": 5,
                "recordedAt": (start + timedelta(minutes=15 * i)).isoformat(),
                "speed": 0.0,
                "userId": "u1",
            }
            for i in range(4)
        ]
        sources.summaries.summaries = [
            {
                "id": "h9",
                "hourStart": start.isoformat(),
                "placeLabel": "Office",
                "userId": "u1",
                "updatedAt": "2024-05-01T10:00:00Z",
            }
        ]
        sources.communications.rows = [
            {"id": "c1", "type": "email", "sentAt": "2024-05-01T09:40:00Z", "user_id": "u1"}
        ]
        sources.calendar.planned = [
            {"id": "p1", "title": "Standup", "startMinutes": 570, "duration": 15, "userId": "u1"}
        ]

        result = run(agent.run_user("u1"))
        assert result.status == "succeeded"
        stats = result.window_stats[0]
        assert stats.records_skipped == 0
        timeline = run(db.snapshots.get("u1", "2024-05-01"))
        assert timeline.movement.state == "stationary"
        assert timeline.blocks[0].location_label == "Office"
        assert {e.id for e in timeline.timeline_events} >= {"comm-c1", "cal-p1"}


class GatedSummarySource(HourlySummarySource):
    def __init__(self, gate):
        self.gate = gate

    async def fetch_summaries(self, user_id, start, end):
        await self.gate.wait()
        return []


class TestConcurrency:
    def test_concurrent_run_is_refused(self, agent, sources):
        async def scenario():
            gate = asyncio.Event()
            sources.summaries = GatedSummarySource(gate)
            first = asyncio.create_task(agent.run_user("u1"))
            await asyncio.sleep(0)
            phase = agent.get_user_state("u1").phase
            second = await agent.run_user("u1", trigger="manual")
            gate.set()
            return await first, second, phase

        first, second, phase = run(scenario())
        assert phase == UserPhase.RUNNING
        assert second.status == "skipped"
        assert second.reason == "concurrency_conflict"
        assert first.status == "succeeded"
        assert agent.stats["skipped_runs"] == 1

    def test_other_users_are_not_blocked(self, agent, sources):
        async def scenario():
            gate = asyncio.Event()
            sources.summaries = GatedSummarySource(gate)
            first = asyncio.create_task(agent.run_user("u1"))
            await asyncio.sleep(0)
            gate.set()
            other = await agent.run_user("u2")
            return await first, other

        first, other = run(scenario())
        assert first.status == "succeeded"
        assert other.status == "succeeded"


class TestRefresh:
    def test_rebuilds_last_window_without_advancing(self, agent, db, populated):
        first = run(agent.run_user("u1"))
        populated.summaries.summaries.append(summary(6, place_label="Gym"))

        result = run(agent.refresh("u1"))
        assert result.status == "up_to_date"
        assert result.reason == "rebuilt"
        assert result.checkpoint.last_window_end == first.checkpoint.last_window_end
        timeline = run(db.snapshots.get("u1", "2024-05-01"))
        assert timeline.blocks[0].location_label == "Gym"

    def test_rebuild_relocks_window_with_new_stats(self, agent, db, clock, populated):
        first = run(agent.run_user("u1"))
        window_start = first.checkpoint.last_window_start
        locked = run(db.window_locks.get("u1", window_start))
        assert locked.stats.segments_created == 2

        populated.summaries.summaries.append(summary(6, place_label="Gym"))
        clock.advance(minutes=5)
        run(agent.refresh("u1"))
        relocked = run(db.window_locks.get("u1", window_start))
        assert relocked.stats.segments_created == 3
        assert relocked.locked_at > locked.locked_at

    def test_invalidates_place_cache(self, agent, clock, populated):
        run(agent.run_user("u1"))
        clock.advance(minutes=30)
        run(agent.run_user("u1"))
        assert populated.places.calls == 1

        run(agent.refresh("u1"))
        assert populated.places.calls == 2

    def test_processes_pending_windows(self, agent, clock, populated):
        run(agent.run_user("u1"))
        clock.advance(minutes=30)
        result = run(agent.refresh("u1"))
        assert result.status == "succeeded"
        assert result.trigger == "manual"


class TestUsersAndLifecycle:
    def test_register_rejects_unknown_timezone(self, agent):
        with pytest.raises(ValueError):
            run(agent.register_user("u1", "Nowhere/Special"))

    def test_register_persists_checkpoint(self, agent, db):
        run(agent.register_user("u1", "Asia/Tokyo"))
        assert run(db.checkpoints.get("u1")).timezone == "Asia/Tokyo"

    def test_run_all(self, agent, populated):
        async def scenario():
            await agent.register_user("u1")
            await agent.register_user("u2")
            return await agent.run_all()

        results = run(scenario())
        assert sorted(r.user_id for r in results) == ["u1", "u2"]
        assert all(r.status == "succeeded" for r in results)

    def test_start_loads_users_and_stop(self, agent, db, populated):
        async def scenario():
            await db.checkpoints.ensure("u1", "UTC")
            await agent.start()
            results = await agent.activation_task
            await agent.stop()
            return results

        results = run(scenario())
        assert [r.user_id for r in results] == ["u1"]
        assert agent.is_running is False

    def test_pause_and_resume(self, agent, populated):
        async def scenario():
            await agent.start()
            await agent.activation_task
            agent.pause()
            paused = agent.is_paused
            agent.resume()
            await agent.activation_task
            await agent.stop()
            return paused

        assert run(scenario()) is True
        assert agent.is_paused is False

    def test_window_must_divide_day(self, sources, db, clock):
        with pytest.raises(ValueError):
            IngestionAgent(sources, db=db, window_minutes=7, clock=clock)

    def test_stats(self, agent, populated):
        run(agent.run_user("u1"))
        stats = agent.get_stats()
        assert stats["total_runs"] == 1
        assert stats["windows_processed"] == 1
        assert stats["users"]["u1"]["phase"] == "idle"
