"""Shared fixtures: in-memory sources, a temp database and a settable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from agents.ingestion_agent import IngestionAgent, IngestionSources
from core.db import DatabaseManager
from core.sources import (
    CalendarSource,
    CommunicationSource,
    HourlySummarySource,
    LocationSampleSource,
    PlaceSource,
)
from core.timeutils import parse_timestamp

UTC = timezone.utc


def _ts(value):
    if isinstance(value, dict):
        value = value.get("recordedAt") or value.get("recorded_at") or value.get("hourStart") or value.get("hour_start")
    return parse_timestamp(value)


class FakeLocationSource(LocationSampleSource):
    def __init__(self, samples=None):
        self.samples = list(samples or [])
        self.calls = []
        self.fail = False

    async def fetch_samples(self, user_id, start, end):
        self.calls.append((user_id, start, end))
        if self.fail:
            raise RuntimeError("location store unavailable")
        return [
            s
            for s in self.samples
            if start <= _ts(s if isinstance(s, dict) else s.recorded_at) < end
        ]


class FakeSummarySource(HourlySummarySource):
    def __init__(self, summaries=None):
        self.summaries = list(summaries or [])
        self.calls = []
        self.fail = False

    async def fetch_summaries(self, user_id, start, end):
        self.calls.append((user_id, start, end))
        if self.fail:
            raise RuntimeError("enrichment service timeout")
        return [
            s
            for s in self.summaries
            if start <= _ts(s if isinstance(s, dict) else s.hour_start) < end
        ]


class FakeCommunicationSource(CommunicationSource):
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.fail = False

    async def fetch_rows(self, user_id, start, end):
        if self.fail:
            raise RuntimeError("communication store unavailable")
        return list(self.rows)


class FakeCalendarSource(CalendarSource):
    def __init__(self, planned=None, actual=None):
        self.planned = list(planned or [])
        self.actual = list(actual or [])
        self.fail = False

    async def fetch_events(self, user_id, ymd):
        if self.fail:
            raise RuntimeError("calendar store unavailable")
        return list(self.planned), list(self.actual)


class FakePlaceSource(PlaceSource):
    def __init__(self, places=None):
        self.places = list(places or [])
        self.calls = 0

    async def fetch_places(self, user_id):
        self.calls += 1
        return list(self.places)


class FixedClock:
    """Callable clock whose time tests move explicitly."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(tmp_path / "timeline.db")


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 5, 1, 10, 5, tzinfo=UTC))


@pytest.fixture
def sources():
    return IngestionSources(
        locations=FakeLocationSource(),
        summaries=FakeSummarySource(),
        communications=FakeCommunicationSource(),
        calendar=FakeCalendarSource(),
        places=FakePlaceSource(),
    )


@pytest.fixture
def agent(sources, db, clock):
    return IngestionAgent(
        sources,
        db=db,
        window_minutes=30,
        max_catch_up_windows=4,
        default_timezone="UTC",
        clock=clock,
    )
