"""Tests for processing.location_blocks."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from core.timeutils import epoch_ms
from models.entities import AppSession, BlockAppUsage, HourlySummary, InferredPlace
from processing.location_blocks import (
    build_location_blocks,
    create_carried_forward_block,
    fill_location_gaps,
    group_into_location_blocks,
    is_same_block_location,
    is_same_place,
    merge_app_usage,
    merge_consecutive_blocks,
    travel_label,
)

UTC = timezone.utc
DAY = datetime(2024, 5, 1, 0, 0, tzinfo=UTC)

HOME = InferredPlace(place_id="home", name="Home", category="home", latitude=40.0, longitude=-73.0)


def hour(h, **kwargs):
    data = {"id": f"h{h}", "hour_start": DAY + timedelta(hours=h), "confidence": 0.8}
    data.update(kwargs)
    return HourlySummary(**data)


def app(app_id, minutes, sessions=(), category="work"):
    return {
        "appId": app_id,
        "displayName": app_id.title(),
        "category": category,
        "minutes": minutes,
        "sessions": list(sessions),
    }


class TestIsSamePlace:
    def test_place_id_takes_priority(self):
        a = hour(1, place_id="p1", latitude=40.0, longitude=-73.0)
        b = hour(2, place_id="p2", latitude=40.0, longitude=-73.0)
        assert not is_same_place(a, b)

    def test_proximity(self):
        a = hour(1, latitude=40.0, longitude=-73.0, place_label="A")
        b = hour(2, latitude=40.001, longitude=-73.0, place_label="B")
        assert is_same_place(a, b)

    def test_far_apart(self):
        a = hour(1, latitude=40.0, longitude=-73.0)
        b = hour(2, latitude=40.01, longitude=-73.0)
        assert not is_same_place(a, b)

    def test_label_match_is_case_insensitive(self):
        assert is_same_place(hour(1, place_label="Cafe Roma"), hour(2, place_label="cafe roma"))

    @pytest.mark.parametrize("label", ["Unknown", "Unknown Location", "Location"])
    def test_placeholder_labels_never_match(self, label):
        assert not is_same_place(hour(1, place_label=label), hour(2, place_label=label))

    def test_travel_only_matches_travel(self):
        travel = hour(1, primary_activity="commute", place_label="Home")
        assert not is_same_place(travel, hour(2, place_label="Home"))
        assert is_same_place(travel, hour(2, primary_activity="commute"))


class TestGrouping:
    def test_empty(self):
        assert group_into_location_blocks([], UTC) == []

    def test_contiguous_hours_form_one_block(self):
        blocks = group_into_location_blocks(
            [hour(h, place_id="home", place_label="Home") for h in (8, 9, 10)], UTC
        )
        assert len(blocks) == 1
        block = blocks[0]
        assert block.id == "h8"
        assert block.start_time == DAY + timedelta(hours=8)
        assert block.end_time == DAY + timedelta(hours=11)
        assert block.location_label == "Home"
        assert block.summary_ids == ["h8", "h9", "h10"]
        assert block.duration_minutes == 180

    def test_place_change_opens_new_block(self):
        summaries = [
            hour(8, place_id="home", place_label="Home"),
            hour(9, place_id="office", place_label="Office"),
            hour(10, place_id="home", place_label="Home"),
        ]
        blocks = group_into_location_blocks(summaries, UTC)
        assert [b.location_label for b in blocks] == ["Home", "Office", "Home"]

    def test_input_order_does_not_matter(self):
        summaries = [hour(h, place_id="home", place_label="Home") for h in (10, 8, 9)]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.summary_ids == ["h8", "h9", "h10"]

    def test_duplicate_ids_keep_last(self):
        summaries = [hour(8, place_label="Home", confidence=0.1), hour(8, place_label="Home", confidence=0.9)]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.confidence == pytest.approx(0.9)

    def test_local_day_end_closes_block(self):
        tz = ZoneInfo("America/New_York")
        # 03:00 and 04:00 UTC are 23:00 and 00:00 in New York (EDT)
        summaries = [hour(h, place_id="home", place_label="Home") for h in (3, 4)]
        blocks = group_into_location_blocks(summaries, tz)
        assert len(blocks) == 2

    def test_travel_block(self):
        summaries = [hour(h, primary_activity="commute") for h in (7, 8)]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.type == "travel"
        assert block.location_label == "In Transit"
        assert block.place_id is None
        assert block.location_category == "travel"

    def test_unknown_label_fallback(self):
        (block,) = group_into_location_blocks([hour(8, place_label="Unknown")], UTC)
        assert block.location_label == "Unknown Location"

    def test_inferred_place_category_and_flag(self):
        (block,) = group_into_location_blocks(
            [hour(8, inferred_place=HOME, latitude=40.0, longitude=-73.0)], UTC
        )
        assert block.location_label == "Home"
        assert block.location_category == "home"
        assert block.is_place_inferred is True
        assert block.latitude == 40.0


class TestAggregation:
    def test_apps_summed_filtered_and_sorted(self):
        summaries = [
            hour(8, place_id="home", app_breakdown=[app("mail", 10), app("tiny", 0.5), app("slack", 5)]),
            hour(9, place_id="home", app_breakdown=[app("slack", 20)]),
        ]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert [(a.app_id, a.total_minutes) for a in block.apps] == [("slack", 25), ("mail", 10)]

    def test_sessions_are_collected_in_order(self):
        s1 = {"startTime": DAY + timedelta(hours=9, minutes=10), "endTime": DAY + timedelta(hours=9, minutes=20), "minutes": 10}
        s0 = {"startTime": DAY + timedelta(hours=8, minutes=5), "endTime": DAY + timedelta(hours=8, minutes=15), "minutes": 10}
        summaries = [
            hour(9, place_id="home", app_breakdown=[app("mail", 10, [s1])]),
            hour(8, place_id="home", app_breakdown=[app("mail", 10, [s0])]),
        ]
        (block,) = group_into_location_blocks(summaries, UTC)
        sessions = block.apps[0].sessions
        assert [s.start_time.hour for s in sessions] == [8, 9]

    def test_confidence_is_weighted_mean(self):
        summaries = [
            hour(8, place_id="home", confidence=0.5),
            hour(9, place_id="home", confidence=1.0),
        ]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.confidence == pytest.approx(0.75)

    def test_activity_inference(self):
        summaries = [
            hour(8, place_id="office", primary_activity="deep_work", activity_text="Writing code"),
            hour(9, place_id="office", primary_activity="meeting", activity_text="Standup"),
            hour(10, place_id="office", primary_activity="deep_work", activity_text="Writing code"),
        ]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.activity_inference.primary == "Writing code"
        assert block.activity_inference.details == ["Writing code", "Standup"]
        assert block.activity_inference.dominant_activity == "deep_work"

    def test_sample_totals(self):
        summaries = [hour(8, place_id="home", location_samples=4), hour(9, place_id="home", location_samples=6)]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.total_location_samples == 10


class TestTravelLabels:
    @pytest.mark.parametrize(
        "movement, destination, expected",
        [
            ("driving", "Office", "Driving → Office"),
            ("walking", None, "Walking"),
            ("cycling", "Unknown Location", "Cycling"),
            ("unknown", None, "In Transit"),
            (None, "Gym", "Travel → Gym"),
            (None, None, "In Transit"),
        ],
    )
    def test_label(self, movement, destination, expected):
        assert travel_label(movement, destination) == expected

    def test_block_uses_first_concrete_mode_and_last_label(self):
        summaries = [
            hour(7, primary_activity="commute", movement_type="stationary", distance_meters=0),
            hour(8, primary_activity="commute", movement_type="driving", distance_meters=12000),
            hour(9, primary_activity="commute", movement_type="walking", distance_meters=400, place_label="Office"),
        ]
        (block,) = group_into_location_blocks(summaries, UTC)
        assert block.location_label == "Driving → Office"
        assert block.movement_type == "driving"
        assert block.distance_meters == pytest.approx(12400)

    def test_no_distance_is_none(self):
        (block,) = group_into_location_blocks([hour(7, primary_activity="commute")], UTC)
        assert block.distance_meters is None


def home_hour(h, **kwargs):
    return hour(h, place_id="home", place_label="Home", latitude=40.0, longitude=-73.0, **kwargs)


class TestCarryForward:
    def test_gap_and_unknown_place_are_filled_and_merged(self):
        summaries = [home_hour(7), hour(11, place_label="Unknown")]
        (block,) = build_location_blocks(summaries, UTC)
        assert block.start_time == DAY + timedelta(hours=7)
        assert block.end_time == DAY + timedelta(hours=12)
        assert block.is_carried_forward is False
        assert block.summary_ids == ["h7", "h11"]

    def test_gap_before_different_place_is_left_open(self):
        summaries = [home_hour(7), hour(11, place_id="office", place_label="Office")]
        blocks = build_location_blocks(summaries, UTC)
        assert [b.location_label for b in blocks] == ["Home", "Office"]
        assert blocks[0].end_time == DAY + timedelta(hours=8)

    def test_gap_before_travel_stops_early(self):
        summaries = [home_hour(7), hour(10, primary_activity="commute")]
        blocks = build_location_blocks(summaries, UTC)
        assert [b.type for b in blocks] == ["stationary", "travel"]
        assert blocks[0].end_time == DAY + timedelta(hours=9, minutes=30)

    def test_gap_longer_than_sixteen_hours_is_left_open(self):
        tz = ZoneInfo("UTC")
        blocks = fill_location_gaps(
            group_into_location_blocks([home_hour(0), hour(18, place_label="Unknown")], tz),
            [],
            tz,
        )
        assert blocks[0].end_time == DAY + timedelta(hours=1)

    def test_unknown_block_after_known_place_takes_its_place(self):
        summaries = [
            home_hour(7, confidence=1.0),
            hour(8, place_label="Unknown", app_breakdown=[app("mail", 20)]),
        ]
        (block,) = build_location_blocks(summaries, UTC)
        assert block.location_label == "Home"
        assert block.end_time == DAY + timedelta(hours=9)
        assert [a.app_id for a in block.apps] == ["mail"]

    def test_carried_block(self):
        (source,) = group_into_location_blocks([home_hour(7, confidence=0.9)], UTC)
        summaries = [hour(9, place_label="Unknown", app_breakdown=[app("mail", 20)])]
        start, end = DAY + timedelta(hours=8), DAY + timedelta(hours=10)
        carried = create_carried_forward_block(source, start, end, summaries)
        assert carried.id == f"h7-carried-{epoch_ms(start)}"
        assert carried.is_carried_forward is True
        assert carried.location_label == "Home"
        assert carried.place_id == "home"
        assert carried.confidence == pytest.approx(0.54)
        assert carried.total_location_samples == 0
        assert carried.summary_ids == ["h9"]
        assert [a.app_id for a in carried.apps] == ["mail"]

    def test_carried_confidence_floor(self):
        (source,) = group_into_location_blocks([home_hour(7, confidence=0.2)], UTC)
        start = DAY + timedelta(hours=8)
        carried = create_carried_forward_block(source, start, start + timedelta(hours=1), [])
        assert carried.confidence == pytest.approx(0.3)

    def test_nothing_carries_past_travel(self):
        summaries = [home_hour(7), hour(8, primary_activity="commute"), hour(9, place_label="Unknown")]
        blocks = build_location_blocks(summaries, UTC)
        assert blocks[-1].location_label == "Unknown Location"
        assert not any(b.is_carried_forward for b in blocks)

    def test_never_crosses_local_midnight(self):
        tz = ZoneInfo("UTC")
        summaries = [home_hour(22), hour(24 + 3, place_id="home", place_label="Home", latitude=40.0, longitude=-73.0, id="next")]
        blocks = build_location_blocks(summaries, tz)
        assert [b.end_time for b in blocks] == [DAY + timedelta(days=1), DAY + timedelta(days=1, hours=4)]

    def test_empty(self):
        assert build_location_blocks([], UTC) == []


class TestMergeBlocks:
    def _blocks(self):
        return group_into_location_blocks(
            [home_hour(7), hour(8, place_label="Cafe"), home_hour(9)], UTC
        )

    def test_travel_never_merges(self):
        (travel,) = group_into_location_blocks([hour(7, primary_activity="commute")], UTC)
        assert not is_same_block_location(travel, travel)

    def test_labels_alone_do_not_match(self):
        a = group_into_location_blocks([hour(7, place_label="Starbucks")], UTC)[0]
        b = group_into_location_blocks([hour(9, place_label="Starbucks")], UTC)[0]
        assert not is_same_block_location(a, b)

    def test_only_touching_blocks_merge(self):
        home, cafe, home_again = self._blocks()
        assert merge_consecutive_blocks([home, home_again], UTC) == [home, home_again]

    def test_merge_sums_and_weights(self):
        first = group_into_location_blocks(
            [home_hour(7, confidence=0.4, location_samples=3, app_breakdown=[app("mail", 10)])], UTC
        )[0]
        second = group_into_location_blocks(
            [home_hour(8, confidence=1.0, location_samples=2, app_breakdown=[app("mail", 5), app("chat", 30)])], UTC
        )[0]
        (merged,) = merge_consecutive_blocks([second, first], UTC)
        assert merged.id == "h7"
        assert merged.end_time == DAY + timedelta(hours=9)
        assert merged.confidence == pytest.approx(0.7)
        assert merged.total_location_samples == 5
        assert [(a.app_id, a.total_minutes) for a in merged.apps] == [("chat", 30), ("mail", 15)]
        assert merged.summary_ids == ["h7", "h8"]

    def test_merge_app_usage_orders_sessions(self):
        def usage(app_id, minutes, start_hour):
            start = DAY + timedelta(hours=start_hour)
            return BlockAppUsage(
                app_id=app_id,
                display_name=app_id.title(),
                category="work",
                total_minutes=minutes,
                sessions=[AppSession(start_time=start, end_time=start + timedelta(minutes=minutes), minutes=minutes)],
            )

        merged = merge_app_usage([usage("mail", 10, 9)], [usage("mail", 20, 8), usage("docs", 5, 9)])
        assert [(a.app_id, a.total_minutes) for a in merged] == [("mail", 30), ("docs", 5)]
        assert [s.start_time.hour for s in merged[0].sessions] == [8, 9]
