"""
Movement classification
Labels a window of location samples as moving, stationary or undetermined
"""

from typing import Any, Iterable, List

from core.geometry import calculate_distance
from core.logger import get_logger
from core.records import coerce_records
from core.timeutils import epoch_ms
from models.entities import LocationSample, MovementClassification

logger = get_logger(__name__)

MAX_ACCURACY_METERS = 50.0
GPS_DRIFT_THRESHOLD_METERS = 10.0
MOVING_DISTANCE_THRESHOLD_METERS = 200.0
STATIONARY_DISTANCE_THRESHOLD_METERS = 50.0
MOVING_MIN_SPAN_MS = 15 * 60 * 1000
STATIONARY_MIN_SPAN_MS = 30 * 60 * 1000
MIN_USABLE_SAMPLES = 3


def _is_accurate(sample: LocationSample) -> bool:
    return (
        sample.accuracy_meters is not None
        and sample.accuracy_meters <= MAX_ACCURACY_METERS
    )


def usable_samples(samples: Iterable[Any]) -> List[LocationSample]:
    """Accurate samples in chronological order; malformed rows are skipped"""
    parsed, _ = coerce_records(LocationSample, samples, "location sample")
    usable = [s for s in parsed if _is_accurate(s)]
    usable.sort(key=lambda s: s.recorded_at)
    return usable


def classify_movement(samples: Iterable[Any]) -> MovementClassification:
    """
    Classify whether the user is moving or stationary over a sample window

    Filtering:
    - samples with unknown accuracy or accuracy worse than 50 m are dropped
    - consecutive-pair distances under 10 m count as zero (GPS drift)

    Classification:
    - moving:      total distance > 200 m and span >= 15 min
    - stationary:  total distance < 50 m and span >= 30 min
    - None:        fewer than 3 usable samples, too short a span, or the
                   50-200 m band, which is reported as undetermined

    Never raises.
    """
    usable = usable_samples(samples)

    if len(usable) < MIN_USABLE_SAMPLES:
        return MovementClassification(usable_sample_count=len(usable))

    total_distance = 0.0
    for prev, curr in zip(usable, usable[1:]):
        d = calculate_distance(prev, curr)
        if d >= GPS_DRIFT_THRESHOLD_METERS:
            total_distance += d

    time_span = epoch_ms(usable[-1].recorded_at) - epoch_ms(usable[0].recorded_at)

    state = None
    confidence = 0.0

    if total_distance > MOVING_DISTANCE_THRESHOLD_METERS and time_span >= MOVING_MIN_SPAN_MS:
        state = "moving"
        distance_ratio = min(total_distance / (MOVING_DISTANCE_THRESHOLD_METERS * 2), 1.0)
        confidence = 0.7 + 0.3 * distance_ratio
    elif (
        total_distance < STATIONARY_DISTANCE_THRESHOLD_METERS
        and time_span >= STATIONARY_MIN_SPAN_MS
    ):
        state = "stationary"
        time_ratio = min(time_span / (STATIONARY_MIN_SPAN_MS * 2), 1.0)
        stillness = 1.0 - total_distance / STATIONARY_DISTANCE_THRESHOLD_METERS
        confidence = 0.7 + 0.3 * min(time_ratio + stillness, 1.0)
    else:
        logger.debug(
            f"Movement undetermined: {total_distance:.0f} m over {time_span / 60000:.1f} min"
        )

    return MovementClassification(
        state=state,
        confidence=confidence,
        total_distance_meters=total_distance,
        time_span_ms=time_span,
        usable_sample_count=len(usable),
    )
