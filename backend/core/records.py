"""
Record coercion
Turns raw source rows into models, skipping (not aborting on) malformed rows
"""

from typing import Any, Iterable, List, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .logger import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def coerce_records(
    model: Type[ModelT],
    rows: Iterable[Any],
    label: str = "",
) -> Tuple[List[ModelT], int]:
    """Validate rows into ``model`` instances

    Returns:
        (parsed records, number of skipped malformed rows)
    """
    parsed: List[ModelT] = []
    skipped = 0

    for row in rows:
        if isinstance(row, model):
            parsed.append(row)
            continue
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            skipped += 1
            row_id = row.get("id") if isinstance(row, dict) else None
            logger.debug(
                f"Skipping malformed {label or model.__name__} record {row_id}: "
                f"{e.error_count()} error(s)"
            )

    if skipped:
        logger.warning(f"Skipped {skipped} malformed {label or model.__name__} record(s)")

    return parsed, skipped
