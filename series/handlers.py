# series/handlers.py
import logging

from series.domain.dispatcher import register_handler
from series.domain.events import SeriesNumberAllocated

logger = logging.getLogger(__name__)


def log_series_number_allocated(event: SeriesNumberAllocated) -> None:
    logger.info(
        "Allocated %s%s to %s pk=%s (bundle=%s, field=%s)",
        event.value,
        event.suffix,
        event.entity_type_id,
        event.object_pk,
        event.bundle,
        event.field_name,
    )


register_handler(SeriesNumberAllocated, log_series_number_allocated)
