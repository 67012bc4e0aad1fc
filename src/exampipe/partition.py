"""Split a document's pages into fixed-size, optionally overlapping batches."""

from __future__ import annotations

import logging

from .errors import PartitionError
from .models import PageRange

LOGGER = logging.getLogger(__name__)


def validate_batching(batch_size: int, overlap: int) -> None:
    """Reject batch settings that would never advance past a page."""

    if batch_size <= 0:
        raise PartitionError("Batch size must be positive.")
    if overlap < 0:
        raise PartitionError("Batch overlap must be >= 0.")
    if overlap >= batch_size:
        raise PartitionError(
            f"Batch overlap ({overlap}) must be smaller than batch size ({batch_size}).",
        )


def partition_pages(
    total_pages: int,
    batch_size: int,
    overlap: int = 0,
    first_page: int = 1,
    last_page: int | None = None,
) -> list[PageRange]:
    """Return inclusive 1-indexed page ranges covering ``first_page..last_page``.

    Consecutive ranges share exactly ``overlap`` pages and the final range is
    clipped to the last page. Once a range reaches the last page no further
    range is emitted, so nothing lying wholly inside an overlap repeats.

    Raises:
        PartitionError: If ``batch_size``/``overlap`` cannot make progress.
    """

    validate_batching(batch_size, overlap)

    stop = total_pages if last_page is None else min(last_page, total_pages)
    start = max(1, first_page)
    ranges: list[PageRange] = []
    if stop < start:
        LOGGER.info("No pages to partition (first=%s, last=%s, total=%s)", first_page, last_page, total_pages)
        return ranges

    while True:
        end = min(start + batch_size - 1, stop)
        ranges.append(PageRange(start=start, end=end))
        if end >= stop:
            break
        start = end - overlap + 1

    LOGGER.info(
        "Partitioned pages %s-%s into %s batch(es) of %s with overlap %s",
        ranges[0].start,
        stop,
        len(ranges),
        batch_size,
        overlap,
    )
    return ranges
