"""Lazy CSV decoding into records and fixed-size batches."""

import csv
import io
import logging
from collections.abc import Iterable, Iterator
from itertools import islice

from collector.common.types import Batch, Record, SourceType

logger = logging.getLogger(__name__)

# csv.DictReader key for cells beyond the header width
_SURPLUS_KEY = "__surplus__"


def iter_records(text: str, source_type: SourceType) -> Iterator[Record]:
    """Decode ``text`` one row at a time.

    The first row is the header. Values stay strings; short rows are padded
    with "" and surplus cells are dropped. Blank lines are skipped. A
    document with only a header (or nothing) yields no records.

    The generator is single-pass and cannot be restarted.
    """
    reader = csv.DictReader(io.StringIO(text), restkey=_SURPLUS_KEY, restval="")
    if reader.fieldnames is None:
        return

    for row in reader:
        surplus = row.pop(_SURPLUS_KEY, None)
        if surplus:
            logger.debug(
                "Dropped surplus cells in row",
                extra={"extra_fields": len(surplus), "operation": f"line {reader.line_num}"},
            )
        # A row of only empty cells carries no data
        if not any(value.strip() for value in row.values() if value):
            continue
        yield Record.from_row(row, source_type)


def iter_batches(
    records: Iterable[Record],
    batch_size: int,
    source_type: SourceType,
    source_url: str = "",
) -> Iterator[Batch]:
    """Group records into batches of at most ``batch_size``.

    Yields full batches in order and then the final partial batch, if any.
    Pulls only ``batch_size`` records from ``records`` per batch.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    iterator = iter(records)
    sequence = 0
    while True:
        chunk = tuple(islice(iterator, batch_size))
        if not chunk:
            return
        yield Batch(
            source_type=source_type,
            records=chunk,
            source_url=source_url,
            sequence=sequence,
        )
        sequence += 1
