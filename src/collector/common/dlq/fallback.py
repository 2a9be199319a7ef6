"""Last-resort persistence of dead-letter envelopes to local JSON files."""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path

from collector.common.dlq.models import (
    DeadLetterEnvelope,
    FileFallbackMetadata,
    FileFallbackRecord,
)
from core.errors.exceptions import FallbackWriteError

logger = logging.getLogger(__name__)

FILENAME_PREFIX = "dlq-fallback-"
MAX_NAME_COLLISIONS = 1000


def fallback_filename(now: datetime) -> str:
    """File name for a fallback written at ``now``.

    ISO-8601 with ':' and '.' replaced by '-', e.g.
    ``dlq-fallback-2026-04-02T00-05-12-431000Z.json``.
    """
    stamp = now.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return f"{FILENAME_PREFIX}{stamp.replace(':', '-').replace('.', '-')}.json"


def _write_exclusive(directory: Path, filename: str, payload: bytes) -> Path:
    directory.mkdir(parents=True, exist_ok=True)

    stem = filename.removesuffix(".json")
    for n in range(MAX_NAME_COLLISIONS):
        path = directory / (filename if n == 0 else f"{stem}-{n}.json")
        try:
            with open(path, "xb") as f:
                f.write(payload)
            return path
        except FileExistsError:
            continue

    raise FileExistsError(f"No free fallback file name for {directory / filename}")


async def write_fallback_file(
    envelopes: list[DeadLetterEnvelope],
    directory: str | Path,
    reason: str,
    max_file_size_mb: float = 10.0,
    now: datetime | None = None,
) -> Path:
    """Write every envelope of one batch into a single new file.

    The write always proceeds; a document larger than ``max_file_size_mb``
    is only reported with a warning.

    Returns:
        Path of the file written

    Raises:
        FallbackWriteError: If the directory or file cannot be written
    """
    now = now or datetime.now(UTC)
    directory = Path(directory)

    record = FileFallbackRecord(
        failed_envelopes=envelopes,
        file_metadata=FileFallbackMetadata(timestamp=now, count=len(envelopes), reason=reason),
    )
    payload = record.model_dump_json(indent=2).encode("utf-8")

    max_size_bytes = int(max_file_size_mb * 1024 * 1024)
    if len(payload) > max_size_bytes:
        logger.warning(
            "Fallback file exceeds size threshold, writing anyway",
            extra={
                "file_size_bytes": len(payload),
                "max_size_bytes": max_size_bytes,
                "message_count": len(envelopes),
            },
        )

    filename = fallback_filename(now)
    try:
        path = await asyncio.to_thread(_write_exclusive, directory, filename, payload)
    except OSError as e:
        raise FallbackWriteError(
            f"Failed to write fallback file in {directory}", path=str(directory / filename), cause=e
        ) from e

    logger.warning(
        "Dead-letter envelopes written to fallback file",
        extra={
            "file_path": str(path),
            "file_size_bytes": len(payload),
            "message_count": len(envelopes),
        },
    )
    return path
