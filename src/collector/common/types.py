"""Immutable record, batch and outcome types shared across the collector."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collector.common.dlq.manager import DeadLetterResult

__all__ = [
    "SourceType",
    "Record",
    "Batch",
    "ProduceResult",
    "PublishResult",
    "JobOutcome",
    "JobAttempt",
    "IngestResult",
    "CycleResult",
    "SOURCE_TYPE_FIELD",
]

# Field injected into every record so consumers can route by report kind
SOURCE_TYPE_FIELD = "sourceType"


class SourceType(str, Enum):
    """Closed set of storm report kinds published by the remote source."""

    TORNADO = "torn"
    HAIL = "hail"
    WIND = "wind"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Record:
    """One decoded data row.

    Values are kept as the strings the document contained. The collector
    never interprets field semantics.
    """

    source_type: SourceType
    fields: Mapping[str, str]

    @classmethod
    def from_row(cls, row: Mapping[str, str], source_type: SourceType) -> "Record":
        return cls(source_type=source_type, fields=MappingProxyType(dict(row)))

    def as_message(self) -> dict[str, str]:
        """Ordered payload sent to the broker, with the source tag appended."""
        message = dict(self.fields)
        message[SOURCE_TYPE_FIELD] = self.source_type.value
        return message

    def __getitem__(self, key: str) -> str:
        if key == SOURCE_TYPE_FIELD:
            return self.source_type.value
        return self.fields[key]


@dataclass(frozen=True)
class Batch:
    """Ordered group of records published (or dead-lettered) as one unit."""

    source_type: SourceType
    records: tuple[Record, ...]
    source_url: str = ""
    sequence: int = 0

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def messages(self) -> list[dict[str, str]]:
        return [record.as_message() for record in self.records]


@dataclass(frozen=True)
class ProduceResult:
    """Broker confirmation of one published message."""

    topic: str
    partition: int
    offset: int


@dataclass(frozen=True)
class PublishResult:
    """Outcome of publishing one batch to its primary destination.

    ``dead_letter`` is set only when the batch was not delivered.
    """

    delivered: bool
    count: int
    attempts: int = 1
    dead_letter: "DeadLetterResult | None" = None


class JobOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(frozen=True)
class JobAttempt:
    """Result of one fetch-and-publish attempt for a single report type.

    A retry produces a new JobAttempt; attempts are never mutated.
    """

    source_type: SourceType
    attempt_number: int
    outcome: JobOutcome
    reason: str | None = None
    status_code: int | None = None
    delay_seconds: float | None = None

    def __post_init__(self):
        if self.attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {self.attempt_number}")

    @property
    def is_terminal(self) -> bool:
        return self.outcome != JobOutcome.RETRY_SCHEDULED


@dataclass
class IngestResult:
    """Per-report tally of where every decoded record ended up."""

    source_type: SourceType
    url: str
    total_rows: int = 0
    published_rows: int = 0
    dead_lettered_rows: int = 0
    fallback_rows: int = 0
    lost_rows: int = 0
    batch_count: int = 0
    failed_batches: int = 0

    @property
    def accounted_rows(self) -> int:
        return self.published_rows + self.dead_lettered_rows + self.fallback_rows + self.lost_rows


@dataclass
class CycleResult:
    """Aggregate of one scheduled cycle across all report types."""

    cycle_id: str
    attempts: list[JobAttempt] = field(default_factory=list)
    duration_seconds: float = 0.0

    def _final(self) -> list[JobAttempt]:
        return [a for a in self.attempts if a.is_terminal]

    @property
    def succeeded(self) -> int:
        return sum(1 for a in self._final() if a.outcome == JobOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for a in self._final() if a.outcome == JobOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for a in self._final() if a.outcome == JobOutcome.SKIPPED)

    @property
    def total(self) -> int:
        return len(self._final())

    def outcome_for(self, source_type: SourceType) -> JobAttempt | None:
        """Terminal attempt for a report type, or None if it never finished."""
        for attempt in reversed(self.attempts):
            if attempt.source_type == source_type and attempt.is_terminal:
                return attempt
        return None
