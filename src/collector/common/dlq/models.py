"""
Dead-letter message schemas.

Contains Pydantic models for records that could not be delivered to the
primary topic, and for the file written when the dead-letter topic is
unavailable too. Wire names are camelCase; Python attributes are snake_case.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from collector.common.types import SourceType

# Error kind recorded for records that exhausted broker publish retries
PUBLISH_FAILURE = "broker_publish"


class DeadLetterMetadata(BaseModel):
    """Why, where and when a record failed delivery.

    Attributes:
        timestamp: When the envelope was created (UTC)
        original_destination: Primary topic the record was meant for
        error_kind: Failure class (``broker_publish``)
        error_message: Message of the last publish error
        error_trace: Formatted traceback, only when stack traces are enabled
        attempt_number: Publish attempts made before giving up (>= 1)
        batch_id: Shared by every envelope produced from the same batch
        source_url: Document the record was decoded from
        source_type: Report kind of the record
    """

    timestamp: datetime
    original_destination: str = Field(..., alias="originalDestination", min_length=1)
    error_kind: str = Field(default=PUBLISH_FAILURE, alias="errorKind")
    error_message: str = Field(..., alias="errorMessage")
    error_trace: Optional[str] = Field(default=None, alias="errorTrace")
    attempt_number: int = Field(..., alias="attemptNumber", ge=1)
    batch_id: str = Field(..., alias="batchId", min_length=1)
    source_url: str = Field(..., alias="sourceUrl")
    source_type: SourceType = Field(..., alias="sourceType")

    model_config = {
        'populate_by_name': True,
        'frozen': True,
    }


class DeadLetterEnvelope(BaseModel):
    """One undeliverable record plus its failure metadata."""

    original_record: Dict[str, str] = Field(..., alias="originalRecord")
    metadata: DeadLetterMetadata

    model_config = {
        'populate_by_name': True,
        'frozen': True,
        'json_schema_extra': {
            'examples': [
                {
                    'originalRecord': {
                        'Time': '1230',
                        'F_Scale': 'UNK',
                        'Location': '2 N Mayfield',
                        'County': 'Graves',
                        'State': 'KY',
                        'Lat': '36.77',
                        'Lon': '-88.64',
                        'Comments': 'Trees down. (PAH)',
                        'sourceType': 'torn',
                    },
                    'metadata': {
                        'timestamp': '2026-04-02T00:05:12.431000Z',
                        'originalDestination': 'raw-weather-reports',
                        'errorKind': 'broker_publish',
                        'errorMessage': 'KafkaTimeoutError',
                        'attemptNumber': 4,
                        'batchId': '5f0c2b7e-4b44-4e0e-9f1e-6a8c3d8f1a2b',
                        'sourceUrl': 'https://www.spc.noaa.gov/climo/reports/260401_rpts_torn.csv',
                        'sourceType': 'torn',
                    },
                }
            ]
        },
    }

    def model_dump_json(self, **kwargs) -> str:
        """Serialize with camelCase names and without unset optional fields."""
        kwargs.setdefault('by_alias', True)
        kwargs.setdefault('exclude_none', True)
        return super().model_dump_json(**kwargs)

    def model_dump(self, **kwargs) -> Dict[str, Any]:
        kwargs.setdefault('by_alias', True)
        kwargs.setdefault('exclude_none', True)
        return super().model_dump(**kwargs)


class FileFallbackMetadata(BaseModel):
    timestamp: datetime
    count: int = Field(..., ge=0)
    reason: str

    model_config = {'frozen': True}


class FileFallbackRecord(BaseModel):
    """Document written to disk when the dead-letter topic rejects a batch."""

    failed_envelopes: List[DeadLetterEnvelope] = Field(..., alias="failedEnvelopes")
    file_metadata: FileFallbackMetadata = Field(..., alias="fileMetadata")

    model_config = {
        'populate_by_name': True,
        'frozen': True,
    }

    def model_dump_json(self, **kwargs) -> str:
        kwargs.setdefault('by_alias', True)
        kwargs.setdefault('exclude_none', True)
        return super().model_dump_json(**kwargs)
