# Copyright (c) 2024-2026 nickdsmith. All Rights Reserved.
# SPDX-License-Identifier: PROPRIETARY
#
# This file is proprietary and confidential. Unauthorized copying of this file,
# via any medium is strictly prohibited.

"""Shared JSON serialization utilities for broker payloads and log lines."""

import json
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def _serialize_known_type(obj: Any) -> tuple[bool, Any]:
    """Try to serialize by known type. Returns (handled, result)."""
    if isinstance(obj, (datetime, date)):
        return True, obj.isoformat()
    if isinstance(obj, Enum):
        return True, obj.value
    if isinstance(obj, Decimal):
        return True, float(obj)
    if isinstance(obj, Path):
        return True, str(obj)
    if isinstance(obj, Mapping):
        # Record fields are exposed as read-only MappingProxyType views
        return True, dict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return True, list(obj)
    return False, None


def json_serializer(obj: Any) -> Any:
    """
    Type-safe JSON ``default=`` hook.

    - datetime/date → ISO 8601 string
    - Enum → value
    - Decimal → float
    - Path → string
    - read-only mappings → dict
    - pydantic models → their aliased dict
    - Everything else → string (fallback)

    Numeric values stay numeric so downstream consumers never see schema
    drift from accidental string coercion.
    """
    handled, result = _serialize_known_type(obj)
    if handled:
        return result
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", by_alias=True, exclude_none=True)
    if hasattr(obj, "__dict__"):
        return obj.__dict__
    return str(obj)


def dumps_bytes(value: Any) -> bytes:
    """Encode a value as compact UTF-8 JSON for a broker message."""
    return json.dumps(value, default=json_serializer, ensure_ascii=False).encode("utf-8")


__all__ = ["json_serializer", "dumps_bytes"]
