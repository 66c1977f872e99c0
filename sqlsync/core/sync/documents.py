"""Document shaping for the search index.

Converts database values into JSON-compatible document fields.
"""

import base64
import logging
import math
import uuid
from collections.abc import Mapping
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlsync.domain.entities import NormalizedKey

logger = logging.getLogger(__name__)


def shape_value(name: str, value: Any, max_text_length: int) -> Any:
    """Convert one database value into a JSON-compatible document value.

    Args:
        name: Field name (for log messages).
        value: Raw database value.
        max_text_length: Strings longer than this are truncated.

    Returns:
        JSON-compatible value.
    """
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        if len(value) > max_text_length:
            logger.warning(
                "Truncated text field '%s' from %d to %d characters",
                name,
                len(value),
                max_text_length,
            )
            return value[:max_text_length]
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Decimal):
        return float(value) if value.is_finite() else None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return str(value)


def build_document(
    key_column: str,
    key: NormalizedKey,
    fields: Mapping[str, Any],
    max_text_length: int = 10_000_000,
) -> dict[str, Any]:
    """Build the index document for one row.

    Args:
        key_column: Name of the primary key attribute.
        key: Normalized key of the row.
        fields: Non-key fields to include.
        max_text_length: Strings longer than this are truncated.

    Returns:
        Document with the normalized key and shaped field values. Null
        fields are omitted; add-or-replace leaves them absent in the index.
    """
    document: dict[str, Any] = {key_column: key.document_id}
    for name, value in fields.items():
        if value is None:
            continue
        document[name] = shape_value(name, value, max_text_length)
    return document
