"""
Destination-type-aware value serialization.

Values bound for JSON columns always reach the destination as valid JSON
text. Values read from a JSON source column were already decoded by the
driver and are dumped as they are; text read from a non-JSON column is
parsed and re-dumped. Date/time values are rendered as ISO-8601 strings;
everything else is handed to the driver unchanged.
"""

import json
import logging
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Optional

from core.schema_ir import ColumnDescriptor

logger = logging.getLogger(__name__)


class TypeFamily(Enum):
    JSON = "JSON"
    TEMPORAL = "TEMPORAL"
    OTHER = "OTHER"


class TypeRegistry:
    # udt_name / data_type prefixes (lowercase) -> family
    FAMILIES = {
        'json': TypeFamily.JSON,
        'jsonb': TypeFamily.JSON,
        'timestamp': TypeFamily.TEMPORAL,
        'timestamptz': TypeFamily.TEMPORAL,
        'timestamp without time zone': TypeFamily.TEMPORAL,
        'timestamp with time zone': TypeFamily.TEMPORAL,
        'date': TypeFamily.TEMPORAL,
        'time': TypeFamily.TEMPORAL,
        'timetz': TypeFamily.TEMPORAL,
        'time without time zone': TypeFamily.TEMPORAL,
        'time with time zone': TypeFamily.TEMPORAL,
    }

    @classmethod
    def family_of(cls, column: ColumnDescriptor) -> TypeFamily:
        for raw in (column.udt_name, column.data_type):
            key = (raw or "").lower().strip()
            # strip precision modifiers: "timestamp(3) without time zone"
            if '(' in key:
                head, _, tail = key.partition('(')
                key = (head + tail.partition(')')[2]).strip()
            if key in cls.FAMILIES:
                return cls.FAMILIES[key]
        return TypeFamily.OTHER

    @classmethod
    def serialize(cls, value: Any, column: ColumnDescriptor,
                  source_column: Optional[ColumnDescriptor] = None) -> Any:
        """
        Render ``value`` for insertion into ``column`` on the destination.

        ``source_column`` is the column the value was read from; when it is a
        JSON column a ``str`` value is a JSON string scalar, not JSON text.
        """
        if value is None:
            return None

        if isinstance(value, (datetime, date, time)):
            return value.isoformat()

        if cls.family_of(column) is TypeFamily.JSON:
            from_json = source_column is not None and cls.family_of(source_column) is TypeFamily.JSON
            try:
                if isinstance(value, str) and not from_json:
                    return json.dumps(json.loads(value))
                return json.dumps(value)
            except (TypeError, ValueError) as e:
                logger.warning(f"Column {column.name}: value is not valid JSON, passing through unchanged ({e})")
                return value

        return value
