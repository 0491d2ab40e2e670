"""
Column reconciliation: add destination columns that only exist in the source.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from core.errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    table: str
    added: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ColumnReconciler:
    """Adds missing columns once per table per run, before any row is copied"""

    def __init__(self, source, target):
        self.source = source
        self.target = target
        self._results: Dict[str, ReconcileResult] = {}

    def reconcile(self, table_name: str) -> ReconcileResult:
        if table_name in self._results:
            return self._results[table_name]

        result = ReconcileResult(table=table_name)
        source_table = self.source.describe_table(table_name)
        target_table = self.target.describe_table(table_name)
        if source_table is None or target_table is None:
            self._results[table_name] = result
            return result

        existing = set(target_table.column_names)
        for column in source_table.columns:
            if column.name in existing:
                continue
            try:
                self.target.add_column(table_name, column)
            except MigrationError as e:
                # the column stays out of the working set for this table
                logger.warning(f"  Could not add column {table_name}.{column.name}: {e}")
                result.failed.append(column.name)
                continue
            logger.info(f"  Column added on destination: {table_name}.{column.name} ({column.data_type})")
            result.added.append(column.name)

        self._results[table_name] = result
        return result
