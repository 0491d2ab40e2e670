"""
Table replication: copy every row of one source table to the destination,
rewriting embedded asset URLs on the way.

Rows are processed strictly in sequence. The destination table is truncated
only after the source rows have been read successfully and only when there is
at least one row to write. Missing columns are added after the truncate, so a
NOT NULL column without a default can be added to the now empty table.
"""

import logging
from typing import List, Optional

from core.asset_migrator import AssetMigrator, folder_for_table
from core.column_reconciler import ColumnReconciler
from core.errors import MigrationError, TableCopyError
from core.run_report import TableStats, TableStatus
from core.type_registry import TypeRegistry

logger = logging.getLogger(__name__)


class TableReplicator:
    """Copies tables row by row through the asset migrator"""

    def __init__(self, source, target, assets: AssetMigrator, progress_every: int = 10,
                 reconciler: Optional[ColumnReconciler] = None):
        self.source = source
        self.target = target
        self.assets = assets
        self.progress_every = max(1, progress_every)
        self.reconciler = reconciler or ColumnReconciler(source, target)

    def _fail(self, stats: TableStats, message: str, error: MigrationError) -> TableCopyError:
        stats.status = TableStatus.FAILED
        stats.error = str(error)
        return TableCopyError(f"{message}: {error}", table=stats.table)

    def _reconcile(self, table_name: str, stats: TableStats):
        """Add missing columns; returns the refreshed destination descriptor when any were added."""
        try:
            result = self.reconciler.reconcile(table_name)
            stats.columns_added = list(result.added)
            return self.target.describe_table(table_name) if result.added else None
        except MigrationError as e:
            raise self._fail(stats, f"Could not reconcile columns of {table_name}", e) from e

    def replicate(self, table_name: str, stats: TableStats = None) -> TableStats:
        """
        Copy ``table_name``. Returns the table's stats; raises TableCopyError
        when reading the source or writing a row fails.
        """
        stats = stats or TableStats(table=table_name)
        logger.info(f"Copying table: {table_name}")

        try:
            source_table = self.source.describe_table(table_name)
            target_table = self.target.describe_table(table_name)
        except MigrationError as e:
            raise self._fail(stats, f"Could not introspect {table_name}", e) from e

        if source_table is None or target_table is None:
            logger.warning(f"  Table {table_name} missing on {'source' if source_table is None else 'destination'}, skipping")
            stats.status = TableStatus.SKIPPED
            return stats

        try:
            rows = self.source.fetch_rows(table_name, order_by=source_table.primary_key)
        except MigrationError as e:
            raise self._fail(stats, f"Could not read {table_name} from source", e) from e

        total = len(rows)
        stats.rows_read = total
        logger.info(f"  Rows found: {total}")
        if total == 0:
            self._reconcile(table_name, stats)
            logger.info("  Empty table, skipping")
            stats.status = TableStatus.SKIPPED
            return stats

        try:
            self.target.truncate(table_name)
        except MigrationError as e:
            raise self._fail(stats, f"Could not truncate {table_name} on destination", e) from e

        target_table = self._reconcile(table_name, stats) or target_table

        # Working set: destination column order, restricted to source columns
        source_columns = set(source_table.column_names)
        columns: List[str] = [c for c in target_table.column_names if c in source_columns]
        omitted = [c for c in source_table.column_names if c not in target_table.column_names]
        if omitted:
            logger.info(f"  Source columns not present on destination (omitted): {', '.join(omitted)}")
            stats.columns_dropped = omitted
        if not columns:
            logger.warning("  No columns in common between source and destination, skipping")
            stats.status = TableStatus.SKIPPED
            return stats

        descriptors = [(target_table.column(c), source_table.column(c)) for c in columns]
        folder = folder_for_table(table_name)
        migrated_before, failed_before = self.assets.migrated, self.assets.failed

        try:
            for index, row in enumerate(rows, start=1):
                values = []
                for descriptor, source_descriptor in descriptors:
                    value = self.assets.migrate_value(row.get(descriptor.name), folder)
                    values.append(TypeRegistry.serialize(value, descriptor, source_descriptor))

                try:
                    self.target.insert_row(table_name, columns, values)
                except MigrationError as e:
                    stats.status = TableStatus.FAILED
                    stats.error = f"row {index}: {e}"
                    raise TableCopyError(f"Insert of row {index}/{total} into {table_name} failed: {e}",
                                         table=table_name) from e

                stats.rows_written = index
                if index % self.progress_every == 0 or index == total:
                    logger.info(f"  Processed {index}/{total} rows")
        finally:
            stats.assets_migrated = self.assets.migrated - migrated_before
            stats.assets_failed = self.assets.failed - failed_before

        stats.status = TableStatus.COPIED
        logger.info(f"  Table {table_name} complete: {stats.rows_written} rows migrated")
        return stats
