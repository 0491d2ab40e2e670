"""
Environment migration driver.

Connects to both databases, provisions every source table on the destination,
then copies rows table by table while relocating media assets. Missing
columns are added once each destination table is emptied. Both connections and the transient download directory are released on
every exit path when the coordinator is used as a context manager::

    with MigrationCoordinator(config) as coordinator:
        report = coordinator.run()
"""

import logging
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from config.migration_config import MigrationConfig
from core.asset_migrator import AssetMigrator
from core.column_reconciler import ColumnReconciler
from core.errors import MigrationError, ProvisioningError, sanitize_error
from core.run_report import RunReport, TableStats, TableStatus
from core.schema_provisioner import (AdHocCreate, DeclarativeApply, ProvisioningStrategy,
                                     ProvisionStatus, SchemaProvisioner, StructuralClone)
from core.table_replicator import TableReplicator
from extensions.plugins.cloudinary_adapter import CloudinaryAdapter, MediaAccount
from extensions.plugins.postgresql_adapter import create_adapter_from_url

logger = logging.getLogger(__name__)


class MigrationCoordinator:
    """Top-level driver for one source -> destination migration run"""

    def __init__(self, config: MigrationConfig, source=None, target=None,
                 source_host=None, target_host=None,
                 strategies: Optional[Sequence[ProvisioningStrategy]] = None):
        self.config = config
        self.source = source or create_adapter_from_url(config.source_database_url, readonly=True)
        self.target = target or create_adapter_from_url(config.target_database_url)
        self.source_host = source_host or CloudinaryAdapter(self._media_account('source'))
        self.target_host = target_host or CloudinaryAdapter(self._media_account('target'))
        self.strategies = list(strategies) if strategies is not None else [
            DeclarativeApply(self.target, config.schema_command, config.target_database_url),
            StructuralClone(self.source, self.target, config.skip_tables),
            AdHocCreate(self.source, self.target),
        ]
        self.work_dir: Optional[Path] = None
        self.report: Optional[RunReport] = None

    def _media_account(self, side: str) -> MediaAccount:
        return MediaAccount(
            cloud_name=getattr(self.config, f'{side}_cloud_name'),
            api_key=getattr(self.config, f'{side}_api_key'),
            api_secret=getattr(self.config, f'{side}_api_secret'),
            delivery_host=self.config.media_delivery_host,
            api_base_url=self.config.media_api_base_url,
            timeout=self.config.media_http_timeout,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def run(self) -> RunReport:
        """
        Execute the migration. Raises ConnectivityError or ProvisioningError on
        fatal failures; table-scoped and asset failures are recorded in the
        returned report instead.
        """
        self.report = report = RunReport()
        self._log_banner()

        self.source.connect()
        self.target.connect()

        self.work_dir = Path(tempfile.mkdtemp(prefix='env-migrator-', dir=self.config.temp_dir))
        assets = AssetMigrator(self.source_host, self.target_host, work_dir=self.work_dir)

        tables = self._source_tables(report)
        self._provision(tables, report)

        replicator = TableReplicator(self.source, self.target, assets,
                                     progress_every=self.config.progress_every,
                                     reconciler=ColumnReconciler(self.source, self.target))

        for table in tables:
            stats = report.add(TableStats(table=table))
            try:
                replicator.replicate(table, stats)
            except MigrationError as e:
                stats.status = TableStatus.FAILED
                stats.error = stats.error or sanitize_error(e)
                logger.error(f"Table {table} failed: {sanitize_error(e)}")

        report.distinct_assets = len(assets.cache)
        report.end_time = datetime.now()
        for line in report.summary_lines():
            logger.info(line)
        return report

    def _log_banner(self):
        safe = self.config.get_safe_dict()
        logger.info("Starting environment migration")
        logger.info(f"  Source database:      {safe['source_database_url']}")
        logger.info(f"  Destination database: {safe['target_database_url']}")
        logger.info(f"  Source media account:      {safe['source_cloud_name']}")
        logger.info(f"  Destination media account: {safe['target_cloud_name']}")

    def _source_tables(self, report: RunReport) -> List[str]:
        skip = set(self.config.skip_tables)
        tables = []
        for name in self.source.list_tables():
            if name in skip:
                report.skipped_tables.append(name)
            else:
                tables.append(name)
        if report.skipped_tables:
            logger.info(f"Skipping tables: {', '.join(report.skipped_tables)}")
        logger.info(f"Found {len(tables)} tables to migrate: {', '.join(tables)}")
        return tables

    def _provision(self, tables: Sequence[str], report: RunReport):
        """Make every table exist on the destination before any row is copied."""
        provisioner = SchemaProvisioner(self.target, self.strategies)
        for table in tables:
            if provisioner.ensure(table) is ProvisionStatus.FAILED:
                raise ProvisioningError(
                    f"Could not create table {table} on destination",
                    table=table,
                    attempted=[s.name for s in self.strategies],
                )
        report.tables_provisioned = list(provisioner.provisioned)

        if tables and not self.target.list_tables():
            raise ProvisioningError("Destination has no tables after provisioning")
        logger.info(f"Destination schema ready ({len(report.tables_provisioned)} tables created)")

    def close(self):
        """Release both connections and the transient download directory"""
        for resource in (self.target, self.source, self.target_host, self.source_host):
            try:
                resource.close()
            except MigrationError as e:
                logger.error(f"Error during cleanup: {sanitize_error(e)}")
        if self.work_dir is not None:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            self.work_dir = None
