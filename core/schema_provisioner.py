"""
Schema provisioning: make sure every source table exists on the destination.

Strategies are tried in order for each missing table and the first one that
leaves the table present on the destination wins:

1. ``DeclarativeApply`` - run the application's own schema migration command
   against the destination
2. ``StructuralClone``  - introspect the whole source schema in one pass and
   replay enum types and tables on the destination
3. ``AdHocCreate``      - introspect only the missing table and create it

A strategy reports failure by returning False; unexpected exceptions inside a
strategy are logged and count as failure so the next strategy still runs.
"""

import logging
import os
import shlex
import subprocess
from enum import Enum
from typing import List, Optional, Sequence

from core.errors import MigrationError, sanitize_error

logger = logging.getLogger(__name__)


class ProvisionStatus(Enum):
    READY = "ready"
    FAILED = "failed"


class ProvisioningStrategy:
    """One named way of creating a missing destination table"""

    name = "strategy"

    def apply(self, table_name: str) -> bool:
        raise NotImplementedError


class DeclarativeApply(ProvisioningStrategy):
    """Run the destination's declared-schema migration command"""

    name = "declarative-apply"

    def __init__(self, target, command: Optional[str], target_url: str, timeout: int = 600):
        self.target = target
        self.command = command
        self.target_url = target_url
        self.timeout = timeout

    def apply(self, table_name: str) -> bool:
        if not self.command:
            logger.info("  No schema command configured, skipping declarative apply")
            return False

        logger.info(f"  Applying declared schema on destination: {self.command}")
        env = {**os.environ, 'DATABASE_URL': self.target_url}
        try:
            completed = subprocess.run(shlex.split(self.command), env=env, capture_output=True,
                                       text=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"  Schema command could not run: {sanitize_error(e)}")
            return False

        for line in (completed.stdout or "").splitlines():
            if line.strip():
                logger.info(f"  {sanitize_error(line)}")
        if completed.returncode != 0:
            errors = [line for line in (completed.stderr or "").splitlines() if line.strip()]
            logger.warning(f"  Schema command exited with {completed.returncode}: "
                           f"{sanitize_error('; '.join(errors[-5:]))}")
            return False

        return self.target.table_exists(table_name)


class StructuralClone(ProvisioningStrategy):
    """Replay the full source schema (enum types + tables) on the destination"""

    name = "structural-clone"

    def __init__(self, source, target, skip_tables: Sequence[str] = ()):
        self.source = source
        self.target = target
        self.skip_tables = set(skip_tables)

    def apply(self, table_name: str) -> bool:
        schema = self.source.describe_schema()
        logger.info(f"  Cloning source structure: {len(schema.tables)} tables, "
                    f"{len(schema.enum_types)} enum types")

        existing_types = set(self.target.list_enum_types())
        for enum_type in schema.enum_types.values():
            if enum_type.name in existing_types:
                continue
            try:
                self.target.create_enum_type(enum_type)
            except MigrationError as e:
                logger.warning(f"  Could not create enum type {enum_type.name}: {e}")

        # Tables fail independently (unsupported default, name collision, ...)
        for table in schema.tables.values():
            if table.name in self.skip_tables:
                continue
            try:
                self.target.create_table(table)
            except MigrationError as e:
                logger.warning(f"  Could not clone table {table.name}: {e}")

        return self.target.table_exists(table_name)


class AdHocCreate(ProvisioningStrategy):
    """Create a single table from its own source introspection"""

    name = "ad-hoc-create"

    def __init__(self, source, target):
        self.source = source
        self.target = target

    def apply(self, table_name: str) -> bool:
        table = self.source.describe_table(table_name)
        if table is None or not table.columns:
            logger.warning(f"  Source table {table_name} has no columns to replicate")
            return False
        self.target.create_table(table)
        return self.target.table_exists(table_name)


class SchemaProvisioner:
    """Ensures destination tables exist, trying each strategy in order"""

    def __init__(self, target, strategies: Sequence[ProvisioningStrategy]):
        self.target = target
        self.strategies: List[ProvisioningStrategy] = list(strategies)
        self.provisioned: List[str] = []

    def ensure(self, table_name: str) -> ProvisionStatus:
        if self.target.table_exists(table_name):
            return ProvisionStatus.READY

        logger.info(f"Table \"{table_name}\" does not exist on destination; provisioning...")
        for position, strategy in enumerate(self.strategies, start=1):
            logger.info(f"  {position}. Trying {strategy.name} for {table_name}")
            try:
                created = strategy.apply(table_name)
            except MigrationError as e:
                logger.warning(f"  {strategy.name} failed for {table_name}: {e}")
                created = False

            if created:
                logger.info(f"  Table \"{table_name}\" created on destination via {strategy.name}")
                self.provisioned.append(table_name)
                return ProvisionStatus.READY

        logger.error(f"All provisioning strategies failed for \"{table_name}\"")
        return ProvisionStatus.FAILED
