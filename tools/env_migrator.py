#!/usr/bin/env python3
"""
Environment Migrator
====================

Clones the schema and data of a source PostgreSQL database into a destination
database and relocates every embedded Cloudinary asset from the source account
to the destination account, rewriting the URLs in the copied rows.

The source database and media account are only ever read. Destination tables
are truncated before their rows are copied, so re-running the tool converges
to the same destination state.

Configuration comes from the environment (or a .env file in the working
directory): DATABASE_URL_SOURCE, DATABASE_URL_TARGET and the
CLOUDINARY_SOURCE_* / CLOUDINARY_TARGET_* credentials.

Usage:
    python3 tools/env_migrator.py
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path so the tool runs from a checkout
sys.path.insert(0, str(Path(__file__).parent.parent.resolve()))

from config.migration_config import get_config
from core.errors import ConfigurationError, MigrationError, sanitize_error
from core.migration import MigrationCoordinator

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Migrate database schema, data and media assets between environments")
    parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, stream=sys.stdout)

    try:
        config = get_config()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    logging.getLogger().setLevel(config.log_level)

    try:
        with MigrationCoordinator(config) as coordinator:
            report = coordinator.run()
    except MigrationError as e:
        logger.error(f"Fatal error: {sanitize_error(e)}")
        return 1

    if report.failed_tables or report.assets_failed:
        logger.warning("Migration finished with errors, see the log above")
    else:
        logger.info("Migration completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
