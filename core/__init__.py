#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Environment Migrator Core Package
Exports the main migration components for clean imports
"""

from core.errors import (MigrationError, ConfigurationError, ConnectivityError,
                         ProvisioningError, StorageError, ReadOnlyViolation,
                         TableCopyError, AssetTransferError, sanitize_error)
from core.schema_ir import ColumnDescriptor, TableDescriptor, EnumTypeDescriptor, SchemaIR
from core.value_visitor import ValueKind, visit, rewrite_urls
from core.asset_migrator import AssetMigrator, AssetReference, extract_public_id
from core.run_report import RunReport, TableStats, TableStatus

__all__ = [
    'MigrationError', 'ConfigurationError', 'ConnectivityError', 'ProvisioningError',
    'StorageError', 'ReadOnlyViolation', 'TableCopyError', 'AssetTransferError', 'sanitize_error',
    'ColumnDescriptor', 'TableDescriptor', 'EnumTypeDescriptor', 'SchemaIR',
    'ValueKind', 'visit', 'rewrite_urls',
    'AssetMigrator', 'AssetReference', 'extract_public_id',
    'RunReport', 'TableStats', 'TableStatus',
]
