"""
Operator-facing counters for one migration run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TableStatus(Enum):
    PENDING = "pending"
    COPIED = "copied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TableStats:
    """Per-table tally"""
    table: str
    rows_read: int = 0
    rows_written: int = 0
    assets_migrated: int = 0
    assets_failed: int = 0
    status: TableStatus = TableStatus.PENDING
    columns_added: List[str] = field(default_factory=list)
    columns_dropped: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "status": self.status.value,
            "rows_read": self.rows_read,
            "rows_written": self.rows_written,
            "assets_migrated": self.assets_migrated,
            "assets_failed": self.assets_failed,
            "columns_added": self.columns_added,
            "columns_dropped": self.columns_dropped,
            "error": self.error,
        }


@dataclass
class RunReport:
    """Migration progress and results"""
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    tables: Dict[str, TableStats] = field(default_factory=dict)
    tables_provisioned: List[str] = field(default_factory=list)
    skipped_tables: List[str] = field(default_factory=list)
    distinct_assets: int = 0

    def add(self, stats: TableStats) -> TableStats:
        self.tables[stats.table] = stats
        return stats

    @property
    def tables_attempted(self) -> int:
        return len(self.tables)

    @property
    def rows_migrated(self) -> int:
        return sum(t.rows_written for t in self.tables.values())

    @property
    def assets_failed(self) -> int:
        return sum(t.assets_failed for t in self.tables.values())

    @property
    def failed_tables(self) -> List[str]:
        return [t.table for t in self.tables.values() if t.status is TableStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": (self.end_time - self.start_time).total_seconds() if self.end_time else None,
            "tables_attempted": self.tables_attempted,
            "rows_migrated": self.rows_migrated,
            "distinct_assets": self.distinct_assets,
            "assets_failed": self.assets_failed,
            "failed_tables": self.failed_tables,
            "tables_provisioned": self.tables_provisioned,
            "skipped_tables": self.skipped_tables,
            "tables": [t.to_dict() for t in self.tables.values()],
        }

    def summary_lines(self) -> List[str]:
        lines = ["=" * 70, "MIGRATION SUMMARY", "=" * 70]
        for t in self.tables.values():
            line = (f"  {t.table}: {t.status.value}, {t.rows_written}/{t.rows_read} rows, "
                    f"{t.assets_migrated} assets migrated, {t.assets_failed} failed")
            if t.error:
                line += f" ({t.error})"
            lines.append(line)
        lines.append("-" * 70)
        lines.append(f"  Tables attempted: {self.tables_attempted}")
        lines.append(f"  Rows migrated: {self.rows_migrated:,}")
        lines.append(f"  Distinct assets migrated: {self.distinct_assets}")
        lines.append(f"  Failed assets: {self.assets_failed}")
        if self.failed_tables:
            lines.append(f"  Failed tables: {', '.join(self.failed_tables)}")
        lines.append("=" * 70)
        return lines
