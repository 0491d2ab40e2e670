"""
Schema intermediate representation shared by the provisioner, the column
reconciler and the replicator. Descriptors are immutable for a run and are
re-introspected after every destination schema change.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


# Defaults that reference sequences (serial / identity style columns) may not
# exist on the destination and are never replayed there.
VOLATILE_DEFAULT_MARKERS = ('nextval(',)


@dataclass(frozen=True)
class ColumnDescriptor:
    """Column definition as reported by the catalog"""
    name: str
    data_type: str  # formatted SQL type, e.g. "character varying(255)"
    nullable: bool = True
    default: Optional[str] = None
    udt_name: str = ""  # underlying type name, e.g. "jsonb", "timestamptz"

    @property
    def has_volatile_default(self) -> bool:
        if not self.default:
            return False
        return any(marker in self.default for marker in VOLATILE_DEFAULT_MARKERS)

    @property
    def portable_default(self) -> Optional[str]:
        """Default expression safe to replay on another database, if any."""
        if self.default and not self.has_volatile_default:
            return self.default
        return None


@dataclass(frozen=True)
class TableDescriptor:
    """Table definition: ordered columns plus primary key column names"""
    name: str
    columns: Tuple[ColumnDescriptor, ...]
    primary_key: Tuple[str, ...] = ()

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        for col in self.columns:
            if col.name == name:
                return col
        return None


@dataclass(frozen=True)
class EnumTypeDescriptor:
    """User-defined enum type with its labels in sort order"""
    name: str
    labels: Tuple[str, ...]


@dataclass
class SchemaIR:
    """Whole-schema snapshot captured in one introspection pass"""
    tables: Dict[str, TableDescriptor] = field(default_factory=dict)
    enum_types: Dict[str, EnumTypeDescriptor] = field(default_factory=dict)
