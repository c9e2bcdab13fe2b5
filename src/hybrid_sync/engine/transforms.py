"""
Field mapping between Source A and Source B record shapes.

Mapping is pure: the same input always yields the same output, which is
what makes hash-based change detection meaningful.
"""

import hashlib
import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..exceptions import ConfigurationError, MappingError
from ..models.config import FieldMapping, MappingTable, TransformKind
from ..models.sync import Direction

logger = logging.getLogger(__name__)

_MISSING = object()

INVERTIBLE_TRANSFORMS = {TransformKind.IDENTITY, TransformKind.RENAME, TransformKind.DATE_FORMAT}


def get_path(record: Dict[str, Any], path: str) -> Any:
    """Read a dotted path from a nested dict, returning _MISSING when absent."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def set_path(record: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path into a nested dict, creating parents."""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def content_hash(record: Dict[str, Any]) -> str:
    """Stable digest of a mapped record."""
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def reverse_table(table: MappingTable) -> MappingTable:
    """Derive the opposite-direction table from an invertible one."""
    fields = []
    for mapping in table.fields:
        if mapping.transform not in INVERTIBLE_TRANSFORMS:
            raise ConfigurationError(
                f"Mapping for {table.entity_type}.{mapping.target_field} uses "
                f"'{mapping.transform.value}' and cannot be reversed; provide an explicit table"
            )
        fields.append(FieldMapping(
            target_field=mapping.source_path,
            source_field=mapping.target_field,
            transform=mapping.transform,
            required=mapping.required,
            input_format=mapping.output_format,
            output_format=mapping.input_format,
        ))
    return MappingTable(entity_type=table.entity_type, direction=table.direction.opposite, fields=fields)


class FieldMapper:
    """
    Maps records between the two systems using declarative tables.
    """

    def __init__(self, tables: Optional[Iterable[MappingTable]] = None):
        self._tables: Dict[Tuple[str, Direction], MappingTable] = {}
        self._derived: set = set()
        for table in tables or []:
            self.register(table)

    def register(self, table: MappingTable, symmetric: bool = True) -> None:
        """
        Install a mapping table.

        Args:
            table: Table for one entity type and direction
            symmetric: Also install the reversed table for the opposite
                direction, unless an explicit one is registered
        """
        key = (table.entity_type, table.direction)
        self._tables[key] = table
        self._derived.discard(key)

        reverse_key = (table.entity_type, table.direction.opposite)
        if not symmetric:
            return
        if reverse_key in self._tables and reverse_key not in self._derived:
            return
        if all(m.transform in INVERTIBLE_TRANSFORMS for m in table.fields):
            self._tables[reverse_key] = reverse_table(table)
            self._derived.add(reverse_key)

    def has_table(self, entity_type: str, direction: Direction) -> bool:
        return (entity_type, direction) in self._tables

    def get_table(self, entity_type: str, direction: Direction) -> MappingTable:
        try:
            return self._tables[(entity_type, direction)]
        except KeyError:
            raise MappingError(entity_type, "unmapped", f"no mapping table for {direction.value}")

    def map(self, entity_type: str, direction: Direction, source_record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Map a source record into the target shape.

        Args:
            entity_type: Entity type, e.g. "customer"
            direction: Direction the record flows in
            source_record: Raw record from the source system

        Returns:
            Target-shaped record

        Raises:
            MappingError: If a required field is missing or a value is invalid
        """
        table = self.get_table(entity_type, direction)
        target: Dict[str, Any] = {}

        for mapping in table.fields:
            value = self.apply_transform(mapping, source_record)
            if value is _MISSING:
                if mapping.required:
                    raise MappingError(mapping.source_path, "missing")
                continue
            set_path(target, mapping.target_field, value)

        return target

    @staticmethod
    def apply_transform(mapping: FieldMapping, source_record: Dict[str, Any]) -> Any:
        """
        Evaluate one mapping against the source record.

        Returns:
            The transformed value, or _MISSING when the source has no value
        """
        transform = mapping.transform

        if transform == TransformKind.CONSTANT:
            return mapping.value

        if transform == TransformKind.CONCAT:
            parts = []
            for path in mapping.source_fields:
                part = get_path(source_record, path)
                if part is _MISSING or part is None or part == "":
                    continue
                parts.append(str(part))
            if not parts:
                return _MISSING
            return mapping.separator.join(parts)

        value = get_path(source_record, mapping.source_path)
        if value is _MISSING or value is None:
            return _MISSING

        if transform in (TransformKind.IDENTITY, TransformKind.RENAME):
            return value

        if transform == TransformKind.DATE_FORMAT:
            return FieldMapper._reformat_date(mapping, value)

        raise ConfigurationError(f"Unknown transform: {transform}")

    @staticmethod
    def _reformat_date(mapping: FieldMapping, value: Union[str, date, datetime]) -> str:
        try:
            if isinstance(value, (datetime, date)):
                parsed = value
            elif mapping.input_format:
                parsed = datetime.strptime(str(value), mapping.input_format)
            else:
                parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise MappingError(mapping.source_path, "invalid", str(e))

        if mapping.output_format:
            return parsed.strftime(mapping.output_format)
        return parsed.isoformat()


def _fields(*mappings: Dict[str, Any]) -> List[FieldMapping]:
    return [FieldMapping(**m) for m in mappings]


# RealGreen (a) <-> GoHighLevel (b)
DEFAULT_MAPPING_TABLES: List[MappingTable] = [
    MappingTable(
        entity_type="customer",
        direction=Direction.A_TO_B,
        fields=_fields(
            {"target_field": "firstName", "transform": "identity"},
            {"target_field": "lastName", "transform": "identity"},
            {"target_field": "email", "transform": "identity", "required": False},
            {"target_field": "phone", "transform": "identity", "required": False},
            {"target_field": "address1", "source_field": "address", "required": False},
            {"target_field": "city", "required": False, "transform": "identity"},
            {"target_field": "postalCode", "source_field": "zip", "required": False},
        ),
    ),
    MappingTable(
        entity_type="appointment",
        direction=Direction.A_TO_B,
        fields=_fields(
            {"target_field": "startTime", "source_field": "date", "transform": "date_format",
             "input_format": "%Y-%m-%d %H:%M"},
            {"target_field": "title", "transform": "concat", "source_fields": ["serviceType", "customerName"],
             "separator": " - "},
            {"target_field": "serviceType", "transform": "identity"},
            {"target_field": "notes", "transform": "identity", "required": False},
            {"target_field": "appointmentStatus", "source_field": "status"},
            {"target_field": "source", "transform": "constant", "value": "realgreen"},
        ),
    ),
    MappingTable(
        entity_type="appointment",
        direction=Direction.B_TO_A,
        fields=_fields(
            {"target_field": "date", "source_field": "startTime", "transform": "date_format",
             "output_format": "%Y-%m-%d %H:%M"},
            {"target_field": "serviceType", "transform": "identity"},
            {"target_field": "notes", "transform": "identity", "required": False},
            {"target_field": "status", "source_field": "appointmentStatus"},
        ),
    ),
]


def default_mapper() -> FieldMapper:
    """Mapper preloaded with the built-in RealGreen/GoHighLevel tables."""
    mapper = FieldMapper()
    for table in DEFAULT_MAPPING_TABLES:
        mapper.register(table)
    return mapper


def load_mapping_tables(path: Union[str, Path]) -> List[MappingTable]:
    """
    Load mapping tables from a JSON file.

    The file holds a list of objects shaped like MappingTable.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read mapping file {path}: {e}")

    if not isinstance(raw, list):
        raise ConfigurationError(f"Mapping file {path} must contain a list of tables")

    try:
        tables = [MappingTable(**item) for item in raw]
    except (TypeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid mapping table in {path}: {e}")
    logger.info(f"Loaded {len(tables)} mapping tables from {path}")
    return tables
