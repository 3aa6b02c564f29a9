"""
Record Schema Descriptors

Explicit per-type column descriptors used by the cache backends. A record type
must be registered with `register_schema` before it can be cached; the field
set (name + primitive kind) is enumerated once at registration time.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import NoneType, UnionType
from typing import Any, Dict, List, Optional, Tuple, Type, Union, get_args, get_origin

from pydantic import BaseModel

from pricefeed.core.exceptions import CacheError
from pricefeed.core.models import PriceRecord, RawPriceRow


class FieldKind(str, Enum):
    """Primitive column kinds understood by every backend"""
    STRING = "string"
    DECIMAL = "decimal"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"


_KIND_BY_TYPE: Dict[type, FieldKind] = {
    str: FieldKind.STRING,
    Decimal: FieldKind.DECIMAL,
    int: FieldKind.INTEGER,
    float: FieldKind.FLOAT,
    bool: FieldKind.BOOLEAN,
    date: FieldKind.DATE,
}


@dataclass(frozen=True)
class FieldSpec:
    """One column of a record schema"""
    name: str
    kind: FieldKind
    nullable: bool

    @property
    def empty_value(self) -> Any:
        """Value substituted for a missing or malformed field"""
        if self.kind == FieldKind.STRING and not self.nullable:
            return ""
        return None

    def to_text(self, value: Any) -> str:
        if value is None:
            return ""
        if self.kind == FieldKind.DECIMAL:
            return format(value, "f")
        if self.kind == FieldKind.BOOLEAN:
            return "true" if value else "false"
        if self.kind == FieldKind.DATE:
            return value.isoformat()
        return str(value)

    def from_text(self, text: Optional[str]) -> Any:
        if text is None:
            return self.empty_value
        if self.kind == FieldKind.STRING:
            return text if (text or not self.nullable) else None
        text = text.strip()
        if not text:
            return self.empty_value
        try:
            if self.kind == FieldKind.DECIMAL:
                return Decimal(text)
            if self.kind == FieldKind.INTEGER:
                return int(text)
            if self.kind == FieldKind.FLOAT:
                return float(text)
            if self.kind == FieldKind.BOOLEAN:
                return text.lower() in ("true", "1", "yes")
            if self.kind == FieldKind.DATE:
                return date.fromisoformat(text)
        except (InvalidOperation, ValueError):
            return self.empty_value
        return text


@dataclass(frozen=True)
class RecordSchema:
    """Column descriptor for one record type"""
    record_type: Type[BaseModel]
    fields: Tuple[FieldSpec, ...]

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def to_row(self, record: BaseModel) -> Dict[str, Any]:
        return {f.name: getattr(record, f.name) for f in self.fields}

    def to_text_row(self, record: BaseModel) -> Dict[str, str]:
        return {f.name: f.to_text(getattr(record, f.name)) for f in self.fields}

    def from_row(self, row: Dict[str, Any]) -> BaseModel:
        values = {}
        for f in self.fields:
            value = row.get(f.name)
            values[f.name] = f.empty_value if value is None else value
        return self.record_type(**values)

    def from_text_row(self, row: Dict[str, Optional[str]]) -> BaseModel:
        return self.record_type(**{f.name: f.from_text(row.get(f.name)) for f in self.fields})


_SCHEMAS: Dict[type, RecordSchema] = {}


def _unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
    origin = get_origin(annotation)
    if origin is Union or origin is UnionType:
        args = [a for a in get_args(annotation) if a is not NoneType]
        if len(args) != 1:
            raise CacheError(f"Unsupported union field type: {annotation}")
        return args[0], True
    return annotation, False


def register_schema(record_type: Type[BaseModel]) -> RecordSchema:
    """Build and register the column descriptor for `record_type`"""
    specs = []
    for name, info in record_type.model_fields.items():
        base, nullable = _unwrap_optional(info.annotation)
        kind = _KIND_BY_TYPE.get(base)
        if kind is None:
            raise CacheError(
                f"Field {record_type.__name__}.{name} has no column kind",
                context={"type": repr(base)},
            )
        specs.append(FieldSpec(name=name, kind=kind, nullable=nullable))

    schema = RecordSchema(record_type=record_type, fields=tuple(specs))
    _SCHEMAS[record_type] = schema
    return schema


def schema_for(record_type: Type[BaseModel]) -> RecordSchema:
    """Look up the registered descriptor for `record_type`"""
    try:
        return _SCHEMAS[record_type]
    except KeyError:
        raise CacheError(
            f"No schema registered for {record_type.__name__}",
            context={"record_type": record_type.__name__},
        ) from None


register_schema(PriceRecord)
register_schema(RawPriceRow)
