"""
Columnar Cache Backend

Parquet cache files written with PyArrow. The Arrow schema is derived from
the record schema; each save produces a single row group. Decimals are stored
exactly or not at all: a value that needs more than `DECIMAL_SCALE`
fractional digits, or more integer digits than the column holds, is refused.
"""

from decimal import Context, Decimal, Inexact, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional

import pyarrow as pa
import pyarrow.parquet as pq
from pydantic import BaseModel

from pricefeed.caching.base import FileCacheProvider
from pricefeed.caching.schema import FieldKind, RecordSchema
from pricefeed.core.exceptions import CacheError

DECIMAL_PRECISION = 38
DECIMAL_SCALE = 12
DECIMAL_TYPE = pa.decimal128(DECIMAL_PRECISION, DECIMAL_SCALE)

_ARROW_TYPES: Dict[FieldKind, pa.DataType] = {
    FieldKind.STRING: pa.string(),
    FieldKind.DECIMAL: DECIMAL_TYPE,
    FieldKind.INTEGER: pa.int64(),
    FieldKind.FLOAT: pa.float64(),
    FieldKind.BOOLEAN: pa.bool_(),
    FieldKind.DATE: pa.date32(),
}

_QUANTUM = Decimal(1).scaleb(-DECIMAL_SCALE)
_EXACT = Context(prec=DECIMAL_PRECISION, traps=[Inexact, InvalidOperation])


def arrow_schema(schema: RecordSchema) -> pa.Schema:
    """Arrow schema for a record schema"""
    return pa.schema([
        pa.field(f.name, _ARROW_TYPES[f.kind], nullable=True)
        for f in schema.fields
    ])


def fit_decimal(name: str, value: Optional[Decimal]) -> Optional[Decimal]:
    """Rescale `value` to the column scale, refusing any rounding or overflow"""
    if value is None:
        return None
    try:
        return value.quantize(_QUANTUM, context=_EXACT)
    except (Inexact, InvalidOperation):
        raise CacheError(
            f"Value {value} of {name} does not fit {DECIMAL_TYPE} exactly",
            context={"field": name, "value": str(value)},
        ) from None


class ColumnarCacheProvider(FileCacheProvider):
    """Parquet cache backend"""

    extension = ".parquet"
    io_errors = (pa.ArrowException,)

    def __init__(self, compression: str = "snappy"):
        self.compression = compression

    def _write(self, path: Path, records: List[BaseModel], schema: RecordSchema) -> None:
        columns = {name: [] for name in schema.names}
        decimals = {f.name for f in schema.fields if f.kind == FieldKind.DECIMAL}

        for record in records:
            for name, value in schema.to_row(record).items():
                if name in decimals:
                    value = fit_decimal(name, value)
                columns[name].append(value)

        table = pa.Table.from_pydict(columns, schema=arrow_schema(schema))
        pq.write_table(
            table,
            path,
            compression=self.compression,
            row_group_size=max(1, table.num_rows),
        )

    def _read(self, path: Path, schema: RecordSchema) -> List[BaseModel]:
        table = pq.read_table(path)
        return [schema.from_row(row) for row in table.to_pylist()]
