"""
Delimited Text Cache Backend

Row-oriented cache files written and read with Polars. Every column is read
as text and decoded through the record schema, so ragged lines and missing
columns degrade to empty values instead of failing the read.
"""

from pathlib import Path
from typing import List

import polars as pl
from pydantic import BaseModel

from pricefeed.caching.base import FileCacheProvider
from pricefeed.caching.schema import RecordSchema


class DelimitedTextCacheProvider(FileCacheProvider):
    """CSV cache backend"""

    extension = ".csv"
    io_errors = (pl.exceptions.PolarsError,)

    def __init__(self, delimiter: str = ","):
        if len(delimiter) != 1:
            raise ValueError("Delimiter must be a single character")
        self.delimiter = delimiter

    def _write(self, path: Path, records: List[BaseModel], schema: RecordSchema) -> None:
        columns = {name: [] for name in schema.names}
        for record in records:
            for name, value in schema.to_text_row(record).items():
                columns[name].append(value)

        df = pl.DataFrame(columns, schema={name: pl.Utf8 for name in schema.names})
        df.write_csv(path, separator=self.delimiter)

    def _read(self, path: Path, schema: RecordSchema) -> List[BaseModel]:
        try:
            df = pl.read_csv(
                path,
                separator=self.delimiter,
                infer_schema_length=0,
                truncate_ragged_lines=True,
                ignore_errors=True,
            )
        except pl.exceptions.NoDataError:
            return []

        return [schema.from_text_row(row) for row in df.iter_rows(named=True)]
