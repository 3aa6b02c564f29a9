"""
Cache Provider Contract

A cache entry is one file per (folder, key), written once per crawl and
removed by a date-scoped clear. Backends differ only in how rows are laid
out on disk; path resolution, existence checks and clearing are shared.
"""

import asyncio
from datetime import date
from pathlib import Path
from typing import List, Protocol, Sequence, Tuple, Type, Union, runtime_checkable

import structlog
from pydantic import BaseModel

from pricefeed.caching.schema import RecordSchema
from pricefeed.core.exceptions import CacheEntryNotFound, CacheError

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]


@runtime_checkable
class CacheProvider(Protocol):
    """Fetch-or-reuse storage for crawled records"""

    extension: str

    def path_for(self, folder: PathLike, key: str) -> Path:
        ...

    def exists(self, folder: PathLike, key: str) -> bool:
        ...

    async def save(self, folder: PathLike, key: str, records: Sequence[BaseModel], schema: RecordSchema) -> None:
        ...

    async def read(self, folder: PathLike, key: str, schema: RecordSchema) -> List[BaseModel]:
        ...

    async def clear(self, folder: PathLike, day: date) -> int:
        ...


class FileCacheProvider:
    """
    Shared file handling for the cache backends.

    Subclasses set `extension` and implement `_write` / `_read`, which run
    in a worker thread. Library errors listed in `io_errors` are raised as
    CacheError; a failed save leaves no file behind.
    """

    extension: str = ""
    io_errors: Tuple[Type[Exception], ...] = ()

    def path_for(self, folder: PathLike, key: str) -> Path:
        directory = Path(folder)
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{key}{self.extension}"

    def exists(self, folder: PathLike, key: str) -> bool:
        return (Path(folder) / f"{key}{self.extension}").is_file()

    async def save(self, folder: PathLike, key: str, records: Sequence[BaseModel], schema: RecordSchema) -> None:
        path = self.path_for(folder, key)
        try:
            await asyncio.to_thread(self._write, path, list(records), schema)
        except (CacheError, OSError) + self.io_errors as e:
            path.unlink(missing_ok=True)
            if isinstance(e, CacheError):
                raise
            raise CacheError(f"Failed to write cache file {path}", context={"path": str(path)}) from e

        logger.debug("Cache entry saved", path=str(path), rows=len(records))

    async def read(self, folder: PathLike, key: str, schema: RecordSchema) -> List[BaseModel]:
        path = Path(folder) / f"{key}{self.extension}"
        if not path.is_file():
            raise CacheEntryNotFound(f"Cache entry not found: {path}", context={"path": str(path)})

        try:
            records = await asyncio.to_thread(self._read, path, schema)
        except (OSError,) + self.io_errors as e:
            raise CacheError(f"Failed to read cache file {path}", context={"path": str(path)}) from e

        logger.debug("Cache entry read", path=str(path), rows=len(records))
        return records

    async def clear(self, folder: PathLike, day: date) -> int:
        directory = Path(folder)
        if not directory.is_dir():
            return 0

        suffix = f"{day:%Y-%m-%d}{self.extension}"
        removed = 0
        for path in directory.glob(f"*{self.extension}"):
            if path.is_file() and path.name.endswith(suffix):
                path.unlink()
                removed += 1

        if removed:
            logger.info("Cache cleared", folder=str(directory), date=day.isoformat(), files=removed)
        return removed

    def _write(self, path: Path, records: List[BaseModel], schema: RecordSchema) -> None:
        raise NotImplementedError

    def _read(self, path: Path, schema: RecordSchema) -> List[BaseModel]:
        raise NotImplementedError
