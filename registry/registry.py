"""
Tiered data registry: the single owner of the name -> dataset mapping.
"""

from __future__ import annotations

import logging
import re
import shutil
import sqlite3
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from functools import partial
from pathlib import Path

import pyarrow as pa
import pyarrow.ipc as pa_ipc

from explorer_core.config import ExplorerConfig
from explorer_core.errors import ExplorerError, NotFound, StorageError, ValidationError
from explorer_core.schemas import Backend, DatasetInfo, DatasetRef

from . import database, loaders
from .handles import (
    DEFAULT_BATCH_ROWS,
    ArrowTableHandle,
    DatasetHandle,
    MappedArrowHandle,
    SqliteHandle,
    column_infos_from_schema,
)
from .locks import NameLocks

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DEFAULT_SMALL_THRESHOLD = 100 * MB
DEFAULT_LARGE_THRESHOLD = 1024 * MB

REGISTRY_DIR_NAME = ".registry"
DATABASE_FILE_NAME = "relational.db"

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_WRITE_ERRORS = (OSError, sqlite3.Error, pa.ArrowException, ValueError, TypeError)


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid dataset name {name!r}: use letters, digits and underscores, "
            "not starting with a digit"
        )
    if name.startswith("_staging_"):
        raise ValidationError(f"Dataset name {name!r} uses a reserved prefix")
    return name


def _coerce_table(data: object) -> pa.Table:
    try:
        if isinstance(data, pa.Table):
            return data
        if isinstance(data, pa.RecordBatch):
            return pa.Table.from_batches([data])
        if isinstance(data, Mapping):
            return pa.table(dict(data))
        if isinstance(data, list):
            return pa.Table.from_pylist(data)
    except (pa.ArrowException, TypeError, ValueError) as exc:
        raise ValidationError(f"Data cannot be converted to a table: {exc}") from exc
    raise ValidationError(f"Unsupported data type for store: {type(data).__name__}")


@dataclass
class _Entry:
    info: DatasetInfo
    table: pa.Table | None = None
    location: Path | None = None
    spill_path: Path | None = None


class DataRegistry:
    """Stores datasets in one of three tiers chosen by size.

    - ``memory``: resident ``pyarrow.Table``
    - ``columnar``: Arrow IPC file under ``columnar/``, memory-mapped on read
    - ``relational``: table in a shared SQLite database

    A name is unique across all tiers, compared case-insensitively. Writes on
    one name are serialized with a per-name lock; the shared SQLite connection
    has its own lock, held for every schema-mutating statement. Readers never
    hold either lock for longer than a catalog lookup.
    """

    def __init__(
        self,
        data_root: str | Path,
        small_threshold_bytes: int = DEFAULT_SMALL_THRESHOLD,
        large_threshold_bytes: int = DEFAULT_LARGE_THRESHOLD,
    ) -> None:
        if small_threshold_bytes >= large_threshold_bytes:
            raise ValueError("small_threshold_bytes must be below large_threshold_bytes")
        self.small_threshold_bytes: int = small_threshold_bytes
        self.large_threshold_bytes: int = large_threshold_bytes

        self.root: Path = Path(data_root).expanduser().resolve() / REGISTRY_DIR_NAME
        # The registry is rebuilt from source files on every start.
        if self.root.exists():
            shutil.rmtree(self.root)
        self.columnar_dir: Path = self.root / "columnar"
        self.spill_dir: Path = self.root / "spill"
        self.columnar_dir.mkdir(parents=True, exist_ok=True)
        self.spill_dir.mkdir(parents=True, exist_ok=True)
        self.db_path: Path = self.root / DATABASE_FILE_NAME

        self._connection: sqlite3.Connection = database.connect(str(self.db_path))
        self._entries: dict[str, _Entry] = {}
        self._catalog_lock: threading.RLock = threading.RLock()
        self._relational_lock: threading.Lock = threading.Lock()
        self._name_locks: NameLocks = NameLocks()
        self._closed: bool = False

    @classmethod
    def from_config(cls, config: ExplorerConfig) -> "DataRegistry":
        return cls(
            data_root=config.data_root,
            small_threshold_bytes=config.small_threshold_bytes,
            large_threshold_bytes=config.large_threshold_bytes,
        )

    def __enter__(self) -> "DataRegistry":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def close(self, remove_files: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        with self._relational_lock:
            self._connection.close()
        with self._catalog_lock:
            self._entries.clear()
        if remove_files:
            shutil.rmtree(self.root, ignore_errors=True)

    # ------------------------------------------------------------------
    # Tier selection and storage
    # ------------------------------------------------------------------

    def select_backend(self, size_bytes: int) -> Backend:
        if size_bytes < self.small_threshold_bytes:
            return Backend.MEMORY
        if size_bytes < self.large_threshold_bytes:
            return Backend.COLUMNAR
        return Backend.RELATIONAL

    def store(
        self,
        name: str,
        data: object,
        size_hint: int | None = None,
        force_backend: Backend | str | None = None,
        source_path: str | Path | None = None,
        overwrite: bool = False,
        options: Mapping[str, object] | None = None,
    ) -> DatasetInfo:
        """Store ``data`` under ``name`` in the tier chosen by size.

        ``data`` is an Arrow table/record batch, a column mapping, a list of row
        dicts, or a path to a file readable by the format loaders.

        Raises:
            ValidationError: bad name, unsupported data, or name already taken
                without ``overwrite``, or a name differing only in case.
            NotFound: ``data`` is a path that does not exist.
            StorageError: the backend write failed. Nothing is registered and
                any previous version under ``name`` stays intact.
        """
        validate_name(name)
        backend_override = self._parse_backend(force_backend)
        load_options = dict(options or {})

        with self._name_locks.hold(name):
            with self._catalog_lock:
                previous = self._entries.get(name)
                clash = self._case_variant_of(name)
            if clash is not None:
                raise ValidationError(
                    f"Dataset '{name}' conflicts with existing dataset '{clash}'; "
                    "names are case-insensitive"
                )
            if previous is not None and not overwrite:
                raise ValidationError(
                    f"Dataset '{name}' already exists ({previous.info.backend.value}); "
                    "pass overwrite=True to replace it"
                )

            path: Path | None = None
            table: pa.Table | None = None
            if isinstance(data, (str, Path)):
                path = Path(data)
                if not path.exists():
                    raise NotFound(f"File not found: {path}")
                loaders.detect_format(path, load_options)
            else:
                table = _coerce_table(data)

            if size_hint is not None:
                size = int(size_hint)
            elif path is not None:
                size = path.stat().st_size
            else:
                size = table.nbytes if table is not None else 0
            backend = backend_override or self.select_backend(size)
            source = str(source_path or path) if (source_path or path) else None

            logger.info(f"Storing {name} using backend {backend.value} (size: {size:,} bytes)")
            try:
                entry = self._write(name, backend, size, table, path, source, load_options)
            except ExplorerError:
                raise
            except _WRITE_ERRORS as exc:
                logger.warning(f"Store of {name} into {backend.value} failed: {exc}")
                raise StorageError(
                    f"Failed to store '{name}' in {backend.value} backend: {exc}",
                    dataset_name=name,
                    backend=backend.value,
                ) from exc

            with self._catalog_lock:
                self._entries[name] = entry
            if previous is not None:
                self._release(previous, entry)
            return entry.info

    def _parse_backend(self, value: Backend | str | None) -> Backend | None:
        if value is None:
            return None
        try:
            return Backend(value)
        except ValueError as exc:
            choices = ", ".join(b.value for b in Backend)
            raise ValidationError(f"Unknown backend '{value}'; expected one of {choices}") from exc

    def _batches_from(
        self,
        table: pa.Table | None,
        path: Path | None,
        options: Mapping[str, object],
    ) -> tuple[pa.Schema, Iterator[pa.RecordBatch]]:
        if table is not None:
            return table.schema, iter(table.to_batches(max_chunksize=DEFAULT_BATCH_ROWS))
        assert path is not None
        return loaders.iter_batches(path, options)

    def _write(
        self,
        name: str,
        backend: Backend,
        size: int,
        table: pa.Table | None,
        path: Path | None,
        source: str | None,
        options: Mapping[str, object],
    ) -> _Entry:
        if backend == Backend.MEMORY:
            if table is None:
                assert path is not None
                table = loaders.read_table(path, options)
            info = self._info(name, backend, table.schema, table.num_rows, size, source)
            return _Entry(info=info, table=table)

        schema, batches = self._batches_from(table, path, options)
        if backend == Backend.COLUMNAR:
            location, rows = self._write_columnar(name, schema, batches)
            info = self._info(name, backend, schema, rows, size, source)
            return _Entry(info=info, location=location)

        rows = self._write_relational(name, schema, batches)
        info = self._info(name, backend, schema, rows, size, source)
        return _Entry(info=info)

    def _info(
        self,
        name: str,
        backend: Backend,
        schema: pa.Schema,
        rows: int,
        size: int,
        source: str | None,
    ) -> DatasetInfo:
        return DatasetInfo(
            name=name,
            backend=backend,
            columns=column_infos_from_schema(schema),
            row_count=rows,
            byte_size=max(size, 0),
            source_path=source,
        )

    def _write_arrow_file(
        self, directory: Path, name: str, schema: pa.Schema, batches: Iterable[pa.RecordBatch]
    ) -> tuple[Path, int]:
        # A fresh file per version so open memory maps of a replaced version stay valid.
        target = directory / f"{name}.{uuid.uuid4().hex[:12]}.arrow"
        rows = 0
        try:
            with pa.OSFile(str(target), "wb") as sink:
                with pa_ipc.new_file(sink, schema) as writer:
                    for batch in batches:
                        writer.write_batch(batch)
                        rows += batch.num_rows
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        return target, rows

    def _write_columnar(
        self, name: str, schema: pa.Schema, batches: Iterable[pa.RecordBatch]
    ) -> tuple[Path, int]:
        return self._write_arrow_file(self.columnar_dir, name, schema, batches)

    def _write_relational(
        self, name: str, schema: pa.Schema, batches: Iterable[pa.RecordBatch]
    ) -> int:
        with self._relational_lock:
            return database.write_table(self._connection, name, schema, batches)

    def _release(self, old: _Entry, new: _Entry | None) -> None:
        """Drop backend artifacts of a replaced or removed version."""
        if old.info.backend == Backend.RELATIONAL and (
            new is None or new.info.backend != Backend.RELATIONAL
        ):
            with self._relational_lock:
                database.drop_table(self._connection, old.info.name)
        for path in (old.location, old.spill_path):
            if path is not None:
                path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _case_variant_of(self, name: str) -> str | None:
        folded = name.lower()
        for existing in self._entries:
            if existing != name and existing.lower() == folded:
                return existing
        return None

    def _require(self, name: str) -> _Entry:
        with self._catalog_lock:
            entry = self._entries.get(name)
        if entry is None:
            raise NotFound(f"Dataset not found: {name}")
        return entry

    def __contains__(self, name: object) -> bool:
        with self._catalog_lock:
            return name in self._entries

    def names(self) -> list[str]:
        with self._catalog_lock:
            return sorted(self._entries)

    def list(self) -> list[DatasetInfo]:
        with self._catalog_lock:
            entries = list(self._entries.values())
        return sorted((entry.info for entry in entries), key=lambda info: info.name)

    def info(self, name: str) -> DatasetInfo:
        return self._require(name).info

    def get(self, name: str) -> DatasetHandle:
        return self._handle_for(self._require(name))

    def _handle_for(self, entry: _Entry) -> DatasetHandle:
        info = entry.info
        if info.backend == Backend.MEMORY:
            assert entry.table is not None
            return ArrowTableHandle(info.name, entry.table)
        if info.backend == Backend.COLUMNAR:
            assert entry.location is not None
            return MappedArrowHandle(info.name, entry.location, info.row_count)
        return SqliteHandle(
            info.name,
            info.name,
            info.columns,
            partial(database.connect_readonly, str(self.db_path)),
            info.row_count,
        )

    def reference(self, name: str) -> DatasetRef:
        """Serializable pointer a worker process can reopen.

        In-memory tables are spilled once to an Arrow IPC file; the spill is
        reused until the dataset is replaced.
        """
        with self._name_locks.hold(name):
            entry = self._require(name)
            info = entry.info
            if info.backend == Backend.MEMORY:
                if entry.spill_path is None or not entry.spill_path.exists():
                    assert entry.table is not None
                    try:
                        spill, _ = self._write_arrow_file(
                            self.spill_dir, name, entry.table.schema, entry.table.to_batches()
                        )
                    except _WRITE_ERRORS as exc:
                        raise StorageError(
                            f"Failed to spill '{name}' for worker access: {exc}",
                            dataset_name=name,
                            backend=info.backend.value,
                        ) from exc
                    entry.spill_path = spill
                location = str(entry.spill_path)
            elif info.backend == Backend.COLUMNAR:
                location = str(entry.location)
            else:
                location = str(self.db_path)
            return DatasetRef(
                name=name,
                backend=info.backend,
                location=location,
                table=name if info.backend == Backend.RELATIONAL else None,
                columns=info.columns,
                row_count=info.row_count,
            )

    # ------------------------------------------------------------------
    # Relational tier
    # ------------------------------------------------------------------

    def relational_tables(self) -> list[str]:
        with self._relational_lock:
            return database.list_tables(self._connection)

    def promote(self, name: str) -> bool:
        """Ensure ``name`` is materialized in the relational tier.

        Returns ``True`` when a table was created and ``False`` when one already
        existed. After promotion the dataset lives only in the relational tier.
        """
        with self._name_locks.hold(name):
            entry = self._require(name)
            with self._relational_lock:
                if database.table_exists(self._connection, name):
                    return False
            handle = self._handle_for(entry)
            logger.info(f"Promoting {name} from {entry.info.backend.value} to relational")
            try:
                rows = self._write_relational(name, handle.arrow_schema, handle.scan())
            except _WRITE_ERRORS as exc:
                raise StorageError(
                    f"Failed to promote '{name}' to relational backend: {exc}",
                    dataset_name=name,
                    backend=Backend.RELATIONAL.value,
                ) from exc
            info = entry.info.model_copy(update={"backend": Backend.RELATIONAL, "row_count": rows})
            promoted = _Entry(info=info)
            with self._catalog_lock:
                self._entries[name] = promoted
            self._release(entry, promoted)
            return True

    def drop(self, name: str) -> None:
        with self._name_locks.hold(name):
            entry = self._require(name)
            with self._catalog_lock:
                del self._entries[name]
            self._release(entry, None)
            logger.info(f"Dropped dataset {name}")

