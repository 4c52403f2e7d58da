"""Data access layer for the gold shop back-office.

This module provides the document store the services talk to. Business
rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and atomically persisting the
   Excel file that backs the store (one worksheet per collection).
3. Document operations: create, point read, list, indexed lookup, merge
   update and delete, each optionally conditional on a document version.
4. Write batches, live subscriptions and bounded retry on transient or
   conflicting writes.
"""


from __future__ import annotations

import configparser
import os
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    COLLECTION_FIELDS,
    ID_FIELD,
    OWNER_FIELD,
    UNIQUE_FIELDS,
    VERSION_FIELD,
    Collection,
)
from .errors import (
    ConcurrentModificationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)


CONFIG_FILE_NAME = "config.ini"
CASH_ROOT = "cash"

Document = Dict[str, Any]
Listener = Callable[[List[Document]], None]
T = TypeVar("T")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    retry_attempts: int = 3
    retry_backoff: float = 0.1
    cost_ratio: Decimal = Decimal("0.80")


@dataclass(frozen=True)
class CollectionRef:
    """A resolved collection path: worksheet plus optional owner scope."""

    path: str
    sheet: str
    owner_uid: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are required. ``[Store]`` and ``[Reporting]`` are
    optional and fall back to the dataclass defaults. Relative ``DataFile``
    paths are anchored at ``base_path`` (or the working directory) and
    resolved.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional numeric entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    defaults = ConfigSettings(data_file=Path(), shop_name="", schema_version="")
    retry_attempts = parser.getint("Store", "RetryAttempts", fallback=defaults.retry_attempts)
    retry_backoff = parser.getfloat("Store", "RetryBackoff", fallback=defaults.retry_backoff)
    cost_ratio = Decimal(parser.get("Reporting", "EstimatedCostRatio", fallback=str(defaults.cost_ratio)))
    if retry_attempts < 1:
        raise ValueError("RetryAttempts must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        retry_attempts=retry_attempts,
        retry_backoff=retry_backoff,
        cost_ratio=cost_ratio,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        TransientStoreError: If the file exists but cannot be read.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except OSError as exc:
        log.error("Unable to read workbook '%s': %s", data_file, exc)
        raise TransientStoreError(f"Unable to read store '{data_file}': {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at ``destination``.

    The workbook is first written to a temporary file next to the target and
    then moved over it with :func:`os.replace`, so readers observe either the
    previous or the new file, never a half-written one.

    Raises:
        TransientStoreError: If the file cannot be written or replaced.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".xlsx", dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        log.error("Unable to write workbook '%s': %s", dest, exc)
        raise TransientStoreError(f"Unable to write store '{dest}': {exc}") from exc


def validate_layout(workbook: Workbook) -> None:
    """Check that every collection worksheet exists with the expected header.

    Raises:
        RuntimeError: If a worksheet is missing or its header row differs.
    """

    for sheet_name, columns in COLLECTION_FIELDS.items():
        if sheet_name not in workbook.sheetnames:
            raise RuntimeError(f"Store workbook is missing worksheet '{sheet_name}'")
        header = [cell.value for cell in workbook[sheet_name][1]]
        if header[: len(columns)] != list(columns):
            raise RuntimeError(
                f"Worksheet '{sheet_name}' has unexpected columns: {header}"
            )


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Map header titles to 1-based column indices for ``sheet_name``."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_documents(workbook: Workbook, sheet_name: str) -> Iterable[Document]:
    """Stream the documents stored on ``sheet_name`` as dictionaries.

    The header row and fully empty rows are skipped.
    """

    sheet = workbook[sheet_name]
    headers = [cell.value for cell in sheet[1]]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_document(headers, raw)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == key_value:
            return row_idx

    return None


def serialize_document(columns: Sequence[str], document: Mapping[str, Any]) -> List[object]:
    """Arrange ``document`` values into the worksheet column order."""

    return [document.get(column) for column in columns]


def deserialize_document(headers: Sequence[Any], raw_row: Sequence[object]) -> Document:
    """Convert a raw worksheet row into a document dictionary.

    Identifiers are coerced to ``str`` so Excel's number guessing cannot leak
    into lookups; the version column is coerced to ``int``.
    """

    document: Document = {}
    for header, value in zip(headers, raw_row):
        if header is None:
            continue
        document[str(header)] = value
    if document.get(ID_FIELD) is not None:
        document[ID_FIELD] = str(document[ID_FIELD])
    document[VERSION_FIELD] = int(document.get(VERSION_FIELD) or 0)
    return document


def collection_path(*segments: str) -> str:
    """Join path segments, e.g. ``collection_path("cash", uid, "dailyCashRecords")``."""

    return "/".join(segment.strip("/") for segment in segments)


def daily_cash_path(uid: str) -> str:
    """Path of the per-operator daily cash sub-collection."""

    if not uid:
        raise ValidationError("An operator id is required for cash records")
    return collection_path(CASH_ROOT, uid, Collection.DAILY_CASH_RECORDS.value)


def resolve_path(path: str) -> CollectionRef:
    """Resolve a collection path to its worksheet and owner scope.

    Raises:
        ValidationError: If ``path`` names no known collection.
    """

    parts = [part for part in path.split("/") if part]
    if len(parts) == 1 and parts[0] in COLLECTION_FIELDS and parts[0] != Collection.DAILY_CASH_RECORDS.value:
        return CollectionRef(path=parts[0], sheet=parts[0])
    if len(parts) == 3 and parts[0] == CASH_ROOT and parts[2] == Collection.DAILY_CASH_RECORDS.value:
        return CollectionRef(path="/".join(parts), sheet=parts[2], owner_uid=parts[1])
    raise ValidationError(f"Unknown collection path: {path!r}")


def generate_document_id() -> str:
    """Generate a random, collision-resistant document identifier."""

    return uuid.uuid4().hex


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    retry_on: Tuple[type, ...] = (TransientStoreError, ConcurrentModificationError),
) -> T:
    """Execute a store operation with retry on transient or conflicting writes.

    ``func`` is re-run from scratch after each failure so it re-reads the
    current state before deciding on new writes. Sleeps follow
    ``backoff_base * 2 ** attempt``; the last error propagates once
    ``attempts`` are exhausted.
    """

    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts - 1:
                log.error("Giving up after %d attempt(s): %s", attempts, exc)
                raise
            delay = backoff_base * (2 ** attempt)
            log.warning("Store operation failed (%s); retrying in %.2fs", exc, delay)
            time.sleep(delay)
    raise RuntimeError("run_with_retry requires at least one attempt")


@dataclass
class _Operation:
    kind: str
    ref: CollectionRef
    doc_id: str
    fields: Document = field(default_factory=dict)
    expected_version: Optional[int] = None


class WriteBatch:
    """Stage several writes and commit them all-or-nothing.

    ``create`` hands back the generated identifier straight away so later
    operations in the same batch can reference the new document.
    """

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._operations: List[_Operation] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._operations)

    def create(self, path: str, fields: Mapping[str, Any], *, doc_id: Optional[str] = None) -> str:
        new_id = doc_id or generate_document_id()
        self._operations.append(_Operation("create", resolve_path(path), new_id, dict(fields)))
        return new_id

    def update(self, path: str, doc_id: str, fields: Mapping[str, Any], *, expected_version: Optional[int] = None) -> None:
        self._operations.append(
            _Operation("update", resolve_path(path), doc_id, dict(fields), expected_version)
        )

    def delete(self, path: str, doc_id: str, *, expected_version: Optional[int] = None) -> None:
        self._operations.append(
            _Operation("delete", resolve_path(path), doc_id, expected_version=expected_version)
        )

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Write batch already committed")
        self._store._commit(self._operations)
        self._committed = True


class DocumentStore:
    """Document store backed by an ``openpyxl`` workbook on disk.

    Reads are served from the loaded workbook, which is reloaded whenever the
    file on disk changed since it was last read or written by this instance.
    Commits are serialised by a lock, validate every precondition before
    touching any cell, and persist through :func:`save_workbook`.
    """

    def __init__(self, data_file: Path) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self._lock = threading.RLock()
        self._listeners: Dict[str, List[Listener]] = {}
        self._workbook: Optional[Workbook] = None
        self._loaded_mtime: Optional[int] = None
        self._unique_index: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.reload()

    # -- lifecycle ---------------------------------------------------------

    def reload(self) -> None:
        """Discard in-memory state and load the workbook from disk."""

        with self._lock:
            workbook = open_workbook(self.data_file)
            validate_layout(workbook)
            self._workbook = workbook
            self._loaded_mtime = self._disk_mtime()
            self._rebuild_indexes()
            log.debug("Loaded store workbook '%s'", self.data_file)

    def _disk_mtime(self) -> Optional[int]:
        try:
            return self.data_file.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _ensure_fresh(self) -> Workbook:
        if self._workbook is None or self._disk_mtime() != self._loaded_mtime:
            log.debug("Store workbook changed on disk; reloading")
            self.reload()
        assert self._workbook is not None
        return self._workbook

    def _rebuild_indexes(self) -> None:
        assert self._workbook is not None
        self._unique_index = {}
        for sheet_name, unique_fields in UNIQUE_FIELDS.items():
            for unique_field in unique_fields:
                index: Dict[str, str] = {}
                for document in iter_documents(self._workbook, sheet_name):
                    key = document.get(unique_field)
                    if key is None or str(key) == "":
                        continue
                    key = str(key)
                    if key in index:
                        # First match wins; duplicates predate the index.
                        log.warning(
                            "Duplicate %s.%s '%s' (documents %s and %s)",
                            sheet_name,
                            unique_field,
                            key,
                            index[key],
                            document[ID_FIELD],
                        )
                        continue
                    index[key] = document[ID_FIELD]
                self._unique_index[(sheet_name, unique_field)] = index

    # -- reads -------------------------------------------------------------

    def list(self, path: str) -> List[Document]:
        """Return every document of a collection in storage order."""

        ref = resolve_path(path)
        with self._lock:
            workbook = self._ensure_fresh()
            return [doc for doc in iter_documents(workbook, ref.sheet) if self._in_scope(ref, doc)]

    def get(self, path: str, doc_id: str) -> Document:
        """Point read by identifier.

        Raises:
            NotFoundError: If no document with ``doc_id`` exists in scope.
        """

        ref = resolve_path(path)
        with self._lock:
            workbook = self._ensure_fresh()
            document = self._read(workbook, ref, doc_id)
        if document is None:
            log.warning("Lookup failed for %s/%s", ref.path, doc_id)
            raise NotFoundError(f"Unknown {ref.sheet} id: {doc_id}")
        return document

    def find_by(self, path: str, field_name: str, value: Any) -> Optional[Document]:
        """Return the first document whose ``field_name`` equals ``value``.

        Unique fields are answered from the in-memory index; other fields fall
        back to a scan.
        """

        ref = resolve_path(path)
        with self._lock:
            workbook = self._ensure_fresh()
            index = self._unique_index.get((ref.sheet, field_name))
            if index is not None:
                doc_id = index.get(str(value))
                return None if doc_id is None else self._read(workbook, ref, doc_id)
            for document in iter_documents(workbook, ref.sheet):
                if self._in_scope(ref, document) and document.get(field_name) == value:
                    return document
        return None

    def _read(self, workbook: Workbook, ref: CollectionRef, doc_id: str) -> Optional[Document]:
        row_idx = locate_row(workbook, ref.sheet, ID_FIELD, doc_id)
        if row_idx is None:
            return None
        sheet = workbook[ref.sheet]
        headers = [cell.value for cell in sheet[1]]
        raw = [cell.value for cell in sheet[row_idx]]
        document = deserialize_document(headers, raw)
        return document if self._in_scope(ref, document) else None

    @staticmethod
    def _in_scope(ref: CollectionRef, document: Mapping[str, Any]) -> bool:
        return ref.owner_uid is None or document.get(OWNER_FIELD) == ref.owner_uid

    # -- single writes -----------------------------------------------------

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def create(self, path: str, fields: Mapping[str, Any]) -> str:
        """Create a document with a generated id and return the id."""

        batch = self.batch()
        doc_id = batch.create(path, fields)
        batch.commit()
        return doc_id

    def update(self, path: str, doc_id: str, fields: Mapping[str, Any], *, expected_version: Optional[int] = None) -> None:
        """Merge ``fields`` into an existing document."""

        batch = self.batch()
        batch.update(path, doc_id, fields, expected_version=expected_version)
        batch.commit()

    def delete(self, path: str, doc_id: str, *, expected_version: Optional[int] = None) -> None:
        batch = self.batch()
        batch.delete(path, doc_id, expected_version=expected_version)
        batch.commit()

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, path: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for live snapshots of a collection.

        The callback receives the current documents immediately and again
        after every commit that touches the collection. The returned callable
        removes the subscription.
        """

        ref = resolve_path(path)
        with self._lock:
            self._listeners.setdefault(ref.path, []).append(callback)
        callback(self.list(ref.path))

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(ref.path, [])
                if callback in listeners:
                    listeners.remove(callback)

        return unsubscribe

    def _notify(self, paths: Iterable[str]) -> None:
        for path in paths:
            with self._lock:
                listeners = list(self._listeners.get(path, []))
            if not listeners:
                continue
            snapshot = self.list(path)
            for listener in listeners:
                try:
                    listener(list(snapshot))
                except Exception:
                    log.exception("Subscriber for '%s' failed", path)

    # -- commit ------------------------------------------------------------

    def _commit(self, operations: Sequence[_Operation]) -> None:
        if not operations:
            return
        with self._lock:
            workbook = self._ensure_fresh()
            self._check_preconditions(workbook, operations)
            try:
                for operation in operations:
                    self._apply(workbook, operation)
                save_workbook(workbook, self.data_file)
            except Exception:
                log.error(
                    "Commit of %d operation(s) failed; discarding in-memory changes",
                    len(operations),
                )
                self._workbook = None
                self.reload()
                raise
            self._loaded_mtime = self._disk_mtime()
            self._rebuild_indexes()
            log.info(
                "Committed %d operation(s): %s",
                len(operations),
                ", ".join(f"{op.kind} {op.ref.path}/{op.doc_id}" for op in operations),
            )
        self._notify(dict.fromkeys(op.ref.path for op in operations))

    def _check_preconditions(self, workbook: Workbook, operations: Sequence[_Operation]) -> None:
        """Validate a whole batch before any cell is written.

        Raises:
            ValidationError: On unknown or store-managed fields.
            NotFoundError: When an update/delete targets a missing document.
            ConcurrentModificationError: On a version mismatch, an id clash,
                or a unique-key clash with stored or staged documents.
        """

        staged_keys: Dict[Tuple[str, str], Dict[str, str]] = {}
        created: set[Tuple[str, str]] = set()
        deleted: set[Tuple[str, str]] = set()

        for operation in operations:
            ref = operation.ref
            allowed = set(COLLECTION_FIELDS[ref.sheet]) - {ID_FIELD, VERSION_FIELD, OWNER_FIELD}
            unknown = set(operation.fields) - allowed
            if unknown:
                raise ValidationError(
                    f"Unknown {ref.sheet} field(s): {', '.join(sorted(unknown))}"
                )
            key = (ref.sheet, operation.doc_id)

            if operation.kind == "create":
                if key in created or locate_row(workbook, ref.sheet, ID_FIELD, operation.doc_id) is not None:
                    raise ConcurrentModificationError(
                        f"Document {ref.path}/{operation.doc_id} already exists"
                    )
                created.add(key)
            else:
                if key in deleted:
                    raise NotFoundError(f"Unknown {ref.sheet} id: {operation.doc_id}")
                if key not in created:
                    current = self._read(workbook, ref, operation.doc_id)
                    if current is None:
                        raise NotFoundError(f"Unknown {ref.sheet} id: {operation.doc_id}")
                    if (
                        operation.expected_version is not None
                        and current[VERSION_FIELD] != operation.expected_version
                    ):
                        log.warning(
                            "Version conflict on %s/%s: expected %s, found %s",
                            ref.path,
                            operation.doc_id,
                            operation.expected_version,
                            current[VERSION_FIELD],
                        )
                        raise ConcurrentModificationError(
                            f"{ref.sheet} document {operation.doc_id} was modified concurrently"
                        )
                if operation.kind == "delete":
                    deleted.add(key)
                    continue

            for unique_field in UNIQUE_FIELDS.get(ref.sheet, ()):
                if unique_field not in operation.fields:
                    continue
                value = operation.fields[unique_field]
                if value is None or str(value) == "":
                    continue
                value = str(value)
                owner = self._unique_index.get((ref.sheet, unique_field), {}).get(value)
                staged = staged_keys.setdefault((ref.sheet, unique_field), {})
                holder = staged.get(value, owner)
                if holder is not None and holder != operation.doc_id and (ref.sheet, holder) not in deleted:
                    raise ConcurrentModificationError(
                        f"{ref.sheet}.{unique_field} '{value}' already belongs to {holder}"
                    )
                staged[value] = operation.doc_id

    def _apply(self, workbook: Workbook, operation: _Operation) -> None:
        ref = operation.ref
        sheet = workbook[ref.sheet]
        columns = list(COLLECTION_FIELDS[ref.sheet])

        if operation.kind == "create":
            document: Document = {column: None for column in columns}
            document.update(operation.fields)
            document[ID_FIELD] = operation.doc_id
            document[VERSION_FIELD] = 1
            if ref.owner_uid is not None:
                document[OWNER_FIELD] = ref.owner_uid
            sheet.append(serialize_document(columns, document))
            return

        row_idx = locate_row(workbook, ref.sheet, ID_FIELD, operation.doc_id)
        assert row_idx is not None
        if operation.kind == "delete":
            sheet.delete_rows(row_idx)
            return

        positions = header_map(workbook, ref.sheet)
        version_cell = sheet.cell(row=row_idx, column=positions[VERSION_FIELD])
        for name, value in operation.fields.items():
            sheet.cell(row=row_idx, column=positions[name], value=value)
        version_cell.value = int(version_cell.value or 0) + 1


def open_store(settings: ConfigSettings) -> DocumentStore:
    """Open the document store configured in ``settings``."""

    return DocumentStore(settings.data_file)


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigSettings",
    "CollectionRef",
    "Document",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "validate_layout",
    "header_map",
    "iter_documents",
    "locate_row",
    "serialize_document",
    "deserialize_document",
    "collection_path",
    "daily_cash_path",
    "resolve_path",
    "generate_document_id",
    "run_with_retry",
    "WriteBatch",
    "DocumentStore",
    "open_store",
]
