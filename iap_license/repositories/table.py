"""Key/value tables with optimistic concurrency and batch transactions.

Rows are addressed by (partition_key, row_key) and versioned by an etag that
changes on every write. Conditional writes (``if_match``) fail when the row
changed since it was read; ``submit_transaction`` applies a batch of writes
all-or-nothing.

Fields an entity type lists in ``unique_fields`` are unique per partition;
a write that would give another row's value to a second row fails.

``Table`` keeps rows in process memory behind a lock and backs tests and
single-process runs. ``SqlTable`` keeps them in a SQL database through
SQLAlchemy, so every worker sharing the database sees the same rows.
Reads return copies, so callers never share mutable rows.
"""

import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, NamedTuple, Optional, Tuple, Type, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine, Row, make_url
from sqlalchemy.exc import IntegrityError

from iap_license.logging_config import get_logger
from iap_license.models.entity import TableEntity
from iap_license.models.settings import StorageSettings

logger = get_logger(__name__)

T = TypeVar("T", bound=TableEntity)


class TableError(Exception):
    """Base exception for table operations."""

    pass


class EntityNotFoundError(TableError):
    """Raised when a row does not exist."""

    pass


class EntityExistsError(TableError):
    """Raised when adding a row whose key is already taken."""

    pass


class UniqueConstraintError(EntityExistsError):
    """Raised when a write would give a unique field a value another row holds."""

    pass


class PreconditionFailedError(TableError):
    """Raised when a conditional write finds a different etag."""

    pass


class TransactionFailedError(TableError):
    """Raised when a batch could not be applied; nothing in the batch was written."""

    def __init__(self, message: str, failed_index: Optional[int] = None):
        super().__init__(message)
        self.failed_index = failed_index


class ActionType(str, Enum):
    ADD = "add"
    UPDATE = "update"  # Conditional on if_match when given
    UPSERT = "upsert"
    DELETE = "delete"  # Conditional on if_match when given


class TransactionAction(NamedTuple):
    action: ActionType
    entity: TableEntity
    if_match: Optional[str] = None


Key = Tuple[str, str]


def _stamp(entity: T) -> T:
    return entity.model_copy(
        deep=True,
        update={"etag": uuid.uuid4().hex, "timestamp": datetime.now(timezone.utc)},
    )


class Table(Generic[T]):
    """In-memory table of ``entity_type`` rows."""

    def __init__(self, name: str, entity_type: Type[T]):
        self._name = name
        self._entity_type = entity_type
        self._rows: Dict[Key, T] = {}
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self._name

    def get_entity_if_exists(self, partition_key: str, row_key: str) -> Optional[T]:
        """Read a row, or None when absent."""
        with self._lock:
            row = self._rows.get((partition_key, row_key))
            return row.model_copy(deep=True) if row is not None else None

    def get_entity(self, partition_key: str, row_key: str) -> T:
        """Read a row.

        Raises:
            EntityNotFoundError: If the row does not exist
        """
        row = self.get_entity_if_exists(partition_key, row_key)
        if row is None:
            raise EntityNotFoundError(f"{self._name}[{partition_key}, {row_key}] not found")
        return row

    def add_entity(self, entity: T) -> T:
        """Insert a new row.

        Raises:
            EntityExistsError: If the key is already taken
            UniqueConstraintError: If a unique field value belongs to another row
        """
        with self._lock:
            return self._apply(self._rows, TransactionAction(ActionType.ADD, entity))

    def upsert_entity(self, entity: T) -> T:
        """Insert or replace a row unconditionally.

        Raises:
            UniqueConstraintError: If a unique field value belongs to another row
        """
        with self._lock:
            return self._apply(self._rows, TransactionAction(ActionType.UPSERT, entity))

    def update_entity(self, entity: T, if_match: Optional[str] = None) -> T:
        """Replace an existing row.

        Args:
            entity: New row contents
            if_match: Etag the stored row must still carry; None for unconditional

        Raises:
            EntityNotFoundError: If the row does not exist
            PreconditionFailedError: If the stored etag differs from if_match
            UniqueConstraintError: If a unique field value belongs to another row
        """
        with self._lock:
            return self._apply(self._rows, TransactionAction(ActionType.UPDATE, entity, if_match))

    def delete_entity(self, partition_key: str, row_key: str, if_match: Optional[str] = None) -> None:
        """Delete a row.

        Raises:
            EntityNotFoundError: If the row does not exist
            PreconditionFailedError: If the stored etag differs from if_match
        """
        with self._lock:
            key = (partition_key, row_key)
            existing = self._rows.get(key)
            if existing is None:
                raise EntityNotFoundError(f"{self._name}[{partition_key}, {row_key}] not found")
            if if_match is not None and existing.etag != if_match:
                raise PreconditionFailedError(
                    f"{self._name}[{partition_key}, {row_key}] changed since it was read"
                )
            del self._rows[key]

    def query(
        self,
        partition_key: Optional[str] = None,
        predicate: Optional[Callable[[T], bool]] = None,
        descending: bool = False,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        """Return rows ordered by row key.

        Args:
            partition_key: Restrict to one partition (None scans every partition)
            predicate: Keep only rows for which this returns True
            descending: Newest-first order for time-shaped row keys
            before: Keep only rows whose row key sorts strictly before this value
            limit: Maximum rows returned
        """
        with self._lock:
            rows = [
                row
                for (pk, rk), row in self._rows.items()
                if (partition_key is None or pk == partition_key)
                and (before is None or rk < before)
                and (predicate is None or predicate(row))
            ]
            rows.sort(key=lambda r: (r.partition_key, r.row_key), reverse=descending)
            if limit is not None:
                rows = rows[:limit]
            return [row.model_copy(deep=True) for row in rows]

    def submit_transaction(self, actions: Iterable[TransactionAction]) -> List[T]:
        """Apply a batch of writes to one partition, all or nothing.

        Raises:
            TransactionFailedError: If any action fails; no action is applied
        """
        actions = self._single_partition(actions)
        if not actions:
            return []

        with self._lock:
            staged = dict(self._rows)
            results = []
            for index, action in enumerate(actions):
                try:
                    results.append(self._apply(staged, action))
                except TableError as e:
                    raise self._rejected(index, action, e) from e
            self._rows = staged
            return results

    def count(self, partition_key: Optional[str] = None) -> int:
        with self._lock:
            if partition_key is None:
                return len(self._rows)
            return sum(1 for pk, _ in self._rows if pk == partition_key)

    def clear(self) -> None:
        """Remove every row."""
        with self._lock:
            self._rows.clear()

    def _check_type(self, entity: TableEntity) -> None:
        if not isinstance(entity, self._entity_type):
            raise TableError(
                f"{self._name} stores {self._entity_type.__name__}, got {type(entity).__name__}"
            )

    def _single_partition(self, actions: Iterable[TransactionAction]) -> List[TransactionAction]:
        actions = list(actions)
        partitions = {a.entity.partition_key for a in actions}
        if len(partitions) > 1:
            raise TransactionFailedError(
                f"Transaction on {self._name} spans partitions {sorted(partitions)}"
            )
        return actions

    def _rejected(self, index: int, action: TransactionAction, error: TableError) -> TransactionFailedError:
        logger.warning(
            "table_transaction_rejected",
            table=self._name,
            failed_index=index,
            action=action.action.value,
            row_key=action.entity.row_key,
            error=str(error),
        )
        return TransactionFailedError(
            f"Transaction on {self._name} failed at action {index}: {error}",
            failed_index=index,
        )

    def _apply(self, rows: Dict[Key, T], action: TransactionAction) -> T:
        entity = action.entity
        self._check_type(entity)
        key = (entity.partition_key, entity.row_key)
        existing = rows.get(key)

        if action.action == ActionType.ADD and existing is not None:
            raise EntityExistsError(f"{self._name}[{key[0]}, {key[1]}] already exists")
        if action.action in (ActionType.UPDATE, ActionType.DELETE):
            if existing is None:
                raise EntityNotFoundError(f"{self._name}[{key[0]}, {key[1]}] not found")
            if action.if_match is not None and existing.etag != action.if_match:
                raise PreconditionFailedError(
                    f"{self._name}[{key[0]}, {key[1]}] changed since it was read"
                )

        if action.action == ActionType.DELETE:
            del rows[key]
            return existing.model_copy(deep=True)

        for field in entity.unique_fields:
            value = getattr(entity, field)
            # Empty values are unset, never unique
            if not value:
                continue
            for (pk, rk), row in rows.items():
                if pk == key[0] and rk != key[1] and getattr(row, field) == value:
                    raise UniqueConstraintError(
                        f"{self._name}[{key[0]}, {key[1]}] {field} already belongs to {rk}"
                    )

        stored = _stamp(entity)
        rows[key] = stored
        return stored.model_copy(deep=True)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, key: Key) -> bool:
        return self.get_entity_if_exists(*key) is not None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, rows={self.count()})"


class SqlTable(Table[T]):
    """Table stored in a SQL database.

    Each row holds the key, the etag, the write time, the entity as JSON and
    one column per unique field under a (partition_key, field) unique
    constraint; empty unique values are stored as NULL. Every call runs its
    own database transaction and nothing is cached between calls.

    Args:
        name: Database table name
        entity_type: Row model
        engine: SQLAlchemy engine shared by every table of the service
        metadata: Schema collection the table is registered in
    """

    def __init__(
        self,
        name: str,
        entity_type: Type[T],
        engine: Engine,
        metadata: Optional[sa.MetaData] = None,
    ):
        self._name = name
        self._entity_type = entity_type
        self._engine = engine
        self._schema = self._define_schema(metadata if metadata is not None else sa.MetaData())
        self._schema.create(engine, checkfirst=True)

    @property
    def schema(self) -> sa.Table:
        return self._schema

    def get_entity_if_exists(self, partition_key: str, row_key: str) -> Optional[T]:
        with self._engine.connect() as conn:
            row = self._select_row(conn, partition_key, row_key)
        return self._to_entity(row) if row is not None else None

    def add_entity(self, entity: T) -> T:
        with self._engine.begin() as conn:
            return self._write(conn, TransactionAction(ActionType.ADD, entity))

    def upsert_entity(self, entity: T) -> T:
        with self._engine.begin() as conn:
            return self._write(conn, TransactionAction(ActionType.UPSERT, entity))

    def update_entity(self, entity: T, if_match: Optional[str] = None) -> T:
        with self._engine.begin() as conn:
            return self._write(conn, TransactionAction(ActionType.UPDATE, entity, if_match))

    def delete_entity(self, partition_key: str, row_key: str, if_match: Optional[str] = None) -> None:
        with self._engine.begin() as conn:
            self._delete(conn, partition_key, row_key, if_match)

    def query(
        self,
        partition_key: Optional[str] = None,
        predicate: Optional[Callable[[T], bool]] = None,
        descending: bool = False,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        columns = self._schema.c
        stmt = sa.select(self._schema)
        if partition_key is not None:
            stmt = stmt.where(columns.partition_key == partition_key)
        if before is not None:
            stmt = stmt.where(columns.row_key < before)
        order = [columns.partition_key, columns.row_key]
        stmt = stmt.order_by(*[c.desc() for c in order] if descending else order)
        # The predicate runs here, so the database can only cut unfiltered results
        if limit is not None and predicate is None:
            stmt = stmt.limit(limit)

        with self._engine.connect() as conn:
            rows = [self._to_entity(row) for row in conn.execute(stmt)]
        if predicate is not None:
            rows = [row for row in rows if predicate(row)]
            if limit is not None:
                rows = rows[:limit]
        return rows

    def submit_transaction(self, actions: Iterable[TransactionAction]) -> List[T]:
        actions = self._single_partition(actions)
        if not actions:
            return []

        results = []
        # Raising inside the block rolls back every write already made
        with self._engine.begin() as conn:
            for index, action in enumerate(actions):
                try:
                    results.append(self._write(conn, action))
                except TableError as e:
                    raise self._rejected(index, action, e) from e
        return results

    def count(self, partition_key: Optional[str] = None) -> int:
        stmt = sa.select(sa.func.count()).select_from(self._schema)
        if partition_key is not None:
            stmt = stmt.where(self._schema.c.partition_key == partition_key)
        with self._engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def clear(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(sa.delete(self._schema))

    def _define_schema(self, metadata: sa.MetaData) -> sa.Table:
        columns: List[Any] = [
            sa.Column("partition_key", sa.String(255), primary_key=True),
            sa.Column("row_key", sa.String(255), primary_key=True),
            sa.Column("etag", sa.String(32), nullable=False),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column("body", sa.Text, nullable=False),
        ]
        for field in self._entity_type.unique_fields:
            columns.append(sa.Column(field, sa.String(512), nullable=True))
            constraint = f"uq_{self._name}_{field}".lower()
            columns.append(sa.UniqueConstraint("partition_key", field, name=constraint))
        return sa.Table(self._name, metadata, *columns)

    def _key_clause(self, partition_key: str, row_key: str) -> Any:
        columns = self._schema.c
        return sa.and_(columns.partition_key == partition_key, columns.row_key == row_key)

    def _select_row(self, conn: Connection, partition_key: str, row_key: str) -> Optional[Row]:
        stmt = sa.select(self._schema).where(self._key_clause(partition_key, row_key))
        return conn.execute(stmt).first()

    def _to_entity(self, row: Row) -> T:
        timestamp = row.timestamp
        # SQLite hands back naive datetimes
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        entity = self._entity_type.model_validate_json(row.body)
        return entity.model_copy(update={"etag": row.etag, "timestamp": timestamp})

    def _values(self, stored: T) -> Dict[str, Any]:
        values = {
            "partition_key": stored.partition_key,
            "row_key": stored.row_key,
            "etag": stored.etag,
            "timestamp": stored.timestamp,
            "body": stored.model_dump_json(exclude={"etag", "timestamp"}),
        }
        for field in stored.unique_fields:
            values[field] = getattr(stored, field) or None
        return values

    def _check_unique(self, conn: Connection, entity: T) -> None:
        columns = self._schema.c
        for field in entity.unique_fields:
            value = getattr(entity, field)
            if not value:
                continue
            stmt = sa.select(columns.row_key).where(
                columns.partition_key == entity.partition_key,
                columns[field] == value,
                columns.row_key != entity.row_key,
            )
            holder = conn.execute(stmt).scalar()
            if holder is not None:
                raise UniqueConstraintError(
                    f"{self._name}[{entity.partition_key}, {entity.row_key}] {field} "
                    f"already belongs to {holder}"
                )

    def _delete(self, conn: Connection, partition_key: str, row_key: str, if_match: Optional[str]) -> T:
        existing = self._select_row(conn, partition_key, row_key)
        if existing is None:
            raise EntityNotFoundError(f"{self._name}[{partition_key}, {row_key}] not found")
        where = self._key_clause(partition_key, row_key)
        if if_match is not None:
            where = sa.and_(where, self._schema.c.etag == if_match)
        result = conn.execute(sa.delete(self._schema).where(where))
        if result.rowcount == 0:
            if if_match is None:
                raise EntityNotFoundError(f"{self._name}[{partition_key}, {row_key}] not found")
            raise PreconditionFailedError(
                f"{self._name}[{partition_key}, {row_key}] changed since it was read"
            )
        return self._to_entity(existing)

    def _write(self, conn: Connection, action: TransactionAction) -> T:
        entity = action.entity
        self._check_type(entity)
        pk, rk = entity.partition_key, entity.row_key
        if action.action == ActionType.DELETE:
            return self._delete(conn, pk, rk, action.if_match)

        self._check_unique(conn, entity)
        stored = _stamp(entity)
        values = self._values(stored)
        where = self._key_clause(pk, rk)

        if action.action == ActionType.ADD:
            if self._select_row(conn, pk, rk) is not None:
                raise EntityExistsError(f"{self._name}[{pk}, {rk}] already exists")
            try:
                conn.execute(sa.insert(self._schema).values(**values))
            except IntegrityError as e:
                # Lost a race for the key or a unique value after the checks above
                raise EntityExistsError(f"{self._name}[{pk}, {rk}] conflicts with an existing row") from e
            return stored

        if action.action == ActionType.UPDATE and action.if_match is not None:
            where = sa.and_(where, self._schema.c.etag == action.if_match)
        try:
            result = conn.execute(sa.update(self._schema).where(where).values(**values))
            if result.rowcount == 0:
                if action.action == ActionType.UPSERT:
                    conn.execute(sa.insert(self._schema).values(**values))
                elif self._select_row(conn, pk, rk) is None:
                    raise EntityNotFoundError(f"{self._name}[{pk}, {rk}] not found")
                else:
                    raise PreconditionFailedError(f"{self._name}[{pk}, {rk}] changed since it was read")
        except IntegrityError as e:
            raise UniqueConstraintError(f"{self._name}[{pk}, {rk}] conflicts with an existing row") from e
        return stored


def create_sql_engine(url: str) -> Engine:
    """Create the engine for a SQLAlchemy database URL.

    SQLite files get their directory created and may be used from any
    request thread.
    """
    parsed = make_url(url)
    connect_args: Dict[str, Any] = {}
    if parsed.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return sa.create_engine(parsed, pool_pre_ping=True, connect_args=connect_args)


class TableService:
    """Creates named table handles for the configured backend.

    One handle per table name; the same handle must be shared by every
    component that reads or writes that table.

    Args:
        settings: Storage backend settings
        prefix: Prepended to every table name
        engine: Engine for the sql backend; created from settings.url when omitted
    """

    def __init__(self, settings: StorageSettings, prefix: str, engine: Optional[Engine] = None):
        self._settings = settings
        self._prefix = prefix
        self._engine = engine
        self._metadata = sa.MetaData()
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()

    @property
    def backend(self) -> str:
        return self._settings.backend

    def get_table(self, name: str, entity_type: Type[T]) -> Table[T]:
        """Get (creating if needed) the table ``<prefix><name>``."""
        full_name = f"{self._prefix}{name}"
        with self._lock:
            table = self._tables.get(full_name)
            if table is None:
                if self._settings.backend == "sql":
                    if self._engine is None:
                        self._engine = create_sql_engine(self._settings.url)
                    table = SqlTable(full_name, entity_type, self._engine, self._metadata)
                else:
                    table = Table(full_name, entity_type)
                self._tables[full_name] = table
                logger.info("table_opened", table=full_name, backend=self._settings.backend)
            return table

    def dispose(self) -> None:
        """Close pooled database connections."""
        if self._engine is not None:
            self._engine.dispose()
