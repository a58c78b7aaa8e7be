# =============================================================================
# casefile_core/offline/local_database.py
# Local SQLite record store for beneficiaries, questions and answers
# =============================================================================
"""
LocalDatabase - SQLite-backed durable record store.

Features:
- Automatic schema creation
- Predicate queries by entity kind (query(kind, where))
- Unit-of-work transactions: every insert/delete inside ``transaction()``
  commits together or not at all
- Thread-local connections
- DataFrame export (pandas) for review tables
"""

from __future__ import annotations
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

import pandas as pd

from casefile_core.errors import PersistenceError
from casefile_core.models.records import (
    EntityKind,
    RECORD_TYPES,
    AnswerRecord,
)

logger = logging.getLogger(__name__)

Predicate = Dict[str, Any]

# Suffixes accepted in predicate keys, e.g. {"form_version__lt": 3}
COMPARISONS = {
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "ne": "!=",
}


class LocalDatabase:
    """
    Durable record store for the field client.

    Usage:
        db = LocalDatabase(Path("local_data/casefile.db"))
        db.initialize()
        with db.transaction():
            db.delete(db.query(EntityKind.ANSWER, {"beneficiary_id": 4, "question_id": 12}))
            db.insert(EntityKind.ANSWER, {...})
    """

    SCHEMA = {
        EntityKind.BENEFICIARY: """
            CREATE TABLE IF NOT EXISTS beneficiaries (
                id INTEGER PRIMARY KEY,
                name TEXT,
                birth_date TEXT,
                civil_status INTEGER,
                county_id INTEGER,
                county TEXT,
                city_id INTEGER,
                city TEXT,
                gender INTEGER,
                user_id INTEGER,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """,
        EntityKind.BENEFICIARY_FORM: """
            CREATE TABLE IF NOT EXISTS beneficiary_forms (
                beneficiary_id INTEGER NOT NULL
                    REFERENCES beneficiaries(id) ON DELETE CASCADE ON UPDATE CASCADE,
                form_id INTEGER NOT NULL,
                PRIMARY KEY (beneficiary_id, form_id)
            )
        """,
        EntityKind.QUESTION: """
            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question_id INTEGER NOT NULL,
                form_id INTEGER NOT NULL,
                form_version INTEGER NOT NULL,
                section_id INTEGER,
                question_type INTEGER,
                UNIQUE(question_id, form_id, form_version)
            )
        """,
        EntityKind.ANSWER: """
            CREATE TABLE IF NOT EXISTS answers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question_record_id INTEGER NOT NULL
                    REFERENCES questions(id) ON DELETE CASCADE,
                option_id INTEGER NOT NULL,
                question_id INTEGER NOT NULL,
                beneficiary_id INTEGER NOT NULL
                    REFERENCES beneficiaries(id) ON DELETE CASCADE ON UPDATE CASCADE,
                form_id INTEGER NOT NULL,
                form_version INTEGER NOT NULL,
                selected INTEGER DEFAULT 1,
                user_text TEXT,
                is_free_text INTEGER DEFAULT 0,
                synced INTEGER DEFAULT 0,
                fill_date TEXT
            )
        """,
        EntityKind.NOTE: """
            CREATE TABLE IF NOT EXISTS notes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question_record_id INTEGER NOT NULL
                    REFERENCES questions(id) ON DELETE CASCADE,
                beneficiary_id INTEGER NOT NULL
                    REFERENCES beneficiaries(id) ON DELETE CASCADE ON UPDATE CASCADE,
                body TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                synced INTEGER DEFAULT 0
            )
        """,
    }

    INDEXES = (
        "CREATE INDEX IF NOT EXISTS idx_answers_owner ON answers (beneficiary_id, question_id)",
        "CREATE INDEX IF NOT EXISTS idx_answers_synced ON answers (synced)",
        "CREATE INDEX IF NOT EXISTS idx_questions_form ON questions (form_id, form_version)",
    )

    # Columns identifying a row for delete()
    PRIMARY_KEYS = {
        EntityKind.BENEFICIARY_FORM: ("beneficiary_id", "form_id"),
    }

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            connection = sqlite3.connect(
                str(self.db_path),
                timeout=30,
                check_same_thread=False,
                isolation_level=None,  # transactions are opened explicitly
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            self._local.connection = connection
            self._local.depth = 0
        return self._local.connection

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        conn = self._get_connection()
        try:
            for kind, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {kind.value}")
            for statement in self.INDEXES:
                conn.execute(statement)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not create schema: {e}", operation="initialize")

        self._initialized = True
        logger.info(f"Local database initialized at: {self.db_path}")

    # =========================================================================
    # UNIT OF WORK
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        self._get_connection()
        return self._local.depth > 0

    @contextmanager
    def transaction(self):
        """
        Group inserts and deletes into one atomic unit.

        Nested calls join the outermost transaction. The outermost block
        commits on success and rolls back on any exception.
        """
        conn = self._get_connection()
        outermost = self._local.depth == 0
        if outermost:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not open transaction: {e}", operation="begin")
        self._local.depth += 1
        try:
            yield self
        except Exception:
            self._local.depth -= 1
            if outermost:
                conn.rollback()
            raise
        else:
            self._local.depth -= 1
            if outermost:
                self.commit()

    def commit(self) -> None:
        """Commit the pending unit of work on this thread."""
        try:
            self._get_connection().commit()
        except sqlite3.Error as e:
            self._get_connection().rollback()
            raise PersistenceError(f"Commit failed: {e}", operation="commit")

    def _execute(self, sql: str, params: Sequence[Any] = (), entity: Optional[EntityKind] = None,
                 operation: str = "execute") -> sqlite3.Cursor:
        try:
            if self.in_transaction:
                return self._get_connection().execute(sql, params)
            with self.transaction():
                return self._get_connection().execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"{operation} failed: {e}",
                entity=entity.value if entity else None,
                operation=operation,
            )

    # =========================================================================
    # GENERIC RECORD OPERATIONS
    # =========================================================================

    @staticmethod
    def _where_clause(where: Optional[Predicate]) -> Tuple[str, List[Any]]:
        if not where:
            return "", []
        clauses, params = [], []
        for key, value in where.items():
            column, _, op = key.partition("__")
            if op:
                if op not in COMPARISONS:
                    raise ValueError(f"Unsupported predicate operator '{op}' in '{key}'")
                clauses.append(f"{column} {COMPARISONS[op]} ?")
                params.append(value)
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _to_db(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return value

    def query(
        self,
        kind: EntityKind,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """
        Return records of one kind matching an equality predicate.

        List/tuple values match with IN, None matches IS NULL, and keys may
        carry a comparison suffix (column__lt, __lte, __gt, __gte, __ne).
        """
        clause, params = self._where_clause(where)
        sql = f"SELECT * FROM {kind.value}{clause}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit:
            sql += f" LIMIT {int(limit)}"
        try:
            rows = self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Query failed: {e}", entity=kind.value, operation="query")
        record_type = RECORD_TYPES[kind]
        return [record_type.from_row(row) for row in rows]

    def count(self, kind: EntityKind, where: Optional[Predicate] = None) -> int:
        clause, params = self._where_clause(where)
        try:
            row = self._get_connection().execute(
                f"SELECT COUNT(*) AS count FROM {kind.value}{clause}", params
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Count failed: {e}", entity=kind.value, operation="count")
        return row["count"]

    def insert(self, kind: EntityKind, fields: Dict[str, Any]) -> Any:
        """Insert a row and return it as a record."""
        data = {k: self._to_db(v) for k, v in fields.items()}
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)
        cursor = self._execute(
            f"INSERT INTO {kind.value} ({columns}) VALUES ({placeholders})",
            list(data.values()),
            entity=kind,
            operation="insert",
        )
        if kind in self.PRIMARY_KEYS:
            where = {column: fields[column] for column in self.PRIMARY_KEYS[kind]}
        else:
            where = {"id": fields.get("id", cursor.lastrowid)}
        return self.query(kind, where)[0]

    def delete(self, records: Iterable[Any]) -> int:
        """Delete the given records. Dependent rows cascade."""
        deleted = 0
        grouped: Dict[EntityKind, List[Any]] = {}
        for record in records:
            grouped.setdefault(record.KIND, []).append(record)
        if not grouped:
            return 0

        with self.transaction():
            for kind, items in grouped.items():
                if kind in self.PRIMARY_KEYS:
                    columns = self.PRIMARY_KEYS[kind]
                    for item in items:
                        clause = " AND ".join(f"{c} = ?" for c in columns)
                        cursor = self._execute(
                            f"DELETE FROM {kind.value} WHERE {clause}",
                            [getattr(item, c) for c in columns],
                            entity=kind,
                            operation="delete",
                        )
                        deleted += cursor.rowcount
                else:
                    ids = [item.id for item in items]
                    cursor = self._execute(
                        f"DELETE FROM {kind.value} WHERE id IN ({', '.join('?' for _ in ids)})",
                        ids,
                        entity=kind,
                        operation="delete",
                    )
                    deleted += cursor.rowcount
        return deleted

    def update(self, kind: EntityKind, where: Predicate, fields: Dict[str, Any]) -> int:
        """Update matching rows; returns the number of rows changed."""
        data = {k: self._to_db(v) for k, v in fields.items()}
        set_clause = ", ".join(f"{k} = ?" for k in data)
        clause, params = self._where_clause(where)
        cursor = self._execute(
            f"UPDATE {kind.value} SET {set_clause}{clause}",
            list(data.values()) + params,
            entity=kind,
            operation="update",
        )
        return cursor.rowcount

    # =========================================================================
    # ANSWER SYNC STATE
    # =========================================================================

    def get_unsynced_answers(self, limit: Optional[int] = None) -> List[AnswerRecord]:
        return self.query(
            EntityKind.ANSWER,
            {"synced": 0},
            order_by="beneficiary_id, form_id, question_id, id",
            limit=limit,
        )

    def mark_answers_synced(self, answer_ids: Sequence[int]) -> int:
        """
        Flip synced on rows that still exist.

        Rows replaced by an edit while their push was in flight are gone, so
        their replacements stay unsynced.
        """
        if not answer_ids:
            return 0
        return self.update(EntityKind.ANSWER, {"id": list(answer_ids), "synced": 0}, {"synced": True})

    def get_pending_count(self) -> int:
        return self.count(EntityKind.ANSWER, {"synced": 0})

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(self, kind: EntityKind, where: Optional[Predicate] = None) -> pd.DataFrame:
        """Load matching rows of one kind into a DataFrame."""
        clause, params = self._where_clause(where)
        return pd.read_sql_query(
            f"SELECT * FROM {kind.value}{clause}",
            self._get_connection(),
            params=params,
        )

    def close(self) -> None:
        """Close this thread's connection."""
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            self._local.connection = None
            self._local.depth = 0
