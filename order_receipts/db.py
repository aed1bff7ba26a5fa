import contextlib
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.errors
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executemany(self, sql: str, seq_of_params: Iterable[Iterable]):
        if self.backend == "postgres":
            cursor = self._conn.cursor()
            cursor.executemany(_convert_qmark_to_pg(sql), [list(params) for params in seq_of_params])
            return cursor
        return self._conn.executemany(sql, [tuple(params) for params in seq_of_params])

    @contextlib.contextmanager
    def transaction(self):
        """Run the enclosed statements as one unit: commit on exit, roll back on any error."""
        if self.backend == "postgres":
            self._conn.autocommit = False
        else:
            # Write lock held from the first read to commit.
            self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            if self.backend == "postgres":
                self._conn.autocommit = True

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        message = str(exc).upper()
        return "UNIQUE" in message or "PRIMARY KEY" in message
    if psycopg2 is not None and isinstance(exc, psycopg2.errors.UniqueViolation):
        return True
    return False


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


def _init_db_sqlite(db: Database):
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            order_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            applicant_key TEXT NOT NULL,
            name TEXT,
            address TEXT,
            item_name TEXT NOT NULL,
            price TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'N' CHECK (status IN ('N', 'Y')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (applicant_key, order_id)
        )
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_orders_applicant_status
        ON orders (applicant_key, status)
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS shipments (
            shipment_id TEXT NOT NULL,
            order_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            applicant_key TEXT NOT NULL,
            address TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (applicant_key, shipment_id)
        )
        """
    )
    db.commit()


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            order_id VARCHAR(4) NOT NULL,
            user_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            applicant_key TEXT NOT NULL,
            name TEXT,
            address TEXT,
            item_name TEXT NOT NULL,
            price TEXT NOT NULL,
            status CHAR(1) NOT NULL DEFAULT 'N' CHECK (status IN ('N', 'Y')),
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (applicant_key, order_id)
        )
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_orders_applicant_status
        ON orders (applicant_key, status)
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS shipments (
            shipment_id VARCHAR(4) NOT NULL,
            order_id VARCHAR(4) NOT NULL,
            item_id TEXT NOT NULL,
            applicant_key TEXT NOT NULL,
            address TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (applicant_key, shipment_id)
        )
        """
    )
