"""Database helpers: psycopg connections and Python migrations."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import psycopg
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from .config import get_settings
from .errors import PersistenceError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


def connect(database_url: str | None = None, *, autocommit: bool = False) -> psycopg.Connection:
    """Open a psycopg connection to ``database_url`` or ``DATABASE_URL``.

    Background jobs pass ``autocommit=True`` so each statement is durable
    as soon as it runs.
    """

    url = database_url or get_settings().database_url
    if not url:
        raise PersistenceError("DATABASE_URL not configured", code="DATABASE_NOT_CONFIGURED")
    try:
        return psycopg.connect(url, autocommit=autocommit)
    except psycopg.Error as exc:
        raise PersistenceError("Could not connect to the database", details=str(exc)) from exc


@contextmanager
def transaction(database_url: str | None = None) -> Iterator[psycopg.Connection]:
    """Yield a connection that commits on success and rolls back on error."""

    conn = connect(database_url)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def is_unique_violation(exc: BaseException) -> bool:
    return isinstance(exc, psycopg.errors.UniqueViolation)


class _PsycopgOperations:
    """Lightweight subset of Alembic's ``op`` helpers for psycopg connections."""

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn
        self._dialect = postgresql.dialect()
        self._preparer = self._dialect.identifier_preparer

    def create_table(self, name: str, *columns: sa.Column, **kwargs: Any) -> None:
        table = sa.Table(name, sa.MetaData(), *columns, **kwargs)
        self._execute(sa.schema.CreateTable(table, if_not_exists=True))

    def create_index(
        self,
        name: str,
        table_name: str,
        columns: Sequence[str],
        *,
        unique: bool = False,
        postgresql_where: Any | None = None,
        **_: Any,
    ) -> None:
        column_sql = ", ".join(self._preparer.quote(col) for col in columns)
        unique_sql = "UNIQUE " if unique else ""
        statement = f"CREATE {unique_sql}INDEX IF NOT EXISTS {self._preparer.quote(name)} "
        statement += f"ON {self._preparer.quote(table_name)} ({column_sql})"
        if postgresql_where is not None:
            compiled = postgresql_where.compile(
                dialect=self._dialect, compile_kwargs={"literal_binds": True}
            )
            statement += f" WHERE {compiled}"
        self.execute(statement)

    def execute(self, statement: str) -> None:
        with self._conn.cursor() as cur:
            cur.execute(statement)

    def _execute(self, ddl: sa.schema.DDLElement) -> None:
        self.execute(str(ddl.compile(dialect=self._dialect)))


def run_migrations(conn: psycopg.Connection, migrations_dir: Path | None = None) -> list[str]:
    """Apply pending Alembic-style migrations in filename order.

    Applied ids are recorded in ``app_python_migrations`` so the call is safe
    to repeat. Returns the ids applied by this call.
    """

    migrations_dir = migrations_dir or MIGRATIONS_DIR
    migration_files = sorted(
        path for path in migrations_dir.glob("[0-9][0-9][0-9]_*.py") if path.is_file()
    )
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS app_python_migrations (
                id TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        cur.execute("SELECT id FROM app_python_migrations")
        applied = {row[0] for row in cur.fetchall()}
    conn.commit()

    newly_applied: list[str] = []
    for path in migration_files:
        migration_id = path.stem
        if migration_id in applied:
            continue
        module = importlib.import_module(f"wa_inbox.migrations.{migration_id}")
        upgrade = getattr(module, "upgrade", None)
        if upgrade is None:
            continue

        original_op = getattr(module, "op", None)
        module.op = _PsycopgOperations(conn)
        try:
            upgrade()
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO app_python_migrations (id) VALUES (%s) "
                    "ON CONFLICT (id) DO NOTHING",
                    (migration_id,),
                )
        except Exception:
            conn.rollback()
            logger.exception("Migration %s failed", migration_id)
            raise
        else:
            conn.commit()
            newly_applied.append(migration_id)
            logger.info("Applied migration %s", migration_id)
        finally:
            if original_op is not None:
                module.op = original_op
    return newly_applied
