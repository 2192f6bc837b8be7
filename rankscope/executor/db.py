"""Database layer for the SQL job store.

Supports two backends:
- PostgreSQL (production, set RANKSCOPE_DATABASE_URL=postgres://...)
- SQLite (local development, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite).
No ORM: three tables, hand-written statements.

Thread-safety: Postgres uses a ThreadedConnectionPool for connection reuse.
SQLite uses per-call connections with check_same_thread=False.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


def json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


class Database:
    """Connection factory and statement runner for one database URL."""

    def __init__(self, url: str = "", sqlite_path: Optional[Path] = None):
        self.url = url
        self.sqlite_path = Path(sqlite_path) if sqlite_path else Path("rankscope.db")
        self._pg_pool = None
        self._initialized = False

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgres")

    @property
    def backend_name(self) -> str:
        return "PostgreSQL" if self.is_postgres else f"SQLite ({self.sqlite_path})"

    def _get_pg_pool(self):
        """Get or create the Postgres connection pool (lazy)."""
        if self._pg_pool is None:
            import psycopg2.pool
            self._pg_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=5,
                dsn=self.url,
            )
            logger.info("PostgreSQL connection pool initialized (1-5 connections)")
        return self._pg_pool

    @contextmanager
    def connection(self):
        """Get a database connection (Postgres or SQLite).

        Usage:
            with db.connection() as conn:
                cursor = conn.cursor()
                cursor.execute(...)
                conn.commit()
        """
        if self.is_postgres:
            pool = self._get_pg_pool()
            conn = pool.getconn()
            try:
                yield conn
            finally:
                pool.putconn(conn)
        else:
            conn = sqlite3.connect(str(self.sqlite_path), check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            try:
                yield conn
            finally:
                conn.close()

    def _adapt(self, sql: str) -> str:
        # Statements are written with %s; SQLite wants ?
        return sql if self.is_postgres else sql.replace("%s", "?")

    def _rows(self, cursor, rows) -> list[dict]:
        if self.is_postgres:
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row)) for row in rows]
        return [dict(row) for row in rows]

    def execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        """Execute a single SQL statement.

        Args:
            sql: SQL statement (use %s placeholders for both backends)
            params: Parameters tuple
            fetch: "none", "one", "all"

        Returns:
            None for "none", dict for "one", list[dict] for "all"
        """
        with self.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(self._adapt(sql), params)

            result = None
            if fetch == "one":
                row = cursor.fetchone()
                if row is not None:
                    result = self._rows(cursor, [row])[0]
            elif fetch == "all":
                result = self._rows(cursor, cursor.fetchall())

            conn.commit()
            return result

    def execute_batch(self, statements: Iterable[tuple[str, tuple]]) -> None:
        """Run several statements in one transaction (all or nothing)."""
        with self.connection() as conn:
            cursor = conn.cursor()
            try:
                for sql, params in statements:
                    cursor.execute(self._adapt(sql), params)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def init(self) -> None:
        """Create tables if they don't exist."""
        if self._initialized:
            return
        if self.is_postgres:
            self._init_postgres()
        else:
            self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_sqlite()
        self._initialized = True
        logger.info(f"Job store database initialized: {self.backend_name}")

    def _init_postgres(self) -> None:
        ddl = """
        CREATE TABLE IF NOT EXISTS analysis_jobs (
            job_id VARCHAR(100) PRIMARY KEY,
            target_url TEXT NOT NULL,
            domain VARCHAR(255) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            overall_progress INTEGER NOT NULL DEFAULT 0,
            current_phase VARCHAR(50),
            phases JSONB DEFAULT '{}',
            options JSONB DEFAULT '{}',
            error TEXT,
            final_statistics JSONB,
            summary JSONB,
            created_at TIMESTAMP DEFAULT NOW(),
            updated_at TIMESTAMP,
            started_at TIMESTAMP,
            completed_at TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS job_logs (
            id SERIAL PRIMARY KEY,
            job_id VARCHAR(100) NOT NULL REFERENCES analysis_jobs(job_id) ON DELETE CASCADE,
            timestamp TIMESTAMP NOT NULL,
            level VARCHAR(20) NOT NULL,
            message TEXT NOT NULL,
            phase VARCHAR(50),
            detail JSONB
        );

        CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, id);

        CREATE TABLE IF NOT EXISTS keyword_results (
            job_id VARCHAR(100) NOT NULL REFERENCES analysis_jobs(job_id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            keyword TEXT NOT NULL,
            data JSONB NOT NULL,
            PRIMARY KEY (job_id, position)
        );
        """
        with self.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(ddl)
            conn.commit()

    def _init_sqlite(self) -> None:
        ddl = """
        CREATE TABLE IF NOT EXISTS analysis_jobs (
            job_id TEXT PRIMARY KEY,
            target_url TEXT NOT NULL,
            domain TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            overall_progress INTEGER NOT NULL DEFAULT 0,
            current_phase TEXT,
            phases TEXT DEFAULT '{}',
            options TEXT DEFAULT '{}',
            error TEXT,
            final_statistics TEXT,
            summary TEXT,
            created_at TEXT,
            updated_at TEXT,
            started_at TEXT,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS job_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL REFERENCES analysis_jobs(job_id) ON DELETE CASCADE,
            timestamp TEXT NOT NULL,
            level TEXT NOT NULL,
            message TEXT NOT NULL,
            phase TEXT,
            detail TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, id);

        CREATE TABLE IF NOT EXISTS keyword_results (
            job_id TEXT NOT NULL REFERENCES analysis_jobs(job_id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            keyword TEXT NOT NULL,
            data TEXT NOT NULL,
            PRIMARY KEY (job_id, position)
        );
        """
        with self.connection() as conn:
            cursor = conn.cursor()
            cursor.executescript(ddl)
            conn.commit()
