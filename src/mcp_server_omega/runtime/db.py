"""
Omega Storage Abstraction
=========================
Opaque row store behind the gateway. Three primitives only:

    select(table, columns, filters, limit, ...) -> rows
    insert(table, row) -> id
    update(table, id, patch) -> row

Backends:
    - SQLiteBackend: local-first default (and the test backend)
    - SupabaseBackend: production, anon key + optional viewer JWT (RLS)
    - PostgresBackend: direct connection for self-hosted deployments

Backends do not apply access policy; the gateway only ever calls them with
evaluator-approved tables and columns. Driver failures are re-raised as
StorageUnavailableError with the driver exception chained.
"""

import json
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .common import utc_now
from .errors import StorageUnavailableError
from .schema import REGISTRY, OmegaTable, SchemaRegistry

logger = logging.getLogger("omega.db")

Row = Dict[str, Any]


class StorageBackend(ABC):
    """Abstract interface for the Omega row store."""

    registry: SchemaRegistry = REGISTRY

    @abstractmethod
    def select(self, table: str, columns: Sequence[str], filters: Optional[Dict[str, Any]] = None,
               limit: Optional[int] = None, order_by: Optional[str] = None, ascending: bool = False,
               gte: Optional[Dict[str, Any]] = None) -> List[Row]:
        """Return rows of `table` projected to `columns`.

        filters are equality matches, gte are inclusive lower bounds.
        """
        pass

    @abstractmethod
    def insert(self, table: str, row: Row) -> str:
        """Insert one row and return its primary key."""
        pass

    @abstractmethod
    def update(self, table: str, row_id: Any, patch: Row, id_column: str = "id") -> Optional[Row]:
        """Patch one row. Returns the full updated row, or None if no row matched."""
        pass

    def _check_identifiers(self, table: str, names: Sequence[str]) -> None:
        desc = self.registry.get_descriptor(table)
        unknown = [n for n in names if n not in desc.all_columns]
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {', '.join(unknown)}")

    def _prepare_insert(self, table: str, row: Row) -> Row:
        desc = self.registry.get_descriptor(table)
        row = dict(row)
        if desc.primary_key == "id" and not row.get("id"):
            row["id"] = str(uuid.uuid4())
        if "created_at" in desc.all_columns and not row.get("created_at"):
            row["created_at"] = utc_now()
        self._check_identifiers(table, list(row))
        return row


def _quoted(columns: Sequence[str]) -> str:
    return ", ".join(f'"{c}"' for c in columns)


def _to_sql_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class SQLiteBackend(StorageBackend):
    """Local SQLite row store. Creates every registered table on first use."""

    def __init__(self, db_path: Path, registry: SchemaRegistry = REGISTRY):
        self.registry = registry
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self):
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=10,  # concurrent tool calls share the file
            isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._get_conn() as conn:
            cursor = conn.cursor()
            for desc in self.registry:
                if desc.is_view:
                    continue
                cols = []
                for col in desc.all_columns:
                    cols.append(f'"{col}" PRIMARY KEY' if col == desc.primary_key else f'"{col}"')
                cursor.execute(f'CREATE TABLE IF NOT EXISTS "{desc.name.value}" ({", ".join(cols)})')
                if "user_id" in desc.all_columns:
                    cursor.execute(
                        f'CREATE INDEX IF NOT EXISTS "idx_{desc.name.value}_user" '
                        f'ON "{desc.name.value}"(user_id)'
                    )

            # Mirrors the Postgres view: outcome-resolved predictions bucketed by confidence.
            cursor.execute(f'''
                CREATE VIEW IF NOT EXISTS "{OmegaTable.CONFIDENCE_CALIBRATION.value}" AS
                SELECT
                    user_id,
                    node,
                    prediction_type,
                    CASE
                        WHEN predicted_confidence < 0.5 THEN 'low'
                        WHEN predicted_confidence < 0.7 THEN 'medium'
                        WHEN predicted_confidence < 0.85 THEN 'high'
                        ELSE 'very_high'
                    END AS confidence_bucket,
                    COUNT(*) AS total_predictions,
                    SUM(CASE WHEN outcome = 'success' THEN 1 ELSE 0 END) AS successes,
                    SUM(CASE WHEN outcome = 'partial' THEN 1 ELSE 0 END) AS partials,
                    SUM(CASE WHEN outcome = 'failure' THEN 1 ELSE 0 END) AS failures,
                    SUM(CASE WHEN outcome = 'modified' THEN 1 ELSE 0 END) AS modified,
                    SUM(CASE WHEN outcome = 'rejected' THEN 1 ELSE 0 END) AS rejected,
                    AVG(predicted_confidence) AS avg_predicted,
                    AVG(CASE outcome WHEN 'success' THEN 1.0 WHEN 'partial' THEN 0.5 ELSE 0.0 END)
                        AS actual_success_rate,
                    AVG(ABS(confidence_error)) AS avg_calibration_error,
                    AVG(predicted_confidence)
                        - AVG(CASE outcome WHEN 'success' THEN 1.0 WHEN 'partial' THEN 0.5 ELSE 0.0 END)
                        AS calibration_gap
                FROM "{OmegaTable.CONFIDENCE_EVENTS.value}"
                WHERE outcome IS NOT NULL
                GROUP BY user_id, node, prediction_type, confidence_bucket
            ''')

    def select(self, table, columns, filters=None, limit=None, order_by=None, ascending=False, gte=None):
        filters = filters or {}
        gte = gte or {}
        self._check_identifiers(table, list(columns) + list(filters) + list(gte) + ([order_by] if order_by else []))

        query = f'SELECT {_quoted(columns)} FROM "{table}" WHERE 1=1'
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                query += f' AND "{key}" IS NULL'
            else:
                query += f' AND "{key}" = ?'
                params.append(_to_sql_value(value))
        for key, value in gte.items():
            query += f' AND "{key}" >= ?'
            params.append(_to_sql_value(value))
        if order_by:
            query += f' ORDER BY "{order_by}" {"ASC" if ascending else "DESC"}'
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        try:
            with self._get_conn() as conn:
                cursor = conn.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"SQLite select on {table} failed: {e}") from e

    def insert(self, table, row):
        row = self._prepare_insert(table, row)
        cols = list(row)
        query = (
            f'INSERT INTO "{table}" ({_quoted(cols)}) '
            f'VALUES ({", ".join("?" for _ in cols)})'
        )
        try:
            with self._get_conn() as conn:
                conn.execute(query, [_to_sql_value(row[c]) for c in cols])
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"SQLite insert into {table} failed: {e}") from e
        return row[self.registry.get_descriptor(table).primary_key]

    def update(self, table, row_id, patch, id_column="id"):
        if not patch:
            return None
        self._check_identifiers(table, list(patch) + [id_column])
        assignments = ", ".join(f'"{k}" = ?' for k in patch)
        params = [_to_sql_value(v) for v in patch.values()] + [row_id]
        all_columns = self.registry.get_descriptor(table).all_columns

        try:
            with self._get_conn() as conn:
                cursor = conn.execute(f'UPDATE "{table}" SET {assignments} WHERE "{id_column}" = ?', params)
                if cursor.rowcount == 0:
                    return None
                cursor = conn.execute(
                    f'SELECT {_quoted(all_columns)} '
                    f'FROM "{table}" WHERE "{id_column}" = ?',
                    (row_id,)
                )
                row = cursor.fetchone()
                return dict(row) if row else None
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"SQLite update on {table} failed: {e}") from e


class SupabaseBackend(StorageBackend):
    """Supabase (PostgREST) row store using the anon key.

    With a viewer JWT the requests run under that user's RLS policies;
    without one RLS may legitimately return empty results.
    """

    def __init__(self, url: str, key: str, viewer_jwt: Optional[str] = None,
                 registry: SchemaRegistry = REGISTRY):
        from supabase import create_client

        self.registry = registry
        self.client = create_client(url, key)
        if viewer_jwt:
            self.client.postgrest.auth(viewer_jwt)
        else:
            logger.warning("MCP_VIEWER_JWT not set; RLS may return empty results")

    def select(self, table, columns, filters=None, limit=None, order_by=None, ascending=False, gte=None):
        self._check_identifiers(table, list(columns))
        try:
            query = self.client.table(table).select(",".join(columns))
            for key, value in (filters or {}).items():
                query = query.is_(key, "null") if value is None else query.eq(key, value)
            for key, value in (gte or {}).items():
                query = query.gte(key, value)
            if order_by:
                query = query.order(order_by, desc=not ascending)
            if limit is not None:
                query = query.limit(limit)
            response = query.execute()
        except Exception as e:
            raise StorageUnavailableError(f"Supabase select on {table} failed: {e}") from e
        return list(response.data or [])

    def insert(self, table, row):
        row = self._prepare_insert(table, row)
        try:
            response = self.client.table(table).insert(row).execute()
        except Exception as e:
            raise StorageUnavailableError(f"Supabase insert into {table} failed: {e}") from e
        if not response.data:
            raise StorageUnavailableError(f"Supabase insert into {table} returned no row")
        return response.data[0][self.registry.get_descriptor(table).primary_key]

    def update(self, table, row_id, patch, id_column="id"):
        if not patch:
            return None
        self._check_identifiers(table, list(patch) + [id_column])
        try:
            response = self.client.table(table).update(patch).eq(id_column, row_id).execute()
        except Exception as e:
            raise StorageUnavailableError(f"Supabase update on {table} failed: {e}") from e
        return response.data[0] if response.data else None


class PostgresBackend(StorageBackend):
    """Direct Postgres row store. Tables are owned by the database migrations."""

    def __init__(self, connection_url: str, registry: SchemaRegistry = REGISTRY):
        self.registry = registry
        self.connection_url = connection_url
        try:
            import psycopg2
            import psycopg2.extras
            from psycopg2 import sql
        except ImportError:
            raise ImportError(
                "PostgresBackend requires psycopg2-binary to be installed. "
                "Run: pip install psycopg2-binary"
            )
        self.psycopg2 = psycopg2
        self.extras = psycopg2.extras
        self.sql = sql

    def _get_conn(self):
        return self.psycopg2.connect(self.connection_url, cursor_factory=self.extras.RealDictCursor)

    def _value(self, value):
        if isinstance(value, (dict, list)):
            return self.extras.Json(value)
        return value

    def _run(self, action: str, table: str, query, params, fetch: str):
        try:
            with self._get_conn() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    if fetch == "all":
                        result = [dict(r) for r in cursor.fetchall()]
                    else:
                        row = cursor.fetchone()
                        result = dict(row) if row else None
                conn.commit()
                return result
        except self.psycopg2.Error as e:
            raise StorageUnavailableError(f"Postgres {action} on {table} failed: {e}") from e

    def select(self, table, columns, filters=None, limit=None, order_by=None, ascending=False, gte=None):
        filters = filters or {}
        gte = gte or {}
        self._check_identifiers(table, list(columns) + list(filters) + list(gte) + ([order_by] if order_by else []))
        sql = self.sql

        clauses = [sql.SQL("TRUE")]
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                clauses.append(sql.SQL("{} IS NULL").format(sql.Identifier(key)))
            else:
                clauses.append(sql.SQL("{} = %s").format(sql.Identifier(key)))
                params.append(self._value(value))
        for key, value in gte.items():
            clauses.append(sql.SQL("{} >= %s").format(sql.Identifier(key)))
            params.append(self._value(value))

        query = sql.SQL("SELECT {} FROM {} WHERE {}").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.Identifier(table),
            sql.SQL(" AND ").join(clauses),
        )
        if order_by:
            query += sql.SQL(" ORDER BY {} " + ("ASC" if ascending else "DESC")).format(sql.Identifier(order_by))
        if limit is not None:
            query += sql.SQL(" LIMIT %s")
            params.append(limit)
        return self._run("select", table, query, params, fetch="all")

    def insert(self, table, row):
        row = self._prepare_insert(table, row)
        sql = self.sql
        pk = self.registry.get_descriptor(table).primary_key
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in row),
            sql.SQL(", ").join(sql.Placeholder() for _ in row),
            sql.Identifier(pk),
        )
        result = self._run("insert", table, query, [self._value(v) for v in row.values()], fetch="one")
        return result[pk]

    def update(self, table, row_id, patch, id_column="id"):
        if not patch:
            return None
        self._check_identifiers(table, list(patch) + [id_column])
        sql = self.sql
        query = sql.SQL("UPDATE {} SET {} WHERE {} = %s RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(k)) for k in patch),
            sql.Identifier(id_column),
        )
        params = [self._value(v) for v in patch.values()] + [row_id]
        return self._run("update", table, query, params, fetch="one")


def get_storage_backend(settings) -> StorageBackend:
    """Factory for the configured storage backend."""
    if settings.storage_backend == "postgres":
        if settings.postgres_url:
            logger.info("Using PostgresBackend")
            return PostgresBackend(settings.postgres_url)
        logger.warning("Postgres backend requested but no URL found. Falling back to SQLite.")
    elif settings.storage_backend == "supabase":
        if settings.supabase_url and settings.supabase_key:
            logger.info("Using SupabaseBackend")
            return SupabaseBackend(settings.supabase_url, settings.supabase_key, settings.viewer_jwt)
        logger.warning("Supabase backend requested but URL/key missing. Falling back to SQLite.")

    return SQLiteBackend(settings.resolved_sqlite_path)
