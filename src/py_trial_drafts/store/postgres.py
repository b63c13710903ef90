# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides a draft backend stored in a PostgreSQL key/value table."""

import types

import psycopg
from psycopg import sql

from .base import DraftBackend


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresDraftBackend(DraftBackend):
    """A draft backend for PostgreSQL keeping JSON values in a JSONB column.

    Must be used as a context manager: the connection is opened, and the
    table created if missing, on entry and closed on exit. Every statement
    runs in autocommit mode since each write is a standalone overwrite.
    """

    def __init__(self, conn_string: str, table: str = "trial_drafts") -> None:
        """Initialize the backend with the database connection string.

        Args:
            conn_string: A libpq connection string (e.g., "dbname=test user=postgres").
            table: Table name, optionally schema-qualified ("schema.table").

        """
        self.conn_string = conn_string
        self.table = table
        self.conn: psycopg.Connection | None = None
        self.cursor: psycopg.Cursor | None = None

    def __enter__(self) -> "PostgresDraftBackend":
        """Establish the database connection and make sure the table exists."""
        self.conn = psycopg.connect(self.conn_string, autocommit=True)
        self.cursor = self.conn.cursor()
        self.ensure_table()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if not self.conn:
            return
        try:
            if self.cursor:
                self.cursor.close()
        finally:
            self.conn.close()
            self.conn = None
            self.cursor = None

    @property
    def table_sql(self) -> sql.Composable:
        # Using sql.Identifier for the table name prevents SQL injection.
        table_parts = self.table.split(".")
        if len(table_parts) == 2:
            return sql.SQL(".").join(map(sql.Identifier, table_parts))
        return sql.Identifier(self.table)

    def _require_cursor(self) -> psycopg.Cursor:
        if not self.cursor:
            msg = (
                "Cursor is not available. "
                "The backend must be used as a context manager."
            )
            raise RuntimeError(msg)
        return self.cursor

    def ensure_table(self) -> None:
        cursor = self._require_cursor()
        cursor.execute(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {table} ("
                "key TEXT PRIMARY KEY, "
                "value JSONB NOT NULL, "
                "updated_at TIMESTAMPTZ NOT NULL DEFAULT now())",
            ).format(table=self.table_sql),
        )

    def get(self, key: str) -> str | None:
        cursor = self._require_cursor()
        cursor.execute(
            sql.SQL("SELECT value::text FROM {table} WHERE key = %s").format(
                table=self.table_sql,
            ),
            (key,),
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        cursor = self._require_cursor()
        cursor.execute(
            sql.SQL(
                "INSERT INTO {table} (key, value, updated_at) "
                "VALUES (%s, %s::jsonb, now()) "
                "ON CONFLICT (key) DO UPDATE "
                "SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at",
            ).format(table=self.table_sql),
            (key, value),
        )

    def delete(self, key: str) -> None:
        cursor = self._require_cursor()
        cursor.execute(
            sql.SQL("DELETE FROM {table} WHERE key = %s").format(table=self.table_sql),
            (key,),
        )

    def keys(self, prefix: str = "") -> list[str]:
        cursor = self._require_cursor()
        cursor.execute(
            sql.SQL(
                "SELECT key FROM {table} WHERE key LIKE %s ESCAPE '\\' ORDER BY key",
            ).format(table=self.table_sql),
            (f"{_escape_like(prefix)}%",),
        )
        return [row[0] for row in cursor.fetchall()]
