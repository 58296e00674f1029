from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS resources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    provider TEXT NOT NULL DEFAULT 'file',
    protocol TEXT NOT NULL,
    type TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    config TEXT NOT NULL DEFAULT '{}',
    source TEXT NOT NULL DEFAULT 'database',
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS entrypoints (
    name TEXT PRIMARY KEY,
    address TEXT NOT NULL
);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_resources_schema(conn)
        seed_default_entrypoints(conn)


def migrate_resources_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_resources_identity
        ON resources(protocol, type, name, provider)
        """
    )


def seed_default_entrypoints(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT name FROM entrypoints LIMIT 1").fetchone()
    if row is None:
        conn.executemany(
            "INSERT INTO entrypoints(name, address) VALUES (?, ?)",
            [("web", ":80"), ("websecure", ":443")],
        )


def json_dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _resource_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "provider": row["provider"],
        "protocol": row["protocol"],
        "type": row["type"],
        "enabled": bool(row["enabled"]),
        "config": json.loads(row["config"]),
        "source": row["source"],
    }


def save_resource(
    conn: sqlite3.Connection,
    protocol: str,
    resource_type: str,
    name: str,
    config: dict[str, Any],
    provider: str = "file",
    enabled: bool = True,
    source: str = "database",
) -> int:
    existing = conn.execute(
        "SELECT id FROM resources WHERE protocol = ? AND type = ? AND name = ? AND provider = ?",
        (protocol, resource_type, name, provider),
    ).fetchone()
    if existing is not None:
        conn.execute(
            """
            UPDATE resources
            SET config = ?, enabled = ?, source = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (json_dumps(config), int(enabled), source, existing["id"]),
        )
        return int(existing["id"])
    cursor = conn.execute(
        """
        INSERT INTO resources(name, provider, protocol, type, enabled, config, source)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (name, provider, protocol, resource_type, int(enabled), json_dumps(config), source),
    )
    return int(cursor.lastrowid)


def load_resource(conn: sqlite3.Connection, protocol: str, resource_type: str, name: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT id, name, provider, protocol, type, enabled, config, source
        FROM resources
        WHERE protocol = ? AND type = ? AND name = ?
        ORDER BY id
        LIMIT 1
        """,
        (protocol, resource_type, name),
    ).fetchone()
    return _resource_row(row) if row is not None else None


class SqliteResourceResolver:
    """Resource and entry point lookups backed by the console database."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path

    def list_resources(self, protocol: str, resource_type: str, include_external: bool = True) -> list[dict[str, Any]]:
        query = "SELECT id, name, provider, protocol, type, enabled, config, source FROM resources WHERE protocol = ? AND type = ?"
        params: list[Any] = [protocol, resource_type]
        if not include_external:
            query += " AND source = 'database'"
        conn = connect(self.db_path)
        try:
            rows = conn.execute(query + " ORDER BY name, provider", params).fetchall()
        finally:
            conn.close()
        return [_resource_row(row) for row in rows]

    def list_entry_points(self) -> list[dict[str, Any]]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute("SELECT name, address FROM entrypoints ORDER BY name").fetchall()
        finally:
            conn.close()
        return [{"name": row["name"], "address": row["address"], "source": "static"} for row in rows]
