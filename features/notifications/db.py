"""
Postgres table for observer connections.

One row per live connection; ``project_id`` is NULL until the connection
subscribes. Rows past ``expires_at`` are ignored by reads and removed by
``purge_expired``.
"""

from __future__ import annotations

import logging

from features.projects.db import get_cursor

log = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS connections (
    connection_id   TEXT PRIMARY KEY,
    project_id      TEXT,
    user_id         TEXT,
    connected_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at      TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_connections_project_id ON connections(project_id);
"""


def init_db():
    with get_cursor() as cur:
        cur.execute(SCHEMA_SQL)
    log.info("Connections schema initialized")


def upsert_connection(connection_id: str, project_id: str | None, user_id: str | None,
                      ttl_sec: int) -> None:
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO connections (connection_id, project_id, user_id, connected_at, expires_at)
            VALUES (%(connection_id)s, %(project_id)s, %(user_id)s, now(),
                    now() + make_interval(secs => %(ttl)s))
            ON CONFLICT (connection_id) DO UPDATE SET
                project_id = EXCLUDED.project_id,
                user_id = COALESCE(EXCLUDED.user_id, connections.user_id),
                expires_at = EXCLUDED.expires_at
        """, {
            "connection_id": connection_id,
            "project_id": project_id,
            "user_id": user_id,
            "ttl": ttl_sec,
        })


def delete_connection(connection_id: str) -> None:
    with get_cursor() as cur:
        cur.execute("DELETE FROM connections WHERE connection_id = %s", (connection_id,))


def get_project_connections(project_id: str) -> list[str]:
    with get_cursor() as cur:
        cur.execute(
            "SELECT connection_id FROM connections "
            "WHERE project_id = %s AND expires_at > now()",
            (project_id,),
        )
        return [row["connection_id"] for row in cur.fetchall()]


def purge_expired() -> int:
    with get_cursor() as cur:
        cur.execute("DELETE FROM connections WHERE expires_at <= now()")
        return cur.rowcount
