"""
Postgres backing store for projects, tasks and artifacts.

Tables:
  projects   — one row per project, indexed by owning user
  tasks      — one row per (project_id, task_id), FK to projects
  artifacts  — one row per (project_id, artifact_id), FK to projects

Status changes are written with ``UPDATE ... WHERE status = <expected>`` so
that two racing writers cannot both apply the same transition.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras
from psycopg2 import sql

import config

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor on the shared connection."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    project_id      TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    project_name    TEXT NOT NULL,
    request_prompt  TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'PENDING',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS tasks (
    project_id          TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
    task_id             TEXT NOT NULL,
    assigned_agent      TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'TODO',
    dependencies        JSONB NOT NULL DEFAULT '[]'::jsonb,
    position            INTEGER NOT NULL DEFAULT 0,
    description         TEXT DEFAULT '',
    progress            INTEGER,
    started_at          TIMESTAMPTZ,
    completed_at        TIMESTAMPTZ,
    error_message       TEXT,
    output_artifact_id  TEXT,
    metadata            JSONB NOT NULL DEFAULT '{}'::jsonb,
    PRIMARY KEY (project_id, task_id)
);

CREATE TABLE IF NOT EXISTS artifacts (
    project_id      TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
    artifact_id     TEXT NOT NULL,
    artifact_type   TEXT NOT NULL,
    location        TEXT NOT NULL,
    version         TEXT NOT NULL DEFAULT '1.0',
    title           TEXT,
    description     TEXT,
    metadata        JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (project_id, artifact_id)
);

CREATE INDEX IF NOT EXISTS idx_projects_user_id ON projects(user_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(project_id, status);
"""

# Columns a caller may change after insert; identity columns are excluded
PROJECT_MUTABLE = ("project_name", "request_prompt", "status", "updated_at")
TASK_MUTABLE = (
    "status", "dependencies", "description", "progress", "started_at",
    "completed_at", "error_message", "output_artifact_id", "metadata",
)
ARTIFACT_MUTABLE = ("artifact_type", "location", "version", "title", "description", "metadata")
_JSON_COLUMNS = {"dependencies", "metadata"}


def init_db():
    """Create tables if they don't exist."""
    try:
        with get_cursor() as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Database schema initialized")
    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


def _set_clause(changes: dict, allowed: tuple[str, ...]) -> tuple[sql.Composed, dict]:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"Columns not updatable: {', '.join(sorted(unknown))}")
    params = {
        f"v_{col}": json.dumps(val) if col in _JSON_COLUMNS else val
        for col, val in changes.items()
    }
    clause = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(col), sql.Placeholder(f"v_{col}"))
        for col in changes
    )
    return clause, params


# ── Project CRUD ──────────────────────────────────────────────────────

def insert_project(project: dict) -> None:
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO projects (
                project_id, user_id, project_name, request_prompt,
                status, created_at, updated_at
            ) VALUES (
                %(project_id)s, %(user_id)s, %(project_name)s, %(request_prompt)s,
                %(status)s, %(created_at)s, %(updated_at)s
            )
        """, project)


def get_project(project_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM projects WHERE project_id = %s", (project_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_projects_for_user(user_id: str) -> list[dict]:
    """List a user's projects, newest first."""
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM projects WHERE user_id = %s ORDER BY created_at DESC",
            (user_id,),
        )
        return [dict(row) for row in cur.fetchall()]


def update_project(project_id: str, changes: dict, expected_status: str | None = None) -> dict | None:
    """Apply ``changes``; returns the new row, or None when no row matched."""
    clause, params = _set_clause(changes, PROJECT_MUTABLE)
    query = sql.SQL("UPDATE projects SET {} WHERE project_id = %(project_id)s").format(clause)
    params["project_id"] = project_id
    if expected_status is not None:
        query += sql.SQL(" AND status = %(expected_status)s")
        params["expected_status"] = expected_status
    query += sql.SQL(" RETURNING *")
    with get_cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        return dict(row) if row else None


def delete_project(project_id: str) -> bool:
    """Delete a project; tasks and artifacts go with it (ON DELETE CASCADE)."""
    with get_cursor() as cur:
        cur.execute("DELETE FROM projects WHERE project_id = %s", (project_id,))
        return cur.rowcount > 0


# ── Task CRUD ─────────────────────────────────────────────────────────

def insert_task_if_absent(task: dict) -> bool:
    """Insert a task unless one with the same key exists. True when inserted."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO tasks (
                project_id, task_id, assigned_agent, status, dependencies,
                position, description, progress, started_at, completed_at,
                error_message, output_artifact_id, metadata
            ) VALUES (
                %(project_id)s, %(task_id)s, %(assigned_agent)s, %(status)s, %(dependencies)s,
                %(position)s, %(description)s, %(progress)s, %(started_at)s, %(completed_at)s,
                %(error_message)s, %(output_artifact_id)s, %(metadata)s
            )
            ON CONFLICT (project_id, task_id) DO NOTHING
        """, {
            **task,
            "dependencies": json.dumps(task.get("dependencies", [])),
            "metadata": json.dumps(task.get("metadata", {})),
        })
        return cur.rowcount > 0


def get_task(project_id: str, task_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM tasks WHERE project_id = %s AND task_id = %s",
            (project_id, task_id),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def list_tasks(project_id: str) -> list[dict]:
    """Fetch all tasks of a project in pipeline order."""
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM tasks WHERE project_id = %s ORDER BY position ASC, task_id ASC",
            (project_id,),
        )
        return [dict(row) for row in cur.fetchall()]


def update_task(project_id: str, task_id: str, changes: dict,
                expected_status: str | None = None) -> dict | None:
    """Apply ``changes``; returns the new row, or None when no row matched."""
    clause, params = _set_clause(changes, TASK_MUTABLE)
    query = sql.SQL(
        "UPDATE tasks SET {} WHERE project_id = %(project_id)s AND task_id = %(task_id)s"
    ).format(clause)
    params.update(project_id=project_id, task_id=task_id)
    if expected_status is not None:
        query += sql.SQL(" AND status = %(expected_status)s")
        params["expected_status"] = expected_status
    query += sql.SQL(" RETURNING *")
    with get_cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        return dict(row) if row else None


# ── Artifact CRUD ─────────────────────────────────────────────────────

def insert_artifact(artifact: dict) -> None:
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO artifacts (
                project_id, artifact_id, artifact_type, location, version,
                title, description, metadata, created_at
            ) VALUES (
                %(project_id)s, %(artifact_id)s, %(artifact_type)s, %(location)s, %(version)s,
                %(title)s, %(description)s, %(metadata)s, %(created_at)s
            )
        """, {**artifact, "metadata": json.dumps(artifact.get("metadata", {}))})


def get_artifact(project_id: str, artifact_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM artifacts WHERE project_id = %s AND artifact_id = %s",
            (project_id, artifact_id),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def list_artifacts(project_id: str) -> list[dict]:
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM artifacts WHERE project_id = %s ORDER BY created_at ASC",
            (project_id,),
        )
        return [dict(row) for row in cur.fetchall()]


def update_artifact(project_id: str, artifact_id: str, changes: dict) -> dict | None:
    clause, params = _set_clause(changes, ARTIFACT_MUTABLE)
    query = sql.SQL(
        "UPDATE artifacts SET {} WHERE project_id = %(project_id)s "
        "AND artifact_id = %(artifact_id)s RETURNING *"
    ).format(clause)
    params.update(project_id=project_id, artifact_id=artifact_id)
    with get_cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        return dict(row) if row else None


def delete_artifact(project_id: str, artifact_id: str) -> bool:
    with get_cursor() as cur:
        cur.execute(
            "DELETE FROM artifacts WHERE project_id = %s AND artifact_id = %s",
            (project_id, artifact_id),
        )
        return cur.rowcount > 0
