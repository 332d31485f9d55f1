import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional in local sqlite-only runs
    psycopg = None
    dict_row = None

DEFAULT_WORK_DAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday")
TASK_TYPES = ("feature", "research", "bug")
PRIORITIES = ("low", "medium", "high")
TASK_STATUSES = ("todo", "in-progress", "done")

MEMBER = "member"
PENDING = "pending"


def _is_postgres(db_path: str) -> bool:
    return db_path.startswith("postgres://") or db_path.startswith("postgresql://")


def _sql(db_path: str, query: str) -> str:
    if _is_postgres(db_path):
        return query.replace("?", "%s")
    return query


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def get_conn(db_path: str):
    if _is_postgres(db_path):
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres DATABASE_URL")
        conn = psycopg.connect(db_path, row_factory=dict_row)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()
        return

    conn = sqlite3.connect(db_path)
    conn.row_factory = lambda cursor, row: {col[0]: row[idx] for idx, col in enumerate(cursor.description)}
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    if _is_postgres(db_path):
        id_column = "BIGSERIAL PRIMARY KEY"
        user_id_type = "BIGINT"
    else:
        id_column = "INTEGER PRIMARY KEY AUTOINCREMENT"
        user_id_type = "INTEGER"

    statements = [
        f"""
        CREATE TABLE IF NOT EXISTS users (
            user_id {user_id_type} PRIMARY KEY,
            name TEXT NOT NULL,
            surname TEXT NOT NULL DEFAULT '',
            role TEXT NOT NULL DEFAULT '',
            contact TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS projects (
            id {id_column},
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            admin_id {user_id_type} NOT NULL,
            work_days TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS memberships (
            user_id {user_id_type} NOT NULL,
            project_id {user_id_type} NOT NULL,
            status TEXT NOT NULL,
            PRIMARY KEY (user_id, project_id),
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS tasks (
            id {id_column},
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            project_id {user_id_type} NOT NULL,
            assigned_to {user_id_type},
            due_date TEXT,
            task_type TEXT NOT NULL DEFAULT 'feature',
            role_type TEXT NOT NULL DEFAULT '',
            priority TEXT NOT NULL DEFAULT 'medium',
            effort REAL NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'todo',
            created_by {user_id_type} NOT NULL,
            created_at TEXT NOT NULL,
            completed_at TEXT,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
        """,
    ]
    with get_conn(db_path) as conn:
        for stmt in statements:
            conn.execute(stmt)


def _with_memberships(conn, db_path: str, user: dict[str, Any] | None) -> dict[str, Any] | None:
    if user is None:
        return None
    rows = conn.execute(
        _sql(db_path, "SELECT project_id, status FROM memberships WHERE user_id = ? ORDER BY project_id"),
        (user["user_id"],),
    ).fetchall()
    user["project_ids"] = [row["project_id"] for row in rows if row["status"] == MEMBER]
    user["pending_project_ids"] = [row["project_id"] for row in rows if row["status"] == PENDING]
    return user


def get_user(db_path: str, user_id: int) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        user = conn.execute(_sql(db_path, "SELECT * FROM users WHERE user_id = ?"), (user_id,)).fetchone()
        return _with_memberships(conn, db_path, user)


def upsert_user(db_path: str, user_id: int, **fields: Any) -> None:
    with get_conn(db_path) as conn:
        exists = conn.execute(_sql(db_path, "SELECT 1 FROM users WHERE user_id = ?"), (user_id,)).fetchone()
        if exists:
            keys = list(fields.keys())
            if not keys:
                return
            set_clause = ", ".join(f"{k} = ?" for k in keys)
            values = [fields[k] for k in keys]
            values.append(user_id)
            conn.execute(_sql(db_path, f"UPDATE users SET {set_clause} WHERE user_id = ?"), values)
        else:
            payload = {
                "user_id": user_id,
                "name": "",
                "surname": "",
                "role": "",
                "contact": "",
                "created_at": _now(),
            }
            payload.update(fields)
            cols = ", ".join(payload.keys())
            placeholders = ", ".join("?" for _ in payload)
            conn.execute(
                _sql(db_path, f"INSERT INTO users ({cols}) VALUES ({placeholders})"),
                list(payload.values()),
            )


def list_users_not_in_project(db_path: str, project_id: int) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        return conn.execute(
            _sql(
                db_path,
                """
                SELECT * FROM users
                WHERE user_id NOT IN (
                    SELECT user_id FROM memberships WHERE project_id = ? AND status = 'member'
                )
                ORDER BY name
                """,
            ),
            (project_id,),
        ).fetchall()


def _project_row(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    row["work_days"] = [d for d in (row.get("work_days") or "").split(",") if d]
    return row


def create_project(db_path: str, name: str, description: str, admin_id: int) -> int:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            _sql(
                db_path,
                """
                INSERT INTO projects (name, description, admin_id, work_days, created_at)
                VALUES (?, ?, ?, ?, ?)
                RETURNING id
                """,
            ),
            (name, description, admin_id, ",".join(DEFAULT_WORK_DAYS), _now()),
        ).fetchall()
    return int(rows[0]["id"])


def get_project(db_path: str, project_id: int) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute(_sql(db_path, "SELECT * FROM projects WHERE id = ?"), (project_id,)).fetchone()
    return _project_row(row)


def get_project_by_name(db_path: str, name: str) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute(
            _sql(db_path, "SELECT * FROM projects WHERE name = ? ORDER BY id LIMIT 1"),
            (name,),
        ).fetchone()
    return _project_row(row)


def list_projects(db_path: str, project_ids: list[int]) -> list[dict[str, Any]]:
    if not project_ids:
        return []
    placeholders = ", ".join("?" for _ in project_ids)
    with get_conn(db_path) as conn:
        rows = conn.execute(
            _sql(db_path, f"SELECT * FROM projects WHERE id IN ({placeholders}) ORDER BY id"),
            list(project_ids),
        ).fetchall()
    return [_project_row(row) for row in rows]


def update_project(db_path: str, project_id: int, **fields: Any) -> None:
    keys = list(fields.keys())
    if not keys:
        return
    set_clause = ", ".join(f"{k} = ?" for k in keys)
    values = [fields[k] for k in keys] + [project_id]
    with get_conn(db_path) as conn:
        conn.execute(_sql(db_path, f"UPDATE projects SET {set_clause} WHERE id = ?"), values)


def delete_project(db_path: str, project_id: int) -> None:
    with get_conn(db_path) as conn:
        conn.execute(_sql(db_path, "DELETE FROM memberships WHERE project_id = ?"), (project_id,))
        conn.execute(_sql(db_path, "DELETE FROM tasks WHERE project_id = ?"), (project_id,))
        conn.execute(_sql(db_path, "DELETE FROM projects WHERE id = ?"), (project_id,))


def get_membership(db_path: str, user_id: int, project_id: int) -> str | None:
    with get_conn(db_path) as conn:
        row = conn.execute(
            _sql(db_path, "SELECT status FROM memberships WHERE user_id = ? AND project_id = ?"),
            (user_id, project_id),
        ).fetchone()
    return row["status"] if row else None


def add_member(db_path: str, user_id: int, project_id: int) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            _sql(
                db_path,
                """
                INSERT INTO memberships (user_id, project_id, status)
                VALUES (?, ?, 'member')
                ON CONFLICT (user_id, project_id) DO UPDATE SET status = 'member'
                """,
            ),
            (user_id, project_id),
        )


def add_pending(db_path: str, user_id: int, project_id: int) -> bool:
    with get_conn(db_path) as conn:
        cur = conn.execute(
            _sql(
                db_path,
                """
                INSERT INTO memberships (user_id, project_id, status)
                VALUES (?, ?, 'pending')
                ON CONFLICT (user_id, project_id) DO NOTHING
                """,
            ),
            (user_id, project_id),
        )
        return bool(getattr(cur, "rowcount", 0) == 1)


def approve_pending(db_path: str, user_id: int, project_id: int) -> bool:
    with get_conn(db_path) as conn:
        cur = conn.execute(
            _sql(
                db_path,
                "UPDATE memberships SET status = 'member' WHERE user_id = ? AND project_id = ? AND status = 'pending'",
            ),
            (user_id, project_id),
        )
        return bool(getattr(cur, "rowcount", 0) == 1)


def reject_pending(db_path: str, user_id: int, project_id: int) -> bool:
    with get_conn(db_path) as conn:
        cur = conn.execute(
            _sql(
                db_path,
                "DELETE FROM memberships WHERE user_id = ? AND project_id = ? AND status = 'pending'",
            ),
            (user_id, project_id),
        )
        return bool(getattr(cur, "rowcount", 0) == 1)


def list_project_members(db_path: str, project_id: int) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        return conn.execute(
            _sql(
                db_path,
                """
                SELECT * FROM users
                WHERE user_id IN (
                    SELECT user_id FROM memberships WHERE project_id = ? AND status = 'member'
                )
                ORDER BY name
                """,
            ),
            (project_id,),
        ).fetchall()


def create_task(
    db_path: str,
    *,
    name: str,
    project_id: int,
    created_by: int,
    description: str = "",
    assigned_to: int | None = None,
    due_date: date | None = None,
    task_type: str = "feature",
    role_type: str = "",
    priority: str = "medium",
    effort: float = 1.0,
) -> int:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            _sql(
                db_path,
                """
                INSERT INTO tasks (
                    name, description, project_id, assigned_to, due_date, task_type,
                    role_type, priority, effort, status, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'todo', ?, ?)
                RETURNING id
                """,
            ),
            (
                name,
                description,
                project_id,
                assigned_to,
                due_date.isoformat() if due_date else None,
                task_type,
                role_type,
                priority,
                effort,
                created_by,
                _now(),
            ),
        ).fetchall()
    return int(rows[0]["id"])


def get_task(db_path: str, task_id: int) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        return conn.execute(_sql(db_path, "SELECT * FROM tasks WHERE id = ?"), (task_id,)).fetchone()


def update_task(db_path: str, task_id: int, **fields: Any) -> None:
    keys = list(fields.keys())
    if not keys:
        return
    set_clause = ", ".join(f"{k} = ?" for k in keys)
    values = [fields[k] for k in keys] + [task_id]
    with get_conn(db_path) as conn:
        conn.execute(_sql(db_path, f"UPDATE tasks SET {set_clause} WHERE id = ?"), values)


def set_task_status(db_path: str, task_id: int, status: str) -> None:
    if status == "done":
        update_task(db_path, task_id, status=status, completed_at=_now())
    else:
        update_task(db_path, task_id, status=status, completed_at=None)


def delete_task(db_path: str, task_id: int) -> None:
    with get_conn(db_path) as conn:
        conn.execute(_sql(db_path, "DELETE FROM tasks WHERE id = ?"), (task_id,))


def list_tasks_for_assignee(db_path: str, user_id: int, status: str | None = None) -> list[dict[str, Any]]:
    query = "SELECT * FROM tasks WHERE assigned_to = ?"
    params: list[Any] = [user_id]
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY due_date, id"
    with get_conn(db_path) as conn:
        return conn.execute(_sql(db_path, query), params).fetchall()


def list_project_tasks(db_path: str, project_id: int) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        return conn.execute(
            _sql(db_path, "SELECT * FROM tasks WHERE project_id = ? ORDER BY status, due_date, id"),
            (project_id,),
        ).fetchall()


def list_open_tasks_due_between(db_path: str, start: date | None, end: date) -> list[dict[str, Any]]:
    """Tasks not done with start <= due_date < end; start=None means no lower bound."""
    query = "SELECT * FROM tasks WHERE status <> 'done' AND due_date IS NOT NULL AND due_date < ?"
    params: list[Any] = [end.isoformat()]
    if start is not None:
        query += " AND due_date >= ?"
        params.append(start.isoformat())
    query += " ORDER BY due_date, id"
    with get_conn(db_path) as conn:
        return conn.execute(_sql(db_path, query), params).fetchall()
