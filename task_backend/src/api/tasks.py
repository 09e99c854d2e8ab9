"""
Task persistence.

Every function takes the request's tenant-bound query function; table names
are unqualified and resolve against the tenant schema set by the executor.
"""

from typing import Any, Dict, List, Optional

from src.api.tenant_context import TenantQuery

TASK_COLUMNS = "id, title, description, status, priority, assignee, due_date, created_by, created_at, updated_at"
_UPDATABLE = ("title", "description", "status", "priority", "assignee", "due_date")


def _value(v: Any) -> Any:
    # Enums are stored by value.
    return getattr(v, "value", v)


# PUBLIC_INTERFACE
async def find_all(query: TenantQuery, status: Optional[str] = None, assignee: Optional[str] = None) -> List[Dict[str, Any]]:
    """List tasks, newest first, optionally filtered by status and assignee."""
    where = []
    params: List[Any] = []
    if status:
        where.append("status=%s")
        params.append(_value(status))
    if assignee:
        where.append("assignee=%s")
        params.append(assignee)
    where_sql = ("WHERE " + " AND ".join(where)) if where else ""

    result = await query(f"SELECT {TASK_COLUMNS} FROM tasks {where_sql} ORDER BY created_at DESC", params)
    return result.rows


# PUBLIC_INTERFACE
async def find_by_id(query: TenantQuery, task_id: int) -> Optional[Dict[str, Any]]:
    """Get one task, or None."""
    result = await query(f"SELECT {TASK_COLUMNS} FROM tasks WHERE id=%s", [task_id])
    return result.first()


# PUBLIC_INTERFACE
async def create(query: TenantQuery, data: Dict[str, Any], created_by: str) -> Dict[str, Any]:
    """Insert a task and return the stored row."""
    result = await query(
        f"""
        INSERT INTO tasks (title, description, status, priority, assignee, due_date, created_by)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING {TASK_COLUMNS}
        """,
        [
            data["title"],
            data.get("description"),
            _value(data.get("status", "todo")),
            _value(data.get("priority", "medium")),
            data.get("assignee"),
            data.get("due_date"),
            created_by,
        ],
    )
    row = result.first()
    if row is None:
        raise RuntimeError("Expected one row returned, got none.")
    return row


# PUBLIC_INTERFACE
async def update(query: TenantQuery, task_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply the supplied fields to a task. Returns the updated row, or None if missing."""
    fields = []
    params: List[Any] = []
    for col in _UPDATABLE:
        if col in data:
            fields.append(f"{col}=%s")
            params.append(_value(data[col]))

    if not fields:
        return await find_by_id(query, task_id)

    params.append(task_id)
    result = await query(
        f"UPDATE tasks SET {', '.join(fields)}, updated_at=NOW() WHERE id=%s RETURNING {TASK_COLUMNS}",
        params,
    )
    return result.first()


# PUBLIC_INTERFACE
async def delete(query: TenantQuery, task_id: int) -> Optional[Dict[str, Any]]:
    """Delete a task and return the removed row, or None if it did not exist."""
    result = await query(f"DELETE FROM tasks WHERE id=%s RETURNING {TASK_COLUMNS}", [task_id])
    return result.first()


# PUBLIC_INTERFACE
async def get_statistics(query: TenantQuery) -> Dict[str, Any]:
    """Total, per-status and per-priority counts, plus open tasks past their due date."""
    result = await query(
        """
        SELECT COUNT(*) AS total,
               COUNT(*) FILTER (WHERE status='todo') AS todo,
               COUNT(*) FILTER (WHERE status='in_progress') AS in_progress,
               COUNT(*) FILTER (WHERE status='done') AS done,
               COUNT(*) FILTER (WHERE priority='low') AS low,
               COUNT(*) FILTER (WHERE priority='medium') AS medium,
               COUNT(*) FILTER (WHERE priority='high') AS high,
               COUNT(*) FILTER (WHERE status<>'done' AND due_date < CURRENT_DATE) AS overdue
        FROM tasks
        """,
        [],
    )
    row = result.first() or {}
    return {
        "total": int(row.get("total") or 0),
        "by_status": {s: int(row.get(s) or 0) for s in ("todo", "in_progress", "done")},
        "by_priority": {p: int(row.get(p) or 0) for p in ("low", "medium", "high")},
        "overdue": int(row.get("overdue") or 0),
    }
