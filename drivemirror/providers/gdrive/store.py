"""SQLite-backed row store for mirrored Drive trees and their change cursors.

Every write is a keyed upsert or a keyed delete, so replaying a crawl or a
change page against the store is safe.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .db import get_conn

NODE_COLUMNS = (
    "sync_id",
    "drive_id",
    "name",
    "mime_type",
    "is_folder",
    "parent_drive_id",
    "owner_name",
    "owner_email",
    "size",
    "created_time",
    "modified_time",
    "video_duration_ms",
    "video_width",
    "video_height",
)

_UPSERT_NODE_SQL = (
    f"INSERT INTO drive_nodes({','.join(NODE_COLUMNS)}) "
    f"VALUES ({','.join('?' for _ in NODE_COLUMNS)}) "
    "ON CONFLICT(sync_id, drive_id) DO UPDATE SET "
    + ", ".join(f"{c}=excluded.{c}" for c in NODE_COLUMNS if c not in ("sync_id", "drive_id"))
)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class TreeStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def _db(self):
        return get_conn(self.db_path)

    # ---- subscriptions ----

    def create_subscription(self, user_id: str, folder_id: str, folder_name: str) -> dict[str, Any]:
        sync_id = uuid.uuid4().hex
        conn = self._db()
        conn.execute(
            "INSERT INTO subscriptions(id,user_id,drive_folder_id,drive_folder_name,created_at) VALUES (?,?,?,?,?)",
            (sync_id, user_id, folder_id, folder_name, now_iso()),
        )
        conn.commit()
        conn.close()
        return self.get_subscription(sync_id)

    def get_subscription(self, sync_id: str) -> Optional[dict[str, Any]]:
        conn = self._db()
        row = conn.execute("SELECT * FROM subscriptions WHERE id=?", (sync_id,)).fetchone()
        conn.close()
        return dict(row) if row else None

    def find_subscription_by_folder(self, folder_id: str, user_id: str | None = None) -> Optional[dict[str, Any]]:
        conn = self._db()
        if user_id is None:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE drive_folder_id=? ORDER BY created_at DESC LIMIT 1",
                (folder_id,),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE drive_folder_id=? AND user_id=? ORDER BY created_at DESC LIMIT 1",
                (folder_id, user_id),
            ).fetchone()
        conn.close()
        return dict(row) if row else None

    def list_subscriptions(self, user_id: str | None = None) -> list[dict[str, Any]]:
        conn = self._db()
        if user_id is None:
            rows = conn.execute("SELECT * FROM subscriptions ORDER BY created_at DESC, rowid DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE user_id=? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def delete_subscription(self, sync_id: str) -> bool:
        conn = self._db()
        conn.execute("DELETE FROM drive_nodes WHERE sync_id=?", (sync_id,))
        conn.execute("DELETE FROM drive_cursors WHERE sync_id=?", (sync_id,))
        cur = conn.execute("DELETE FROM subscriptions WHERE id=?", (sync_id,))
        deleted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return deleted

    # ---- tree rows ----

    def upsert_nodes(self, rows: Iterable[dict[str, Any]]) -> int:
        params = [tuple(row.get(c) for c in NODE_COLUMNS) for row in rows]
        if not params:
            return 0
        conn = self._db()
        try:
            conn.executemany(_UPSERT_NODE_SQL, params)
            conn.commit()
        finally:
            conn.close()
        return len(params)

    def upsert_node(self, row: dict[str, Any]) -> None:
        self.upsert_nodes([row])

    def delete_node(self, sync_id: str, drive_id: str) -> bool:
        conn = self._db()
        cur = conn.execute("DELETE FROM drive_nodes WHERE sync_id=? AND drive_id=?", (sync_id, drive_id))
        deleted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return deleted

    def existing_ids(self, sync_id: str, drive_ids: Iterable[str]) -> set[str]:
        ids = [i for i in drive_ids if i]
        if not ids:
            return set()
        conn = self._db()
        rows = conn.execute(
            f"SELECT drive_id FROM drive_nodes WHERE sync_id=? AND drive_id IN ({','.join('?' for _ in ids)})",
            (sync_id, *ids),
        ).fetchall()
        conn.close()
        return {r["drive_id"] for r in rows}

    def get_node(self, sync_id: str, drive_id: str) -> Optional[dict[str, Any]]:
        conn = self._db()
        row = conn.execute(
            "SELECT * FROM drive_nodes WHERE sync_id=? AND drive_id=?",
            (sync_id, drive_id),
        ).fetchone()
        conn.close()
        return dict(row) if row else None

    def list_nodes(self, sync_id: str) -> list[dict[str, Any]]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM drive_nodes WHERE sync_id=? ORDER BY rowid", (sync_id,)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def count_nodes(self, sync_id: str) -> int:
        conn = self._db()
        row = conn.execute("SELECT COUNT(*) AS n FROM drive_nodes WHERE sync_id=?", (sync_id,)).fetchone()
        conn.close()
        return int(row["n"])

    def node_counts(self, sync_id: str) -> dict[str, int]:
        conn = self._db()
        row = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN is_folder=1 THEN 1 ELSE 0 END), 0) AS folders,
                   COALESCE(SUM(CASE WHEN mime_type LIKE 'video/%' THEN 1 ELSE 0 END), 0) AS videos
              FROM drive_nodes
             WHERE sync_id=?
            """,
            (sync_id,),
        ).fetchone()
        conn.close()
        total = int(row["total"])
        folders = int(row["folders"])
        return {
            "total": total,
            "folders": folders,
            "files": max(total - folders, 0),
            "videos": int(row["videos"]),
        }

    # ---- change cursor ----

    def get_cursor_row(self, sync_id: str) -> Optional[dict[str, Any]]:
        conn = self._db()
        row = conn.execute("SELECT * FROM drive_cursors WHERE sync_id=?", (sync_id,)).fetchone()
        conn.close()
        return dict(row) if row else None

    def get_cursor(self, sync_id: str) -> Optional[str]:
        row = self.get_cursor_row(sync_id)
        if not row:
            return None
        return row.get("page_token") or None

    def set_cursor(self, sync_id: str, page_token: str) -> None:
        conn = self._db()
        conn.execute(
            """
            INSERT INTO drive_cursors(sync_id,page_token,updated_at) VALUES (?,?,?)
            ON CONFLICT(sync_id) DO UPDATE SET page_token=excluded.page_token, updated_at=excluded.updated_at
            """,
            (sync_id, page_token, now_iso()),
        )
        conn.commit()
        conn.close()
