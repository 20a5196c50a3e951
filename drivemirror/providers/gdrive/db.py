import sqlite3
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          drive_folder_id TEXT NOT NULL,
          drive_folder_name TEXT,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    # parent_drive_id is a soft self-reference; NULL only for the subscription root.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS drive_nodes (
          sync_id TEXT NOT NULL,
          drive_id TEXT NOT NULL,
          name TEXT,
          mime_type TEXT,
          is_folder INTEGER DEFAULT 0,
          parent_drive_id TEXT,
          owner_name TEXT,
          owner_email TEXT,
          size INTEGER,
          created_time TEXT,
          modified_time TEXT,
          video_duration_ms INTEGER,
          video_width INTEGER,
          video_height INTEGER,
          UNIQUE(sync_id, drive_id)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS drive_cursors (
          sync_id TEXT PRIMARY KEY,
          page_token TEXT NOT NULL,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_folder ON subscriptions(drive_folder_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_drive_nodes_parent ON drive_nodes(sync_id, parent_drive_id)")

    conn.commit()
    conn.close()
