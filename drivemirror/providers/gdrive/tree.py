from __future__ import annotations

import re
from collections import deque
from typing import Any
from urllib.parse import parse_qs, urlparse

from .drive_client import FOLDER_MIME_TYPE
from .store import TreeStore

SYNCED = "synced"

_FOLDER_PATH_RE = re.compile(r"/folders/([a-zA-Z0-9_-]+)")


def extract_folder_id(url: str) -> str | None:
    """Pull the folder id out of a Drive share link, or None if it has none."""
    try:
        parsed = urlparse((url or "").strip())
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    match = _FOLDER_PATH_RE.search(parsed.path)
    if match:
        return match.group(1)
    ids = parse_qs(parsed.query).get("id")
    if ids and ids[0]:
        return ids[0]
    return None


def _tree_node(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["drive_id"],
        "name": row.get("name"),
        "type": "folder" if row.get("is_folder") else "file",
        "mime_type": row.get("mime_type"),
        "owner_name": row.get("owner_name"),
        "owner_email": row.get("owner_email"),
        "size": row.get("size"),
        "modified_at": row.get("modified_time"),
        "created_at": row.get("created_time"),
        "video_duration_ms": row.get("video_duration_ms"),
        "video_width": row.get("video_width"),
        "video_height": row.get("video_height"),
        "status": SYNCED,
        "children": [],
    }


def assemble_tree(store: TreeStore, subscription: dict[str, Any]) -> dict[str, Any]:
    """Rebuild the nested view of a subscription from its flat rows."""
    root_id = subscription["drive_folder_id"]

    by_id: dict[str, dict[str, Any]] = {}
    children_by_parent: dict[str | None, list[dict[str, Any]]] = {}
    for row in store.list_nodes(subscription["id"]):
        node = _tree_node(row)
        by_id[node["id"]] = node
        children_by_parent.setdefault(row.get("parent_drive_id"), []).append(node)

    for parent_id, kids in children_by_parent.items():
        if parent_id is None:
            continue
        parent = by_id.get(parent_id)
        if parent is not None:
            parent["children"] = kids

    root = by_id.get(root_id)
    if root is not None:
        return root
    return {
        "id": root_id,
        "name": subscription.get("drive_folder_name"),
        "type": "folder",
        "status": SYNCED,
        "children": children_by_parent.get(root_id, []),
    }


def preview_tree(client, folder_id: str, limit_nodes: int = 5000) -> dict[str, Any]:
    """Read a folder tree straight from Drive without storing it.

    Breadth-first, stops expanding once ``limit_nodes`` nodes are collected.
    """
    fields = "id,name,mimeType"
    meta = client.get_file_meta(folder_id, fields=fields)

    def make(item: dict[str, Any]) -> dict[str, Any]:
        mime_type = item.get("mimeType")
        return {
            "id": item.get("id"),
            "name": item.get("name"),
            "type": "folder" if mime_type == FOLDER_MIME_TYPE else "file",
            "mime_type": mime_type,
            "status": SYNCED,
            "children": [],
        }

    root = make(meta)
    queue = deque([root])
    visited: set[str] = set()
    count = 1
    truncated = False

    while queue and not truncated:
        node = queue.popleft()
        if node["type"] != "folder" or node["id"] in visited:
            continue
        visited.add(node["id"])
        for child in client.list_children_once(node["id"], fields=fields):
            if count >= limit_nodes:
                truncated = True
                break
            kid = make(child)
            node["children"].append(kid)
            count += 1
            if kid["type"] == "folder":
                queue.append(kid)

    return {"tree": root, "count": count, "truncated": truncated}
