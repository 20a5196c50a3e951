import json

import pytest

from drivemirror.providers.gdrive.sync_engine import node_row
from drivemirror.providers.gdrive.tree import assemble_tree

from .fakes import file, folder


def _rows_by_id(store, sync_id):
    return {r["drive_id"]: r for r in store.list_nodes(sync_id)}


def test_crawl_materializes_parent_linked_rows(engine, store, subscription):
    result = engine.crawl(subscription["id"], "root")

    assert result == {"sync_id": subscription["id"], "inserted": 3}
    rows = _rows_by_id(store, subscription["id"])
    assert set(rows) == {"root", "sub1", "f1"}
    assert rows["root"]["parent_drive_id"] is None
    assert rows["sub1"]["parent_drive_id"] == "root"
    assert rows["sub1"]["is_folder"] == 1
    assert rows["f1"]["parent_drive_id"] == "root"
    assert rows["f1"]["size"] == 12
    assert rows["f1"]["modified_time"] == "2024-05-01T10:00:00+00:00"


def test_crawl_twice_is_idempotent(engine, store, subscription):
    engine.crawl(subscription["id"], "root")
    first = _rows_by_id(store, subscription["id"])

    engine.crawl(subscription["id"], "root")
    second = _rows_by_id(store, subscription["id"])

    assert first == second


def test_crawl_walks_nested_folders_breadth_first(engine, store, subscription, client):
    client.children["sub1"] = [folder("deep", "deep", ["sub1"])]
    client.children["deep"] = [file("f2", "b.mp4", ["deep"], mimeType="video/mp4")]

    engine.crawl(subscription["id"], "root")

    rows = _rows_by_id(store, subscription["id"])
    assert rows["deep"]["parent_drive_id"] == "sub1"
    assert rows["f2"]["parent_drive_id"] == "deep"
    listed = [c[1] for c in client.calls if c[0] == "list"]
    assert listed == ["root", "sub1", "deep"]


def test_crawl_tolerates_folder_reached_twice(engine, store, subscription, client):
    # "sub1" appears under root and again under itself via a shortcut-like listing.
    client.children["sub1"] = [folder("sub1", "sub", ["sub1"])]

    engine.crawl(subscription["id"], "root")

    listed = [c[1] for c in client.calls if c[0] == "list"]
    assert listed.count("sub1") == 1
    assert store.count_nodes(subscription["id"]) == 3
    rows = _rows_by_id(store, subscription["id"])
    assert rows["sub1"]["parent_drive_id"] == "root"
    tree = assemble_tree(store, subscription)
    assert [c["id"] for c in tree["children"]] == ["sub1", "f1"]


def test_crawl_keeps_root_parentless_when_listed_under_descendant(engine, store, subscription, client):
    client.children["sub1"] = [folder("root", "F", ["sub1"])]

    result = engine.crawl(subscription["id"], "root")

    assert result["inserted"] == 3
    rows = _rows_by_id(store, subscription["id"])
    assert rows["root"]["parent_drive_id"] is None
    assert rows["sub1"]["parent_drive_id"] == "root"
    tree = assemble_tree(store, subscription)
    json.dumps(tree)
    sub = next(c for c in tree["children"] if c["id"] == "sub1")
    assert sub["children"] == []


def test_crawl_persists_token_captured_before_listing(engine, store, subscription, client):
    client.start_tokens = ["before-crawl", "after-crawl"]

    engine.crawl(subscription["id"], "root")

    assert store.get_cursor(subscription["id"]) == "before-crawl"
    assert client.calls[0] == ("start_token",)
    assert client.calls[1] == ("meta", "root")


def test_crawl_overwrites_existing_cursor(engine, store, subscription):
    store.set_cursor(subscription["id"], "old-token")

    engine.crawl(subscription["id"], "root")

    assert store.get_cursor(subscription["id"]) == "start-1"


def test_crawl_meta_failure_writes_nothing(engine, store, subscription, client):
    client.meta.clear()

    with pytest.raises(RuntimeError, match="drive_meta_failed"):
        engine.crawl(subscription["id"], "root")

    assert store.count_nodes(subscription["id"]) == 0
    assert store.get_cursor(subscription["id"]) is None


def test_crawl_listing_failure_aborts_without_cursor(engine, store, subscription, client):
    client.list_errors["sub1"] = RuntimeError("list_children_failed: status=500 backend")

    with pytest.raises(RuntimeError, match="list_children_failed"):
        engine.crawl(subscription["id"], "root")

    assert store.count_nodes(subscription["id"]) == 0
    assert store.get_cursor(subscription["id"]) is None


def test_node_row_maps_owner_and_video_metadata():
    item = {
        "id": "v1",
        "name": "clip.mp4",
        "mimeType": "video/mp4",
        "size": "2048",
        "createdTime": "2024-01-02T03:04:05Z",
        "owners": [{"displayName": "Ada", "emailAddress": "ada@example.com"}],
        "videoMediaMetadata": {"durationMillis": "61000", "width": 1920, "height": 1080},
    }

    row = node_row("s1", item, "root")

    assert row["is_folder"] == 0
    assert row["owner_name"] == "Ada"
    assert row["owner_email"] == "ada@example.com"
    assert row["size"] == 2048
    assert row["created_time"] == "2024-01-02T03:04:05+00:00"
    assert row["modified_time"] is None
    assert (row["video_duration_ms"], row["video_width"], row["video_height"]) == (61000, 1920, 1080)
