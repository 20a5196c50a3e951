from pathlib import Path

import pytest

from drivemirror.providers.gdrive import SyncEngine, TreeStore
from drivemirror.providers.gdrive.db import init_db

from .fakes import sample_tree


@pytest.fixture
def store(tmp_path: Path) -> TreeStore:
    db_path = str(tmp_path / "runtime" / "service.db")
    init_db(db_path)
    return TreeStore(db_path)


@pytest.fixture
def client():
    return sample_tree()


@pytest.fixture
def engine(store, client) -> SyncEngine:
    return SyncEngine(cfg={"sync": {"change_page_size": 100}}, store=store, client=client, log_func=lambda *_: None)


@pytest.fixture
def subscription(store) -> dict:
    return store.create_subscription("user-1", "root", "F")
