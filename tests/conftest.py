from __future__ import annotations

from collections.abc import Iterator

import pytest
from _support import FakeClock, sqlite_settings

from mqtt2sql.models.topic import SeriesKeyMode
from mqtt2sql.storage.database import Database
from mqtt2sql.storage.router import StorageRouter


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database() -> Iterator[Database]:
    db = Database(sqlite_settings())
    assert db.open()
    yield db
    db.close()


@pytest.fixture
def router(database: Database, clock: FakeClock) -> StorageRouter:
    router = StorageRouter(database, prefix="mqtt", mode=SeriesKeyMode.GROUP_NAME, clock=clock)
    assert router.bootstrap()
    return router
