"""Tests for the snapshot archive."""

from __future__ import annotations

import pytest

from collective.engine import Coordinator
from collective.errors import ValidationError
from collective.storage import SnapshotArchive

pytestmark = pytest.mark.anyio


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data" / "snapshots.db"


async def test_empty_archive(db_path):
    async with SnapshotArchive(db_path) as archive:
        assert await archive.latest() is None
        assert await archive.history() == []
        assert await archive.get(1) is None


async def test_save_and_restore(db_path):
    coordinator = Coordinator()
    coordinator.update_trust("a", "b", True)
    document = coordinator.export_state()

    async with SnapshotArchive(db_path) as archive:
        snapshot_id = await archive.save(document)
        assert await archive.get(snapshot_id) == document

    async with SnapshotArchive(db_path) as archive:
        restored = Coordinator()
        restored.import_state(await archive.latest())
    assert restored.get_trust("a", "b") == pytest.approx(0.55)


async def test_history_newest_first(db_path):
    coordinator = Coordinator()
    async with SnapshotArchive(db_path) as archive:
        first = await archive.save(coordinator.export_state())
        coordinator.update_trust("a", "b", True)
        second = await archive.save(coordinator.export_state())

        history = await archive.history(limit=5)
        assert [row["id"] for row in history] == [second, first]
        assert history[0]["trust_edges"] == 1
        assert history[1]["trust_edges"] == 0
        assert (await archive.latest())["trust_edges"][0]["source"] == "a"


async def test_rejects_non_documents(db_path):
    async with SnapshotArchive(db_path) as archive:
        with pytest.raises(ValidationError):
            await archive.save({"hello": "world"})
        assert await archive.latest() is None
