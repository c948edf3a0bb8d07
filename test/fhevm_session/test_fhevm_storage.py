import asyncio

import pytest

from fhevm_session.errors import PersistenceError
from fhevm_session.storage import FileStringStorage, InMemoryStringStorage


def test_in_memory_storage_crud():
    storage = InMemoryStringStorage({"a": "1"})

    async def runner():
        await storage.set_item("b", "2")
        await storage.remove_item("a")
        await storage.remove_item("missing")
        return await storage.get_item("a"), await storage.get_item("b")

    assert asyncio.run(runner()) == (None, "2")
    assert list(storage.keys()) == ["b"]


def test_file_storage_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "permits.json"

    asyncio.run(FileStringStorage(path).set_item("key", "value"))
    reopened = FileStringStorage(path)

    assert asyncio.run(reopened.get_item("key")) == "value"
    assert list(reopened.keys()) == ["key"]
    asyncio.run(reopened.remove_item("key"))
    assert asyncio.run(reopened.get_item("key")) is None
    reopened.clear()
    assert not path.exists()


def test_file_storage_reports_corruption(tmp_path):
    path = tmp_path / "permits.json"
    path.write_text("[]")

    with pytest.raises(PersistenceError):
        asyncio.run(FileStringStorage(path).get_item("key"))
