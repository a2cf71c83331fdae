"""
Tests for subscriber store backends.

Covers:
  - InMemorySubscriberStore: add/remove semantics, canonical matching, idempotent remove
  - FileSubscriberStore: persistence across restarts, legacy format, atomic rewrite,
    failed writes leave file and memory untouched, concurrent mutations
  - Store factory
"""
import asyncio
import json
from unittest.mock import patch

import pytest

from database.store_base import MutationStatus, StoreWriteError
from database.store_factory import create_subscriber_store
from database.store_file import FileSubscriberStore
from database.store_memory import InMemorySubscriberStore
from config.settings import DataConfig
from models.schemas import Subscriber


# ──────────────────────────────────────────────────────────────
#  InMemorySubscriberStore
# ──────────────────────────────────────────────────────────────

class TestInMemorySubscriberStore:
    @pytest.mark.asyncio
    async def test_list_active_preserves_order(self, store, subscribers):
        listed = await store.list_active()
        assert [s.identity for s in listed] == [s.identity for s in subscribers]

    @pytest.mark.asyncio
    async def test_list_active_is_a_snapshot(self, store):
        snapshot = await store.list_active()
        await store.remove("+1-555-0100")
        assert len(snapshot) == 3
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_remove_matches_canonical_identity(self, store):
        result = await store.remove("15550100@c.us")
        assert result.status == MutationStatus.REMOVED
        assert result.subscriber.display_name == "Ravi"

    @pytest.mark.asyncio
    async def test_remove_twice_is_removed_then_not_found(self, store):
        first = await store.remove("+1-555-0100")
        second = await store.remove("+1-555-0100")
        assert first.status == MutationStatus.REMOVED
        assert second.status == MutationStatus.NOT_FOUND
        assert second.subscriber is None
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_remove_unknown_or_empty_identity(self, store):
        assert (await store.remove("999")).status == MutationStatus.NOT_FOUND
        assert (await store.remove("no digits")).status == MutationStatus.NOT_FOUND
        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_add_enforces_uniqueness(self, store):
        dup = Subscriber(display_name="Ravi again", identity="1 555 0100")
        result = await store.add(dup)
        assert result.status == MutationStatus.ALREADY_EXISTS
        assert result.subscriber.display_name == "Ravi"
        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_add_appends(self, store):
        result = await store.add(Subscriber(display_name="Zoe", identity="+61 400 000 000"))
        assert result.status == MutationStatus.ADDED
        assert result.changed
        listed = await store.list_active()
        assert listed[-1].display_name == "Zoe"

    @pytest.mark.asyncio
    async def test_add_rejects_identity_without_digits(self, store):
        with pytest.raises(ValueError):
            await store.add(Subscriber(display_name="x", identity="abc"))

    def test_duplicates_dropped_on_load(self):
        s = InMemorySubscriberStore([
            Subscriber(display_name="A", identity="+1 555 0100"),
            Subscriber(display_name="B", identity="15550100"),
            Subscriber(display_name="C", identity=""),
        ])
        assert [x.display_name for x in s._subscribers] == ["A"]

    @pytest.mark.asyncio
    async def test_cancel_during_write_still_commits(self, store):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_persist(subscribers):
            entered.set()
            await release.wait()

        with patch.object(store, "_persist", side_effect=slow_persist):
            task = asyncio.create_task(store.remove("+1-555-0100"))
            await entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            release.set()
            async with store._write_lock:
                pass

        # the write finished, so memory must reflect it
        assert await store.find("+1-555-0100") is None
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_find(self, store):
        assert (await store.find("919876543210")).display_name == "Asha"
        assert await store.find("") is None


# ──────────────────────────────────────────────────────────────
#  FileSubscriberStore
# ──────────────────────────────────────────────────────────────

class TestFileSubscriberStore:
    @pytest.fixture
    def contacts_path(self, tmp_path):
        path = tmp_path / "contacts.json"
        path.write_text(json.dumps([
            {"name": "Asha", "phone": "+91 98765 43210"},
            {"displayName": "Ravi", "identity": "+1-555-0100"},
        ]))
        return path

    def test_loads_legacy_and_canonical_records(self, contacts_path):
        store = FileSubscriberStore(str(contacts_path))
        names = [s.display_name for s in store._subscribers]
        assert names == ["Asha", "Ravi"]

    def test_missing_file_is_empty(self, tmp_path):
        store = FileSubscriberStore(str(tmp_path / "absent.json"))
        assert store._subscribers == ()

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "contacts.json"
        path.write_text("{{{")
        assert FileSubscriberStore(str(path))._subscribers == ()

    @pytest.mark.asyncio
    async def test_remove_persists_canonical_format(self, contacts_path):
        store = FileSubscriberStore(str(contacts_path))
        result = await store.remove("919876543210")
        assert result.status == MutationStatus.REMOVED

        on_disk = json.loads(contacts_path.read_text())
        assert on_disk == [{"displayName": "Ravi", "identity": "+1-555-0100"}]

    @pytest.mark.asyncio
    async def test_mutations_survive_restart(self, contacts_path):
        store = FileSubscriberStore(str(contacts_path))
        await store.remove("+1-555-0100")
        await store.add(Subscriber(display_name="Meera", identity="447700900123"))

        reopened = FileSubscriberStore(str(contacts_path))
        assert [s.display_name for s in await reopened.list_active()] == ["Asha", "Meera"]

    @pytest.mark.asyncio
    async def test_add_creates_file_when_missing(self, tmp_path):
        path = tmp_path / "nested" / "contacts.json"
        store = FileSubscriberStore(str(path))
        await store.add(Subscriber(display_name="Asha", identity="919876543210"))
        assert json.loads(path.read_text()) == [{"displayName": "Asha", "identity": "919876543210"}]

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_state(self, contacts_path):
        store = FileSubscriberStore(str(contacts_path))
        before = contacts_path.read_text()

        with patch("database.store_file.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreWriteError):
                await store.remove("+1-555-0100")

        assert contacts_path.read_text() == before
        assert await store.count() == 2
        assert not list(contacts_path.parent.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_concurrent_removes_are_serialized(self, contacts_path):
        store = FileSubscriberStore(str(contacts_path))
        results = await asyncio.gather(
            store.remove("919876543210"),
            store.remove("15550100"),
            store.remove("15550100"),
        )
        statuses = sorted(r.status.value for r in results)
        assert statuses == ["not_found", "removed", "removed"]
        assert json.loads(contacts_path.read_text()) == []
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_reload_picks_up_external_edit(self, contacts_path):
        store = FileSubscriberStore(str(contacts_path))
        contacts_path.write_text(json.dumps([{"displayName": "Solo", "identity": "1234"}]))
        assert await store.reload() == 1
        assert (await store.list_active())[0].display_name == "Solo"


class TestStoreFactory:
    def test_file_backend_when_path_configured(self, tmp_path):
        store = create_subscriber_store(DataConfig(contacts_file=str(tmp_path / "c.json")))
        assert isinstance(store, FileSubscriberStore)

    def test_memory_backend_when_path_empty(self):
        store = create_subscriber_store(DataConfig(contacts_file=""))
        assert isinstance(store, InMemorySubscriberStore)
        assert not isinstance(store, FileSubscriberStore)
