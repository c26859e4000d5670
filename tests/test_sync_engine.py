"""Tests for the offline-first sync engine against the in-memory server."""

import asyncio
import json
import sqlite3

import pytest
import pytest_asyncio

from iforgotpassword.crypto.envelope import decrypt
from iforgotpassword.sync.api_client import ApiClient
from iforgotpassword.sync.engine import SyncEngine, SyncStatus
from iforgotpassword.vault.local_store import LocalStore
from iforgotpassword.vault.models import SyncAction, SyncMetadata

from conftest import make_item, ts
from fake_server import API_ROOT


@pytest.fixture
def engine(store, api):
    return SyncEngine(store, api)


@pytest_asyncio.fixture
async def other_engine(server, api, tmp_path):
    """A second device logged into the same account."""
    tokens = server.issue_tokens("alice@example.com")
    client = ApiClient(API_ROOT, transport=server.transport())
    client.set_tokens(tokens["token"], tokens["refreshToken"])
    yield SyncEngine(LocalStore(tmp_path / "device-b.db"), client)
    await client.aclose()


def _title(item, key):
    return decrypt(item.blob, key)["title"]


def _edit(engine, key, item_id, title, modified):
    """Local edit of an already-synced item, queued for push."""
    current = engine.store.get(item_id)
    edited = make_item(key, item_id, title=title, version=current.version, modified=modified)
    engine.store.upsert(edited)
    engine.queue_change(SyncAction.UPDATE, item_id)
    return edited


class TestFullSync:

    @pytest.mark.asyncio
    async def test_empty_vault(self, engine, store):
        report = await engine.full_sync()
        assert report.ok
        assert report.current_version == 0
        assert store.queue_length() == 0
        assert engine.get_state().status == SyncStatus.IDLE
        assert engine.get_state().last_sync_time is not None

    @pytest.mark.asyncio
    async def test_pull_stores_new_remote_items(self, engine, store, server, key):
        remote = server.put_item(make_item(key, "srv-1").to_dict())
        report = await engine.full_sync()
        assert report.pulled == 1
        assert store.get("srv-1").encrypted_data == remote["encryptedData"]
        assert store.get_sync_metadata(engine.device_id).last_sync_version == server.sync_version

    @pytest.mark.asyncio
    async def test_pull_applies_tombstones(self, engine, other_engine, store, server, key):
        server.put_item(make_item(key, "srv-1").to_dict())
        await engine.full_sync()
        await other_engine.full_sync()

        other_engine.store.soft_delete("srv-1")
        other_engine.queue_change(SyncAction.DELETE, "srv-1")
        await other_engine.full_sync()
        assert server.items["srv-1"]["deletedAt"] is not None

        report = await engine.full_sync()
        assert report.deleted == 1
        assert store.get("srv-1").is_deleted
        assert store.get_all() == []

    @pytest.mark.asyncio
    async def test_pull_keeps_pending_local_edit(self, engine, store, server, key):
        server.put_item(make_item(key, "srv-1", title="server copy").to_dict())
        store.upsert(make_item(key, "srv-1", title="local edit", modified=ts(0.5)))
        engine.queue_change(SyncAction.UPDATE, "srv-1")

        report = await engine.full_sync()

        assert report.conflicts == []
        assert _title(store.get("srv-1"), key) == "local edit"
        assert server.items["srv-1"]["encryptedData"] == store.get("srv-1").encrypted_data

    @pytest.mark.asyncio
    async def test_malformed_remote_item_is_skipped(self, engine, store, server, key):
        server.put_item({"id": "broken", "itemType": "login"})
        server.put_item(make_item(key, "good").to_dict())
        report = await engine.full_sync()
        assert report.ok
        assert store.get("broken") is None
        assert store.get("good") is not None


class TestPush:

    @pytest.mark.asyncio
    async def test_temp_id_remapped_from_acknowledgement(self, engine, store, server, key):
        server.send_acknowledgements = True
        store.upsert(make_item(key, "temp_1700000000000-abcd"))
        engine.queue_change(SyncAction.CREATE, "temp_1700000000000-abcd")

        report = await engine.full_sync()

        server_id = report.remapped["temp_1700000000000-abcd"]
        assert store.get("temp_1700000000000-abcd") is None
        assert store.get(server_id).version == 1
        assert server_id in server.items
        assert store.queue_length() == 0

    @pytest.mark.asyncio
    async def test_temp_id_remapped_on_pull_without_acknowledgement(self, engine, store, server, key):
        temp = make_item(key, "temp_1700000000000-abcd")
        store.upsert(temp)
        engine.queue_change(SyncAction.CREATE, temp.id)

        await engine.full_sync()
        assert store.get(temp.id) is not None

        report = await engine.full_sync()
        server_id = report.remapped[temp.id]
        assert store.get(temp.id) is None
        assert store.get(server_id).iv == temp.iv
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_create_then_delete_never_reaches_server(self, engine, store, server, key):
        store.upsert(make_item(key, "temp_1-aaaa"))
        engine.queue_change(SyncAction.CREATE, "temp_1-aaaa")
        store.soft_delete("temp_1-aaaa")
        engine.queue_change(SyncAction.DELETE, "temp_1-aaaa")

        report = await engine.full_sync()

        assert report.ok
        assert "POST /sync/push" not in server.requests
        assert server.items == {}
        assert store.queue_length() == 0
        assert store.get("temp_1-aaaa") is None

    @pytest.mark.asyncio
    async def test_repeated_updates_are_sent_once(self, engine, store, server, key):
        server.send_acknowledgements = True
        server.put_item(make_item(key, "srv-1").to_dict())
        await engine.full_sync()
        _edit(engine, key, "srv-1", "first", ts(10))
        _edit(engine, key, "srv-1", "second", ts(20))

        report = await engine.full_sync()

        assert report.pushed == 1
        assert server.items["srv-1"]["version"] == 2
        assert store.get("srv-1").version == 2
        assert _title(store.get("srv-1"), key) == "second"

    @pytest.mark.asyncio
    async def test_echo_of_own_push_is_not_a_conflict(self, engine, store, server, key):
        server.put_item(make_item(key, "srv-1").to_dict())
        await engine.full_sync()
        _edit(engine, key, "srv-1", "mine", ts(10))
        await engine.full_sync()
        assert store.get("srv-1").version == 1

        report = await engine.full_sync()
        assert report.conflicts == []
        assert store.get("srv-1").version == 2
        assert _title(store.get("srv-1"), key) == "mine"


class TestConcurrentEdits:

    @pytest.mark.asyncio
    async def test_two_devices_converge_on_latest_write(self, engine, other_engine, server, key):
        server.put_item(make_item(key, "shared", title="original").to_dict())
        await engine.full_sync()
        await other_engine.full_sync()

        _edit(engine, key, "shared", "from A", ts(10))
        _edit(other_engine, key, "shared", "from B", ts(20))

        await engine.full_sync()
        assert server.items["shared"]["version"] == 2

        report_b = await other_engine.full_sync()
        assert len(report_b.conflicts) == 1
        assert server.items["shared"]["version"] == 3

        report_a = await engine.full_sync()
        assert len(report_a.conflicts) == 1

        item_a = engine.store.get("shared")
        item_b = other_engine.store.get("shared")
        assert item_a.encrypted_data == item_b.encrypted_data == server.items["shared"]["encryptedData"]
        assert _title(item_a, key) == "from B"
        assert engine.store.queue_length() == other_engine.store.queue_length() == 0

    @pytest.mark.asyncio
    async def test_push_conflict_remote_wins(self, engine, other_engine, server, key):
        server.put_item(make_item(key, "shared").to_dict())
        await engine.full_sync()
        await other_engine.full_sync()

        engine.store.upsert(make_item(key, "shared", title="newer", modified=ts(10)))
        assert await engine.sync_item("shared", SyncAction.UPDATE)

        other_engine.store.upsert(make_item(key, "shared", title="older", modified=ts(5)))
        assert await other_engine.sync_item("shared", SyncAction.UPDATE)

        local = other_engine.store.get("shared")
        assert _title(local, key) == "newer"
        assert local.version == 2
        assert other_engine.store.queue_length() == 0

    @pytest.mark.asyncio
    async def test_push_conflict_local_wins_is_requeued(self, engine, other_engine, server, key):
        server.put_item(make_item(key, "shared").to_dict())
        await engine.full_sync()
        await other_engine.full_sync()

        engine.store.upsert(make_item(key, "shared", title="older", modified=ts(10)))
        await engine.sync_item("shared", SyncAction.UPDATE)

        other_engine.store.upsert(make_item(key, "shared", title="newer", modified=ts(30)))
        await other_engine.sync_item("shared", SyncAction.UPDATE)
        assert other_engine.store.get("shared").version == 2
        assert other_engine.store.queue_length() == 1

        await other_engine.full_sync()
        assert server.items["shared"]["version"] == 3
        assert server.items["shared"]["encryptedData"] == other_engine.store.get("shared").encrypted_data
        assert other_engine.store.queue_length() == 0


class TestQueueAndFailures:

    @pytest.mark.asyncio
    async def test_offline_changes_converge_when_back_online(self, store, api, server, key):
        online = [False]
        engine = SyncEngine(store, api, connectivity=lambda: online[0])
        for n in range(3):
            store.upsert(make_item(key, f"temp_{n}-0000", title=f"item {n}"))
            assert not await engine.sync_item(f"temp_{n}-0000", SyncAction.CREATE)

        report = await engine.full_sync()
        assert report.skipped
        assert report.status == SyncStatus.OFFLINE
        assert engine.get_state().status == SyncStatus.OFFLINE
        assert engine.get_state().queued_changes == 3
        assert server.requests == []

        online[0] = True
        report = await engine.full_sync()
        assert report.ok
        assert report.pushed == 3
        assert store.queue_length() == 0
        assert len(server.live_items()) == 3

        # temp ids give way to server ids once the creates come back on a pull
        await engine.full_sync()
        assert sorted(i.id for i in store.get_all()) == sorted(server.items)

    @pytest.mark.asyncio
    async def test_server_error_keeps_queue(self, engine, store, server, key):
        store.upsert(make_item(key, "temp_1-aaaa"))
        engine.queue_change(SyncAction.CREATE, "temp_1-aaaa")
        server.fail_with = 500

        report = await engine.full_sync()

        assert report.status == SyncStatus.ERROR
        assert report.error == "Internal server error"
        assert store.queue_length() == 1
        state = engine.get_state()
        assert state.status == SyncStatus.ERROR
        assert state.error == "Internal server error"
        assert not state.is_syncing

    @pytest.mark.asyncio
    async def test_unreachable_server_is_error_not_raise(self, engine, store, server, key):
        store.upsert(make_item(key, "temp_1-aaaa"))
        engine.queue_change(SyncAction.CREATE, "temp_1-aaaa")
        server.online = False
        report = await engine.full_sync()
        assert report.status == SyncStatus.ERROR
        assert store.queue_length() == 1
        assert not engine.is_syncing

    @pytest.mark.asyncio
    async def test_unbuildable_entry_retries_then_drops(self, engine, store):
        engine.queue_change(SyncAction.UPDATE, "ghost")
        for expected in (1, 2, 3):
            report = await engine.full_sync()
            assert report.failed == 1
            assert store.list_queue()[0].retry_count == expected

        report = await engine.full_sync()
        assert report.dropped == 1
        assert report.failed == 0
        assert store.queue_length() == 0

    @pytest.mark.asyncio
    async def test_sync_item_queues_on_server_error(self, engine, store, server, key):
        server.put_item(make_item(key, "srv-1").to_dict())
        await engine.full_sync()
        server.fail_with = 503
        store.upsert(make_item(key, "srv-1", title="edit", modified=ts(10)))
        assert not await engine.sync_item("srv-1", "update")
        assert [e.action for e in store.list_queue()] == [SyncAction.UPDATE]

    @pytest.mark.asyncio
    async def test_sync_item_delete(self, engine, store, server, key):
        server.put_item(make_item(key, "srv-1").to_dict())
        await engine.full_sync()
        store.soft_delete("srv-1")
        assert await engine.sync_item("srv-1", SyncAction.DELETE)
        assert server.items["srv-1"]["deletedAt"] is not None
        assert store.queue_length() == 0


class TestCursorAndState:

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, engine, store, server, key):
        server.put_item(make_item(key, "srv-1").to_dict())
        store.save_sync_metadata(SyncMetadata(engine.device_id, 50))
        report = await engine.full_sync()
        assert report.pulled == 0
        assert store.get_sync_metadata(engine.device_id).last_sync_version == 50

    @pytest.mark.asyncio
    async def test_cursor_advances_with_server(self, engine, store, server, key):
        versions = []
        for n in range(3):
            server.put_item(make_item(key, f"srv-{n}").to_dict())
            await engine.full_sync()
            versions.append(store.get_sync_metadata(engine.device_id).last_sync_version)
        assert versions == sorted(versions)
        assert versions[-1] == server.sync_version

    @pytest.mark.asyncio
    async def test_single_flight(self, engine, api, monkeypatch):
        gate = asyncio.Event()
        original_pull = api.sync_pull

        async def slow_pull(*args):
            await gate.wait()
            return await original_pull(*args)

        monkeypatch.setattr(api, "sync_pull", slow_pull)
        first = asyncio.create_task(engine.full_sync())
        await asyncio.sleep(0)
        assert engine.is_syncing

        second = await engine.full_sync()
        assert second.skipped
        assert second.status == SyncStatus.SYNCING

        gate.set()
        assert (await first).ok
        assert not engine.is_syncing

    @pytest.mark.asyncio
    async def test_listeners(self, engine):
        seen = []
        unsubscribe = engine.subscribe(lambda state: seen.append(state.status))
        await engine.full_sync()
        assert seen[0] == SyncStatus.SYNCING
        assert seen[-1] == SyncStatus.IDLE

        unsubscribe()
        count = len(seen)
        await engine.full_sync()
        assert len(seen) == count

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_sync(self, engine):
        def broken(state):
            raise RuntimeError("listener bug")

        engine.subscribe(broken)
        assert (await engine.full_sync()).ok

    @pytest.mark.asyncio
    async def test_clear_sync_data(self, engine, store):
        engine.queue_change(SyncAction.UPDATE, "a")
        store.save_sync_metadata(SyncMetadata(engine.device_id, 9))
        engine.clear_sync_data()
        assert engine.get_queued_changes_count() == 0
        assert store.get_sync_metadata(engine.device_id).last_sync_version == 0
        assert engine.get_state().queued_changes == 0


class TestMalformedResponses:

    @pytest.mark.asyncio
    async def test_bad_current_version_is_error_state(self, engine, store, server, key, monkeypatch):
        store.upsert(make_item(key, "temp_1-aaaa"))
        engine.queue_change(SyncAction.CREATE, "temp_1-aaaa")
        monkeypatch.setattr(server, "_pull", lambda body: server._ok({
            "items": [],
            "deletedIds": [],
            "currentVersion": "n/a",
            "conflicts": [],
        }))

        report = await engine.full_sync()

        assert report.status == SyncStatus.ERROR
        assert "Malformed sync response" in report.error
        state = engine.get_state()
        assert state.status == SyncStatus.ERROR
        assert not state.is_syncing
        assert not engine.is_syncing
        assert state.queued_changes == 1
        assert store.queue_length() == 1
        assert store.get_sync_metadata(engine.device_id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        [],
        "ok",
        {"items": {}, "deletedIds": [], "currentVersion": 1},
        {"items": [], "deletedIds": "x", "currentVersion": 1},
        {"items": [], "deletedIds": [], "currentVersion": True},
    ])
    async def test_bad_pull_shapes(self, engine, server, monkeypatch, body):
        monkeypatch.setattr(server, "_pull", lambda request_body: server._ok(body))
        report = await engine.full_sync()
        assert report.status == SyncStatus.ERROR
        assert not engine.get_state().is_syncing

    @pytest.mark.asyncio
    async def test_push_body_not_an_object_keeps_queue(self, engine, store, server, key, monkeypatch):
        store.upsert(make_item(key, "temp_1-aaaa"))
        engine.queue_change(SyncAction.CREATE, "temp_1-aaaa")
        monkeypatch.setattr(server, "_push", lambda user_id, body: server._ok(["accepted"]))

        report = await engine.full_sync()

        assert report.status == SyncStatus.ERROR
        assert not engine.get_state().is_syncing
        assert store.queue_length() == 1

    @pytest.mark.asyncio
    async def test_junk_conflict_entries_are_skipped(self, engine, store, server, key, monkeypatch):
        store.upsert(make_item(key, "temp_1-aaaa"))
        engine.queue_change(SyncAction.CREATE, "temp_1-aaaa")
        real_push = server._push

        def push(user_id, body):
            data = json.loads(real_push(user_id, body).content)["data"]
            data["conflicts"] = ["garbage", None]
            data["acknowledged"] = ["also garbage", {"id": "no-item-id"}]
            return server._ok(data)

        monkeypatch.setattr(server, "_push", push)
        report = await engine.full_sync()

        assert report.ok
        assert report.conflicts == []
        assert store.queue_length() == 0
        assert len(server.items) == 1

    @pytest.mark.asyncio
    async def test_sync_item_queues_on_malformed_reply(self, engine, store, server, key, monkeypatch):
        server.put_item(make_item(key, "srv-1").to_dict())
        await engine.full_sync()
        monkeypatch.setattr(server, "_push", lambda user_id, body: server._ok("ok"))

        store.upsert(make_item(key, "srv-1", title="edit", modified=ts(10)))
        assert not await engine.sync_item("srv-1", SyncAction.UPDATE)
        assert [e.action for e in store.list_queue()] == [SyncAction.UPDATE]

    @pytest.mark.asyncio
    async def test_store_failure_propagates_out_of_syncing(self, engine, store, monkeypatch):
        def broken(meta):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "save_sync_metadata", broken)
        with pytest.raises(sqlite3.OperationalError):
            await engine.full_sync()

        state = engine.get_state()
        assert state.status == SyncStatus.ERROR
        assert state.error == "disk I/O error"
        assert not state.is_syncing
        assert not engine.is_syncing
        with pytest.raises(sqlite3.OperationalError):
            await engine.full_sync()
