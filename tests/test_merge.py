import pytest

from collabtable import db
from collabtable.clock import Clock
from collabtable.errors import MergeError
from collabtable.merge import MergeEngine, SyncStats
from collabtable.models import CollabList, Field, Item, ItemValue, SyncRequest, SyncResponse


def make_list(list_id="L1", name="Groceries", created=100, updated=100, deleted=False):
    return CollabList(id=list_id, name=name, created_at=created, updated_at=updated, is_deleted=deleted)


def make_field(field_id="F1", list_id="L1", updated=100, deleted=False, name="Name"):
    return Field(id=field_id, list_id=list_id, name=name, created_at=100, updated_at=updated, is_deleted=deleted)


def make_item(item_id="I1", list_id="L1", updated=100, deleted=False):
    return Item(id=item_id, list_id=list_id, created_at=100, updated_at=updated, is_deleted=deleted)


def make_value(value_id="V1", item_id="I1", field_id="F1", value="milk", updated=100):
    return ItemValue(id=value_id, item_id=item_id, field_id=field_id, value=value, updated_at=updated)


def full_request(since=0):
    return SyncRequest(
        last_sync_timestamp=since,
        lists=[make_list()],
        fields=[make_field()],
        items=[make_item()],
        item_values=[make_value()],
    )


async def server_state():
    return {table: await db.fetch_all(f"SELECT * FROM {table} ORDER BY id") for table in db.SYNC_TABLES}


@pytest.fixture
def engine():
    return MergeEngine(clock=Clock(lambda: 1_000))


@pytest.mark.asyncio
async def test_apply_is_idempotent(init_database, engine):
    await engine.apply_and_diff(full_request())
    first = await server_state()
    await engine.apply_and_diff(full_request())
    assert await server_state() == first
    assert len(first["lists"]) == 1
    assert len(first["item_values"]) == 1


@pytest.mark.asyncio
async def test_upsert_overwrites_mutable_columns_only(init_database, engine):
    await engine.apply_and_diff(full_request())

    request = SyncRequest(
        last_sync_timestamp=0,
        lists=[make_list(name="Shopping", created=999, updated=200)],
        items=[Item(id="I1", list_id="L1", created_at=999, updated_at=200, is_deleted=True)],
        item_values=[make_value(value="bread", updated=200)],
    )
    await engine.apply_and_diff(request)

    state = await server_state()
    lst = state["lists"][0]
    assert lst["name"] == "Shopping"
    assert lst["updatedAt"] == 200
    assert lst["createdAt"] == 100
    item = state["items"][0]
    assert item["isDeleted"] is True
    assert item["createdAt"] == 100
    assert state["item_values"][0]["value"] == "bread"


@pytest.mark.asyncio
async def test_last_write_wins_without_timestamp_comparison(init_database, engine):
    await engine.apply_and_diff(SyncRequest(lists=[make_list(name="Newer", updated=500)]))
    await engine.apply_and_diff(SyncRequest(lists=[make_list(name="Older", updated=200)]))

    state = await server_state()
    assert state["lists"][0]["name"] == "Older"
    assert state["lists"][0]["updatedAt"] == 200


@pytest.mark.asyncio
async def test_stale_writes_rejected_when_enabled(init_database):
    engine = MergeEngine(clock=Clock(lambda: 1_000), reject_stale_writes=True)
    await engine.apply_and_diff(SyncRequest(lists=[make_list(name="Newer", updated=500)]))
    await engine.apply_and_diff(SyncRequest(lists=[make_list(name="Older", updated=200)]))

    state = await server_state()
    assert state["lists"][0]["name"] == "Newer"


@pytest.mark.asyncio
async def test_initial_sync_excludes_tombstones_but_keeps_values(init_database, engine):
    request = SyncRequest(
        lists=[make_list("L1"), make_list("L2", deleted=True)],
        fields=[make_field("F1"), make_field("F2", deleted=True)],
        items=[make_item("I1"), make_item("I2", deleted=True)],
        item_values=[make_value("V1", item_id="I1"), make_value("V2", item_id="I2")],
    )
    await engine.apply_and_diff(request)

    response = await engine.apply_and_diff(SyncRequest(last_sync_timestamp=0))
    assert [lst.id for lst in response.lists] == ["L1"]
    assert [f.id for f in response.fields] == ["F1"]
    assert [i.id for i in response.items] == ["I1"]
    assert sorted(v.id for v in response.item_values) == ["V1", "V2"]


@pytest.mark.asyncio
async def test_delta_includes_tombstones_at_or_after_watermark(init_database, engine):
    request = SyncRequest(
        lists=[make_list("L1", updated=100), make_list("L2", updated=300, deleted=True),
               make_list("L3", updated=299)],
    )
    await engine.apply_and_diff(request)

    response = await engine.apply_and_diff(SyncRequest(last_sync_timestamp=299))
    assert sorted(lst.id for lst in response.lists) == ["L2", "L3"]
    assert next(lst for lst in response.lists if lst.id == "L2").is_deleted is True


@pytest.mark.asyncio
async def test_round_trip_between_clients(init_database):
    engine = MergeEngine(clock=Clock(lambda: 150))

    response_a = await engine.apply_and_diff(
        SyncRequest(last_sync_timestamp=0, lists=[make_list("L1", updated=100)])
    )
    assert response_a.server_timestamp == 150

    response_b = await engine.apply_and_diff(SyncRequest(last_sync_timestamp=90))
    assert [lst.id for lst in response_b.lists] == ["L1"]


@pytest.mark.asyncio
async def test_children_in_same_batch_as_parent(init_database, engine):
    request = SyncRequest(
        lists=[make_list()],
        fields=[make_field()],
        items=[make_item()],
        item_values=[make_value()],
    )
    response = await engine.apply_and_diff(request)
    assert response.counts() == (1, 1, 1, 1)


@pytest.mark.asyncio
async def test_constraint_violation_rolls_back_everything(init_database, engine):
    request = SyncRequest(
        lists=[make_list("L1")],
        fields=[make_field("F1", list_id="missing")],
    )
    with pytest.raises(MergeError):
        await engine.apply_and_diff(request)

    state = await server_state()
    assert state["lists"] == []
    assert state["fields"] == []
    notifications = await db.fetch_all("SELECT * FROM notifications")
    assert notifications == []


@pytest.mark.asyncio
async def test_value_with_unknown_item_is_stored(init_database, engine):
    await engine.apply_and_diff(SyncRequest(item_values=[make_value(item_id="ghost", field_id="ghost")]))
    state = await server_state()
    assert len(state["item_values"]) == 1


def test_stats_report_resets():
    stats = SyncStats()
    assert stats.report() is None

    request = SyncRequest(lists=[make_list()])
    response = SyncResponse(lists=[make_list(), make_list("L2")], server_timestamp=1)
    stats.record(request, response)
    stats.record(request, response)

    line = stats.report()
    assert line.startswith("2 syncs; received 2 lists")
    assert "sent 4 lists" in line
    assert stats.report() is None
