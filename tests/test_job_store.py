import pytest

from async_msg_scheduler.job_store import JobStore
from async_msg_scheduler.persistence import Persistence
from conftest import make_job


@pytest.mark.asyncio
async def test_put_persists_and_reloads(persistence):
    store = JobStore("acme", persistence)
    await store.put(make_job(1))
    await store.put(make_job(2, stop_keyword="stop"))

    reloaded = JobStore("acme", persistence)
    jobs = await reloaded.load()
    assert [job.id for job in jobs] == [1, 2]
    assert reloaded.get(2).stop_keyword == "stop"
    assert 1 in reloaded and len(reloaded) == 2


@pytest.mark.asyncio
async def test_invalid_documents_skipped(persistence):
    await persistence.write_collection("acme", [make_job(1).to_document(), {"id": 2, "recipients": []}])
    store = JobStore("acme", persistence)
    jobs = await store.load()
    assert [job.id for job in jobs] == [1]


@pytest.mark.asyncio
async def test_replace_does_not_resurrect(persistence):
    store = JobStore("acme", persistence)
    await store.put(make_job(1))
    assert await store.remove(1) is True

    assert await store.replace(make_job(1)) is False
    assert await persistence.read_collection("acme") == []
    assert await store.remove(1) is False


@pytest.mark.asyncio
async def test_replace_existing(persistence):
    store = JobStore("acme", persistence)
    await store.put(make_job(1))
    assert await store.replace(make_job(1, remaining_runs=4)) is True
    docs = await persistence.read_collection("acme")
    assert docs[0]["remaining_runs"] == 4


def test_new_id_is_strictly_increasing(tmp_path):
    store = JobStore("acme", Persistence(str(tmp_path / "db.sqlite")), millis=lambda: 1000)
    assert [store.new_id() for _ in range(3)] == [1000, 1001, 1002]


@pytest.mark.asyncio
async def test_new_id_above_loaded_ids(persistence):
    await persistence.write_collection("acme", [make_job(5000).to_document()])
    store = JobStore("acme", persistence, millis=lambda: 10)
    await store.load()
    assert store.new_id() == 5001


@pytest.mark.asyncio
async def test_drop_deletes_collection(persistence):
    store = JobStore("acme", persistence)
    await store.put(make_job(1))
    await store.drop()
    assert len(store) == 0
    assert await persistence.list_tenants() == []
