import pytest

from storage import InMemoryCheckpointStore


@pytest.mark.asyncio
async def test_values_are_copied_in_and_out():
    store = InMemoryCheckpointStore()
    value = {"stage": "INIT", "checkpoint": {"substep": "validated"}}

    await store.set("strategy:a", value)
    value["checkpoint"]["substep"] = "mutated"
    loaded = await store.get("strategy:a")
    loaded["stage"] = "DONE"

    assert await store.get("strategy:a") == {"stage": "INIT", "checkpoint": {"substep": "validated"}}


@pytest.mark.asyncio
async def test_list_delete_and_missing_keys():
    store = InMemoryCheckpointStore()
    await store.set("strategy:b", {"n": 2})
    await store.set("strategy:a", {"n": 1})
    await store.set("other", {"n": 3})

    assert [record.key for record in await store.list_by_prefix("strategy:")] == ["strategy:a", "strategy:b"]
    assert await store.delete("strategy:a") is True
    assert await store.delete("strategy:a") is False
    assert await store.get("strategy:a") is None
