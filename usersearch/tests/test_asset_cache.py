"""Tests for the asset cache."""

import asyncio
import pytest

from usersearch.core.assets import AssetCache
from usersearch.core.config import Config
from usersearch.core.errors import DecodeError, HttpStatusError, NetworkError
from usersearch.core.models import QueryPhase, SlotState
from usersearch.core.query import QueryController
from usersearch.tests.fakes import FakeAssetClient, FakeRemoteClient, make_entity, make_png


@pytest.fixture
def png():
    return make_png()


@pytest.mark.asyncio
async def test_unknown_entity_is_absent():
    cache = AssetCache(FakeAssetClient())

    assert cache.get(42).state == SlotState.ABSENT
    assert 42 not in cache
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_request_loads_image(png):
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: png})

    async with AssetCache(client) as cache:
        await cache.request(entity)

        slot = cache.get(1)
        assert slot.state == SlotState.LOADED
        assert slot.data == png
        assert client.calls == [entity.avatar_url]


@pytest.mark.asyncio
async def test_concurrent_requests_fetch_once(png):
    """Requests issued while PENDING never start a second download."""
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: png})
    gate = client.gate(entity.avatar_url)

    async with AssetCache(client) as cache:
        tasks = [asyncio.create_task(cache.request(entity)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.get(1).state == SlotState.PENDING

        gate.set()
        await asyncio.gather(*tasks)

        assert client.calls == [entity.avatar_url]
        assert cache.get(1).state == SlotState.LOADED
        assert cache.get_stats()['short_circuits'] == 4


@pytest.mark.asyncio
async def test_rerequest_after_load_is_noop(png):
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: png})

    async with AssetCache(client) as cache:
        await cache.request(entity)
        loaded = cache.get(1)

        await cache.request(entity)

        assert client.calls == [entity.avatar_url]
        assert cache.get(1) is loaded


@pytest.mark.asyncio
async def test_same_id_shares_slot(png):
    original = make_entity(1, "octo", "https://avatars.example.com/a")
    redecoded = make_entity(1, "octo-renamed", "https://avatars.example.com/b")
    client = FakeAssetClient({original.avatar_url: png})

    async with AssetCache(client) as cache:
        await cache.request(original)
        await cache.request(redecoded)

        assert client.calls == [original.avatar_url]


@pytest.mark.asyncio
async def test_failure_is_isolated(png):
    broken = make_entity(1)
    working = make_entity(2)
    client = FakeAssetClient({
        broken.avatar_url: HttpStatusError(404, url=broken.avatar_url),
        working.avatar_url: png
    })

    async with AssetCache(client) as cache:
        await cache.request_many([broken, working])

        failed = cache.get(1)
        assert failed.state == SlotState.FAILED
        assert isinstance(failed.error, HttpStatusError)
        assert failed.error.status_code == 404
        assert cache.get(2).state == SlotState.LOADED


@pytest.mark.asyncio
async def test_failed_slot_refetches_on_next_request(png):
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: NetworkError("connection reset")})

    async with AssetCache(client) as cache:
        await cache.request(entity)
        assert cache.get(1).state == SlotState.FAILED

        client.responses[entity.avatar_url] = png
        await cache.request(entity)

        assert cache.get(1).state == SlotState.LOADED
        assert client.calls == [entity.avatar_url, entity.avatar_url]


@pytest.mark.asyncio
async def test_undecodable_bytes_fail():
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: b"<html>not an image</html>"})

    async with AssetCache(client) as cache:
        await cache.request(entity)

        slot = cache.get(1)
        assert slot.state == SlotState.FAILED
        assert isinstance(slot.error, DecodeError)


@pytest.mark.asyncio
async def test_verification_can_be_disabled():
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: b"raw"})
    config = Config(assets={'verify_images': False})

    async with AssetCache(client, config) as cache:
        await cache.request(entity)

        assert cache.get(1).data == b"raw"


@pytest.mark.asyncio
async def test_unexpected_exception_marks_failed():
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: RuntimeError("bug")})

    async with AssetCache(client) as cache:
        await cache.request(entity)

        slot = cache.get(1)
        assert slot.state == SlotState.FAILED
        assert "bug" in slot.error.message


@pytest.mark.asyncio
async def test_subscribers_see_every_transition(png):
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: png})

    async with AssetCache(client) as cache:
        seen = []
        cache.subscribe(lambda entity_id, slot: seen.append((entity_id, slot.state)))

        await cache.request(entity)
        await cache.request(entity)
        await cache.event_bus.join()

        assert seen == [(1, SlotState.PENDING), (1, SlotState.LOADED)]


@pytest.mark.asyncio
async def test_max_concurrent_fetches_caps_downloads(png):
    entities = [make_entity(i) for i in range(4)]
    client = FakeAssetClient({e.avatar_url: png for e in entities}, delay=0.01)
    config = Config(assets={'max_concurrent_fetches': 1})

    async with AssetCache(client, config) as cache:
        await cache.request_many(entities)

    assert client.max_active == 1
    assert all(cache.get(e.id).state == SlotState.LOADED for e in entities)


@pytest.mark.asyncio
async def test_uncapped_fetches_run_concurrently(png):
    entities = [make_entity(i) for i in range(3)]
    client = FakeAssetClient({e.avatar_url: png for e in entities}, delay=0.01)

    async with AssetCache(client) as cache:
        await cache.request_many(entities)

    assert client.max_active == 3


@pytest.mark.asyncio
async def test_close_waits_for_scheduled_requests(png):
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: png}, delay=0.01)

    cache = AssetCache(client)
    await cache.start()
    cache.request_nowait(entity)
    await cache.close()

    assert cache.get(1).state == SlotState.LOADED
    assert len(cache.snapshot()) == 1


@pytest.mark.asyncio
async def test_karthik_scenario_end_to_end(png):
    """Search "karthik", then load the first avatar exactly once."""
    karthik = make_entity(1, "karthik")
    karthik2 = make_entity(2, "karthik2")
    client = FakeRemoteClient(
        searches={"karthik": [karthik, karthik2]},
        assets={karthik.avatar_url: png}
    )

    async with QueryController(client) as controller, AssetCache(client) as cache:
        loading = [controller.loading]
        controller.subscribe(lambda state: loading.append(state.loading))

        await controller.search("karthik")
        await controller.event_bus.join()

        assert controller.phase == QueryPhase.LOADED
        assert controller.results == [karthik, karthik2]
        assert loading == [False, True, False]

        first = controller.results[0]
        await cache.request(first)
        assert cache.get(1).state == SlotState.LOADED

        await cache.request(first)
        assert client.assets.calls == [karthik.avatar_url]
        assert client.searches.calls == ["karthik"]


@pytest.mark.asyncio
async def test_cancelled_request_releases_pending_slot(png):
    """A request abandoned mid-download can be issued again later."""
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: png})
    client.gate(entity.avatar_url)

    async with AssetCache(client) as cache:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.request(entity), 0.01)

        assert cache.get(1).state == SlotState.ABSENT

        client.gates.clear()
        await cache.request(entity)

        assert cache.get(1).state == SlotState.LOADED
        assert client.calls == [entity.avatar_url, entity.avatar_url]
        assert cache.get_stats()['cancelled'] == 1


@pytest.mark.asyncio
async def test_cancelled_retry_keeps_failure(png):
    entity = make_entity(1)
    client = FakeAssetClient({entity.avatar_url: NetworkError("reset")})

    async with AssetCache(client) as cache:
        await cache.request(entity)
        client.responses[entity.avatar_url] = png
        client.gate(entity.avatar_url)

        task = cache.request_nowait(entity)
        await asyncio.sleep(0)
        assert cache.get(1).state == SlotState.PENDING

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        slot = cache.get(1)
        assert slot.state == SlotState.FAILED
        assert isinstance(slot.error, NetworkError)


@pytest.mark.asyncio
async def test_every_transition_delivered_under_load():
    """Thousands of slot transitions reach subscribers without drops."""
    entities = [make_entity(i) for i in range(1200)]
    client = FakeAssetClient({e.avatar_url: b"raw" for e in entities})
    config = Config(assets={'verify_images': False})

    async with AssetCache(client, config) as cache:
        seen = []
        cache.subscribe(lambda entity_id, slot: seen.append((entity_id, slot.state)))

        await cache.request_many(entities)
        await cache.event_bus.join()

        assert len(seen) == 2400
        assert seen.count((1199, SlotState.LOADED)) == 1
        assert sum(1 for _, state in seen if state == SlotState.LOADED) == 1200
        assert cache.event_bus.get_stats().get('dropped', 0) == 0
