"""Live channel tests."""

import asyncio

import pytest

from flowgrid.channels import InMemoryChannel, get_channel
from flowgrid.channels.redis import RedisChannel
from flowgrid.contracts import RunEvent


async def _collect(channel, run_id, lifespan=None):
    return [event async for event in channel.subscribe(run_id, lifespan=lifespan)]


@pytest.mark.asyncio
async def test_inmemory_channel_fans_out_until_final_event():
    channel = InMemoryChannel()
    first = asyncio.create_task(_collect(channel, "run-1"))
    second = asyncio.create_task(_collect(channel, "run-1"))
    other = asyncio.create_task(_collect(channel, "run-2", lifespan=0.2))
    while channel.subscriber_count("run-1") < 2 or channel.subscriber_count("run-2") < 1:
        await asyncio.sleep(0)

    await channel.publish(RunEvent(type="step.update", run_id="run-1", data={"n": 1}))
    await channel.publish(RunEvent(type="run.complete", run_id="run-1"))
    await channel.publish(RunEvent(type="step.update", run_id="run-1", data={"n": 2}))

    for task in (first, second):
        events = await task
        assert [e.type for e in events] == ["step.update", "run.complete"]
    assert await other == []
    assert channel.subscriber_count("run-1") == 0
    assert channel.subscriber_count("run-2") == 0


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_dropped():
    channel = InMemoryChannel()
    await channel.publish(RunEvent(type="step.update", run_id="nobody"))
    assert channel.subscriber_count("nobody") == 0


@pytest.mark.asyncio
async def test_slow_subscribers_are_dropped():
    channel = InMemoryChannel(max_queue=1)
    stream = channel.subscribe("run-1")
    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    await channel.publish(RunEvent(type="step.update", run_id="run-1"))
    await channel.publish(RunEvent(type="step.update", run_id="run-1"))

    assert (await pending).type == "step.update"
    assert channel.subscriber_count("run-1") == 0
    await stream.aclose()


def test_run_event_round_trip():
    event = RunEvent(type="run.error", run_id="r", data={"error": "boom"})
    restored = RunEvent.from_json(event.to_json())
    assert restored == event
    assert restored.is_final
    assert not RunEvent(type="init", run_id="r").is_final


def test_redis_channel_naming():
    channel = RedisChannel()
    assert channel.host == "localhost"
    assert channel.port == 6379
    assert RedisChannel.channel_name("abc") == "flowgrid:run:abc"


def test_get_channel_backends():
    assert isinstance(get_channel("inmemory"), InMemoryChannel)
    assert isinstance(get_channel("REDIS"), RedisChannel)
    with pytest.raises(ValueError):
        get_channel("kafka")


@pytest.mark.asyncio
async def test_subscription_registers_before_iteration():
    channel = InMemoryChannel()
    async with channel.subscription("run-1") as events:
        assert channel.subscriber_count("run-1") == 1
        # Published before anyone iterates, still delivered
        await channel.publish(RunEvent(type="step.update", run_id="run-1"))
        await channel.publish(RunEvent(type="run.complete", run_id="run-1"))
        received = [event.type async for event in events]
    assert received == ["step.update", "run.complete"]
    assert channel.subscriber_count("run-1") == 0
