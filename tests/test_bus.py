import pytest

from ucibus.acl import load_acl
from ucibus.bus import Bus, LocalBus, Message, encode_payload
from ucibus.errors import AuthorizationError, TransportUnavailable


def test_encode_payload():
    assert encode_payload(None) == b""
    assert encode_payload("") == b""
    assert encode_payload(b"raw") == b"raw"
    assert Message("t", encode_payload({"a": 1})).json() == {"a": 1}
    assert Message("t", b"").is_tombstone


def test_local_bus_satisfies_protocol():
    assert isinstance(LocalBus(), Bus)


@pytest.mark.asyncio
async def test_publish_requires_connection():
    bus = LocalBus()
    with pytest.raises(TransportUnavailable):
        await bus.publish("config/a/b/c", {"x": 1})


@pytest.mark.asyncio
async def test_wildcard_subscription_and_ordering():
    received = []

    async def handler(message):
        received.append((message.topic, message.json()))

    async with LocalBus() as bus:
        await bus.subscribe("config/+/interface/#", handler)
        await bus.publish("config/network/interface/u1", {"n": 1})
        await bus.publish("config/network/route/u2", {"n": 2})
        await bus.publish("config/network/interface/u3", {"n": 3})
        await bus.join()

    assert received == [
        ("config/network/interface/u1", {"n": 1}),
        ("config/network/interface/u3", {"n": 3}),
    ]


@pytest.mark.asyncio
async def test_retained_replay_and_tombstone():
    async with LocalBus() as bus:
        await bus.publish("config/f/t/u1", {"v": 1}, retain=True)
        await bus.publish("config/f/t/u2", {"v": 2}, retain=True)
        await bus.publish("config/f/t/u2", b"", retain=True)

        seen = []

        async def handler(message):
            seen.append(message.topic)

        await bus.subscribe("config/#", handler)
        await bus.join()

        assert seen == ["config/f/t/u1"]
        assert bus.retained("config/f/t/u2") is None
        assert set(bus.retained_matching("config/f/+/+")) == {"config/f/t/u1"}


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_delivery():
    seen = []

    async def handler(message):
        if message.json()["n"] == 1:
            raise RuntimeError("boom")
        seen.append(message.json()["n"])

    async with LocalBus() as bus:
        await bus.subscribe("t", handler)
        await bus.publish("t", {"n": 1})
        await bus.publish("t", {"n": 2})
        await bus.join()

    assert seen == [2]


@pytest.mark.asyncio
async def test_acl_checked_for_callers():
    acl = load_acl()
    async with LocalBus(acl=acl) as bus:
        client = acl.caller("client")
        with pytest.raises(AuthorizationError):
            await bus.publish("system/startup", {"x": 1}, caller=client)
        with pytest.raises(AuthorizationError):
            await bus.subscribe("#", _noop, caller=client)
        await bus.publish("commands/edit", {"x": 1}, caller=client)
        # trusted in-process path
        await bus.publish("system/startup", {"x": 1})


@pytest.mark.asyncio
async def test_publish_to_wildcard_topic_rejected():
    async with LocalBus() as bus:
        with pytest.raises(ValueError):
            await bus.publish("config/+/x", {})


async def _noop(message):
    return None
