import asyncio
import json

import pytest
from websockets.asyncio.client import connect

from peerdrop.avails.wire import HEADERS, Envelope
from peerdrop.relay.server import Relay, start_relay

from fakes import FakeConnection


async def registered(relay, name):
    connection = FakeConnection(name)
    await relay.on_raw(connection, Envelope(HEADERS.SET_USERNAME, username=name).dump())
    return connection


@pytest.mark.asyncio
async def test_register_replies_with_roster():
    relay = Relay()
    alice = await registered(relay, "alice")
    (username_set,) = alice.of_type(HEADERS.USERNAME_SET)
    assert username_set["username"] == "alice"
    assert username_set["availableUsers"] == []

    bob = await registered(relay, "bob")
    assert bob.of_type(HEADERS.USERNAME_SET)[0]["availableUsers"] == ["alice"]
    assert alice.of_type(HEADERS.USER_LIST)[-1]["users"] == ["bob"]
    assert bob.of_type(HEADERS.USER_LIST)[-1]["users"] == ["alice"]


@pytest.mark.asyncio
async def test_name_conflict():
    relay = Relay()
    await registered(relay, "alice")
    imposter = await registered(relay, "alice")
    assert imposter.last().type == HEADERS.USERNAME_ERROR
    assert "alice" in imposter.last()["message"]
    assert relay.identities.name_of(imposter) is None


@pytest.mark.asyncio
async def test_blank_username_refused():
    relay = Relay()
    connection = await registered(relay, "   ")
    assert connection.last().type == HEADERS.USERNAME_ERROR
    assert len(relay.identities) == 0


@pytest.mark.asyncio
async def test_routing_overwrites_sender():
    relay = Relay()
    alice = await registered(relay, "alice")
    bob = await registered(relay, "bob")
    bob.clear()

    forged = {"type": "FILE_CHUNK", "sender": "mallory", "recipient": "bob", "transferId": "t1",
              "file": {"offset": 0, "data": "YWJj"}}
    await relay.on_raw(alice, json.dumps(forged))

    (routed,) = bob.envelopes
    assert routed.sender == "alice"
    assert routed["transferId"] == "t1"
    assert routed["file"] == {"offset": 0, "data": "YWJj"}


@pytest.mark.asyncio
async def test_unknown_recipient_reported_for_critical_types():
    relay = Relay(notify_unknown_recipient=True)
    alice = await registered(relay, "alice")
    alice.clear()

    await relay.on_raw(alice, Envelope(HEADERS.FILE_METADATA, recipient="ghost", transferId="t1").dump())
    error = alice.last()
    assert error.type == HEADERS.ERROR
    assert error.recipient == "alice"
    assert error["recipientUnknown"] == "ghost"
    assert error["failedType"] == HEADERS.FILE_METADATA

    alice.clear()
    await relay.on_raw(alice, Envelope(HEADERS.FILE_CHUNK, recipient="ghost", transferId="t1").dump())
    assert alice.sent == []


@pytest.mark.asyncio
async def test_unknown_recipient_silently_dropped_when_disabled():
    relay = Relay(notify_unknown_recipient=False)
    alice = await registered(relay, "alice")
    alice.clear()
    await relay.on_raw(alice, Envelope(HEADERS.OFFER, recipient="ghost", payload={}).dump())
    assert alice.sent == []
    assert await relay.route(Envelope(HEADERS.OFFER, sender="alice", recipient="ghost")) is False


@pytest.mark.asyncio
async def test_unregistered_connection_cannot_route():
    relay = Relay()
    bob = await registered(relay, "bob")
    bob.clear()
    stranger = FakeConnection()
    await relay.on_raw(stranger, Envelope(HEADERS.OFFER, recipient="bob", payload={}).dump())
    assert stranger.last().type == HEADERS.ERROR
    assert bob.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["{{not json", '{"no": "type"}', '{"type": "TELEPORT"}',
                                 '{"type": "FILE_CHUNK", "recipient": ["bob"]}'])
async def test_bad_input_answered_with_error(raw):
    relay = Relay()
    connection = FakeConnection()
    await relay.on_raw(connection, raw)
    assert connection.last().type == HEADERS.ERROR


@pytest.mark.asyncio
async def test_disconnect_releases_name_and_updates_roster():
    relay = Relay()
    alice = await registered(relay, "alice")
    bob = await registered(relay, "bob")
    alice.clear()

    await relay.on_disconnect(bob)
    assert "bob" not in relay.identities
    assert alice.last().type == HEADERS.USER_LIST
    assert alice.last()["users"] == []

    again = await registered(relay, "bob")
    assert again.of_type(HEADERS.USERNAME_SET)


@pytest.mark.asyncio
async def test_get_users_and_ping():
    relay = Relay()
    await registered(relay, "alice")
    bob = await registered(relay, "bob")
    bob.clear()

    await relay.on_raw(bob, Envelope(HEADERS.GET_USERS).dump())
    assert bob.last()["users"] == ["alice"]

    bob.clear()
    await relay.on_raw(bob, Envelope(HEADERS.PING).dump())
    assert bob.sent == []


@pytest.mark.asyncio
async def test_delivery_to_closed_connection_is_ignored():
    relay = Relay()
    alice = await registered(relay, "alice")
    bob = await registered(relay, "bob")
    bob.closed = True
    assert await relay.route(Envelope(HEADERS.FILE_COMPLETE, sender="alice", recipient="bob", transferId="t"))
    assert alice.of_type(HEADERS.ERROR) == []


@pytest.mark.asyncio
async def test_relay_over_websockets():
    async with start_relay(host="127.0.0.1", port=0) as server:
        port = server.sockets[0].getsockname()[1]
        uri = f"ws://127.0.0.1:{port}"
        async with connect(uri) as alice, connect(uri) as bob:
            await alice.send(Envelope(HEADERS.SET_USERNAME, username="alice").dump())
            assert Envelope.load_from(await alice.recv()).type == HEADERS.USERNAME_SET
            await bob.send(Envelope(HEADERS.SET_USERNAME, username="bob").dump())
            assert Envelope.load_from(await bob.recv()).type == HEADERS.USERNAME_SET

            await alice.send(Envelope(HEADERS.FILE_COMPLETE, recipient="bob", transferId="t1").dump())
            types = []
            while HEADERS.FILE_COMPLETE not in types:
                envelope = Envelope.load_from(await asyncio.wait_for(bob.recv(), 2))
                types.append(envelope.type)
            assert envelope.sender == "alice"
            assert envelope["transferId"] == "t1"


@pytest.mark.asyncio
async def test_malformed_names_keep_the_session():
    relay = Relay()
    alice = await registered(relay, "alice")
    alice.clear()
    await relay.on_raw(alice, '{"type": "FILE_CHUNK", "recipient": ["bob"]}')
    assert alice.last().type == HEADERS.ERROR
    assert relay.identities.get("alice") is alice

    await relay.on_raw(alice, Envelope(HEADERS.GET_USERS).dump())
    assert alice.last().type == HEADERS.USER_LIST


@pytest.mark.asyncio
async def test_malformed_frame_over_websockets_keeps_connection():
    async with start_relay(host="127.0.0.1", port=0) as server:
        port = server.sockets[0].getsockname()[1]
        async with connect(f"ws://127.0.0.1:{port}") as alice:
            await alice.send(Envelope(HEADERS.SET_USERNAME, username="alice").dump())
            types = []
            while HEADERS.USERNAME_SET not in types:
                types.append(Envelope.load_from(await asyncio.wait_for(alice.recv(), 2)).type)

            await alice.send('{"type": "FILE_CHUNK", "recipient": {"name": "bob"}}')
            await alice.send(Envelope(HEADERS.GET_USERS).dump())

            async def next_of(header):
                while True:
                    envelope = Envelope.load_from(await asyncio.wait_for(alice.recv(), 2))
                    if envelope.type == header:
                        return envelope

            await next_of(HEADERS.ERROR)
            assert (await next_of(HEADERS.USER_LIST))["users"] == []
