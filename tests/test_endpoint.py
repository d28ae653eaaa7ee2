import asyncio
import contextlib

import pytest

from peerdrop.avails.exceptions import NameConflict, NegotiationFailed
from peerdrop.conduit import MemoryPersister
from peerdrop.core.endpoint import Endpoint
from peerdrop.relay.server import start_relay
from peerdrop.transfers import TransferMode, TransferState

from fakes import FakeNetwork, wait_until


@contextlib.asynccontextmanager
async def online(*names, network=None):
    """a relay on a free port and one endpoint per name, all with in-memory persisters"""
    network = network or FakeNetwork()
    async with start_relay(host="127.0.0.1", port=0) as server:
        port = server.sockets[0].getsockname()[1]
        async with contextlib.AsyncExitStack() as stack:
            endpoints = []
            for name in names:
                endpoints.append(await stack.enter_async_context(Endpoint(
                    name,
                    f"ws://127.0.0.1:{port}",
                    persister=MemoryPersister(),
                    connector_factory=network.connector,
                )))
            yield endpoints


async def received(endpoint, transfer_id):
    await wait_until(lambda: endpoint.transfers.persister.get(transfer_id) is not None, timeout=5)
    return endpoint.transfers.persister.data_of(transfer_id)


@pytest.mark.asyncio
async def test_relayed_transfer_between_endpoints(make_file):
    path, data = make_file(10000)
    async with online("alice", "bob") as (alice, bob):
        await wait_until(lambda: "bob" in alice.users)
        sender = await alice.send_file("bob", path, TransferMode.RELAYED, chunk_len=4096)
        assert sender.status is TransferState.COMPLETE
        assert sender.transfer.mode is TransferMode.RELAYED
        assert await received(bob, sender.id) == data
        assert bob.transfers.persister.get(sender.id)[1]["sender"] == "alice"


@pytest.mark.asyncio
async def test_direct_transfer_between_endpoints(make_file):
    path, data = make_file(40000)
    async with online("alice", "bob") as (alice, bob):
        await wait_until(lambda: "bob" in alice.users)
        sender = await asyncio.wait_for(alice.send_file("bob", path, "direct"), 5)
        assert sender.transfer.mode is TransferMode.DIRECT
        assert await received(bob, sender.id) == data
        assert bob.transfers.persister.get(sender.id)[1]["mode"] == "direct"


@pytest.mark.asyncio
async def test_falls_back_to_relay_without_direct_channel(make_file):
    path, data = make_file(5000)
    async with online("alice", "bob", network=FakeNetwork(fail_offer=True)) as (alice, bob):
        await wait_until(lambda: "bob" in alice.users)
        sender = await asyncio.wait_for(alice.send_file("bob", path), 5)
        assert sender.transfer.mode is TransferMode.RELAYED
        assert await received(bob, sender.id) == data


@pytest.mark.asyncio
async def test_direct_to_unknown_recipient_fails_fast(make_file):
    path, _ = make_file(10)
    async with online("alice") as (alice,):
        with pytest.raises(NegotiationFailed):
            await asyncio.wait_for(alice.send_file("ghost", path, "direct"), 5)


@pytest.mark.asyncio
async def test_sending_to_yourself_refused(make_file):
    path, _ = make_file(10)
    async with online("alice") as (alice,):
        with pytest.raises(ValueError):
            await alice.send_file("alice", path)


@pytest.mark.asyncio
async def test_taken_name_refused():
    with pytest.raises(NameConflict):
        async with online("alice", "alice"):
            pass


@pytest.mark.asyncio
async def test_roster_follows_departures():
    async with online("alice") as (alice,):
        async with online_peer(alice, "bob"):
            await wait_until(lambda: "bob" in alice.users)
        await wait_until(lambda: "bob" not in alice.users)


@contextlib.asynccontextmanager
async def online_peer(endpoint, name):
    async with Endpoint(name, endpoint.session.uri, persister=MemoryPersister(),
                        connector_factory=FakeNetwork().connector) as peer:
        yield peer
