import asyncio
import functools

import pytest

from peerdrop.avails import const
from peerdrop.avails.exceptions import NegotiationFailed, NegotiationTimeout, TransportClosed
from peerdrop.avails.wire import HEADERS, Envelope, FileComplete
from peerdrop.core.negotiation import NegotiationEngine, NegotiationRole, NegotiationState, PeerNegotiation

from fakes import FakeNetwork, wait_until


class Peers:
    """two engines whose envelopes reach each other as if routed by the relay"""

    def __init__(self, network, timeout=None):
        self.network = network
        self.sent = []
        self.ready = {"alice": [], "bob": []}
        self.tasks = set()
        self.engines = {
            name: NegotiationEngine(
                functools.partial(self._route, name),
                network.connector,
                local_name=functools.partial(str, name),
                on_transport=functools.partial(self._ready, name),
                timeout=timeout,
            )
            for name in ("alice", "bob")
        }

    @property
    def alice(self):
        return self.engines["alice"]

    @property
    def bob(self):
        return self.engines["bob"]

    async def _route(self, sender, envelope):
        envelope.sender = sender
        self.sent.append(envelope)
        target = self.engines[envelope.recipient]
        handler = {
            HEADERS.OFFER: target.handle_offer,
            HEADERS.ANSWER: target.handle_answer,
            HEADERS.ICE_CANDIDATE: target.handle_candidate,
        }[envelope.type]
        task = asyncio.create_task(handler(envelope))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def _ready(self, name, remote, transport):
        self.ready[name].append((remote, transport))

    def count(self, header):
        return sum(e.type == header for e in self.sent)

    async def close(self):
        for engine in self.engines.values():
            await engine.close()
        await asyncio.gather(*self.tasks, return_exceptions=True)


class Capture:
    """single engine, outgoing envelopes are only recorded"""

    def __init__(self, network, *, fail_send=False, timeout=None):
        self.sent = []
        self.fail_send = fail_send
        self.engine = NegotiationEngine(self._send, network.connector, local_name=lambda: "alice", timeout=timeout)

    async def _send(self, envelope):
        if self.fail_send:
            raise TransportClosed("not connected to relay")
        self.sent.append(envelope)

    def last(self, header):
        return [e for e in self.sent if e.type == header][-1]


def envelope_from(sender, header, **payload):
    return Envelope(header, sender=sender, recipient="alice", payload=payload)


@pytest.mark.asyncio
async def test_connect_opens_channel_on_both_sides():
    peers = Peers(FakeNetwork())
    try:
        transport = await asyncio.wait_for(peers.alice.connect("bob"), 1)
        await wait_until(lambda: peers.ready["bob"])
        remote, bob_side = peers.ready["bob"][0]
        assert remote == "alice"
        assert peers.ready["alice"] == [("bob", transport)]
        assert peers.alice.state_of("bob") is NegotiationState.CONNECTED
        assert peers.bob.state_of("alice") is NegotiationState.CONNECTED

        await transport.send(FileComplete("t1", "a.txt"))
        assert await asyncio.wait_for(bob_side.recv(), 1) == FileComplete("t1", "a.txt")
    finally:
        await peers.close()


@pytest.mark.asyncio
async def test_live_transport_is_reused():
    peers = Peers(FakeNetwork())
    try:
        first = await asyncio.wait_for(peers.alice.connect("bob"), 1)
        second = await peers.alice.connect("bob")
        assert first is second
        assert peers.count(HEADERS.OFFER) == 1
    finally:
        await peers.close()


@pytest.mark.asyncio
async def test_simultaneous_offers_settle_on_one_channel():
    peers = Peers(FakeNetwork())
    try:
        a_transport, b_transport = await asyncio.wait_for(
            asyncio.gather(peers.alice.connect("bob"), peers.bob.connect("alice")), 1
        )
        assert a_transport.channel.peer is b_transport.channel
        assert peers.count(HEADERS.ANSWER) == 1
        assert peers.alice.negotiations["bob"].role is NegotiationRole.OFFERER
        assert peers.bob.negotiations["alice"].role is NegotiationRole.ANSWERER
    finally:
        await peers.close()


@pytest.mark.asyncio
async def test_candidates_buffered_until_answer():
    network = FakeNetwork(hang=True)
    capture = Capture(network)
    connecting = asyncio.create_task(capture.engine.connect("bob"))
    await wait_until(lambda: capture.sent)
    offer = capture.last(HEADERS.OFFER)
    negotiation_id = offer.payload["negotiationId"]
    offerer = network.connectors[0]

    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId=negotiation_id, candidate={"candidate": "c1"}))
    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId="someone-else", candidate={"candidate": "x"}))
    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId=negotiation_id, candidate={"candidate": "c2"}))
    assert offerer.candidates == []
    assert capture.engine.negotiations["bob"].pending_candidates == [{"candidate": "c1"}, {"candidate": "c2"}]

    answerer = network.connector()
    answer = await answerer.accept_offer({"sdp": offer.payload["sdp"], "type": "offer"})
    await capture.engine.handle_answer(envelope_from("bob", HEADERS.ANSWER, negotiationId=negotiation_id, **answer))
    assert offerer.candidates == [{"candidate": "c1"}, {"candidate": "c2"}]
    assert capture.engine.state_of("bob") is NegotiationState.ANSWERED

    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId=negotiation_id, candidate={"candidate": "c3"}))
    assert offerer.candidates[-1] == {"candidate": "c3"}

    await capture.engine.close()
    with pytest.raises(NegotiationFailed):
        await connecting


@pytest.mark.asyncio
async def test_candidates_ahead_of_offer_are_kept():
    network = FakeNetwork(hang=True)
    capture = Capture(network)
    description = await network.connector().create_offer()

    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId="n0", candidate={"candidate": "old"}))
    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId="n1", candidate={"candidate": "early"}))
    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId="n1", candidate={"candidate": "early2"}))
    assert "bob" not in capture.engine.negotiations

    await capture.engine.handle_offer(envelope_from("bob", HEADERS.OFFER, negotiationId="n1", **description))
    answerer = capture.engine.negotiations["bob"]
    assert answerer.state is NegotiationState.ANSWERED
    assert answerer.connector.candidates == [{"candidate": "early"}, {"candidate": "early2"}]
    assert capture.engine.early_candidates == {}
    await capture.engine.close()


@pytest.mark.asyncio
async def test_early_candidates_are_bounded():
    capture = Capture(FakeNetwork(hang=True))
    for i in range(const.MAX_EARLY_CANDIDATES + 5):
        await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                            negotiationId="n1", candidate={"candidate": f"c{i}"}))
    negotiation_id, kept = capture.engine.early_candidates["bob"]
    assert negotiation_id == "n1"
    assert len(kept) == const.MAX_EARLY_CANDIDATES
    assert kept[0] == {"candidate": "c0"}


@pytest.mark.asyncio
async def test_offer_goes_out_before_local_candidates():
    network = FakeNetwork(hang=True, offer_candidates=[{"candidate": "c1"}, {"candidate": "c2"}])
    capture = Capture(network)
    connecting = asyncio.create_task(capture.engine.connect("bob"))
    await wait_until(lambda: sum(e.type == HEADERS.ICE_CANDIDATE for e in capture.sent) == 2)

    assert [e.type for e in capture.sent] == [HEADERS.OFFER, HEADERS.ICE_CANDIDATE, HEADERS.ICE_CANDIDATE]
    negotiation_id = capture.sent[0].payload["negotiationId"]
    assert [e.payload for e in capture.sent[1:]] == [
        {"negotiationId": negotiation_id, "candidate": {"candidate": "c1"}},
        {"negotiationId": negotiation_id, "candidate": {"candidate": "c2"}},
    ]

    await capture.engine.close()
    with pytest.raises(NegotiationFailed):
        await connecting


@pytest.mark.asyncio
async def test_early_candidate_reaches_answerer_end_to_end():
    network = FakeNetwork(offer_candidates=[{"candidate": "c1"}])
    peers = Peers(network)
    try:
        await asyncio.wait_for(peers.alice.connect("bob"), 1)
        await wait_until(lambda: peers.ready["bob"])
        assert peers.bob.negotiations["alice"].connector.candidates == [{"candidate": "c1"}]
    finally:
        await peers.close()


@pytest.mark.asyncio
async def test_stale_answer_dropped():
    network = FakeNetwork(hang=True)
    capture = Capture(network)
    connecting = asyncio.create_task(capture.engine.connect("bob"))
    await wait_until(lambda: capture.sent)

    await capture.engine.handle_answer(envelope_from("bob", HEADERS.ANSWER, negotiationId="old", sdp="x", type="answer"))
    assert capture.engine.state_of("bob") is NegotiationState.OFFERED

    await capture.engine.close()
    with pytest.raises(NegotiationFailed):
        await connecting


@pytest.mark.asyncio
async def test_negotiation_times_out():
    network = FakeNetwork(hang=True)
    capture = Capture(network, timeout=0.05)
    with pytest.raises(NegotiationTimeout):
        await asyncio.wait_for(capture.engine.connect("bob"), 1)
    assert capture.engine.state_of("bob") is NegotiationState.IDLE
    await wait_until(lambda: network.connectors[0].closed)


@pytest.mark.asyncio
async def test_newer_offer_supersedes_pending_one():
    network = FakeNetwork(hang=True)
    capture = Capture(network)
    remote_a, remote_b = network.connector(), network.connector()
    first, second = await remote_a.create_offer(), await remote_b.create_offer()

    await capture.engine.handle_offer(envelope_from("bob", HEADERS.OFFER, negotiationId="n1", **first))
    old = capture.engine.negotiations["bob"]
    assert old.state is NegotiationState.ANSWERED

    await capture.engine.handle_offer(envelope_from("bob", HEADERS.OFFER, negotiationId="n2", **second))
    current = capture.engine.negotiations["bob"]
    assert current.id == "n2"
    assert old.state is NegotiationState.CLOSED
    await wait_until(lambda: old.connector.closed)

    answers = [e for e in capture.sent if e.type == HEADERS.ANSWER]
    assert [a.payload["negotiationId"] for a in answers] == ["n1", "n2"]

    await capture.engine.handle_candidate(envelope_from("bob", HEADERS.ICE_CANDIDATE,
                                                        negotiationId="n1", candidate={"candidate": "late"}))
    assert current.connector.candidates == []
    await capture.engine.close()


@pytest.mark.asyncio
async def test_new_offer_replaces_open_channel():
    peers = Peers(FakeNetwork())
    try:
        transport = await asyncio.wait_for(peers.alice.connect("bob"), 1)
        await wait_until(lambda: peers.ready["bob"])
        _, old_bob_side = peers.ready["bob"][0]

        fresh = peers.network.connector()
        description = await fresh.create_offer()
        await peers.bob.handle_offer(envelope_from("alice", HEADERS.OFFER, negotiationId="n-fresh", **description))
        await wait_until(lambda: old_bob_side.closed)
        await wait_until(lambda: transport.closed)
        assert peers.bob.negotiations["alice"].id == "n-fresh"
    finally:
        await peers.close()


@pytest.mark.asyncio
async def test_connector_failure():
    capture = Capture(FakeNetwork(fail_offer=True))
    with pytest.raises(NegotiationFailed, match="could not create offer"):
        await capture.engine.connect("bob")
    assert capture.sent == []


@pytest.mark.asyncio
async def test_relay_unavailable():
    capture = Capture(FakeNetwork(), fail_send=True)
    with pytest.raises(NegotiationFailed, match="relay unavailable"):
        await capture.engine.connect("bob")


@pytest.mark.asyncio
async def test_abort_fails_waiters():
    capture = Capture(FakeNetwork(hang=True))
    connecting = asyncio.create_task(capture.engine.connect("bob"))
    await wait_until(lambda: capture.sent)
    capture.engine.abort("bob", "bob is not connected")
    with pytest.raises(NegotiationFailed, match="bob is not connected"):
        await connecting
    assert capture.engine.state_of("bob") is NegotiationState.IDLE


@pytest.mark.asyncio
async def test_local_candidates_are_trickled():
    network = FakeNetwork(hang=True)
    capture = Capture(network)
    connecting = asyncio.create_task(capture.engine.connect("bob"))
    await wait_until(lambda: capture.sent)
    negotiation_id = capture.last(HEADERS.OFFER).payload["negotiationId"]

    network.connectors[0].on_candidate({"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host"})
    await wait_until(lambda: any(e.type == HEADERS.ICE_CANDIDATE for e in capture.sent))
    candidate = capture.last(HEADERS.ICE_CANDIDATE)
    assert candidate.recipient == "bob"
    assert candidate.payload["negotiationId"] == negotiation_id

    await capture.engine.close()
    with pytest.raises(NegotiationFailed):
        await connecting


@pytest.mark.asyncio
async def test_closed_channel_allows_new_negotiation():
    peers = Peers(FakeNetwork())
    try:
        first = await asyncio.wait_for(peers.alice.connect("bob"), 1)
        await first.close()
        assert "bob" not in peers.alice.transports
        assert peers.alice.state_of("bob") is NegotiationState.IDLE

        second = await asyncio.wait_for(peers.alice.connect("bob"), 1)
        assert second is not first
        assert peers.count(HEADERS.OFFER) == 2
    finally:
        await peers.close()


@pytest.mark.asyncio
async def test_remote_candidates_flush_in_arrival_order():
    network = FakeNetwork()
    negotiation = PeerNegotiation("bob", NegotiationRole.ANSWERER, network.connector(), "n1")
    for i in range(3):
        await negotiation.add_remote_candidate(f"c{i}")
    assert negotiation.connector.candidates == []

    await negotiation.set_remote_description({"sdp": "offer", "type": "offer"})
    assert negotiation.connector.candidates == ["c0", "c1", "c2"]
    assert negotiation.pending_candidates == []
