"""Establishes direct peer channels by exchanging offers, answers and candidates through the relay

Negotiations are keyed by remote identity, at most one is live per remote.
A newer offer supersedes the pending one, callers waiting in :meth:`NegotiationEngine.connect`
follow along to whichever negotiation replaced theirs.
"""
import asyncio
import enum
import functools
from abc import ABC, abstractmethod

from peerdrop.avails import const, use
from peerdrop.avails.exceptions import NegotiationFailed, NegotiationTimeout, TransportClosed
from peerdrop.avails.wire import HEADERS, Envelope
from peerdrop.core import logger as _logger
from peerdrop.transfers.transports import DirectTransport


class NegotiationState(enum.Enum):
    IDLE = 1
    OFFERED = 2
    ANSWERED = 3
    CONNECTED = 4
    FAILED = 5
    CLOSED = 6

    @property
    def is_terminal(self):
        return self in (NegotiationState.FAILED, NegotiationState.CLOSED)


class NegotiationRole(enum.Enum):
    OFFERER = 1
    ANSWERER = 2


class _Superseded(Exception):
    pass


class PeerConnector(ABC):
    """One peer connection attempt, the engine creates one per negotiation

    Descriptions are plain dicts ``{"sdp": str, "type": "offer" | "answer"}``,
    candidates are ``{"candidate": str, "sdpMid": str | None, "sdpMLineIndex": int | None}``.

    Attributes:
        on_candidate(Callable[[dict], None] | None): set by the engine, call it for every local candidate
    """
    on_candidate = None

    @abstractmethod
    async def create_offer(self) -> dict:
        """Create the data channel and an offer, set it as local description"""

    @abstractmethod
    async def accept_offer(self, description: dict) -> dict:
        """Apply a remote offer and return the answer, set as local description"""

    @abstractmethod
    async def accept_answer(self, description: dict):
        """Apply the remote answer to an offer made earlier"""

    @abstractmethod
    async def add_candidate(self, candidate: dict):
        """Apply a remote candidate, only called once a remote description is set"""

    @abstractmethod
    async def wait_channel(self):
        """Returns the data channel once it is open"""

    @abstractmethod
    async def close(self):
        """Tear down the peer connection"""


class PeerNegotiation:
    """State of one attempt to reach ``remote`` directly"""

    def __init__(self, remote, role, connector: PeerConnector, negotiation_id=None):
        self.id = negotiation_id or use.get_unique_id(str)
        self.remote = remote
        self.role = role
        self.connector = connector
        self.state = NegotiationState.IDLE
        self.local_description = None
        self.remote_description = None
        self.pending_candidates = []
        # local candidates gathered before our offer went out
        self.held_candidates = []
        self.established = asyncio.get_running_loop().create_future()
        # nobody may be waiting when this fails
        self.established.add_done_callback(lambda f: f.cancelled() or f.exception())
        self.watch_task = None
        self.timer = None

    def change_state(self, state):
        _logger.debug(f"{self._log_prefix} {self.state.name} -> {state.name}")
        self.state = state

    async def add_remote_candidate(self, candidate):
        if self.remote_description is None:
            self.pending_candidates.append(candidate)
            return
        await self.connector.add_candidate(candidate)

    async def set_remote_description(self, description):
        """Marks the remote description as applied and flushes candidates buffered until now, in arrival order"""
        self.remote_description = description
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self.connector.add_candidate(candidate)

    def fail(self, exc):
        if self.state.is_terminal:
            return
        self.change_state(NegotiationState.CLOSED if isinstance(exc, _Superseded) else NegotiationState.FAILED)
        self._stop_timers()
        if not self.established.done():
            self.established.set_exception(exc)

    def connected(self, transport):
        self.change_state(NegotiationState.CONNECTED)
        self._stop_timers()
        if not self.established.done():
            self.established.set_result(transport)

    def _stop_timers(self):
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.watch_task is not None and self.watch_task is not asyncio.current_task():
            self.watch_task.cancel()

    @property
    def _log_prefix(self):
        return f"[NEGOTIATION:{self.remote}:{self.id[:8]}]"

    def __repr__(self):
        return f"<PeerNegotiation({self.remote}, {self.role.name}, {self.state.name})>"


class NegotiationEngine:
    """Drives :class:`PeerNegotiation` objects from relay envelopes

    Args:
        send_envelope(Callable[[Envelope], Awaitable]): routes an envelope through the relay
        connector_factory(Callable[[], PeerConnector]): makes a connector per negotiation
        local_name(Callable[[], str]): current identity, breaks ties when both sides offer at once
        on_transport(Callable[[str, DirectTransport], Any]): called for every established channel
        timeout(float): seconds a negotiation may take before it fails
    """

    def __init__(self, send_envelope, connector_factory, *, local_name=None, on_transport=None, timeout=None):
        self.send_envelope = send_envelope
        self.connector_factory = connector_factory
        self.local_name = local_name or (lambda: const.USERNAME)
        self.on_transport = on_transport
        self.timeout = timeout or const.NEGOTIATION_TIMEOUT
        self.negotiations = {}
        self.transports = {}
        # remote -> (negotiation id, candidates) that arrived ahead of their offer
        self.early_candidates = {}

    async def connect(self, remote) -> DirectTransport:
        """Get a direct transport to ``remote``, negotiating one if there is none

        Raises:
            NegotiationTimeout: if no channel opened within the negotiation timeout
            NegotiationFailed: if the connector failed or the relay could not be used
        """
        transport = self.transports.get(remote)
        if transport is not None and not transport.closed:
            return transport

        negotiation = self.negotiations.get(remote)
        if negotiation is None or negotiation.state.is_terminal:
            negotiation = await self._offer(remote)
        return await self._wait(negotiation)

    async def _wait(self, negotiation):
        while True:
            try:
                return await asyncio.shield(negotiation.established)
            except _Superseded:
                newer = self.negotiations.get(negotiation.remote)
                if newer is None or newer is negotiation:
                    raise NegotiationFailed(f"negotiation with {negotiation.remote} was dropped") from None
                _logger.debug(f"{negotiation._log_prefix} superseded, waiting on {newer.id[:8]}")
                negotiation = newer

    def _new_negotiation(self, remote, role, negotiation_id=None):
        if previous := self.negotiations.get(remote):
            previous.fail(_Superseded())
            use.spawn_task(previous.connector.close)

        connector = self.connector_factory()
        negotiation = PeerNegotiation(remote, role, connector, negotiation_id)
        connector.on_candidate = functools.partial(self._local_candidate, negotiation)
        negotiation.timer = asyncio.get_running_loop().call_later(self.timeout, self._expire, negotiation)
        self.negotiations[remote] = negotiation
        _logger.info(f"{negotiation._log_prefix} started as {role.name}")
        return negotiation

    def _is_current(self, negotiation):
        return self.negotiations.get(negotiation.remote) is negotiation and not negotiation.state.is_terminal

    async def _offer(self, remote):
        negotiation = self._new_negotiation(remote, NegotiationRole.OFFERER)
        try:
            description = await negotiation.connector.create_offer()
            if not self._is_current(negotiation):
                return negotiation
            negotiation.local_description = description
            await self.send_envelope(Envelope(
                HEADERS.OFFER,
                recipient=remote,
                payload={"negotiationId": negotiation.id, "sdp": description["sdp"], "type": description["type"]},
            ))
        except TransportClosed as tc:
            self._fail(negotiation, NegotiationFailed(f"relay unavailable: {tc}"))
            return negotiation
        except Exception as e:
            self._fail(negotiation, NegotiationFailed(f"could not create offer: {e!r}"))
            return negotiation

        negotiation.change_state(NegotiationState.OFFERED)
        if held := negotiation.held_candidates:
            negotiation.held_candidates = []
            use.spawn_task(self._send_candidates, negotiation, *held)
        self._watch(negotiation)
        return negotiation

    async def handle_offer(self, envelope: Envelope):
        remote, payload = envelope.sender, envelope.payload or {}
        negotiation_id, sdp = payload.get("negotiationId"), payload.get("sdp")
        if not remote or not negotiation_id or not sdp:
            _logger.warning(f"[NEGOTIATION] dropping ill-formed offer from {remote}")
            return

        pending = self.negotiations.get(remote)
        if (
                pending is not None
                and pending.state is NegotiationState.OFFERED
                and self.local_name() < remote
        ):
            # both offered at once, the smaller name keeps its own offer
            _logger.info(f"{pending._log_prefix} keeping own offer over {negotiation_id[:8]} from {remote}")
            return

        if old := self.transports.pop(remote, None):
            _logger.info(f"[NEGOTIATION] {remote} renegotiating, closing previous channel")
            use.spawn_task(old.close, TransportClosed("superseded by a new negotiation"))

        negotiation = self._new_negotiation(remote, NegotiationRole.ANSWERER, negotiation_id)
        early_id, early = self.early_candidates.pop(remote, (None, []))
        if early_id == negotiation_id:
            negotiation.pending_candidates.extend(early)
        try:
            answer = await negotiation.connector.accept_offer({"sdp": sdp, "type": payload.get("type", "offer")})
            if not self._is_current(negotiation):
                return
            negotiation.local_description = answer
            await self.send_envelope(Envelope(
                HEADERS.ANSWER,
                recipient=remote,
                payload={"negotiationId": negotiation.id, "sdp": answer["sdp"], "type": answer["type"]},
            ))
            negotiation.change_state(NegotiationState.ANSWERED)
            await negotiation.set_remote_description({"sdp": sdp, "type": "offer"})
        except TransportClosed as tc:
            self._fail(negotiation, NegotiationFailed(f"relay unavailable: {tc}"))
            return
        except Exception as e:
            self._fail(negotiation, NegotiationFailed(f"could not answer offer: {e!r}"))
            return

        self._watch(negotiation)

    async def handle_answer(self, envelope: Envelope):
        remote, payload = envelope.sender, envelope.payload or {}
        negotiation = self.negotiations.get(remote)
        if (
                negotiation is None
                or negotiation.id != payload.get("negotiationId")
                or negotiation.state is not NegotiationState.OFFERED
        ):
            _logger.info(f"[NEGOTIATION] dropping stale answer from {remote}")
            return

        description = {"sdp": payload.get("sdp"), "type": payload.get("type", "answer")}
        try:
            await negotiation.connector.accept_answer(description)
            if not self._is_current(negotiation):
                return
            # on the offering side ANSWERED only means the answer is applied, the channel is still pending
            negotiation.change_state(NegotiationState.ANSWERED)
            await negotiation.set_remote_description(description)
        except Exception as e:
            self._fail(negotiation, NegotiationFailed(f"could not apply answer: {e!r}"))

    async def handle_candidate(self, envelope: Envelope):
        remote, payload = envelope.sender, envelope.payload or {}
        negotiation_id, candidate = payload.get("negotiationId"), payload.get("candidate")
        if not remote or not isinstance(negotiation_id, str) or not candidate:
            return

        negotiation = self.negotiations.get(remote)
        if negotiation is None or negotiation.id != negotiation_id:
            self._keep_early(remote, negotiation_id, candidate)
            return
        if negotiation.state.is_terminal:
            return

        try:
            await negotiation.add_remote_candidate(candidate)
        except Exception as e:
            # a single bad candidate is not fatal, others may still work
            _logger.warning(f"{negotiation._log_prefix} could not apply candidate: {e!r}")

    def _keep_early(self, remote, negotiation_id, candidate):
        """Buffer a candidate whose offer has not arrived yet, only the newest negotiation id per remote is kept"""
        kept_id, kept = self.early_candidates.get(remote, (None, []))
        if kept_id != negotiation_id:
            kept = []
            self.early_candidates[remote] = (negotiation_id, kept)
        if len(kept) >= const.MAX_EARLY_CANDIDATES:
            _logger.debug(f"[NEGOTIATION] too many early candidates from {remote}, dropping")
            return
        kept.append(candidate)
        _logger.debug(f"[NEGOTIATION] holding candidate from {remote} for {negotiation_id[:8]} until its offer")

    def _local_candidate(self, negotiation, candidate):
        if not self._is_current(negotiation):
            return
        if negotiation.role is NegotiationRole.OFFERER and negotiation.state is NegotiationState.IDLE:
            negotiation.held_candidates.append(candidate)
            return
        use.spawn_task(self._send_candidates, negotiation, candidate)

    async def _send_candidates(self, negotiation, *candidates):
        for candidate in candidates:
            try:
                await self.send_envelope(Envelope(
                    HEADERS.ICE_CANDIDATE,
                    recipient=negotiation.remote,
                    payload={"negotiationId": negotiation.id, "candidate": candidate},
                ))
            except TransportClosed:
                _logger.debug(f"{negotiation._log_prefix} could not route local candidate")
                return

    def _watch(self, negotiation):
        negotiation.watch_task = asyncio.create_task(
            self._wait_channel(negotiation), name=f"channel watch {negotiation.remote}"
        )

    async def _wait_channel(self, negotiation):
        try:
            channel = await negotiation.connector.wait_channel()
        except Exception as e:
            self._fail(negotiation, NegotiationFailed(f"channel did not open: {e!r}"))
            return

        if not self._is_current(negotiation):
            return

        transport = DirectTransport(
            channel,
            negotiation.remote,
            on_closed=functools.partial(self._transport_closed, negotiation),
        )
        self.transports[negotiation.remote] = transport
        negotiation.connected(transport)
        _logger.info(f"{negotiation._log_prefix} direct channel open")
        if self.on_transport is not None:
            self.on_transport(negotiation.remote, transport)

    async def _transport_closed(self, negotiation, transport):
        if self.transports.get(negotiation.remote) is transport:
            del self.transports[negotiation.remote]
        if self.negotiations.get(negotiation.remote) is negotiation:
            del self.negotiations[negotiation.remote]
        negotiation.change_state(NegotiationState.CLOSED)
        await negotiation.connector.close()

    def _expire(self, negotiation):
        negotiation.timer = None
        if negotiation.state in (NegotiationState.CONNECTED,) or negotiation.state.is_terminal:
            return
        _logger.warning(f"{negotiation._log_prefix} timed out in state {negotiation.state.name}")
        self._fail(negotiation, NegotiationTimeout(f"no channel to {negotiation.remote} within {self.timeout}s"))

    def _fail(self, negotiation, exc):
        if negotiation.state.is_terminal:
            return
        _logger.error(f"{negotiation._log_prefix} {exc}")
        negotiation.fail(exc)
        if self.negotiations.get(negotiation.remote) is negotiation:
            del self.negotiations[negotiation.remote]
        use.spawn_task(negotiation.connector.close)

    def abort(self, remote, reason):
        """Fail the live negotiation with ``remote``, if any"""
        if negotiation := self.negotiations.get(remote):
            self._fail(negotiation, NegotiationFailed(reason))

    def state_of(self, remote):
        negotiation = self.negotiations.get(remote)
        return negotiation.state if negotiation else NegotiationState.IDLE

    async def close(self):
        for negotiation in list(self.negotiations.values()):
            self._fail(negotiation, NegotiationFailed("shutting down"))
        self.early_candidates.clear()
        for transport in list(self.transports.values()):
            await transport.close()
