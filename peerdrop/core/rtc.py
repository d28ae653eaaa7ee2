import asyncio

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from peerdrop.avails import const
from peerdrop.avails.exceptions import NegotiationFailed
from peerdrop.core import logger as _logger
from peerdrop.core.negotiation import PeerConnector


class RtcConnector(PeerConnector):
    """:class:`PeerConnector` backed by an aiortc ``RTCPeerConnection``

    aiortc gathers its own candidates while setting the local description and ships them inside the sdp,
    so ``on_candidate`` is never called from here. Trickled remote candidates are applied as they come.
    """

    def __init__(self, stun_servers=None, label=None):
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in (stun_servers or const.STUN_SERVERS)]
        )
        self.peer_connection = RTCPeerConnection(configuration=configuration)
        self.label = label or const.DATA_CHANNEL_LABEL
        self._channel_ready = asyncio.get_running_loop().create_future()
        self._closed = False
        self.peer_connection.on("datachannel", self._track_channel)
        self.peer_connection.on("connectionstatechange", self._on_connection_state_change)

    async def create_offer(self):
        channel = self.peer_connection.createDataChannel(self.label, ordered=True)
        self._track_channel(channel)
        await self.peer_connection.setLocalDescription(await self.peer_connection.createOffer())
        return self._describe(self.peer_connection.localDescription)

    async def accept_offer(self, description):
        await self.peer_connection.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description.get("type", "offer"))
        )
        await self.peer_connection.setLocalDescription(await self.peer_connection.createAnswer())
        return self._describe(self.peer_connection.localDescription)

    async def accept_answer(self, description):
        await self.peer_connection.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description.get("type", "answer"))
        )

    async def add_candidate(self, candidate):
        if isinstance(candidate, str):
            candidate = {"candidate": candidate}
        text = candidate.get("candidate") or ""
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]
        if not text:
            # end of candidates
            return

        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.peer_connection.addIceCandidate(ice_candidate)

    async def wait_channel(self):
        return await self._channel_ready

    def _track_channel(self, channel):
        if self._channel_ready.done():
            _logger.debug(f"[RTC] ignoring extra data channel {channel.label}")
            return

        def _on_open():
            if not self._channel_ready.done():
                self._channel_ready.set_result(channel)

        if channel.readyState == "open":
            _on_open()
        else:
            channel.on("open", _on_open)

    def _on_connection_state_change(self):
        state = self.peer_connection.connectionState
        _logger.debug(f"[RTC] connection state {state}")
        if state == "failed" and not self._channel_ready.done():
            self._channel_ready.set_exception(NegotiationFailed("ice connection failed"))

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if not self._channel_ready.done():
            self._channel_ready.cancel()
        await self.peer_connection.close()

    @staticmethod
    def _describe(description):
        return {"sdp": description.sdp, "type": description.type}
