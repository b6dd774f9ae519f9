"""Direct peer links: one aiortc connection plus an ordered data channel per remote participant.

Negotiation messages travel through the relay (``signal``); everything after that
flows over the data channel. All per-peer state lives in that peer's PeerLink and
per-peer operations are serialized by a per-peer lock, so negotiations with
different peers interleave freely.
"""
import asyncio, inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp

import constants
from logging_config import get_logger
from protocol import PEER_MESSAGES, Answer, CandidateInit, Offer, ProtocolError, decode, encode

logger = get_logger(__name__)

NEGOTIATION_ERRORS = (ValueError, InvalidStateError, InvalidAccessError)
MAX_RECONNECT_ATTEMPTS = 1


class LinkState(str, Enum):
    NEW = 'new'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    FAILED = 'failed'
    CLOSED = 'closed'


class ChannelState(str, Enum):
    NONE = 'none'
    OPENING = 'opening'
    OPEN = 'open'
    CLOSED = 'closed'


@dataclass
class PeerLink:
    peer_id: str
    pc: object
    initiator: bool
    connection_state: LinkState = LinkState.NEW
    channel_state: ChannelState = ChannelState.NONE
    channel: object = None
    remote_set: bool = False
    pending_candidates: list = field(default_factory=list)
    attempts: int = 0  # reconnection attempts since this peer was last connected


def parse_candidate(init: CandidateInit):
    """Turn a browser-style candidate init into an aiortc RTCIceCandidate.

    Returns None for the empty end-of-candidates marker.
    """
    text = init.candidate.strip()
    if not text:
        return None
    if text.startswith('candidate:'):
        text = text.split(':', 1)[1]
    try:
        candidate = candidate_from_sdp(text)
    except (ValueError, IndexError, AssertionError) as e:  # aiortc asserts on short lines
        raise ProtocolError(f'bad ICE candidate {init.candidate!r}') from e
    candidate.sdpMid = init.sdp_mid
    candidate.sdpMLineIndex = init.sdp_mline_index
    return candidate


class PeerLinkManager:
    def __init__(self,
                 signal: Callable[[object], Awaitable[None]],
                 on_message: Callable[[str, object], Optional[Awaitable[None]]],
                 is_member: Callable[[str], bool],
                 connection_factory: Optional[Callable[[], object]] = None,
                 ice_servers: Optional[List[str]] = None,
                 reconnect_delay: float = constants.PEER_RECONNECT_DELAY):
        self.signal = signal
        self.on_message = on_message
        self.is_member = is_member
        self.ice_servers = constants.STUN_SERVERS if ice_servers is None else ice_servers
        self.connection_factory = connection_factory or self._create_pc
        self.reconnect_delay = reconnect_delay
        self.self_id: Optional[str] = None
        self.links: Dict[str, PeerLink] = {}
        self._retries: Dict[str, asyncio.Task] = {}
        self._early_candidates: Dict[str, list] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks = set()

    def _create_pc(self):
        servers = [RTCIceServer(urls=self.ice_servers)] if self.ice_servers else []
        return RTCPeerConnection(RTCConfiguration(iceServers=servers))

    def _lock(self, peer_id: str) -> asyncio.Lock:
        lock = self._locks.get(peer_id)
        if lock is None:
            lock = self._locks[peer_id] = asyncio.Lock()
        return lock

    def open_peers(self) -> List[str]:
        return [pid for pid, link in self.links.items() if link.channel_state == ChannelState.OPEN]

    # ============ NEGOTIATION ============

    async def connect(self, peer_id: str, attempts: int = 0):
        """Initiate a link: data channel + offer sent through the relay."""
        if peer_id == self.self_id:
            return
        async with self._lock(peer_id):
            link = self._open_link(peer_id, initiator=True, attempts=attempts)
            pc = link.pc
            try:
                offer = await pc.createOffer()
                await pc.setLocalDescription(offer)
            except NEGOTIATION_ERRORS as e:
                logger.error(f'Could not create offer for peer {peer_id}: {e}')
                await self._fail(link)
                return
            if self.links.get(peer_id) is not link:
                return
            await self.signal(Offer(sdp=pc.localDescription.sdp, target=peer_id))

    async def handle_offer(self, sender: str, sdp: str):
        async with self._lock(sender):
            existing = self.links.get(sender)
            if (existing and existing.initiator and not existing.remote_set
                    and existing.connection_state in (LinkState.NEW, LinkState.CONNECTING)
                    and self.self_id is not None and self.self_id < sender):
                # both sides offered; the smaller id keeps its offer
                logger.info(f'Offer glare with peer {sender}, keeping our offer')
                return
            link = self._open_link(sender, initiator=False, attempts=existing.attempts if existing else 0)
            pc = link.pc
            try:
                await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type='offer'))
                await self._remote_description_set(link)
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
            except NEGOTIATION_ERRORS as e:
                logger.warning(f'Discarding offer from {sender}: {e}')
                await self._drop(sender)
                return
            if self.links.get(sender) is not link:
                return
            await self.signal(Answer(sdp=pc.localDescription.sdp, target=sender))

    async def handle_answer(self, sender: str, sdp: str):
        async with self._lock(sender):
            link = self.links.get(sender)
            if link is None or not link.initiator or link.remote_set:
                logger.warning(f'Ignoring unexpected answer from {sender}')
                return
            try:
                await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type='answer'))
            except NEGOTIATION_ERRORS as e:
                logger.warning(f'Discarding answer from {sender}: {e}')
                return
            await self._remote_description_set(link)

    async def handle_candidate(self, sender: str, init: CandidateInit):
        try:
            candidate = parse_candidate(init)
        except ProtocolError as e:
            logger.warning(f'Discarding candidate from {sender}: {e}')
            return
        if candidate is None:
            return
        async with self._lock(sender):
            link = self.links.get(sender)
            if link is None:
                self._early_candidates.setdefault(sender, []).append(candidate)
            elif not link.remote_set:
                link.pending_candidates.append(candidate)
            else:
                await self._add_candidate(link, candidate)

    async def _remote_description_set(self, link: PeerLink):
        link.remote_set = True
        pending, link.pending_candidates = link.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(link, candidate)

    async def _add_candidate(self, link: PeerLink, candidate):
        try:
            await link.pc.addIceCandidate(candidate)
        except NEGOTIATION_ERRORS as e:
            logger.warning(f'Could not apply candidate from {link.peer_id}: {e}')

    # ============ LINK LIFECYCLE ============

    def _open_link(self, peer_id: str, initiator: bool, attempts: int = 0) -> PeerLink:
        old = self.links.pop(peer_id, None)
        if old is not None:
            self._spawn(self._close_link(old))
        retry = self._retries.pop(peer_id, None)
        if retry:
            retry.cancel()

        pc = self.connection_factory()
        link = PeerLink(peer_id=peer_id, pc=pc, initiator=initiator,
                        connection_state=LinkState.CONNECTING, attempts=attempts)
        link.pending_candidates.extend(self._early_candidates.pop(peer_id, []))
        self.links[peer_id] = link

        @pc.on('connectionstatechange')
        async def on_connectionstatechange():
            await self._on_connection_state(link, pc.connectionState)

        if initiator:
            self._setup_channel(link, pc.createDataChannel(constants.DATA_CHANNEL_LABEL, ordered=True))
        else:
            @pc.on('datachannel')
            def on_datachannel(channel):
                self._setup_channel(link, channel)

        logger.info(f'Opened link to peer {peer_id} ({"initiator" if initiator else "answerer"})')
        return link

    async def _on_connection_state(self, link: PeerLink, state: str):
        if self.links.get(link.peer_id) is not link:
            return
        logger.info(f'Peer {link.peer_id} connection state: {state}')
        if state == 'connected':
            link.connection_state = LinkState.CONNECTED
            link.attempts = 0
        elif state == 'connecting':
            link.connection_state = LinkState.CONNECTING
        elif state in ('failed', 'disconnected', 'closed'):
            await self._fail(link)

    async def _fail(self, link: PeerLink):
        link.connection_state = LinkState.FAILED
        peer_id = link.peer_id
        if peer_id in self._retries:
            return
        if link.attempts >= MAX_RECONNECT_ATTEMPTS:
            logger.info(f'Link to peer {peer_id} failed again, falling back to relay-only sync')
            await self._drop(peer_id)
            return
        logger.info(f'Link to peer {peer_id} failed, retrying in {self.reconnect_delay}s')
        self._retries[peer_id] = asyncio.create_task(self._reconnect_later(peer_id, link.attempts + 1))

    async def _reconnect_later(self, peer_id: str, attempt: int):
        await asyncio.sleep(self.reconnect_delay)
        self._retries.pop(peer_id, None)
        # membership is checked now, not when the retry was scheduled
        if not self.is_member(peer_id):
            logger.info(f'Peer {peer_id} left during backoff, not reconnecting')
            await self._drop(peer_id)
            return
        link = self.links.get(peer_id)
        if link is not None and link.connection_state == LinkState.CONNECTED:
            return
        logger.info(f'Reconnecting to peer {peer_id}')
        await self.connect(peer_id, attempts=attempt)

    async def remove(self, peer_id: str):
        """Peer departed: close its link and forget any pending retry or candidates."""
        async with self._lock(peer_id):
            await self._drop(peer_id)
        self._locks.pop(peer_id, None)

    async def _drop(self, peer_id: str):
        retry = self._retries.pop(peer_id, None)
        if retry:
            retry.cancel()
        self._early_candidates.pop(peer_id, None)
        link = self.links.pop(peer_id, None)
        if link is not None:
            await self._close_link(link)

    async def close_all(self):
        """Relay lost: tear every link down, no individual retries."""
        for task in self._retries.values():
            task.cancel()
        self._retries.clear()
        self._early_candidates.clear()
        links, self.links = list(self.links.values()), {}
        for link in links:
            await self._close_link(link)
        self._locks.clear()

    async def _close_link(self, link: PeerLink):
        link.connection_state = LinkState.CLOSED
        link.channel_state = ChannelState.CLOSED
        await link.pc.close()
        logger.info(f'Closed link to peer {link.peer_id}')

    # ============ SIDE-CHANNEL ============

    def _setup_channel(self, link: PeerLink, channel):
        link.channel = channel
        link.channel_state = ChannelState.OPEN if channel.readyState == 'open' else ChannelState.OPENING

        @channel.on('open')
        def on_open():
            if link.channel is channel:
                link.channel_state = ChannelState.OPEN
                logger.info(f'Data channel open with peer {link.peer_id}')

        @channel.on('message')
        def on_message(data):
            self._receive(link, data)

        @channel.on('close')
        def on_close():
            if link.channel is channel:
                link.channel_state = ChannelState.CLOSED
                logger.info(f'Data channel closed with peer {link.peer_id}')

    def _receive(self, link: PeerLink, data):
        if isinstance(data, bytes):
            try:
                data = data.decode('utf-8')
            except UnicodeDecodeError:
                logger.warning(f'Discarding non UTF-8 frame from peer {link.peer_id}')
                return
        try:
            message = decode(data, PEER_MESSAGES)
        except ProtocolError as e:
            logger.warning(f'Discarding malformed frame from peer {link.peer_id}: {e}')
            return
        if message.origin == self.self_id:
            return
        result = self.on_message(link.peer_id, message)
        if inspect.isawaitable(result):
            self._spawn(result)

    def broadcast(self, message) -> int:
        """Send to every open channel. Returns how many peers it reached."""
        text = encode(message)
        sent = 0
        for peer_id, link in list(self.links.items()):
            if link.channel_state != ChannelState.OPEN:
                continue
            try:
                link.channel.send(text)
                sent += 1
            except Exception as e:
                logger.warning(f'Send to peer {peer_id} failed: {e}')
        return sent

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
