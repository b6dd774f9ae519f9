"""Headless syncwatch participant.

Joins a room through the relay, keeps one peer link per other participant and
keeps the local player in step with the room.

Usage:
    client = WatchClient('r1', 'alice', server_url='ws://localhost:4000')
    asyncio.create_task(client.run())
    await client.wait_joined()
    await client.change_video('https://youtu.be/dQw4w9WgXcQ')
    client.send_chat('hello')
    event = await client.receive()   # chat, sys, status and error events
"""
import asyncio, uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import quote

import requests
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

import constants
from logging_config import get_logger
from peer_links import PeerLinkManager
from player import ClockPlayer, Player, PlayerError
from protocol import (SERVER_MESSAGES, Answer, Chat, Error, IceCandidate, JoinRoom, LeaveRoom, Offer,
                      ProtocolError, RoomState, SeekTo, SyncPlayer, UserJoined, UserLeft, VideoChanged,
                      VideoSync, decode, encode)
from rooms import ms
from sync import SyncCoordinator
from video_ref import extract_video_ref

logger = get_logger(__name__)

DISCONNECTED = 'disconnected'
CONNECTING = 'connecting'
CONNECTED = 'connected'


@dataclass
class Event:
    id: str
    type: str  # 'chat', 'sys', 'status', 'error'
    sender: str = ''
    username: str = ''
    text: str = ''
    ts: float = 0


def sys_event(text: str, type: str = 'sys') -> Event:
    return Event(id=str(uuid.uuid4()), type=type, text=text, ts=ms())


def http_url(server_url: str) -> str:
    if server_url.startswith('wss://'):
        return 'https://' + server_url[len('wss://'):]
    if server_url.startswith('ws://'):
        return 'http://' + server_url[len('ws://'):]
    return server_url


def lookup_room(server_url: str, room_id: str, timeout: float = 5.0) -> Optional[dict]:
    """Query the relay's read-only room lookup. Returns None if the room does not exist."""
    url = f'{http_url(server_url).rstrip("/")}/rooms/{quote(room_id, safe="")}'
    r = requests.get(url, timeout=timeout)
    if r.status_code == 404:
        return None
    r.raise_for_status()
    return r.json()


class WatchClient:
    def __init__(self, room_id: str, username: str,
                 player: Optional[Player] = None,
                 server_url: str = constants.RELAY_URL,
                 connection_factory: Optional[Callable[[], object]] = None,
                 ice_servers=None,
                 on_status: Optional[Callable[[str], None]] = None):
        self.room_id = room_id
        self.username = username
        self.server_url = server_url
        self.player = player or ClockPlayer()
        self.on_status = on_status
        self.status = DISCONNECTED
        self.self_id: Optional[str] = None
        self.participants: Dict[str, str] = {}  # other participants: id -> username
        self.ws: Optional[ClientConnection] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._joined = asyncio.Event()
        self._closing = False
        self._run_task: Optional[asyncio.Task] = None
        self._tasks = set()
        self.peers = PeerLinkManager(
            signal=self.send_relay,
            on_message=self._on_peer_message,
            is_member=self.is_member,
            connection_factory=connection_factory,
            ice_servers=ice_servers,
        )
        self.sync = SyncCoordinator(
            self.player,
            report=self.send_relay,
            broadcast=self.peers.broadcast,
            on_error=self._on_player_error,
        )

    def is_member(self, peer_id: str) -> bool:
        return peer_id in self.participants

    # ============ RELAY CONNECTION ============

    async def run(self):
        """Stay connected to the relay until close(); reconnects with backoff."""
        self._run_task = asyncio.current_task()
        self.sync.start()
        self._set_status(CONNECTING)
        try:
            async for ws in connect(self.server_url, open_timeout=10):
                try:
                    await self._session(ws)
                except (ConnectionClosed, OSError) as e:
                    logger.warning(f'Relay connection lost: {e}')
                await self._relay_lost()
                if self._closing:
                    break
                self._set_status(CONNECTING)
        finally:
            await self.sync.stop()

    async def _session(self, ws: ClientConnection):
        self.ws = ws
        self._set_status(CONNECTED)
        await self.send_relay(JoinRoom(room_id=self.room_id, username=self.username))
        async for raw in ws:
            try:
                message = decode(raw, SERVER_MESSAGES)
            except ProtocolError as e:
                logger.warning(f'Discarding malformed relay message: {e}')
                continue
            try:
                await self.handle(message)
            except Exception:
                # one bad frame must not end the session
                logger.exception(f'Error handling {message.TYPE} from relay')

    async def _relay_lost(self):
        # without the relay no link can renegotiate, so every link goes
        self.ws = None
        self.self_id = None
        self.participants.clear()
        self._joined.clear()
        for task in list(self._tasks):
            task.cancel()
        await self.peers.close_all()
        self._set_status(DISCONNECTED)

    async def send_relay(self, message):
        ws = self.ws
        if ws is None:
            logger.debug(f'Not connected, dropping {message.TYPE}')
            return
        try:
            await ws.send(encode(message))
        except ConnectionClosed as e:
            logger.debug(f'Relay closed while sending {message.TYPE}: {e}')

    def _set_status(self, status: str):
        if status == self.status:
            return
        self.status = status
        logger.info(f'Relay status: {status}')
        self._events.put_nowait(sys_event(status, type='status'))
        if self.on_status:
            self.on_status(status)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ============ INBOUND ============

    async def handle(self, message):
        if isinstance(message, RoomState):
            self.self_id = message.self_id
            self.peers.self_id = message.self_id
            self.sync.origin = message.self_id
            self.participants = {p.id: p.username for p in message.participants if p.id != message.self_id}
            self._joined.set()
            self._events.put_nowait(sys_event(
                f'Joined room {message.room_id} with {len(self.participants)} other participant(s)'))
            # existing members initiate links to us when they see user-joined
            await self.sync.catch_up(message.current_video_ref, message.playback)

        elif isinstance(message, UserJoined):
            if message.id == self.self_id:
                return
            self.participants[message.id] = message.username
            self._events.put_nowait(sys_event(f'{message.username} joined'))
            self._spawn(self.peers.connect(message.id))

        elif isinstance(message, UserLeft):
            self.participants.pop(message.id, None)
            self._events.put_nowait(sys_event(f'{message.username} left'))
            self._spawn(self.peers.remove(message.id))

        elif isinstance(message, Offer):
            self._spawn(self.peers.handle_offer(message.sender, message.sdp))
        elif isinstance(message, Answer):
            self._spawn(self.peers.handle_answer(message.sender, message.sdp))
        elif isinstance(message, IceCandidate):
            self._spawn(self.peers.handle_candidate(message.sender, message.candidate))

        elif isinstance(message, VideoChanged):
            if message.sender != self.self_id:
                await self.sync.apply_video_change(message.video_ref)
        elif isinstance(message, SyncPlayer):
            if message.sender != self.self_id:
                await self.sync.apply_player_sync(message.position_seconds, message.is_playing, message.timestamp)
        elif isinstance(message, SeekTo):
            if message.sender != self.self_id:
                await self.sync.apply_seek(message.position_seconds)

        elif isinstance(message, Error):
            logger.warning(f'Relay error: {message.message}')
            self._events.put_nowait(sys_event(message.message, type='error'))

    async def _on_peer_message(self, peer_id: str, message):
        if isinstance(message, Chat):
            await self._events.put(Event(
                id=message.id, type='chat', sender=message.origin,
                username=message.username, text=message.message, ts=message.timestamp))
        elif isinstance(message, VideoSync):
            await self.sync.apply_player_sync(
                message.position_seconds, message.is_playing, message.timestamp, message.video_ref)

    def _on_player_error(self, error: PlayerError):
        self._events.put_nowait(sys_event(f'Player error: {error.cause}', type='error'))

    # ============ PUBLIC API ============

    async def wait_joined(self, timeout: float = 15.0):
        await asyncio.wait_for(self._joined.wait(), timeout)

    def send_chat(self, text: str) -> Chat:
        """Send a chat line to every directly connected peer."""
        message = Chat(id=str(uuid.uuid4()), username=self.username, message=text,
                       timestamp=ms(), origin=self.self_id or '')
        self.peers.broadcast(message)
        return message

    async def change_video(self, raw: str) -> Optional[str]:
        """Load a pasted link or id for the whole room.

        Raises InvalidVideoReference before anything changes if it is not recognized.
        """
        video_ref = extract_video_ref(raw)
        if await self.sync.change_video(video_ref):
            return video_ref
        return None

    async def play(self):
        await self.sync.play()

    async def pause(self):
        await self.sync.pause()

    async def seek(self, position_seconds: float):
        await self.sync.seek(position_seconds)

    async def receive(self, timeout: float = None) -> Event:
        """Receive next event. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._events.get(), timeout)
        return await self._events.get()

    async def close(self):
        self._closing = True
        ws = self.ws
        if ws is not None:
            await self.send_relay(LeaveRoom())
            await ws.close()
            return
        # still dialing the relay: stop the reconnect loop
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        await self.peers.close_all()
