#!/usr/bin/env python3
"""WebSocket signaling relay for syncwatch rooms.

Routes join/leave notices and WebRTC negotiation between clients of one room,
and keeps each room's last known video and playback state for late joiners.
Plain HTTP GETs on the same port serve /health and /rooms/<id> for inspection.
"""
import argparse, asyncio, dataclasses, json, uuid
from datetime import datetime
from http import HTTPStatus
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

from websockets.asyncio.server import ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.http11 import Request, Response

import constants
from logging_config import get_logger, setup_logging
from protocol import (CLIENT_MESSAGES, Answer, Error, IceCandidate, JoinRoom, LeaveRoom, Offer,
                      PlayerStateChange, ProtocolError, RoomState, SeekTo, SyncPlayer, UserJoined,
                      UserLeft, VideoChange, VideoChanged, decode, encode, participant_to_wire,
                      snapshot_to_wire)
from rooms import Participant, RoomRegistry, ms
from video_ref import InvalidVideoReference, extract_video_ref

logger = get_logger(__name__)

DIRECTED = (Offer, Answer, IceCandidate)


def json_response(status: HTTPStatus, payload) -> Response:
    body = json.dumps(payload).encode()
    headers = Headers([
        ('Content-Type', 'application/json'),
        ('Content-Length', str(len(body))),
        ('Connection', 'close'),
    ])
    return Response(status.value, status.phrase, headers, body)


class SignalingRelay:
    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry()
        self.connections: Dict[str, ServerConnection] = {}  # connection id -> websocket
        self.memberships: Dict[str, str] = {}                # connection id -> room id

    async def handle(self, ws: ServerConnection):
        """Handle one WebSocket connection."""
        conn_id = uuid.uuid4().hex
        self.connections[conn_id] = ws
        logger.info(f'Connection {conn_id} opened from {ws.remote_address}')
        try:
            async for raw in ws:
                try:
                    message = decode(raw, CLIENT_MESSAGES)
                except ProtocolError as e:
                    logger.warning(f'Discarding malformed message from {conn_id}: {e}')
                    continue
                await self.dispatch(conn_id, message)
        except ConnectionClosedError as e:
            logger.info(f'Connection {conn_id} dropped: {e}')
        finally:
            # transport loss is an implicit leave
            self.connections.pop(conn_id, None)
            await self.leave(conn_id)
            logger.info(f'Connection {conn_id} closed')

    async def dispatch(self, conn_id: str, message):
        if isinstance(message, JoinRoom):
            await self.join(conn_id, message.room_id, message.username)
            return
        if isinstance(message, LeaveRoom):
            await self.leave(conn_id)
            return

        room_id = self.memberships.get(conn_id)
        if room_id is None:
            await self.send(conn_id, Error(message=f'Join a room before sending {message.TYPE}'))
            return
        sender = self.registry.find(room_id, conn_id)

        if isinstance(message, DIRECTED):
            await self.forward(room_id, conn_id, message)
        elif isinstance(message, VideoChange):
            try:
                video_ref = extract_video_ref(message.video_ref)
            except InvalidVideoReference as e:
                logger.warning(f'Rejecting video {message.video_ref!r} from {conn_id}')
                await self.send(conn_id, Error(message=e.user_message))
                return
            self.registry.update_video(room_id, video_ref)
            logger.info(f'{sender.username} changed video to {video_ref} in room {room_id}')
            await self.broadcast(room_id, VideoChanged(
                video_ref=video_ref, sender=conn_id, username=sender.username), exclude=conn_id)
        elif isinstance(message, PlayerStateChange):
            self.registry.update_playback(room_id, message.to_snapshot())
            logger.debug(f'Player state for room {room_id}: playing={message.is_playing}, '
                         f'position={message.position_seconds:.2f}')
            await self.broadcast(room_id, SyncPlayer(
                position_seconds=message.position_seconds, is_playing=message.is_playing,
                timestamp=message.timestamp, sender=conn_id, username=sender.username), exclude=conn_id)
        elif isinstance(message, SeekTo):
            logger.info(f'{sender.username} seeked to {message.position_seconds:.2f} in room {room_id}')
            await self.broadcast(room_id, SeekTo(
                position_seconds=message.position_seconds, sender=conn_id, username=sender.username),
                exclude=conn_id)

    async def join(self, conn_id: str, room_id: str, username: str):
        if conn_id in self.memberships:
            await self.leave(conn_id)
        participant = Participant(id=conn_id, username=username, joined_at=ms())
        snapshot = self.registry.join(room_id, participant)
        self.memberships[conn_id] = room_id

        await self.broadcast(room_id, UserJoined(id=conn_id, username=username), exclude=conn_id)
        await self.send(conn_id, RoomState(
            self_id=conn_id,
            room_id=room_id,
            participants=list(snapshot.participants),
            current_video_ref=snapshot.current_video_ref,
            playback=snapshot.playback,
        ))

    async def leave(self, conn_id: str):
        room_id = self.memberships.pop(conn_id, None)
        if room_id is None:
            return
        participant = self.registry.find(room_id, conn_id)
        remaining = self.registry.leave(room_id, conn_id)
        username = participant.username if participant else ''
        logger.info(f'{username} ({conn_id}) left room {room_id}, {remaining} remaining')
        if remaining:
            await self.broadcast(room_id, UserLeft(id=conn_id, username=username))

    async def forward(self, room_id: str, conn_id: str, message):
        """Deliver a negotiation message to its target only, stamped with the sender."""
        if not message.target or self.registry.find(room_id, message.target) is None:
            logger.warning(f'Dropping {message.TYPE} from {conn_id}: target {message.target!r} '
                           f'is not in room {room_id}')
            return
        logger.debug(f'Forwarding {message.TYPE} {conn_id} -> {message.target}')
        await self.send(message.target, dataclasses.replace(message, target=None, sender=conn_id))

    async def send(self, conn_id: str, message):
        await self._send_text(conn_id, encode(message))

    async def broadcast(self, room_id: str, message, exclude: Optional[str] = None):
        snapshot = self.registry.get(room_id)
        if snapshot is None:
            return
        text = encode(message)
        targets = [p.id for p in snapshot.participants if p.id != exclude]
        if targets:
            await asyncio.gather(*(self._send_text(t, text) for t in targets), return_exceptions=True)

    async def _send_text(self, conn_id: str, text: str):
        ws = self.connections.get(conn_id)
        if ws is None:
            return
        try:
            await ws.send(text)
        except ConnectionClosed as e:
            logger.warning(f'Send to {conn_id} failed: {e}')

    # ============ DIAGNOSTICS ============

    def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.headers.get('Upgrade', '').lower() == 'websocket':
            return None
        path = urlparse(request.path).path.rstrip('/')
        if path == '/health':
            return json_response(HTTPStatus.OK, {
                'status': 'ok',
                'rooms': len(self.registry),
                'timestamp': datetime.now().isoformat(),
            })
        if path.startswith('/rooms/'):
            return self.room_details(unquote(path[len('/rooms/'):]))
        return json_response(HTTPStatus.NOT_FOUND, {'error': 'Not found'})

    def room_details(self, room_id: str) -> Response:
        snapshot = self.registry.get(room_id)
        if snapshot is None:
            return json_response(HTTPStatus.NOT_FOUND, {'error': 'Room not found'})
        return json_response(HTTPStatus.OK, {
            'roomId': room_id,
            'participants': [
                {k: v for k, v in participant_to_wire(p).items() if k != 'joinedAt'}
                for p in snapshot.participants
            ],
            'currentVideoRef': snapshot.current_video_ref,
            'playbackSnapshot': snapshot_to_wire(snapshot.playback),
        })


async def main(host: str, port: int):
    relay = SignalingRelay()
    async with serve(relay.handle, host, port, process_request=relay.process_request):
        logger.info(f'Signaling relay on ws://{host}:{port}')
        await asyncio.Future()  # run forever


def cli():
    p = argparse.ArgumentParser(description='syncwatch signaling relay')
    p.add_argument('--host', default=constants.RELAY_HOST)
    p.add_argument('--port', type=int, default=constants.RELAY_PORT)
    args = p.parse_args()
    setup_logging(log_level=constants.LOG_LEVEL, log_file=constants.LOG_FILE)
    try:
        asyncio.run(main(args.host, args.port))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    cli()
