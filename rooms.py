"""In-memory room registry for the relay.

The registry is the only owner of room state. Its methods never await, so on the
relay's single asyncio loop each call runs to completion before any other
coroutine touches the registry: operations are linearizable per room and no lock
spans more than one room. Rooms are independent entries keyed by id.
"""
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from logging_config import get_logger

logger = get_logger(__name__)


def ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Participant:
    id: str             # connection id, unique per connection (not per user)
    username: str
    joined_at: int = 0  # ms since epoch


@dataclass(frozen=True)
class PlaybackSnapshot:
    position_seconds: float = 0.0
    is_playing: bool = False
    captured_at: int = 0  # ms since epoch, as reported by the client

    def is_older_than(self, other: 'PlaybackSnapshot') -> bool:
        return self.captured_at < other.captured_at


@dataclass
class Room:
    id: str
    participants: Dict[str, Participant] = field(default_factory=dict)  # insertion ordered
    current_video_ref: Optional[str] = None
    playback: PlaybackSnapshot = field(default_factory=PlaybackSnapshot)

    def snapshot(self) -> 'RoomSnapshot':
        return RoomSnapshot(
            room_id=self.id,
            participants=tuple(self.participants.values()),
            current_video_ref=self.current_video_ref,
            playback=self.playback,
        )


@dataclass(frozen=True)
class RoomSnapshot:
    room_id: str
    participants: Tuple[Participant, ...]
    current_video_ref: Optional[str]
    playback: PlaybackSnapshot

    def others(self, participant_id: str) -> Tuple[Participant, ...]:
        return tuple(p for p in self.participants if p.id != participant_id)


class RoomRegistry:
    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def __len__(self):
        return len(self._rooms)

    def __contains__(self, room_id):
        return room_id in self._rooms

    def join(self, room_id: str, participant: Participant) -> RoomSnapshot:
        """Add a participant, creating the room on first use.

        Participants are keyed by connection id only. A second connection using
        a username already present is a separate participant, not a merge.
        """
        room = self._rooms.get(room_id)
        if room is None:
            room = self._rooms[room_id] = Room(id=room_id)
            logger.info(f'Created room {room_id}')
        if participant.id not in room.participants:
            room.participants[participant.id] = participant
        logger.info(f'{participant.username} ({participant.id}) joined room {room_id}, '
                    f'{len(room.participants)} participant(s)')
        return room.snapshot()

    def leave(self, room_id: str, participant_id: str) -> int:
        """Remove a participant and return how many remain. Empty rooms are deleted."""
        room = self._rooms.get(room_id)
        if room is None:
            return 0
        room.participants.pop(participant_id, None)
        remaining = len(room.participants)
        if remaining == 0:
            del self._rooms[room_id]
            logger.info(f'Deleted empty room {room_id}')
        return remaining

    def update_video(self, room_id: str, video_ref: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        room.current_video_ref = video_ref
        return True

    def update_playback(self, room_id: str, snapshot: PlaybackSnapshot) -> bool:
        """Store a playback snapshot unless it is older than the stored one."""
        room = self._rooms.get(room_id)
        if room is None:
            return False
        if snapshot.is_older_than(room.playback):
            logger.debug(f'Ignoring stale playback for room {room_id}: '
                         f'{snapshot.captured_at} < {room.playback.captured_at}')
            return False
        room.playback = snapshot
        return True

    def get(self, room_id: str) -> Optional[RoomSnapshot]:
        room = self._rooms.get(room_id)
        return room.snapshot() if room else None

    def find(self, room_id: str, participant_id: str) -> Optional[Participant]:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return room.participants.get(participant_id)
