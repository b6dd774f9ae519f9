"""Wire messages for the relay connection and the peer side-channel.

Every frame is a JSON object tagged by ``type`` with camelCase fields. Each
direction has a closed set of tags (CLIENT_MESSAGES, SERVER_MESSAGES,
PEER_MESSAGES); ``decode`` turns a frame into exactly one dataclass from that set
or raises ProtocolError.
"""
import json, math
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union, get_args, get_origin, get_type_hints

from rooms import Participant, PlaybackSnapshot


class ProtocolError(ValueError):
    """A frame that is not a valid message for the transport it arrived on."""


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def _unwrap(tp) -> Tuple[Any, bool]:
    if get_origin(tp) is Union:
        args = [a for a in get_args(tp) if a is not type(None)]
        return args[0], True
    return tp, False


def _coerce(key: str, value, kind):
    if kind is float or kind is int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ProtocolError(f'field {key!r} must be a number')
        try:
            number = kind(value)
            finite = math.isfinite(number)
        except (OverflowError, ValueError) as e:
            raise ProtocolError(f'field {key!r} is out of range') from e
        if not finite:
            raise ProtocolError(f'field {key!r} must be finite')
        return number
    if kind is bool:
        if not isinstance(value, bool):
            raise ProtocolError(f'field {key!r} must be a boolean')
        return value
    if kind is str:
        if not isinstance(value, str):
            raise ProtocolError(f'field {key!r} must be a string')
        return value
    raise TypeError(f'unsupported field type {kind!r}')


def _require_object(value, what: str) -> dict:
    if not isinstance(value, dict):
        raise ProtocolError(f'{what} must be an object')
    return value


@dataclass
class _Message:
    TYPE: ClassVar[str] = ''

    def to_wire(self) -> Dict[str, Any]:
        wire = {'type': self.TYPE}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                wire[_camel(f.name)] = value
        return wire

    @classmethod
    def from_wire(cls, data: dict):
        hints = get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            kind, optional = _unwrap(hints[f.name])
            value = data.get(key)
            if value is None:
                if not optional:
                    raise ProtocolError(f'{cls.TYPE}: missing field {key!r}')
                kwargs[f.name] = None
                continue
            kwargs[f.name] = _coerce(key, value, kind)
        return cls(**kwargs)


# ============ CLIENT -> SERVER ============

@dataclass
class JoinRoom(_Message):
    TYPE: ClassVar[str] = 'join-room'
    room_id: str
    username: str


@dataclass
class LeaveRoom(_Message):
    TYPE: ClassVar[str] = 'leave-room'


@dataclass
class VideoChange(_Message):
    TYPE: ClassVar[str] = 'video-change'
    video_ref: str


@dataclass
class PlayerStateChange(_Message):
    TYPE: ClassVar[str] = 'player-state-change'
    position_seconds: float
    is_playing: bool
    timestamp: int

    def to_snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(self.position_seconds, self.is_playing, self.timestamp)


# ============ DIRECTED (both directions) ============
# Client -> server carries `target`; the relay rewrites it to `sender`.

@dataclass
class Offer(_Message):
    TYPE: ClassVar[str] = 'offer'
    sdp: str
    target: Optional[str] = None
    sender: Optional[str] = None


@dataclass
class Answer(_Message):
    TYPE: ClassVar[str] = 'answer'
    sdp: str
    target: Optional[str] = None
    sender: Optional[str] = None


@dataclass
class CandidateInit:
    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_wire(self) -> dict:
        return {'candidate': self.candidate, 'sdpMid': self.sdp_mid, 'sdpMLineIndex': self.sdp_mline_index}

    @classmethod
    def from_wire(cls, data) -> 'CandidateInit':
        data = _require_object(data, 'candidate')
        candidate = data.get('candidate')
        if not isinstance(candidate, str):
            raise ProtocolError('candidate.candidate must be a string')
        sdp_mid = data.get('sdpMid')
        index = data.get('sdpMLineIndex')
        return cls(
            candidate=candidate,
            sdp_mid=None if sdp_mid is None else _coerce('sdpMid', sdp_mid, str),
            sdp_mline_index=None if index is None else _coerce('sdpMLineIndex', index, int),
        )


@dataclass
class IceCandidate(_Message):
    TYPE: ClassVar[str] = 'ice-candidate'
    candidate: CandidateInit
    target: Optional[str] = None
    sender: Optional[str] = None

    def to_wire(self):
        wire = {'type': self.TYPE, 'candidate': self.candidate.to_wire()}
        if self.target is not None:
            wire['target'] = self.target
        if self.sender is not None:
            wire['sender'] = self.sender
        return wire

    @classmethod
    def from_wire(cls, data):
        target, sender = data.get('target'), data.get('sender')
        return cls(
            candidate=CandidateInit.from_wire(data.get('candidate')),
            target=None if target is None else _coerce('target', target, str),
            sender=None if sender is None else _coerce('sender', sender, str),
        )


@dataclass
class SeekTo(_Message):
    TYPE: ClassVar[str] = 'seek-to'
    position_seconds: float
    sender: Optional[str] = None
    username: Optional[str] = None


# ============ SERVER -> CLIENT ============

def participant_to_wire(p: Participant) -> dict:
    return {'id': p.id, 'username': p.username, 'joinedAt': p.joined_at}


def snapshot_to_wire(s: PlaybackSnapshot) -> dict:
    return {'positionSeconds': s.position_seconds, 'isPlaying': s.is_playing, 'capturedAt': s.captured_at}


def _participant_from_wire(data) -> Participant:
    data = _require_object(data, 'participant')
    return Participant(
        id=_coerce('id', data.get('id'), str),
        username=_coerce('username', data.get('username'), str),
        joined_at=_coerce('joinedAt', data.get('joinedAt', 0), int),
    )


def _snapshot_from_wire(data) -> PlaybackSnapshot:
    data = _require_object(data, 'playbackSnapshot')
    return PlaybackSnapshot(
        position_seconds=_coerce('positionSeconds', data.get('positionSeconds'), float),
        is_playing=_coerce('isPlaying', data.get('isPlaying'), bool),
        captured_at=_coerce('capturedAt', data.get('capturedAt', 0), int),
    )


@dataclass
class RoomState(_Message):
    TYPE: ClassVar[str] = 'room-state'
    self_id: str
    room_id: str
    participants: List[Participant] = field(default_factory=list)
    current_video_ref: Optional[str] = None
    playback: PlaybackSnapshot = field(default_factory=PlaybackSnapshot)

    def to_wire(self):
        return {
            'type': self.TYPE,
            'selfId': self.self_id,
            'roomId': self.room_id,
            'participants': [participant_to_wire(p) for p in self.participants],
            'currentVideoRef': self.current_video_ref,
            'playbackSnapshot': snapshot_to_wire(self.playback),
        }

    @classmethod
    def from_wire(cls, data):
        participants = data.get('participants')
        if not isinstance(participants, list):
            raise ProtocolError('room-state: participants must be a list')
        video_ref = data.get('currentVideoRef')
        return cls(
            self_id=_coerce('selfId', data.get('selfId'), str),
            room_id=_coerce('roomId', data.get('roomId'), str),
            participants=[_participant_from_wire(p) for p in participants],
            current_video_ref=None if video_ref is None else _coerce('currentVideoRef', video_ref, str),
            playback=_snapshot_from_wire(data.get('playbackSnapshot')),
        )


@dataclass
class UserJoined(_Message):
    TYPE: ClassVar[str] = 'user-joined'
    id: str
    username: str


@dataclass
class UserLeft(_Message):
    TYPE: ClassVar[str] = 'user-left'
    id: str
    username: str


@dataclass
class VideoChanged(_Message):
    TYPE: ClassVar[str] = 'video-changed'
    video_ref: str
    sender: str
    username: Optional[str] = None


@dataclass
class SyncPlayer(_Message):
    TYPE: ClassVar[str] = 'sync-player'
    position_seconds: float
    is_playing: bool
    timestamp: int
    sender: str
    username: Optional[str] = None


@dataclass
class Error(_Message):
    TYPE: ClassVar[str] = 'error'
    message: str


# ============ PEER SIDE-CHANNEL ============

@dataclass
class Chat(_Message):
    TYPE: ClassVar[str] = 'chat'
    id: str
    username: str
    message: str
    timestamp: int
    origin: str


@dataclass
class VideoSync(_Message):
    TYPE: ClassVar[str] = 'video-sync'
    position_seconds: float
    is_playing: bool
    timestamp: int
    origin: str
    video_ref: Optional[str] = None


# ============ CODEC ============

def _tags(*classes: Type[_Message]) -> Dict[str, Type[_Message]]:
    return {cls.TYPE: cls for cls in classes}


CLIENT_MESSAGES = _tags(JoinRoom, LeaveRoom, Offer, Answer, IceCandidate, VideoChange, PlayerStateChange, SeekTo)
SERVER_MESSAGES = _tags(RoomState, UserJoined, UserLeft, Offer, Answer, IceCandidate,
                        VideoChanged, SyncPlayer, SeekTo, Error)
PEER_MESSAGES = _tags(Chat, VideoSync)


def encode(message: _Message) -> str:
    return json.dumps(message.to_wire())


def decode(raw, allowed: Dict[str, Type[_Message]]):
    """Decode one frame into a message whose tag is in ``allowed``."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f'invalid JSON: {e}') from e
    data = _require_object(data, 'message')
    tag = data.get('type')
    cls = allowed.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise ProtocolError(f'unexpected message type {tag!r}')
    return cls.from_wire(data)
