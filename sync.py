"""Playback synchronization between the local player and the room.

Remote state arrives on two paths: relay events (video-changed, sync-player,
seek-to) and peer heartbeats (video-sync). Both feed the same drift-correction
policy, which is idempotent, so duplicates and reordering across the two paths
converge. Mutations made here arm a self-sync suppression window so the player
events they cause are not reported back to the room as new local changes.
"""
import asyncio, time
from typing import Awaitable, Callable, List, Optional

import constants
from logging_config import get_logger
from player import Player, PlayerError, PlayerState
from protocol import PlayerStateChange, SeekTo, VideoChange, VideoSync
from rooms import PlaybackSnapshot, ms

logger = get_logger(__name__)

IDLE = 'idle'
SUPPRESSING = 'suppressing'


class Suppression:
    """Self-sync window: either idle or suppressing until a monotonic deadline."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.until: Optional[float] = None

    def arm(self, seconds: float):
        deadline = self.clock() + seconds
        if self.until is None or deadline > self.until:
            self.until = deadline

    @property
    def active(self) -> bool:
        if self.until is None:
            return False
        if self.clock() >= self.until:
            self.until = None
            return False
        return True

    @property
    def state(self) -> str:
        return SUPPRESSING if self.active else IDLE


class SyncCoordinator:
    def __init__(self,
                 player: Player,
                 report: Callable[[object], Awaitable[None]],
                 broadcast: Callable[[object], int],
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], int] = ms,
                 on_error: Optional[Callable[[PlayerError], None]] = None):
        """
        report: sends a message through the relay.
        broadcast: sends a message on every open peer side-channel (PeerLinkManager.broadcast).
        """
        self.player = player
        self.report = report
        self.broadcast = broadcast
        self.clock = clock
        self.wall_clock = wall_clock
        self.on_error = on_error
        self.suppression = Suppression(clock)
        self.origin: Optional[str] = None  # our participant id, known after room-state
        self.last_report: Optional[float] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        player.add_listener(self.on_local_state_change)

    # ============ OUTBOUND ============

    async def on_local_state_change(self, state: PlayerState):
        if self.suppression.active:
            logger.debug('Suppressed player event caused by a sync correction')
            return
        now = self.clock()
        if self.last_report is not None and now - self.last_report < constants.REPORT_INTERVAL:
            return
        self.last_report = now
        await self.report(PlayerStateChange(
            position_seconds=state.position_seconds,
            is_playing=state.is_playing,
            timestamp=self.wall_clock(),
        ))

    async def heartbeat(self) -> bool:
        """Broadcast our position to direct peers if we are playing."""
        if self.origin is None or self.suppression.active:
            return False
        state = await self.player.state()
        if not state.is_playing:
            return False
        self.broadcast(VideoSync(
            position_seconds=state.position_seconds,
            is_playing=True,
            timestamp=self.wall_clock(),
            origin=self.origin,
            video_ref=state.video_ref,
        ))
        return True

    async def run_heartbeat(self, interval: float = constants.HEARTBEAT_INTERVAL):
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat()

    def start(self, interval: float = constants.HEARTBEAT_INTERVAL):
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self.run_heartbeat(interval))

    async def stop(self):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    # ============ LOCAL USER ACTIONS ============

    async def change_video(self, video_ref: str) -> bool:
        """Load a video chosen locally and announce it. The reference is already canonical."""
        try:
            await self.player.load(video_ref)
        except PlayerError as e:
            self.player_error(e)
            return False
        await self.report(VideoChange(video_ref=video_ref))
        return True

    async def seek(self, position_seconds: float):
        await self.player.seek(position_seconds)
        await self.report(SeekTo(position_seconds=position_seconds))

    async def play(self):
        await self.player.play()

    async def pause(self):
        await self.player.pause()

    # ============ INBOUND ============

    async def apply_video_change(self, video_ref: str) -> List[str]:
        return await self._load_if_needed(video_ref)

    async def apply_player_sync(self, position_seconds: float, is_playing: bool,
                                emitted_at: int = 0, video_ref: Optional[str] = None) -> List[str]:
        """Reconcile against a remote PlayerSync. Returns the corrections applied."""
        if self.suppression.active:
            logger.debug('Ignoring remote sync during self-sync window')
            return []
        corrections = []
        if video_ref:
            corrections += await self._load_if_needed(video_ref)
        corrections += await self._reconcile(position_seconds, is_playing, emitted_at)
        return corrections

    async def apply_seek(self, position_seconds: float) -> List[str]:
        self.suppression.arm(constants.SEEK_SUPPRESSION)
        await self.player.seek(position_seconds)
        return ['seek']

    async def catch_up(self, video_ref: Optional[str], snapshot: PlaybackSnapshot) -> List[str]:
        """Adopt the room's state from a room-state reply."""
        corrections = []
        if video_ref:
            corrections += await self._load_if_needed(video_ref)
        if snapshot.captured_at:
            corrections += await self._reconcile(snapshot.position_seconds, snapshot.is_playing,
                                                 snapshot.captured_at)
        return corrections

    def player_error(self, error: PlayerError):
        logger.warning(f'Player error for {error.video_ref}: {error.cause}')
        if self.on_error:
            self.on_error(error)

    def report_player_error(self, code: int, video_ref: Optional[str] = None):
        """Entry point for player wrappers that surface errors as codes."""
        self.player_error(PlayerError(code, video_ref))

    # ============ CORRECTIONS ============

    def target_position(self, position_seconds: float, is_playing: bool, emitted_at: int) -> float:
        if is_playing and emitted_at:
            return position_seconds + max(0, self.wall_clock() - emitted_at) / 1000.0
        return position_seconds

    async def _load_if_needed(self, video_ref: str) -> List[str]:
        state = await self.player.state()
        if state.video_ref == video_ref:
            return []
        self.suppression.arm(constants.LOAD_SUPPRESSION)
        try:
            await self.player.load(video_ref)
        except PlayerError as e:
            self.player_error(e)
            return []
        logger.info(f'Loaded remote video {video_ref}')
        return ['load']

    async def _reconcile(self, position_seconds: float, is_playing: bool, emitted_at: int) -> List[str]:
        state = await self.player.state()
        target = self.target_position(position_seconds, is_playing, emitted_at)
        corrections = []
        drift = state.position_seconds - target
        if abs(drift) > constants.DRIFT_TOLERANCE:
            self.suppression.arm(constants.SEEK_SUPPRESSION)
            await self.player.seek(target)
            corrections.append('seek')
            logger.info(f'Corrected drift of {drift:+.2f}s, now at {target:.2f}s')
        if is_playing and not state.is_playing:
            self.suppression.arm(constants.SEEK_SUPPRESSION)
            await self.player.play()
            corrections.append('play')
        elif not is_playing and state.is_playing:
            self.suppression.arm(constants.SEEK_SUPPRESSION)
            await self.player.pause()
            corrections.append('pause')
        return corrections
