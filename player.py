"""Player control surface used by the sync coordinator.

A real front end wraps its video player behind ``Player``. ``ClockPlayer`` is a
headless stand-in that advances position with a clock; the CLI and tests use it.
"""
import inspect, time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol, Union

ERROR_CAUSES = {
    2: 'Invalid video ID',
    5: 'Video cannot be played in an HTML5 player',
    100: 'Video not found or is private',
    101: 'Video is not available in your country',
    150: 'Video is not available in your country',
}


class PlayerError(Exception):
    """The player rejected a video or a command."""

    def __init__(self, code: int, video_ref: Optional[str] = None):
        self.code = code
        self.video_ref = video_ref
        self.cause = ERROR_CAUSES.get(code, 'Unknown error occurred')
        super().__init__(f'Player error {code}: {self.cause}')


@dataclass(frozen=True)
class PlayerState:
    video_ref: Optional[str]
    position_seconds: float
    is_playing: bool


StateListener = Callable[[PlayerState], Union[None, Awaitable[None]]]


class Player(Protocol):
    async def load(self, video_ref: str) -> None: ...
    async def seek(self, position_seconds: float) -> None: ...
    async def play(self) -> None: ...
    async def pause(self) -> None: ...
    async def state(self) -> PlayerState: ...
    def add_listener(self, listener: StateListener) -> None: ...


class ClockPlayer:
    def __init__(self, clock: Callable[[], float] = time.monotonic, unplayable: Iterable[str] = ()):
        self.clock = clock
        self.unplayable = set(unplayable)
        self.video_ref: Optional[str] = None
        self.is_playing = False
        self._base = 0.0        # position at _since
        self._since = clock()
        self._listeners: List[StateListener] = []

    @property
    def position(self) -> float:
        if self.is_playing:
            return self._base + (self.clock() - self._since)
        return self._base

    def add_listener(self, listener: StateListener):
        self._listeners.append(listener)

    def snapshot(self) -> PlayerState:
        return PlayerState(self.video_ref, self.position, self.is_playing)

    async def state(self) -> PlayerState:
        return self.snapshot()

    async def load(self, video_ref: str):
        if video_ref in self.unplayable:
            raise PlayerError(100, video_ref)
        self.video_ref = video_ref
        self.is_playing = False
        self._rebase(0.0)
        await self._notify()

    async def seek(self, position_seconds: float):
        self._rebase(max(0.0, position_seconds))
        await self._notify()

    async def play(self):
        if not self.is_playing:
            self._rebase(self.position)
            self.is_playing = True
            await self._notify()

    async def pause(self):
        if self.is_playing:
            self._rebase(self.position)
            self.is_playing = False
            await self._notify()

    def _rebase(self, position: float):
        self._base = position
        self._since = self.clock()

    async def _notify(self):
        state = self.snapshot()
        for listener in list(self._listeners):
            result = listener(state)
            if inspect.isawaitable(result):
                await result
